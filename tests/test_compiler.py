from miniscope import constants
from miniscope.compiler import (CompileOptions, CompileContext, CompileMode, InputType, Compiler,
                                compile_expression, compile_policy, compile_miniscript, check_key_types,
                                legacy_max_weight, segwit_max_weight, NO_SINGLE_SCRIPT)
from miniscope.keys import ScriptContext
from miniscope.miniscript import Miniscript
from miniscope.taproot import TaprootMode
from miniscope.util import KeyTypeMismatch

from . import MiniscopeTestCase


COMPRESSED_KEY = "02f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"
SECOND_KEY = "03a34b99f22c790c4e36b2b3c2c35a36db06226e41c692fc82b8b56ac1c540c5bd"
XONLY_KEY = "f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"
G_KEY = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"

KEY_A = "d127f475aba7d9111ff69cc6858305d15e8912205cfa5dcc7a4c66a97ebb8174"
KEY_B = "b2afcd04877595b269282f860135bb03c8706046b0a57b17f252cf66e35cce89"
TAP_MINISCRIPT = f"or_d(pk({KEY_A}),and_v(v:pk({KEY_B}),older(144)))"

XPUB = ("xpub6Ctf53JHVC5K4JHwatPdJyXjzADFQt7pazJdQ4rc7j1chsQW6KcJUHFDbBn6e5mvGDEnFhFBCkX383uvzq14"
        "Y9Ado5qn5Y7qBiXi5DtVBda")
HD_KEY_FIXED = f"[C8FE8D4F/48h/1h/123h/2h]{XPUB}/0/0"
HD_KEY_RANGED = f"[C8FE8D4F/48h/1h/123h/2h]{XPUB}/0/*"


class TestCompileOptions(MiniscopeTestCase):

    def test_converters(self):
        options = CompileOptions(input_type='policy', context='Taproot', mode='script_path')
        self.assertEqual(InputType.POLICY, options.input_type)
        self.assertEqual(CompileContext.TAPROOT, options.context)
        self.assertEqual(CompileMode.SCRIPT_PATH, options.mode)
        self.assertEqual(CompileMode.DEFAULT, CompileOptions(mode=None).mode)
        self.assertIs(constants.BitcoinMainnet, options.get_network())

    def test_invalid(self):
        with self.assertRaises(ValueError) as ctx:
            CompileOptions(context='p2pkh')
        self.assertEqual("Invalid context: p2pkh. Use 'legacy', 'segwit', or 'taproot'", str(ctx.exception))
        with self.assertRaises(ValueError) as ctx:
            CompileOptions(mode='two-leaf')
        self.assertEqual("Invalid mode: two-leaf", str(ctx.exception))
        with self.assertRaises(ValueError):
            CompileOptions(network='litecoin')

    def test_default_taproot_mode(self):
        self.assertEqual(TaprootMode.MULTI_LEAF, CompileMode.DEFAULT.taproot_mode(InputType.POLICY))
        self.assertEqual(TaprootMode.SINGLE_LEAF, CompileMode.DEFAULT.taproot_mode(InputType.MINISCRIPT))
        self.assertEqual(TaprootMode.SCRIPT_PATH, CompileMode.SCRIPT_PATH.taproot_mode(InputType.POLICY))

    def test_context_mapping(self):
        self.assertEqual(ScriptContext.LEGACY, CompileContext.LEGACY.script_context)
        self.assertEqual(ScriptContext.TAP, CompileContext.TAPROOT.script_context)


class TestWeights(MiniscopeTestCase):

    def test_segwit_weight(self):
        ms = Miniscript.from_str(f"pk({COMPRESSED_KEY})", ScriptContext.SEGWITV0)
        # script length byte + script + element count + signature
        self.assertEqual(1 + 35 + 1 + 73, segwit_max_weight(ms))

    def test_legacy_weight(self):
        ms = Miniscript.from_str(f"pk({COMPRESSED_KEY})", ScriptContext.LEGACY)
        self.assertEqual(4 * (1 + 73 + 1 + 35), legacy_max_weight(ms))


class TestKeyTypeCheck(MiniscopeTestCase):

    def test_taproot_rejects_compressed(self):
        with self.assertRaises(KeyTypeMismatch) as ctx:
            check_key_types(f"pk({COMPRESSED_KEY})", CompileContext.TAPROOT)
        self.assertIn("Taproot context requires x-only keys", str(ctx.exception))
        check_key_types(f"pk({XONLY_KEY})", CompileContext.TAPROOT)

    def test_segwit_rejects_xonly(self):
        with self.assertRaises(KeyTypeMismatch) as ctx:
            check_key_types(f"pk({XONLY_KEY})", CompileContext.SEGWIT)
        self.assertTrue(str(ctx.exception).startswith("Segwit v0 context requires compressed public keys"))
        with self.assertRaises(KeyTypeMismatch) as ctx:
            check_key_types(f"pk({XONLY_KEY})", CompileContext.LEGACY)
        self.assertTrue(str(ctx.exception).startswith("Legacy context requires"))

    def test_hash_arguments_are_not_keys(self):
        check_key_types(f"and(pk({COMPRESSED_KEY}),sha256({'ab' * 32}))", CompileContext.SEGWIT)

    def test_hd_keys_are_skipped(self):
        check_key_types(f"pk({HD_KEY_FIXED})", CompileContext.TAPROOT)
        check_key_types(f"and(pk({HD_KEY_RANGED}),pk({COMPRESSED_KEY}))", CompileContext.SEGWIT)

    def test_raw_keys_beside_hd_keys_are_checked(self):
        with self.assertRaises(KeyTypeMismatch):
            check_key_types(f"or(pk({HD_KEY_RANGED}),pk({COMPRESSED_KEY}))", CompileContext.TAPROOT)
        with self.assertRaises(KeyTypeMismatch):
            check_key_types(f"or(pk({HD_KEY_FIXED}),pk({XONLY_KEY}))", CompileContext.SEGWIT)
        # unparsable fragments are left to the compile step
        check_key_types(f"pk([C8FE8D4F/48h]{XPUB}/0h)", CompileContext.TAPROOT)


class TestCompileMiniscript(MiniscopeTestCase):

    def test_segwit(self):
        result = compile_miniscript(f"pk({G_KEY})", "segwit")
        self.assertTrue(result.success)
        self.assertEqual("bc1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3qccfmv3", result.address)
        self.assertEqual(f"21{G_KEY}ac", result.script_hex)
        self.assertEqual(f"OP_PUSHBYTES_33 {G_KEY} OP_CHECKSIG", result.script_asm)
        self.assertEqual(35, result.script_size)
        self.assertEqual("Segwit v0", result.miniscript_type)
        self.assertEqual(110, result.max_weight_to_satisfy)
        self.assertEqual(110, result.max_satisfaction_size)
        self.assertTrue(result.sanity_check)
        self.assertTrue(result.is_non_malleable)

    def test_segwit_testnet(self):
        result = compile_miniscript(f"pk({G_KEY})", "segwit", network="testnet")
        self.assertEqual("tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7", result.address)

    def test_legacy(self):
        result = compile_miniscript(f"pk({COMPRESSED_KEY})", "legacy")
        self.assertTrue(result.success)
        self.assertEqual("3JvQ6YEnq7KVgXqSgp9SAD7opGMaKjzyAu", result.address)
        self.assertEqual("Legacy", result.miniscript_type)
        self.assertEqual(440, result.max_weight_to_satisfy)
        self.assertEqual(110, result.max_satisfaction_size)
        result = compile_miniscript(f"pk({COMPRESSED_KEY})", "legacy", network="testnet")
        self.assertEqual("2NAUcAHApSZpqtKTzMwmJnA752cZk714F56", result.address)

    def test_taproot_modes(self):
        result = compile_miniscript(TAP_MINISCRIPT, "taproot")
        self.assertTrue(result.success)
        self.assertEqual("bc1p0karmafx8lav4lukylck9xwsr2mhu47qdhm5f6muhasj4pz6mwtshunq5e", result.address)
        self.assertEqual("Taproot", result.miniscript_type)
        self.assertEqual(67, result.max_satisfaction_size)
        self.assertEqual(34, result.script_size)
        result = compile_miniscript(TAP_MINISCRIPT, "taproot", mode="multi-leaf")
        self.assertEqual("bc1pnl34fvwg835tsvrmjjlgwhx9nykvljw3qxp0z49fx94l8m2svtkqep92he", result.address)
        result = compile_miniscript(TAP_MINISCRIPT, "taproot", mode="script-path")
        self.assertEqual(2, len(result.leaves))

    def test_debug_info(self):
        result = compile_miniscript(f"pk({G_KEY})", "segwit")
        self.assertTrue(result.debug_info['annotated_expression'].startswith(f"pk({G_KEY}) [B"))
        self.assertNotIn('extended_properties', result.debug_info)
        options = CompileOptions.for_miniscript("segwit", verbose_debug=True)
        result = compile_expression(f"pk({G_KEY})", options)
        self.assertTrue(result.debug_info['extended_properties']['requires_sig'])

    def test_error_hints(self):
        result = compile_miniscript(f"pk({XONLY_KEY})", "segwit")
        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("Segwit v0 parsing failed: "))
        self.assertIn("You may be using an X-only key", result.error)
        result = compile_miniscript(f"pk({COMPRESSED_KEY})", "taproot")
        self.assertFalse(result.success)
        self.assertIn("Taproot requires X-only public keys", result.error)

    def test_errors(self):
        self.assertEqual("Empty expression - please enter a miniscript", compile_miniscript("  ", "segwit").error)
        result = compile_miniscript(f"pk({G_KEY})", "p2pkh")
        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("Invalid context: p2pkh"))

    def test_hd_key(self):
        result = compile_miniscript(f"pk({HD_KEY_FIXED})", "segwit")
        self.assertTrue(result.success)
        self.assertTrue(result.address.startswith("bc1q"))
        self.assertEqual(35, result.script_size)

    def test_ranged_hd_key(self):
        result = compile_miniscript(f"pk({HD_KEY_RANGED})", "segwit")
        self.assertTrue(result.success)
        self.assertEqual(NO_SINGLE_SCRIPT, result.script_hex)
        self.assertEqual("Descriptor", result.miniscript_type)
        self.assertTrue(result.descriptor.startswith("wsh(pk("))
        self.assertIsNone(result.address)
        result = compile_miniscript(f"pk({HD_KEY_RANGED})", "legacy")
        self.assertTrue(result.descriptor.startswith("sh(pk("))


class TestCompilePolicy(MiniscopeTestCase):

    def test_segwit(self):
        result = compile_policy(f"or(pk({COMPRESSED_KEY}),and(pk({SECOND_KEY}),older(144)))", "segwit")
        self.assertTrue(result.success)
        self.assertEqual(f"or_d(pk({COMPRESSED_KEY}),and_v(v:pk({SECOND_KEY}),older(144)))",
                         result.compiled_miniscript)
        self.assertTrue(result.address.startswith("bc1q"))

    def test_same_address_as_miniscript(self):
        policy_result = compile_policy(f"pk({COMPRESSED_KEY})", "segwit")
        ms_result = compile_miniscript(f"pk({COMPRESSED_KEY})", "segwit")
        self.assertEqual(ms_result.address, policy_result.address)
        self.assertEqual("bc1quxwuhgd97s95l6rcvm2uya25fsndvf8ru490vyahed6g2l9fx4jqt0xtq6", policy_result.address)

    def test_taproot_defaults_to_multi_leaf(self):
        policy = f"or(pk({KEY_A}),and(pk({KEY_B}),older(144)))"
        result = compile_policy(policy, "taproot")
        self.assertTrue(result.success)
        self.assertEqual(TAP_MINISCRIPT, result.compiled_miniscript)
        self.assertEqual("bc1pnl34fvwg835tsvrmjjlgwhx9nykvljw3qxp0z49fx94l8m2svtkqep92he", result.address)
        self.assertTrue(result.descriptor.startswith(f"tr({KEY_A},"))

    def test_key_type_prechecks(self):
        result = compile_policy(f"pk({COMPRESSED_KEY})", "taproot")
        self.assertFalse(result.success)
        self.assertIn("Taproot context requires x-only keys", result.error)
        result = compile_policy(f"pk({XONLY_KEY})", "segwit")
        self.assertFalse(result.success)
        self.assertIn("requires compressed public keys", result.error)
        result = compile_policy(f"or(pk({HD_KEY_RANGED}),pk({COMPRESSED_KEY}))", "taproot")
        self.assertFalse(result.success)
        self.assertIn("Taproot context requires x-only keys", result.error)

    def test_compilation_errors(self):
        result = compile_policy("older(144)", "segwit")
        self.assertFalse(result.success)
        self.assertEqual("Policy compilation failed for Segwit v0: Top Level script is not safe on some spendpath",
                         result.error)
        result = compile_policy("pk(Alice)", "segwit")
        self.assertTrue(result.error.startswith("Policy parsing failed: "))
        self.assertEqual("Empty policy - please enter a policy expression", compile_policy("", "legacy").error)

    def test_ranged_policy(self):
        result = compile_policy(f"pk({HD_KEY_RANGED})", "taproot")
        self.assertTrue(result.success)
        self.assertEqual(NO_SINGLE_SCRIPT, result.script_hex)
        self.assertTrue(result.descriptor.startswith(f"tr({constants.NUMS_POINT},pk("))
        self.assertEqual(f"pk({HD_KEY_RANGED})", result.compiled_miniscript)

    def test_compiler_diagnostic_name(self):
        compiler = Compiler(CompileOptions.for_policy("legacy"))
        self.assertEqual("legacy", compiler.diagnostic_name())
