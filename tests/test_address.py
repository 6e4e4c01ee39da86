from miniscope import constants
from miniscope.address import generate_address, taproot_mode_for
from miniscope.taproot import TaprootMode

from . import MiniscopeTestCase


COMPRESSED_KEY = "02f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"
PK_SCRIPT = f"21{COMPRESSED_KEY}ac"
KEY_A = "d127f475aba7d9111ff69cc6858305d15e8912205cfa5dcc7a4c66a97ebb8174"
KEY_B = "b2afcd04877595b269282f860135bb03c8706046b0a57b17f252cf66e35cce89"
TAP_MINISCRIPT = f"or_d(pk({KEY_A}),and_v(v:pk({KEY_B}),older(144)))"


class TestGenerateAddress(MiniscopeTestCase):

    def test_legacy(self):
        result = generate_address(PK_SCRIPT, "Legacy")
        self.assertTrue(result.success)
        self.assertEqual("3JvQ6YEnq7KVgXqSgp9SAD7opGMaKjzyAu", result.address)
        self.assertEqual("Legacy", result.script_type)
        self.assertEqual("mainnet", result.network)
        result = generate_address(PK_SCRIPT, "Legacy", network="testnet")
        self.assertEqual("2NAUcAHApSZpqtKTzMwmJnA752cZk714F56", result.address)
        self.assertEqual("testnet", result.network)

    def test_segwit(self):
        result = generate_address(PK_SCRIPT, "Segwit v0")
        self.assertEqual("bc1quxwuhgd97s95l6rcvm2uya25fsndvf8ru490vyahed6g2l9fx4jqt0xtq6", result.address)
        result = generate_address(PK_SCRIPT, "Segwit v0", network="testnet")
        self.assertEqual("tb1quxwuhgd97s95l6rcvm2uya25fsndvf8ru490vyahed6g2l9fx4jqu8sy64", result.address)

    def test_miniscript_input(self):
        from_hex = generate_address(PK_SCRIPT, "Segwit v0")
        from_ms = generate_address(f"pk({COMPRESSED_KEY})", "Segwit v0")
        self.assertEqual(from_hex.address, from_ms.address)

    def test_taproot(self):
        result = generate_address(TAP_MINISCRIPT, "Taproot")
        self.assertTrue(result.success)
        self.assertEqual("bc1pnl34fvwg835tsvrmjjlgwhx9nykvljw3qxp0z49fx94l8m2svtkqep92he", result.address)
        result = generate_address(TAP_MINISCRIPT, "Taproot", use_single_leaf=True)
        self.assertEqual("bc1p0karmafx8lav4lukylck9xwsr2mhu47qdhm5f6muhasj4pz6mwtshunq5e", result.address)
        result = generate_address(TAP_MINISCRIPT, "Taproot", network="regtest")
        self.assertTrue(result.address.startswith("bcrt1p"))

    def test_taproot_mode_selection(self):
        self.assertEqual(TaprootMode.SCRIPT_PATH, taproot_mode_for(constants.NUMS_POINT, False))
        self.assertEqual(TaprootMode.MULTI_LEAF, taproot_mode_for(KEY_A, True))
        self.assertEqual(TaprootMode.SINGLE_LEAF, taproot_mode_for(None, True))
        self.assertEqual(TaprootMode.MULTI_LEAF, taproot_mode_for(None, False))

    def test_errors(self):
        result = generate_address(PK_SCRIPT, "P2PKH")
        self.assertFalse(result.success)
        self.assertEqual("Unknown script type: P2PKH", result.error)
        result = generate_address(PK_SCRIPT, "Legacy", network="litecoin")
        self.assertEqual("Network parsing error: Unknown network: litecoin", result.error)
        result = generate_address("zz", "Segwit v0")
        self.assertTrue(result.error.startswith("Script decode error: "))
        result = generate_address("pk(Alice)", "Segwit v0")
        self.assertTrue(result.error.startswith("Descriptor parse error: "))
