from miniscope import constants
from miniscope.descriptor import (parse_descriptor, descriptor_checksum, add_checksum, is_descriptor,
                                  SHDescriptor, WSHDescriptor, TRDescriptor, PubkeyProvider)
from miniscope.descriptor_resolver import resolve_key
from miniscope.expression import parse_tree
from miniscope.util import ParseError, DerivationError, bfh

from . import MiniscopeTestCase, as_testnet


COMPRESSED_KEY = "02f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"
KEY_A = "d127f475aba7d9111ff69cc6858305d15e8912205cfa5dcc7a4c66a97ebb8174"
KEY_B = "b2afcd04877595b269282f860135bb03c8706046b0a57b17f252cf66e35cce89"
XPUB = ("xpub6Ctf53JHVC5K4JHwatPdJyXjzADFQt7pazJdQ4rc7j1chsQW6KcJUHFDbBn6e5mvGDEnFhFBCkX383uvzq14"
        "Y9Ado5qn5Y7qBiXi5DtVBda")
ORIGIN = "[C8FE8D4F/48h/1h/123h/2h]"


class TestExpression(MiniscopeTestCase):

    def test_parse_tree(self):
        tree = parse_tree("or_d(pk(A), and_v(v:pk(B),older(144)))")
        self.assertEqual("or_d", tree.name)
        self.assertEqual(2, len(tree.args))
        self.assertEqual("A", tree.args[0].args[0].terminal("pk"))
        self.assertEqual("or_d(pk(A),and_v(v:pk(B),older(144)))", tree.to_string())

    def test_errors(self):
        with self.assertRaises(ParseError):
            parse_tree("")
        with self.assertRaises(ParseError) as ctx:
            parse_tree("pk(A")
        self.assertEqual("unclosed parenthesis in pk(", str(ctx.exception))
        with self.assertRaises(ParseError):
            parse_tree("pk(A))")
        with self.assertRaises(ParseError):
            parse_tree("(A)")
        with self.assertRaises(ParseError) as ctx:
            parse_tree("v:" * 10 + "pk(" * 500 + "A" + ")" * 500)
        self.assertIn("maximum recursion depth", str(ctx.exception))


class TestDescriptor(MiniscopeTestCase):

    def test_checksum(self):
        desc = ("sh(multi(2,[00000000/111h/222]xpub6ERApfZwUNrhLCkDtcHTcxd75RbzS1ed54G1LkBUHQVHQKqhMkhgbmJbZ"
                "RkrgZw4koxb5JaHWkY4ALHY2grBGRjaDMzQLcgJvLJuZZvRcEL,xpub68NZiKmJWnxxS6aaHmn81bvJeTESw724CRDs6H"
                "buccFQN9Ku14VQrADWgqbhhTHBaohPX4CjNLf9fq9MYo6oDaPPLPxSb7gwQN3ih19Zm4Y/0))")
        self.assertEqual("hgmsckna", descriptor_checksum(desc))
        self.assertEqual(desc + "#hgmsckna", add_checksum(desc))
        with self.assertRaises(ParseError):
            descriptor_checksum("pk(é)")

    def test_wsh(self):
        desc = parse_descriptor(f"wsh(pk({COMPRESSED_KEY}))")
        self.assertIsInstance(desc, WSHDescriptor)
        self.assertFalse(desc.is_range())
        self.assertTrue(desc.is_segwit())
        expanded = desc.expand()
        self.assertEqual(bfh(f"21{COMPRESSED_KEY}ac"), expanded.witness_script)
        self.assertEqual("bc1quxwuhgd97s95l6rcvm2uya25fsndvf8ru490vyahed6g2l9fx4jqt0xtq6", desc.address())

    @as_testnet
    def test_wsh_testnet(self):
        desc = parse_descriptor(f"wsh(pk({COMPRESSED_KEY}))")
        self.assertEqual("tb1quxwuhgd97s95l6rcvm2uya25fsndvf8ru490vyahed6g2l9fx4jqu8sy64", desc.address())

    def test_sh(self):
        desc = parse_descriptor(f"sh(pk({COMPRESSED_KEY}))")
        self.assertIsInstance(desc, SHDescriptor)
        self.assertFalse(desc.is_segwit())
        self.assertEqual("3JvQ6YEnq7KVgXqSgp9SAD7opGMaKjzyAu", desc.address())
        desc = parse_descriptor(f"sh(wsh(pk({COMPRESSED_KEY})))")
        self.assertTrue(desc.is_segwit())
        self.assertTrue(desc.address().startswith("3"))

    def test_checksum_validation(self):
        text = f"wsh(pk({COMPRESSED_KEY}))"
        desc = parse_descriptor(add_checksum(text))
        self.assertEqual(text, desc.to_string_no_checksum())
        self.assertEqual(add_checksum(text), desc.to_string())
        with self.assertRaises(ParseError) as ctx:
            parse_descriptor(text + "#qqqqqqqq")
        self.assertTrue(str(ctx.exception).startswith("The checksum does not match"))

    def test_tr_key_only(self):
        desc = parse_descriptor(f"tr({KEY_A})")
        self.assertIsInstance(desc, TRDescriptor)
        self.assertTrue(desc.is_taproot())
        self.assertEqual([], list(desc.iter_leaves()))
        self.assertIsNone(desc.get_max_tree_depth())
        self.assertTrue(desc.address().startswith("bc1p"))

    def test_tr_tree(self):
        desc = parse_descriptor(f"tr({constants.NUMS_POINT},{{pk({KEY_A}),{{pk({KEY_B}),older(144)}}}})")
        self.assertEqual(["L", "RL", "RR"], [path for path, _ in desc.iter_leaves()])
        self.assertEqual(2, desc.get_max_tree_depth())
        self.assertEqual(f"tr({constants.NUMS_POINT},{{pk({KEY_A}),{{pk({KEY_B}),older(144)}}}})",
                         desc.to_string_no_checksum())
        leaf = dict(desc.iter_leaves())["L"]
        self.assertEqual(f"pk({KEY_A})", str(leaf.get_miniscript()))

    def test_tr_compressed_internal_key(self):
        xonly = parse_descriptor(f"tr({COMPRESSED_KEY[2:]})")
        compressed = parse_descriptor(f"tr({COMPRESSED_KEY})")
        self.assertEqual(xonly.address(), compressed.address())

    def test_ranged_xpub(self):
        desc = parse_descriptor(f"wsh(pk({ORIGIN}{XPUB}/0/*))")
        self.assertTrue(desc.is_range())
        self.assertEqual(1, desc.multipath_count())
        self.assertEqual(f"wsh(pk([c8fe8d4f/48h/1h/123h/2h]{XPUB}/0/*))", desc.to_string_no_checksum())
        fixed_key = resolve_key(f"{ORIGIN}{XPUB}/0/0")
        self.assertEqual(parse_descriptor(f"wsh(pk({fixed_key}))").address(), desc.address(pos=0))
        self.assertNotEqual(desc.address(pos=0), desc.address(pos=1))

    def test_multipath_xpub(self):
        desc = parse_descriptor(f"wsh(pk({ORIGIN}{XPUB}/<0;1>/*))")
        self.assertEqual(2, desc.multipath_count())
        receive = desc.address(pos=0, multipath_index=0)
        change = desc.address(pos=0, multipath_index=1)
        self.assertNotEqual(receive, change)
        self.assertEqual(parse_descriptor(f"wsh(pk({ORIGIN}{XPUB}/0/*))").address(pos=0), receive)

    def test_key_expression_errors(self):
        with self.assertRaises(ParseError):
            PubkeyProvider.parse(f"{COMPRESSED_KEY}/0")
        with self.assertRaises(ParseError):
            PubkeyProvider.parse(f"[c8fe8d4f{XPUB}/0")
        with self.assertRaises(DerivationError):
            PubkeyProvider.parse("xpubbogus/0")
        with self.assertRaises(ParseError):
            PubkeyProvider.parse(f"{XPUB}/<0;1>/<2;3>")

    def test_parse_errors(self):
        with self.assertRaises(ParseError):
            parse_descriptor(f"pkh({COMPRESSED_KEY})")
        with self.assertRaises(ParseError):
            parse_descriptor(f"tr({KEY_A},{{pk({KEY_B})}})")
        with self.assertRaises(ParseError):
            parse_descriptor(f"wsh(pk({COMPRESSED_KEY})")
        with self.assertRaises(ParseError):
            parse_descriptor(f"wsh(pk({COMPRESSED_KEY}))x")

    def test_is_descriptor(self):
        self.assertTrue(is_descriptor("wsh(pk(A))"))
        self.assertTrue(is_descriptor("  tr(A)"))
        self.assertFalse(is_descriptor("pk(A)"))
        self.assertFalse(is_descriptor("and_v(v:pk(A),sh(B))"))
