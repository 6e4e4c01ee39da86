from miniscope import constants
from miniscope.bip32 import (BIP32Node, KeyOriginInfo, is_xpub, convert_bip32_strpath_to_intpath,
                             convert_bip32_intpath_to_strpath, is_all_public_derivation, BIP32_PRIME)
from miniscope.util import BitcoinException, DerivationError

from . import MiniscopeTestCase


XPUB = ("xpub6Ctf53JHVC5K4JHwatPdJyXjzADFQt7pazJdQ4rc7j1chsQW6KcJUHFDbBn6e5mvGDEnFhFBCkX383uvzq14"
        "Y9Ado5qn5Y7qBiXi5DtVBda")


class TestBIP32Node(MiniscopeTestCase):

    def test_from_xkey(self):
        node = BIP32Node.from_xkey(XPUB)
        self.assertEqual("standard", node.xtype)
        self.assertEqual(constants.BitcoinMainnet.NET_NAME, node.net_name)
        self.assertEqual(XPUB, node.to_xpub())
        self.assertEqual(33, len(node.get_public_key_bytes()))
        self.assertTrue(is_xpub(XPUB))

    def test_invalid(self):
        with self.assertRaises(BitcoinException):
            BIP32Node.from_xkey(XPUB[:-1] + "b")
        with self.assertRaises(BitcoinException):
            BIP32Node.from_xkey(XPUB, net=constants.BitcoinTestnet)
        self.assertFalse(is_xpub("xpub"))

    def test_public_derivation(self):
        node = BIP32Node.from_xkey(XPUB)
        child = node.subkey_at_public_derivation("m/0/0")
        self.assertEqual(node.depth + 2, child.depth)
        self.assertEqual(bytes(4), child.child_number)
        self.assertEqual(node.subkey_at_public_derivation([0]).calc_fingerprint_of_this_node(),
                         child.fingerprint)
        self.assertEqual(child, node.subkey_at_public_derivation([0, 0]))
        self.assertIs(node, node.subkey_at_public_derivation([]))


class TestPaths(MiniscopeTestCase):

    def test_strpath_to_intpath(self):
        self.assertEqual([], convert_bip32_strpath_to_intpath(""))
        self.assertEqual([48 | BIP32_PRIME, 1 | BIP32_PRIME, 0, 5],
                         convert_bip32_strpath_to_intpath("m/48h/1'/0/5"))
        with self.assertRaises(ValueError):
            convert_bip32_strpath_to_intpath("m/a/0")
        with self.assertRaises(ValueError):
            convert_bip32_strpath_to_intpath(f"m/{BIP32_PRIME}")

    def test_intpath_to_strpath(self):
        self.assertEqual("m/48h/1h/0/5", convert_bip32_intpath_to_strpath([48 | BIP32_PRIME, 1 | BIP32_PRIME, 0, 5]))
        self.assertEqual("m", convert_bip32_intpath_to_strpath([]))

    def test_is_all_public_derivation(self):
        self.assertTrue(is_all_public_derivation("m/0/1"))
        self.assertFalse(is_all_public_derivation("m/0h/1"))


class TestKeyOriginInfo(MiniscopeTestCase):

    def test_from_string(self):
        origin = KeyOriginInfo.from_string("C8FE8D4F/48h/1h/123h/2h")
        self.assertEqual("c8fe8d4f", origin.fingerprint.hex())
        self.assertEqual("m/48h/1h/123h/2h", origin.get_derivation_path())
        self.assertEqual("c8fe8d4f/48h/1h/123h/2h", origin.to_string())
        self.assertEqual(origin, KeyOriginInfo.from_string("c8fe8d4f/48'/1'/123'/2'"))

    def test_fingerprint_only(self):
        origin = KeyOriginInfo.from_string("00000000")
        self.assertEqual([], list(origin.path))
        self.assertEqual("00000000", origin.to_string())

    def test_errors(self):
        with self.assertRaises(DerivationError):
            KeyOriginInfo.from_string("c8fe8d/0")
        with self.assertRaises(DerivationError):
            KeyOriginInfo.from_string("zzzzzzzz/0")
        with self.assertRaises(DerivationError):
            KeyOriginInfo.from_string("c8fe8d4f/x")
