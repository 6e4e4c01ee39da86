from miniscope.descriptor_resolver import (parse_descriptors, expand_descriptor, replace_descriptors_with_keys,
                                           contains_descriptor, process_expression_descriptors, resolve_key,
                                           descriptor_patterns, WILDCARD)
from miniscope.util import DerivationError, UnsupportedPattern

from . import MiniscopeTestCase


XPUB = ("xpub6Ctf53JHVC5K4JHwatPdJyXjzADFQt7pazJdQ4rc7j1chsQW6KcJUHFDbBn6e5mvGDEnFhFBCkX383uvzq14"
        "Y9Ado5qn5Y7qBiXi5DtVBda")
ORIGIN = "[C8FE8D4F/48h/1h/123h/2h]"
FIXED = f"{ORIGIN}{XPUB}/0/0"
RANGED = f"{ORIGIN}{XPUB}/0/*"
MULTIPATH = f"{ORIGIN}{XPUB}/<0;1>/*"


class TestParseDescriptors(MiniscopeTestCase):

    def test_fixed(self):
        descriptors = parse_descriptors(f"pk({FIXED})")
        self.assertEqual([FIXED], list(descriptors))
        info = descriptors[FIXED].info
        self.assertEqual("c8fe8d4f", info.fingerprint.hex())
        self.assertEqual("m/48h/1h/123h/2h", info.derivation_path)
        self.assertEqual((0, 0), info.child_paths)
        self.assertFalse(info.is_wildcard)

    def test_wildcard(self):
        info = parse_descriptors(f"pk({RANGED})")[RANGED].info
        self.assertEqual((0, WILDCARD), info.child_paths)
        self.assertTrue(info.is_wildcard)
        self.assertEqual([0, 7], info.derivation_steps(7))

    def test_multipath(self):
        info = parse_descriptors(f"pk({MULTIPATH})")[MULTIPATH].info
        self.assertEqual((0, 1), info.multipath)
        self.assertTrue(info.is_wildcard)
        self.assertEqual([1, 3], info.derivation_steps(3, multipath_index=1))
        with self.assertRaises(DerivationError):
            info.derivation_steps(0, multipath_index=2)

    def test_bare_xpub(self):
        descriptors = parse_descriptors(f"pk({XPUB}/1/5)")
        info = descriptors[f"{XPUB}/1/5"].info
        self.assertEqual(bytes(4), info.fingerprint)
        self.assertEqual((1, 5), info.child_paths)
        descriptors = parse_descriptors(f"pk({XPUB})")
        self.assertEqual((), descriptors[XPUB].info.child_paths)

    def test_several_fragments(self):
        expr = f"or(pk({FIXED}),pk({XPUB}/1/*))"
        self.assertEqual({FIXED, f"{XPUB}/1/*"}, set(parse_descriptors(expr)))

    def test_no_fragments(self):
        self.assertEqual({}, parse_descriptors("pk(Alice)"))
        self.assertFalse(contains_descriptor("pk(Alice)"))
        self.assertTrue(contains_descriptor(f"pk({RANGED})"))

    def test_hardened_after_xpub(self):
        with self.assertRaises(DerivationError) as ctx:
            parse_descriptors(f"pk({ORIGIN}{XPUB}/0h/0)")
        self.assertIn("Hardened derivation is not possible", str(ctx.exception))

    def test_unsupported_pattern(self):
        with self.assertRaises(UnsupportedPattern):
            parse_descriptors(f"pk({ORIGIN}{XPUB}/0/1/2)")

    def test_invalid_xpub(self):
        with self.assertRaises(DerivationError):
            parse_descriptors(f"pk({ORIGIN}{XPUB[:-1]}b/0/0)")

    def test_pattern_ladder(self):
        labels = [label for label, _, _, _ in descriptor_patterns()]
        self.assertEqual("bracketed-multipath", labels[0])
        self.assertEqual("bare-plain", labels[-1])
        self.assertEqual(len(labels), 2 * len(set(label.split("-", 1)[1] for label in labels)))


class TestExpandDescriptors(MiniscopeTestCase):

    def test_expand_fixed(self):
        key = expand_descriptor(parse_descriptors(FIXED)[FIXED])
        self.assertEqual(66, len(key))
        self.assertIn(key[:2], ("02", "03"))
        self.assertEqual(key, resolve_key(FIXED))

    def test_wildcard_index(self):
        parsed = parse_descriptors(RANGED)[RANGED]
        self.assertEqual(resolve_key(FIXED), expand_descriptor(parsed, 0))
        self.assertNotEqual(expand_descriptor(parsed, 0), expand_descriptor(parsed, 1))
        multipath = parse_descriptors(MULTIPATH)[MULTIPATH]
        self.assertEqual(expand_descriptor(parsed, 4), expand_descriptor(multipath, 4))

    def test_replace(self):
        expr = f"and(pk({FIXED}),older(144))"
        key = resolve_key(FIXED)
        self.assertEqual(f"and(pk({key}),older(144))",
                         replace_descriptors_with_keys(expr, parse_descriptors(expr)))
        self.assertEqual(f"and(pk({key[2:]}),older(144))",
                         replace_descriptors_with_keys(expr, parse_descriptors(expr), xonly=True))

    def test_replace_wildcard_everywhere(self):
        expr = f"or(pk({RANGED}),and(pk({RANGED}),older(10)))"
        key = resolve_key(RANGED, child_index=5)
        result = replace_descriptors_with_keys(expr, parse_descriptors(expr), child_index=5)
        self.assertNotIn(XPUB, result)
        self.assertNotIn("*", result)
        self.assertEqual(f"or(pk({key}),and(pk({key}),older(10)))", result)
        result = replace_descriptors_with_keys(f"and(pk({RANGED}),pk({FIXED}))",
                                               parse_descriptors(f"and(pk({RANGED}),pk({FIXED}))"),
                                               child_index=5, xonly=True)
        self.assertNotIn(XPUB, result)
        self.assertEqual(f"and(pk({key[2:]}),pk({resolve_key(FIXED, xonly=True)}))", result)

    def test_process_expression(self):
        key = resolve_key(FIXED)
        self.assertEqual(f"pk({key})", process_expression_descriptors(f"pk({FIXED})"))
        self.assertEqual(f"pk({key[2:]})", process_expression_descriptors(f"pk({FIXED})", xonly=True))
        self.assertEqual(f"wsh(pk({RANGED}))", process_expression_descriptors(f"pk({RANGED})"))
        self.assertEqual("pk(Alice)", process_expression_descriptors("pk(Alice)"))

    def test_resolve_key(self):
        self.assertIsNone(resolve_key("Alice"))
        self.assertEqual(64, len(resolve_key(FIXED, xonly=True)))
        self.assertEqual(resolve_key(f"{ORIGIN}{XPUB}/0/3"), resolve_key(RANGED, child_index=3))
