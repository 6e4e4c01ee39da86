import itertools
from unittest import mock

from miniscope import analyzer
from miniscope.analyzer import (analyze_policy, analyze_miniscript, get_all_paths, count_paths,
                                group_spending_paths, flatten_groups, describe_older, describe_after,
                                format_duration, summarize, PolicyAnalyzer)
from miniscope.keys import MiniscriptKey
from miniscope.policy import Policy, Key, Older, After, Thresh, Trivial

from . import MiniscopeTestCase


TAP_MINISCRIPT = ("or_d(pk(d127f475aba7d9111ff69cc6858305d15e8912205cfa5dcc7a4c66a97ebb8174),"
                  "and_v(v:pk(b2afcd04877595b269282f860135bb03c8706046b0a57b17f252cf66e35cce89),older(144)))")


def lifted(policy: str):
    return Policy.from_str(policy).lift()


def generated_policies():
    leaves = ["pk(A)", "pk(B)", "older(144)"]
    inner = leaves + [f"{op}({x},{y})" for op in ("and", "or") for x, y in itertools.permutations(leaves, 2)]
    for op in ("and", "or"):
        for x, y in itertools.permutations(inner, 2):
            yield f"{op}({x},{y})"
    for combo in itertools.combinations(inner, 3):
        yield f"thresh(2,{','.join(combo)})"


class TestDescriptions(MiniscopeTestCase):

    def test_format_duration(self):
        self.assertEqual("30 seconds", format_duration(30))
        self.assertEqual("~10 minutes", format_duration(600))
        self.assertEqual("~2 hours", format_duration(7200))
        self.assertEqual("~1 days", format_duration(86400))

    def test_describe_older(self):
        self.assertEqual("wait 144 blocks (~1 days)", describe_older(Older(144)))
        self.assertEqual("wait 6 blocks (~1 hours)", describe_older(Older(6)))
        # time based: 10 units of 512 seconds
        self.assertEqual("wait ~1 hours", describe_older(Older((1 << 22) | 10)))

    def test_describe_after(self):
        self.assertEqual("wait until block 800000", describe_after(After(800000)))
        self.assertEqual("wait until 1/1/2025", describe_after(After(1735689600)))


class TestSpendingPaths(MiniscopeTestCase):

    def test_or_of_and(self):
        policy = lifted("or(pk(Alice),and(pk(Bob),older(144)))")
        paths = get_all_paths(policy)
        self.assertEqual(["Alice signs", "Bob signs + wait 144 blocks (~1 days)"], [p.text for p in paths])
        self.assertEqual([1, 1], [p.signatures for p in paths])
        self.assertEqual(2, count_paths(policy))

    def test_thresh(self):
        policy = lifted("thresh(2,pk(A),pk(B),pk(C))")
        paths = get_all_paths(policy)
        self.assertEqual(["A signs + B signs", "A signs + C signs", "B signs + C signs"],
                         [p.text for p in paths])
        self.assertEqual(3, count_paths(policy))

    def test_and_of_ors(self):
        policy = lifted("and(or(pk(A),pk(B)),or(pk(C),older(10)))")
        self.assertEqual(4, len(get_all_paths(policy)))
        self.assertEqual(4, count_paths(policy))

    def test_trivial(self):
        self.assertEqual(["(always true)"], [p.text for p in get_all_paths(Trivial())])

    def test_depth_limit(self):
        expr = "pk(K9)"
        for i in range(8):
            expr = f"or(pk(K{i}),{expr})" if i % 2 else f"and(pk(K{i}),{expr})"
        result = analyze_policy(expr, max_depth=5)
        self.assertFalse(result.success)
        self.assertIn("maximum depth of 5", result.error)
        self.assertTrue(analyze_policy(expr).success)


class TestGrouping(MiniscopeTestCase):

    def test_top_level_or(self):
        groups = group_spending_paths(lifted("or(pk(Alice),and(pk(Bob),older(144)))"))
        self.assertEqual(["Branch 1", "Branch 2"], [g.label for g in groups])
        self.assertEqual("pk(Alice)", groups[0].summary)
        self.assertEqual("pk(Bob) + wait 144 blocks (~1 days)", groups[1].summary)
        self.assertEqual(["Alice signs"], groups[0].paths)
        self.assertIsNone(groups[0].preview_paths)

    def test_nested_or(self):
        policy = lifted("or(pk(A),and(pk(B),or(pk(C),older(10))))")
        groups = group_spending_paths(policy)
        self.assertEqual(2, len(groups))
        self.assertEqual(2, groups[1].path_count)
        self.assertEqual(["B signs + C signs", "B signs + wait 10 blocks (~1 hours)"], groups[1].paths)
        self.assertEqual(flatten_groups(groups), [p.text for p in get_all_paths(policy)])

    def test_child_groups(self):
        policy = Thresh(1, [Key(MiniscriptKey("A")),
                            Thresh(1, [Key(MiniscriptKey("B")), Key(MiniscriptKey("C"))])])
        groups = group_spending_paths(policy)
        self.assertEqual(2, len(groups))
        self.assertEqual(("Branch 2.1", "Branch 2.2"), tuple(c.label for c in groups[1].children))
        self.assertEqual("one of 2 alternatives", groups[1].summary)
        self.assertEqual(["A signs", "B signs", "C signs"], flatten_groups(groups))

    def test_large_group_preview(self):
        keys = ",".join(f"pk(K{i})" for i in range(6))
        groups = group_spending_paths(lifted(f"thresh(3,{keys})"), display_limit=10, preview_count=3)
        self.assertEqual(1, len(groups))
        self.assertEqual(20, groups[0].path_count)
        self.assertIsNone(groups[0].paths)
        self.assertEqual(3, len(groups[0].preview_paths))
        self.assertEqual(20, len(flatten_groups(groups)))

    def test_large_group_is_counted_not_enumerated(self):
        keys = ",".join(f"pk(K{i})" for i in range(22))
        policy = lifted(f"thresh(11,{keys})")
        with mock.patch.object(analyzer, "get_all_paths", side_effect=AssertionError("enumerated")):
            groups = group_spending_paths(policy, display_limit=10, preview_count=3)
        self.assertEqual(705432, groups[0].path_count)
        self.assertIsNone(groups[0].paths)
        self.assertEqual(" + ".join(f"K{i} signs" for i in range(11)), groups[0].preview_paths[0])
        self.assertEqual(3, len(groups[0].preview_paths))

    def test_counts_and_groups_match_enumeration(self):
        for expr in generated_policies():
            policy = lifted(expr)
            texts = [p.text for p in get_all_paths(policy)]
            with self.subTest(policy=expr):
                self.assertEqual(len(texts), count_paths(policy))
                self.assertEqual(texts, flatten_groups(group_spending_paths(policy)))
                small = group_spending_paths(policy, display_limit=1, preview_count=1)
                self.assertEqual(texts, flatten_groups(small))
                self.assertEqual(len(texts), sum(g.path_count for g in small))

    def test_summarize_multisig(self):
        self.assertEqual("2-of-3 multisig: A, B, C", summarize(lifted("thresh(2,pk(A),pk(B),pk(C))")))
        keys = ",".join(f"pk(K{i})" for i in range(7))
        self.assertEqual("2-of-7 multisig: K0, K1, K2, K3, K4, … (+2 more)", summarize(lifted(f"thresh(2,{keys})")))


class TestAnalyzePolicy(MiniscopeTestCase):

    def test_or_of_and(self):
        result = analyze_policy("or(pk(Alice),and(pk(Bob),older(144)))")
        self.assertTrue(result.success)
        self.assertEqual("policy", result.source)
        self.assertEqual(["Path 1: Alice signs", "Path 2: Bob signs + wait 144 blocks (~1 days)"],
                         result.spending_paths)
        self.assertEqual(2, result.complexity.depth)
        self.assertEqual(2, result.complexity.num_paths)
        self.assertEqual([], result.complexity.thresholds)
        self.assertIsNone(result.warnings)
        self.assertEqual(["Alice", "Bob"], result.keys.unique_keys)
        self.assertEqual(1, result.keys.min_signatures)
        self.assertEqual([144], [t.value for t in result.timelocks.relative])
        self.assertTrue(result.security.is_safe)

    def test_multisig(self):
        result = analyze_policy("thresh(2,pk(A),pk(B),pk(C))")
        self.assertEqual(3, len(result.spending_paths))
        self.assertEqual(["2-of-3"], result.complexity.thresholds)
        self.assertEqual("2-of-3 multisig: A, B, C", result.spending_paths_grouped[0].summary)
        self.assertEqual(2, result.keys.max_signatures)
        self.assertEqual("thresh", result.tree_structure.node_type)

    def test_no_signature_warnings(self):
        result = analyze_policy("older(144)")
        self.assertTrue(result.success)
        self.assertEqual([analyzer.WARNING_NO_SIG_TIMELOCK], result.warnings)
        self.assertEqual("Path 1: wait 144 blocks (~1 days) ⚠️ (no signature required)", result.spending_paths[0])
        self.assertFalse(result.security.is_safe)
        sha = "ab" * 32
        result = analyze_policy(f"or(pk(A),sha256({sha}))")
        self.assertEqual([analyzer.WARNING_NO_SIG_HASHLOCK], result.warnings)
        self.assertEqual(1, result.hashlocks.sha256_count)
        result = analyze_policy(f"or(pk(A),and(sha256({sha}),older(10)))")
        self.assertEqual([analyzer.WARNING_NO_SIG_BOTH], result.warnings)

    def test_mixed_timelocks(self):
        result = analyze_policy("and(pk(A),and(after(100),after(500000001)))")
        self.assertTrue(result.success)
        self.assertTrue(result.timelocks.has_mixed)
        self.assertIn(analyzer.WARNING_MIXED_TIMELOCKS, result.warnings)
        self.assertFalse(result.security.passes_sanity_check)

    def test_errors(self):
        result = analyze_policy("   ")
        self.assertFalse(result.success)
        self.assertEqual("Empty policy expression", result.error)
        result = analyze_policy("or(pk(A)")
        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("Policy analysis failed: "))

    def test_to_dict_hides_group_policy(self):
        d = analyze_policy("or(pk(A),pk(B))").to_dict()
        self.assertNotIn("policy", d["spending_paths_grouped"][0])
        self.assertEqual(["A signs"], d["spending_paths_grouped"][0]["paths"])


class TestAnalyzeMiniscript(MiniscopeTestCase):

    def test_taproot(self):
        result = analyze_miniscript(TAP_MINISCRIPT, "taproot")
        self.assertTrue(result.success)
        self.assertEqual("miniscript", result.source)
        self.assertEqual(2, len(result.spending_paths))
        self.assertEqual(67, result.size.max_witness_bytes)
        self.assertTrue(result.security.passes_sanity_check)
        self.assertTrue(result.security.is_non_malleable)

    def test_named_keys(self):
        result = analyze_miniscript("or_d(pk(Alice),and_v(v:pk(Bob),older(144)))", "segwit")
        self.assertTrue(result.success)
        self.assertEqual(["Path 1: Alice signs", "Path 2: Bob signs + wait 144 blocks (~1 days)"],
                         result.spending_paths)
        self.assertEqual(["Branch 1", "Branch 2"], [g.label for g in result.spending_paths_grouped])

    def test_errors(self):
        self.assertEqual("Empty miniscript expression", analyze_miniscript("", "segwit").error)
        result = analyze_miniscript("pk(A)", "p2pkh")
        self.assertFalse(result.success)
        self.assertIn("Unknown context", result.error)
        result = analyze_miniscript("and_v(pk(A),pk(B))", "segwit")
        self.assertTrue(result.error.startswith("Failed to parse miniscript: "))
        result = analyze_miniscript("and_v(v:after(100),after(500000001))", "segwit")
        self.assertTrue(result.error.startswith("Failed to lift miniscript: "))

    def test_analyzer_limits_from_constructor(self):
        analyzer_ = PolicyAnalyzer(display_limit=1, preview_count=1)
        result = analyzer_.analyze_policy("or(pk(A),and(or(pk(B),pk(C)),pk(D)))")
        group = result.spending_paths_grouped[1]
        self.assertEqual(2, group.path_count)
        self.assertIsNone(group.paths)
        self.assertEqual(["B signs + D signs"], group.preview_paths)
