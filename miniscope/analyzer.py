# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Spending path analysis of semantic policies.

Given a lifted policy, this enumerates every way it can be satisfied,
groups those paths by top-level branch for display, and summarizes the
keys, timelocks and hash locks involved.
"""

import itertools
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

import attr

from .bitcoin import SEQUENCE_LOCKTIME_MASK, SEQUENCE_LOCKTIME_GRANULARITY
from .keys import ScriptContext
from .miniscript import Miniscript, AnalysisError
from .policy import (SemanticPolicy, Unsatisfiable, Trivial, Key, After, Older,
                     HashLock, Thresh, Policy)
from .util import UserFacingException, BitcoinException
from .logging import get_logger


_logger = get_logger(__name__)

GROUP_DISPLAY_LIMIT = 10
GROUP_PREVIEW_COUNT = 3
MAX_RECURSION_DEPTH = 128
SUMMARY_MAX_KEYS = 5

BLOCK_INTERVAL_SECONDS = 600

NO_SIGNATURE_SUFFIX = " ⚠️ (no signature required)"
WARNING_TRIVIAL = "⚠️ Trivially satisfiable - anyone can spend!"
WARNING_UNSATISFIABLE = "❌ Unsatisfiable - can never be spent!"
WARNING_NO_SIG = "⚠️ No signature required - spendable without private keys"
WARNING_NO_SIG_TIMELOCK = "⚠️ No signature required on some paths - anyone can spend once the timelock expires"
WARNING_NO_SIG_HASHLOCK = "⚠️ No signature required on some paths - anyone who knows the hash preimage can spend"
WARNING_NO_SIG_BOTH = "⚠️ No signature required on some paths - a hash preimage and an expired timelock are enough to spend"
WARNING_MALLEABLE = "⚠️ Malleable - a third party may be able to alter the witness of a spending transaction"
WARNING_MIXED_TIMELOCKS = ("❌ Invalid timelock combination. Mixed height-based and time-based locks "
                           "are not allowed in this spending path")


@attr.s(frozen=True, slots=True)
class SpendingPath:
    conditions = attr.ib(converter=tuple)  # type: Tuple[str, ...]
    signatures = attr.ib(default=0)  # type: int

    def __add__(self, other: 'SpendingPath') -> 'SpendingPath':
        return SpendingPath(self.conditions + other.conditions, self.signatures + other.signatures)

    @property
    def text(self) -> str:
        return " + ".join(self.conditions)


@attr.s(frozen=True, kw_only=True)
class SpendingPathGroup:
    label = attr.ib(type=str)
    summary = attr.ib(type=str)
    path_count = attr.ib(type=int)
    paths = attr.ib(type=Optional[list], default=None)
    preview_paths = attr.ib(type=Optional[list], default=None)
    children = attr.ib(type=tuple, default=())
    # branch the paths come from, enumerated again by flatten() when only previewed
    policy = attr.ib(type=Optional[SemanticPolicy], default=None, repr=False, eq=False,
                     metadata={'export': False})

    def flatten(self) -> List[str]:
        if self.children:
            return [p for child in self.children for p in child.flatten()]
        if self.paths is not None:
            return list(self.paths)
        if self.policy is None:
            return []
        return [p.text for p in iter_paths(self.policy)]


@attr.s(frozen=True, kw_only=True)
class KeyAnalysis:
    total_references = attr.ib(type=int)
    unique_keys = attr.ib(type=list)
    min_signatures = attr.ib(type=Optional[int])
    max_signatures = attr.ib(type=Optional[int])


@attr.s(frozen=True, kw_only=True)
class TimelockEntry:
    value = attr.ib(type=int)
    description = attr.ib(type=str)


@attr.s(frozen=True, kw_only=True)
class TimelockAnalysis:
    relative = attr.ib(type=list)
    absolute = attr.ib(type=list)
    has_mixed = attr.ib(type=bool)


@attr.s(frozen=True, kw_only=True)
class HashlockAnalysis:
    sha256_count = attr.ib(type=int, default=0)
    hash256_count = attr.ib(type=int, default=0)
    ripemd160_count = attr.ib(type=int, default=0)
    hash160_count = attr.ib(type=int, default=0)

    @property
    def total(self) -> int:
        return self.sha256_count + self.hash256_count + self.ripemd160_count + self.hash160_count


@attr.s(frozen=True, kw_only=True)
class ComplexityAnalysis:
    depth = attr.ib(type=int)
    num_paths = attr.ib(type=int)
    thresholds = attr.ib(type=list)


@attr.s(frozen=True, kw_only=True)
class SecurityAnalysis:
    is_non_malleable = attr.ib(type=bool)
    requires_signature = attr.ib(type=bool)
    has_repeated_keys = attr.ib(type=bool)
    within_resource_limits = attr.ib(type=bool)
    passes_sanity_check = attr.ib(type=bool)
    is_safe = attr.ib(type=bool)


@attr.s(frozen=True, kw_only=True)
class SizeAnalysis:
    script_bytes = attr.ib(type=Optional[int])
    max_witness_bytes = attr.ib(type=Optional[int])
    witness_elements = attr.ib(type=Optional[int])
    opcodes = attr.ib(type=Optional[int])
    pk_cost = attr.ib(type=Optional[int])


@attr.s(frozen=True, kw_only=True)
class PolicyTreeNode:
    node_type = attr.ib(type=str)
    value = attr.ib(type=Optional[str], default=None)
    k = attr.ib(type=Optional[int], default=None)
    n = attr.ib(type=Optional[int], default=None)
    children = attr.ib(type=tuple, default=())


@attr.s(frozen=True, kw_only=True)
class AnalysisResult:
    success = attr.ib(type=bool)
    error = attr.ib(type=Optional[str], default=None)
    source = attr.ib(type=Optional[str], default=None)
    spending_logic = attr.ib(type=Optional[str], default=None)
    spending_paths = attr.ib(type=Optional[list], default=None)
    spending_paths_grouped = attr.ib(type=Optional[list], default=None)
    keys = attr.ib(type=Optional[KeyAnalysis], default=None)
    timelocks = attr.ib(type=Optional[TimelockAnalysis], default=None)
    hashlocks = attr.ib(type=Optional[HashlockAnalysis], default=None)
    complexity = attr.ib(type=Optional[ComplexityAnalysis], default=None)
    security = attr.ib(type=Optional[SecurityAnalysis], default=None)
    size = attr.ib(type=Optional[SizeAnalysis], default=None)
    tree_structure = attr.ib(type=Optional[PolicyTreeNode], default=None)
    warnings = attr.ib(type=Optional[list], default=None)

    def to_dict(self) -> dict:
        return attr.asdict(self, filter=lambda a, v: a.metadata.get('export', True))


# --- labels

def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"~{seconds // 60} minutes"
    if seconds < 86400:
        return f"~{seconds // 3600} hours"
    return f"~{seconds // 86400} days"


def format_timestamp(timestamp: int) -> str:
    d = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return f"{d.month}/{d.day}/{d.year}"


def describe_older(node: Older) -> str:
    if node.is_height_locked():
        blocks = node.value & SEQUENCE_LOCKTIME_MASK
        return f"wait {blocks} blocks ({format_duration(blocks * BLOCK_INTERVAL_SECONDS)})"
    units = node.value & SEQUENCE_LOCKTIME_MASK
    return f"wait {format_duration(units << SEQUENCE_LOCKTIME_GRANULARITY)}"


def describe_after(node: After) -> str:
    if node.is_block_height():
        return f"wait until block {node.value}"
    return f"wait until {format_timestamp(node.value)}"


def describe_hashlock(node: HashLock) -> str:
    return f"provide {node.kind.upper()} preimage for {node.hash[:8]}"


# --- enumeration

def _check_depth(depth: int, max_depth: int) -> None:
    if depth > max_depth:
        raise AnalysisError(f"policy nesting exceeds the maximum depth of {max_depth}")


def _cartesian(path_sets: Sequence[List[SpendingPath]]) -> Iterator[SpendingPath]:
    for combo in itertools.product(*path_sets):
        yield sum(combo, SpendingPath(()))


def iter_paths(policy: SemanticPolicy, *, depth: int = 0,
               max_depth: int = MAX_RECURSION_DEPTH) -> Iterator[SpendingPath]:
    """Spending paths of the policy in enumeration order, generated lazily.

    Children of AND and threshold nodes are enumerated in full, the
    combinations of them are not.
    """
    _check_depth(depth, max_depth)
    if isinstance(policy, Unsatisfiable):
        return
    if isinstance(policy, Trivial):
        yield SpendingPath(["(always true)"])
    elif isinstance(policy, Key):
        yield SpendingPath([f"{policy.key} signs"], 1)
    elif isinstance(policy, After):
        yield SpendingPath([describe_after(policy)])
    elif isinstance(policy, Older):
        yield SpendingPath([describe_older(policy)])
    elif isinstance(policy, HashLock):
        yield SpendingPath([describe_hashlock(policy)])
    else:
        assert isinstance(policy, Thresh), policy
        if policy.is_or():
            for sub in policy.subs:
                yield from iter_paths(sub, depth=depth + 1, max_depth=max_depth)
            return
        child_paths = [list(iter_paths(sub, depth=depth + 1, max_depth=max_depth)) for sub in policy.subs]
        if policy.is_and():
            yield from _cartesian(child_paths)
            return
        for combo in itertools.combinations(range(policy.n), policy.k):
            yield from _cartesian([child_paths[i] for i in combo])


def get_all_paths(policy: SemanticPolicy, *, depth: int = 0,
                  max_depth: int = MAX_RECURSION_DEPTH) -> List[SpendingPath]:
    """Every spending path of the policy, with its signature count."""
    return list(iter_paths(policy, depth=depth, max_depth=max_depth))


def count_paths(policy: SemanticPolicy) -> int:
    """Number of spending paths, without enumerating them."""
    if isinstance(policy, Unsatisfiable):
        return 0
    if not isinstance(policy, Thresh):
        return 1
    counts = [count_paths(sub) for sub in policy.subs]
    if policy.is_and():
        return _product(counts)
    if policy.is_or():
        return sum(counts)
    return sum(_product([counts[i] for i in combo])
               for combo in itertools.combinations(range(policy.n), policy.k))


def _product(values: Sequence[int]) -> int:
    result = 1
    for v in values:
        result *= v
    return result


def format_spending_paths(paths: Sequence[SpendingPath]) -> List[str]:
    out = []
    for i, path in enumerate(paths, start=1):
        line = f"Path {i}: {path.text}"
        if path.signatures == 0:
            line += NO_SIGNATURE_SUFFIX
        out.append(line)
    return out


# --- grouping

def _is_multisig(policy: SemanticPolicy) -> bool:
    return (isinstance(policy, Thresh) and policy.n > 1 and policy.k > 1
            and all(isinstance(sub, Key) for sub in policy.subs))


def _key_list(keys: Sequence[str]) -> str:
    if len(keys) <= SUMMARY_MAX_KEYS:
        return ", ".join(keys)
    shown = ", ".join(keys[:SUMMARY_MAX_KEYS])
    return f"{shown}, … (+{len(keys) - SUMMARY_MAX_KEYS} more)"


def summarize(policy: SemanticPolicy) -> str:
    """One line description of a (sub)policy, for group headers."""
    if isinstance(policy, Unsatisfiable):
        return "unspendable"
    if isinstance(policy, Trivial):
        return "anyone can spend"
    if isinstance(policy, Key):
        return f"pk({policy.key})"
    if isinstance(policy, After):
        return describe_after(policy)
    if isinstance(policy, Older):
        return describe_older(policy)
    if isinstance(policy, HashLock):
        return describe_hashlock(policy)
    assert isinstance(policy, Thresh), policy
    if _is_multisig(policy):
        keys = [str(sub.key) for sub in policy.subs]
        return f"{policy.k}-of-{policy.n} multisig: {_key_list(keys)}"
    parts = [summarize(sub) for sub in policy.subs]
    if policy.is_and():
        return " + ".join(parts)
    if policy.is_or():
        return "(" + " OR ".join(parts) + ")"
    return f"{policy.k}-of-{policy.n}: " + ", ".join(parts)


def _leaf_group(label: str, policy: SemanticPolicy, *, display_limit: int, preview_count: int,
                max_depth: int, depth: int) -> SpendingPathGroup:
    path_count = count_paths(policy)
    paths = iter_paths(policy, depth=depth, max_depth=max_depth)
    if path_count > display_limit:
        preview = [p.text for p in itertools.islice(paths, preview_count)]
        return SpendingPathGroup(label=label, summary=summarize(policy), path_count=path_count,
                                 preview_paths=preview, policy=policy)
    return SpendingPathGroup(label=label, summary=summarize(policy), path_count=path_count,
                             paths=[p.text for p in paths], policy=policy)


def group_spending_paths(policy: SemanticPolicy, *, display_limit: int = GROUP_DISPLAY_LIMIT,
                         preview_count: int = GROUP_PREVIEW_COUNT,
                         max_depth: int = MAX_RECURSION_DEPTH) -> List[SpendingPathGroup]:
    """Spending paths grouped by top-level OR branch.

    Nested ORs become child groups. Any other branch is a single group
    holding its paths, or a short preview of them if there are more
    than display_limit.
    """
    def build(node: SemanticPolicy, label: str, depth: int) -> SpendingPathGroup:
        _check_depth(depth, max_depth)
        if isinstance(node, Thresh) and node.is_or() and node.n > 1:
            children = tuple(build(sub, f"{label}.{i}", depth + 1)
                             for i, sub in enumerate(node.subs, start=1))
            return SpendingPathGroup(label=label, summary=f"one of {node.n} alternatives",
                                     path_count=sum(c.path_count for c in children),
                                     children=children)
        return _leaf_group(label, node, display_limit=display_limit, preview_count=preview_count,
                           max_depth=max_depth, depth=depth)

    if isinstance(policy, Unsatisfiable):
        return []
    if isinstance(policy, Thresh) and policy.is_or() and policy.n > 1:
        return [build(sub, f"Branch {i}", 1) for i, sub in enumerate(policy.subs, start=1)]
    return [build(policy, "Branch 1", 0)]


def flatten_groups(groups: Sequence[SpendingPathGroup]) -> List[str]:
    return [p for g in groups for p in g.flatten()]


# --- summaries

def extract_key_analysis(policy: SemanticPolicy, paths: Sequence[SpendingPath]) -> KeyAnalysis:
    keys = [str(k) for k in policy.keys()]
    unique = list(dict.fromkeys(keys))
    sig_counts = [p.signatures for p in paths if p.signatures > 0]
    return KeyAnalysis(
        total_references=len(keys),
        unique_keys=unique,
        min_signatures=min(sig_counts) if sig_counts else None,
        max_signatures=max(sig_counts) if sig_counts else None,
    )


def extract_timelock_analysis(policy: SemanticPolicy, has_mixed: bool) -> TimelockAnalysis:
    return TimelockAnalysis(
        relative=[TimelockEntry(value=v, description=describe_older(Older(v)))
                  for v in policy.relative_timelocks()],
        absolute=[TimelockEntry(value=v, description=describe_after(After(v)))
                  for v in policy.absolute_timelocks()],
        has_mixed=has_mixed,
    )


def extract_hashlock_analysis(policy: SemanticPolicy) -> HashlockAnalysis:
    counts = {'sha256': 0, 'hash256': 0, 'ripemd160': 0, 'hash160': 0}
    for leaf in policy.iter_leaves():
        if isinstance(leaf, HashLock):
            counts[leaf.kind] += 1
    return HashlockAnalysis(**{f"{kind}_count": n for kind, n in counts.items()})


def extract_complexity(policy: SemanticPolicy, num_paths: int, *,
                       max_depth: int = MAX_RECURSION_DEPTH) -> ComplexityAnalysis:
    thresholds = []

    def depth_of(node: SemanticPolicy, current: int) -> int:
        _check_depth(current, max_depth)
        if not isinstance(node, Thresh):
            return current
        if not node.is_and() and not node.is_or():
            thresholds.append(f"{node.k}-of-{node.n}")
        return max([current] + [depth_of(sub, current + 1) for sub in node.subs])

    depth = depth_of(policy, 0)
    return ComplexityAnalysis(depth=depth, num_paths=num_paths, thresholds=thresholds)


def build_tree(policy: SemanticPolicy) -> PolicyTreeNode:
    if isinstance(policy, Unsatisfiable):
        return PolicyTreeNode(node_type="unsatisfiable")
    if isinstance(policy, Trivial):
        return PolicyTreeNode(node_type="trivial")
    if isinstance(policy, Key):
        return PolicyTreeNode(node_type="pk", value=str(policy.key))
    if isinstance(policy, After):
        return PolicyTreeNode(node_type="after", value=str(policy.value))
    if isinstance(policy, Older):
        return PolicyTreeNode(node_type="older", value=str(policy.value))
    if isinstance(policy, HashLock):
        return PolicyTreeNode(node_type=policy.kind, value=policy.hash)
    assert isinstance(policy, Thresh), policy
    if policy.is_and():
        node_type = "and"
    elif policy.is_or():
        node_type = "or"
    else:
        node_type = "thresh"
    return PolicyTreeNode(node_type=node_type, k=policy.k, n=policy.n,
                          children=tuple(build_tree(sub) for sub in policy.subs))


def extract_warnings(policy: SemanticPolicy, *, non_malleable: bool = True,
                     has_mixed: bool = False) -> List[str]:
    warnings = []
    if policy.is_trivial():
        warnings.append(WARNING_TRIVIAL)
    if policy.is_unsatisfiable():
        warnings.append(WARNING_UNSATISFIABLE)
    if policy.minimum_n_keys() == 0 and not policy.is_trivial() and not policy.is_unsatisfiable():
        has_timelocks = bool(policy.relative_timelocks() or policy.absolute_timelocks())
        has_hashlocks = any(isinstance(leaf, HashLock) for leaf in policy.iter_leaves())
        if has_timelocks and has_hashlocks:
            warnings.append(WARNING_NO_SIG_BOTH)
        elif has_hashlocks:
            warnings.append(WARNING_NO_SIG_HASHLOCK)
        elif has_timelocks:
            warnings.append(WARNING_NO_SIG_TIMELOCK)
        else:
            warnings.append(WARNING_NO_SIG)
    if not non_malleable:
        warnings.append(WARNING_MALLEABLE)
    if has_mixed:
        # lifting already rejects mixed timelocks, kept for policies built by hand
        warnings.append(WARNING_MIXED_TIMELOCKS)
    return warnings


class PolicyAnalyzer:
    """Builds the full analysis record of a lifted policy."""

    def __init__(self, *, display_limit: int = GROUP_DISPLAY_LIMIT,
                 preview_count: int = GROUP_PREVIEW_COUNT,
                 max_depth: int = MAX_RECURSION_DEPTH):
        self.display_limit = display_limit
        self.preview_count = preview_count
        self.max_depth = max_depth

    def analyze(self, semantic: SemanticPolicy, *, source: str, has_mixed: bool,
                security: SecurityAnalysis, size: Optional[SizeAnalysis] = None) -> AnalysisResult:
        paths = get_all_paths(semantic, max_depth=self.max_depth)
        groups = group_spending_paths(semantic, display_limit=self.display_limit,
                                      preview_count=self.preview_count, max_depth=self.max_depth)
        warnings = extract_warnings(semantic, non_malleable=security.is_non_malleable,
                                    has_mixed=has_mixed)
        _logger.debug(f"analyzed {source}: {len(paths)} paths in {len(groups)} groups")
        return AnalysisResult(
            success=True,
            source=source,
            spending_logic=str(semantic),
            spending_paths=format_spending_paths(paths),
            spending_paths_grouped=groups,
            keys=extract_key_analysis(semantic, paths),
            timelocks=extract_timelock_analysis(semantic, has_mixed),
            hashlocks=extract_hashlock_analysis(semantic),
            complexity=extract_complexity(semantic, len(paths), max_depth=self.max_depth),
            security=security,
            size=size,
            tree_structure=build_tree(semantic),
            warnings=warnings or None,
        )

    def analyze_miniscript(self, expression: str, ctx: ScriptContext) -> AnalysisResult:
        try:
            ms = Miniscript.from_str(expression, ctx, strict=False)
        except (UserFacingException, BitcoinException) as e:
            raise AnalysisError(f"Failed to parse miniscript: {e}") from e
        try:
            semantic = ms.lift()
        except (UserFacingException, BitcoinException) as e:
            raise AnalysisError(f"Failed to lift miniscript: {e}") from e
        security = SecurityAnalysis(
            is_non_malleable=ms.is_non_malleable(),
            requires_signature=ms.requires_sig(),
            has_repeated_keys=ms.has_repeated_keys(),
            within_resource_limits=ms.within_resource_limits(),
            passes_sanity_check=ms.is_sane(),
            is_safe=ms.has_type('s'),
        )
        size = SizeAnalysis(
            script_bytes=ms.script_size(),
            max_witness_bytes=ms.max_satisfaction_size(),
            witness_elements=ms.max_satisfaction_witness_elements(),
            opcodes=ms.ops_count(),
            pk_cost=ms.pk_cost(),
        )
        return self.analyze(semantic, source="miniscript", has_mixed=ms.has_mixed_timelocks(),
                            security=security, size=size)

    def analyze_policy(self, policy_str: str) -> AnalysisResult:
        try:
            policy = Policy.from_str(policy_str)
            has_mixed = policy.timelock_info().contains_combination
            semantic = policy.lift(check_timelocks=False)
        except (UserFacingException, BitcoinException) as e:
            raise AnalysisError(f"Policy analysis failed: {e}") from e
        is_safe, non_malleable = policy.is_safe_nonmalleable()
        keys = list(policy.iter_keys())
        min_keys = semantic.minimum_n_keys()
        security = SecurityAnalysis(
            is_non_malleable=non_malleable,
            requires_signature=bool(min_keys),
            has_repeated_keys=len(keys) != len(set(keys)),
            within_resource_limits=True,
            passes_sanity_check=not has_mixed and len(keys) == len(set(keys)),
            is_safe=is_safe,
        )
        return self.analyze(semantic, source="policy", has_mixed=has_mixed, security=security)


def _failure(source: str, error: str) -> AnalysisResult:
    return AnalysisResult(success=False, error=error, source=source)


def analyze_miniscript(expression: str, context: str, **kwargs) -> AnalysisResult:
    """Analyzes a miniscript in the named context; never raises."""
    try:
        ctx = ScriptContext.from_str(context)
    except ValueError as e:
        return _failure("miniscript", str(e))
    if not expression.strip():
        return _failure("miniscript", "Empty miniscript expression")
    try:
        return PolicyAnalyzer(**kwargs).analyze_miniscript(expression, ctx)
    except (UserFacingException, BitcoinException) as e:
        _logger.debug(f"miniscript analysis failed: {e}")
        return _failure("miniscript", str(e))


def analyze_policy(policy: str, **kwargs) -> AnalysisResult:
    """Analyzes a concrete policy; never raises."""
    if not policy.strip():
        return _failure("policy", "Empty policy expression")
    try:
        return PolicyAnalyzer(**kwargs).analyze_policy(policy)
    except (UserFacingException, BitcoinException) as e:
        _logger.debug(f"policy analysis failed: {e}")
        return _failure("policy", str(e))
