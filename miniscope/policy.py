# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Spending policies.

Two flavours live here:

- the *semantic* policy, a closed tagged union (``Key``, ``Thresh``,
  ``Older``, ``After``, four hash locks, ``Trivial``, ``Unsatisfiable``)
  that miniscripts and concrete policies lift to, and that the analyzer
  walks;
- the *concrete* policy language (``pk``, ``and``, ``or`` with ``N@``
  weights, ``thresh``, timelocks and hash locks) that users write, with
  validation and a deterministic compiler to miniscript.
"""

from typing import Optional, Sequence, List, Tuple, TYPE_CHECKING

import attr

from .bitcoin import LOCKTIME_THRESHOLD, SEQUENCE_LOCKTIME_TYPE_FLAG
from .expression import Tree, parse_tree
from .keys import ScriptContext, MiniscriptKey, parse_key, parse_hash, parse_u32, HASH_LENGTHS
from .logging import get_logger
from .util import ParseError

if TYPE_CHECKING:
    from .miniscript import Miniscript


_logger = get_logger(__name__)


class SemanticPolicy:
    """Base of the semantic policy variants."""
    __slots__ = ()

    def normalized(self) -> 'SemanticPolicy':
        return self

    def is_trivial(self) -> bool:
        return False

    def is_unsatisfiable(self) -> bool:
        return False

    def minimum_n_keys(self) -> Optional[int]:
        return 0

    def children(self) -> Sequence['SemanticPolicy']:
        return ()

    def iter_leaves(self):
        stack = [self]
        while stack:
            node = stack.pop()
            if isinstance(node, Thresh):
                stack.extend(reversed(node.subs))
            else:
                yield node

    def keys(self) -> List[MiniscriptKey]:
        return [leaf.key for leaf in self.iter_leaves() if isinstance(leaf, Key)]

    def relative_timelocks(self) -> List[int]:
        return sorted({leaf.value for leaf in self.iter_leaves() if isinstance(leaf, Older)})

    def absolute_timelocks(self) -> List[int]:
        return sorted({leaf.value for leaf in self.iter_leaves() if isinstance(leaf, After)})


@attr.s(frozen=True, slots=True)
class Unsatisfiable(SemanticPolicy):

    def __str__(self):
        return "UNSATISFIABLE"

    def is_unsatisfiable(self):
        return True

    def minimum_n_keys(self):
        return None


@attr.s(frozen=True, slots=True)
class Trivial(SemanticPolicy):

    def __str__(self):
        return "TRIVIAL"

    def is_trivial(self):
        return True


@attr.s(frozen=True, slots=True)
class Key(SemanticPolicy):
    key = attr.ib()  # type: MiniscriptKey

    def __str__(self):
        return f"pk({self.key})"

    def minimum_n_keys(self):
        return 1


@attr.s(frozen=True, slots=True)
class After(SemanticPolicy):
    value = attr.ib()  # type: int

    def __str__(self):
        return f"after({self.value})"

    def is_block_height(self) -> bool:
        return self.value < LOCKTIME_THRESHOLD


@attr.s(frozen=True, slots=True)
class Older(SemanticPolicy):
    value = attr.ib()  # type: int

    def __str__(self):
        return f"older({self.value})"

    def is_height_locked(self) -> bool:
        return not (self.value & SEQUENCE_LOCKTIME_TYPE_FLAG)


@attr.s(frozen=True, slots=True)
class HashLock(SemanticPolicy):
    kind = attr.ib()  # type: str  # one of HASH_LENGTHS
    hash = attr.ib()  # type: str

    def __str__(self):
        return f"{self.kind}({self.hash})"


@attr.s(frozen=True, slots=True)
class Thresh(SemanticPolicy):
    k = attr.ib()  # type: int
    subs = attr.ib(converter=tuple)  # type: Tuple[SemanticPolicy, ...]

    @property
    def n(self) -> int:
        return len(self.subs)

    def is_and(self) -> bool:
        return self.k == self.n

    def is_or(self) -> bool:
        return self.k == 1

    def __str__(self):
        inner = ",".join(str(sub) for sub in self.subs)
        if self.k == self.n:
            return f"and({inner})"
        if self.k == 1:
            return f"or({inner})"
        return f"thresh({self.k},{inner})"

    def children(self):
        return self.subs

    def normalized(self) -> SemanticPolicy:
        subs = [sub.normalized() for sub in self.subs]
        trivial_count = sum(1 for sub in subs if isinstance(sub, Trivial))
        unsat_count = sum(1 for sub in subs if isinstance(sub, Unsatisfiable))
        n = len(subs) - trivial_count - unsat_count
        m = max(self.k - trivial_count, 0)
        is_and = m == n
        is_or = m == 1
        ret_subs = []
        for sub in subs:
            if isinstance(sub, (Trivial, Unsatisfiable)):
                continue
            if isinstance(sub, Thresh) and not (is_and and is_or):
                if is_and and sub.is_and():
                    ret_subs.extend(sub.subs)
                    continue
                if is_or and sub.is_or():
                    ret_subs.extend(sub.subs)
                    continue
            ret_subs.append(sub)
        if m == 0:
            return Trivial()
        if m > len(ret_subs):
            return Unsatisfiable()
        if len(ret_subs) == 1:
            return ret_subs[0]
        if is_and:
            return Thresh(len(ret_subs), ret_subs)
        if is_or:
            return Thresh(1, ret_subs)
        return Thresh(m, ret_subs)

    def is_trivial(self):
        return sum(1 for sub in self.subs if sub.is_trivial()) >= self.k

    def is_unsatisfiable(self):
        unsat = sum(1 for sub in self.subs if sub.is_unsatisfiable())
        return self.n - unsat < self.k

    def minimum_n_keys(self):
        sublens = sorted(x for x in (sub.minimum_n_keys() for sub in self.subs) if x is not None)
        if len(sublens) < self.k:
            return None
        return sum(sublens[:self.k])


def semantic_and(*subs: SemanticPolicy) -> Thresh:
    return Thresh(len(subs), subs)


def semantic_or(*subs: SemanticPolicy) -> Thresh:
    return Thresh(1, subs)


class TimelockInfo:
    """Which timelock kinds a (sub)policy can require, and whether some
    single spending path would need a height lock and a time lock of the
    same kind at once."""
    __slots__ = ('csv_with_height', 'csv_with_time', 'cltv_with_height',
                 'cltv_with_time', 'contains_combination')

    def __init__(self):
        self.csv_with_height = False
        self.csv_with_time = False
        self.cltv_with_height = False
        self.cltv_with_time = False
        self.contains_combination = False

    @classmethod
    def for_older(cls, value: int) -> 'TimelockInfo':
        info = cls()
        if value & SEQUENCE_LOCKTIME_TYPE_FLAG:
            info.csv_with_time = True
        else:
            info.csv_with_height = True
        return info

    @classmethod
    def for_after(cls, value: int) -> 'TimelockInfo':
        info = cls()
        if value >= LOCKTIME_THRESHOLD:
            info.cltv_with_time = True
        else:
            info.cltv_with_height = True
        return info

    @classmethod
    def combine_threshold(cls, k: int, infos: Sequence['TimelockInfo']) -> 'TimelockInfo':
        acc = cls()
        for t in infos:
            if k > 1:
                acc.contains_combination |= (
                    (acc.csv_with_height and t.csv_with_time)
                    or (acc.csv_with_time and t.csv_with_height)
                    or (acc.cltv_with_time and t.cltv_with_height)
                    or (acc.cltv_with_height and t.cltv_with_time))
            acc.csv_with_height |= t.csv_with_height
            acc.csv_with_time |= t.csv_with_time
            acc.cltv_with_height |= t.cltv_with_height
            acc.cltv_with_time |= t.cltv_with_time
            acc.contains_combination |= t.contains_combination
        return acc


class PolicyError(ParseError):
    pass


class Policy:
    """A concrete policy node.

    ``kind`` is one of ``unsatisfiable``, ``trivial``, ``pk``, ``after``,
    ``older``, the hash kinds, ``and``, ``or`` and ``thresh``.
    """

    def __init__(self, kind: str, *, subs: Sequence['Policy'] = (), k: int = 0,
                 weights: Sequence[int] = (), key: MiniscriptKey = None,
                 value: int = None, hash: str = None):
        self.kind = kind
        self.subs = tuple(subs)
        self.k = k
        self.weights = tuple(weights)
        self.key = key
        self.value = value
        self.hash = hash

    def __repr__(self):
        return f"<Policy {self}>"

    def __eq__(self, other):
        return isinstance(other, Policy) and str(self) == str(other)

    def __hash__(self):
        return hash(str(self))

    def __str__(self):
        if self.kind == 'unsatisfiable':
            return "UNSATISFIABLE"
        if self.kind == 'trivial':
            return "TRIVIAL"
        if self.kind == 'pk':
            return f"pk({self.key})"
        if self.kind in ('after', 'older'):
            return f"{self.kind}({self.value})"
        if self.kind in HASH_LENGTHS:
            return f"{self.kind}({self.hash})"
        if self.kind == 'and':
            return "and({})".format(",".join(map(str, self.subs)))
        if self.kind == 'or':
            if any(w != 1 for w in self.weights):
                return "or({})".format(",".join(f"{w}@{sub}" for w, sub in zip(self.weights, self.subs)))
            return "or({})".format(",".join(map(str, self.subs)))
        return "thresh({},{})".format(self.k, ",".join(map(str, self.subs)))

    @classmethod
    def from_str(cls, s: str, *, ctx: ScriptContext = None, strict: bool = False) -> 'Policy':
        """Parses a concrete policy.

        With ``strict``, keys must be real public keys for ``ctx``;
        otherwise key names like ``Alice`` are accepted.
        """
        tree = parse_tree(s)
        key_ctx = ctx or ScriptContext.SEGWITV0
        return _policy_from_tree(tree, key_ctx, strict)

    def iter_keys(self):
        if self.kind == 'pk':
            yield self.key
        for sub in self.subs:
            yield from sub.iter_keys()

    def lift(self, *, check_timelocks: bool = True) -> SemanticPolicy:
        if check_timelocks:
            self.check_timelocks()
        return self._lift().normalized()

    def _lift(self) -> SemanticPolicy:
        if self.kind == 'unsatisfiable':
            return Unsatisfiable()
        if self.kind == 'trivial':
            return Trivial()
        if self.kind == 'pk':
            return Key(self.key)
        if self.kind == 'after':
            return After(self.value)
        if self.kind == 'older':
            return Older(self.value)
        if self.kind in HASH_LENGTHS:
            return HashLock(self.kind, self.hash)
        subs = [sub._lift() for sub in self.subs]
        if self.kind == 'and':
            return Thresh(len(subs), subs)
        if self.kind == 'or':
            return Thresh(1, subs)
        return Thresh(self.k, subs)

    def timelock_info(self) -> TimelockInfo:
        if self.kind == 'after':
            return TimelockInfo.for_after(self.value)
        if self.kind == 'older':
            return TimelockInfo.for_older(self.value)
        if not self.subs:
            return TimelockInfo()
        infos = [sub.timelock_info() for sub in self.subs]
        if self.kind == 'and':
            return TimelockInfo.combine_threshold(len(infos), infos)
        if self.kind == 'or':
            return TimelockInfo.combine_threshold(1, infos)
        return TimelockInfo.combine_threshold(self.k, infos)

    def check_timelocks(self) -> None:
        if self.timelock_info().contains_combination:
            raise PolicyError("Policy contains a combination of timelocks and heightlocks")

    def check_duplicate_keys(self) -> None:
        keys = list(self.iter_keys())
        if len(keys) != len(set(keys)):
            raise PolicyError("Policy contains duplicate keys")

    def is_valid(self) -> None:
        self.check_timelocks()
        self.check_duplicate_keys()

    def is_safe_nonmalleable(self) -> Tuple[bool, bool]:
        """Returns (safe, non_malleable).

        safe: every spending path needs at least one signature.
        """
        if self.kind in ('unsatisfiable', 'trivial', 'pk'):
            return True, True
        if self.kind in ('after', 'older') or self.kind in HASH_LENGTHS:
            return False, True
        results = [sub.is_safe_nonmalleable() for sub in self.subs]
        if self.kind == 'and':
            return any(s for s, _ in results), all(m for _, m in results)
        if self.kind == 'or':
            all_safe = all(s for s, _ in results)
            one_safe = any(s for s, _ in results)
            return all_safe, one_safe and all(m for _, m in results)
        n = len(results)
        safe_count = sum(1 for s, _ in results if s)
        non_mall_count = sum(1 for _, m in results if m)
        return safe_count >= n - self.k + 1, non_mall_count == n and safe_count >= n - self.k

    def compile(self, ctx: ScriptContext) -> 'Miniscript':
        """Compiles to a miniscript for ``ctx``.

        The compiler is deterministic and structural: it does not search
        for the cheapest encoding.
        """
        self.is_valid()
        safe, non_malleable = self.is_safe_nonmalleable()
        if not safe:
            raise PolicyError("Top Level script is not safe on some spendpath")
        if not non_malleable:
            raise PolicyError("The compiler could not find any non-malleable compilation")
        ms = _PolicyCompiler(ctx).compile(self)
        if 'B' not in ms.type:
            raise PolicyError(f"compiled miniscript is not a top-level expression: {ms}")
        _logger.debug(f"compiled policy {self} to {ms}")
        return ms


def _policy_from_tree(tree: Tree, ctx: ScriptContext, strict: bool) -> Policy:
    name = tree.name
    if '@' in name:
        raise PolicyError(f"weights are only allowed inside or(): {name}")
    args = tree.args
    if name in ('UNSATISFIABLE', 'TRIVIAL') and not args:
        return Policy(name.lower())
    if name == 'pk':
        _expect_args(name, args, 1)
        return Policy('pk', key=parse_key(args[0].terminal('pk'), ctx, strict=strict))
    if name in ('after', 'older'):
        _expect_args(name, args, 1)
        value = parse_u32(args[0].terminal(name), name)
        if not 0 < value < 0x80000000:
            raise PolicyError(f"{name}({value}) is out of range")
        return Policy(name, value=value)
    if name in HASH_LENGTHS:
        _expect_args(name, args, 1)
        return Policy(name, hash=parse_hash(name, args[0].terminal(name)))
    if name == 'and':
        _expect_args(name, args, 2)
        return Policy('and', subs=[_policy_from_tree(a, ctx, strict) for a in args])
    if name == 'or':
        _expect_args(name, args, 2)
        weights = []
        subs = []
        for arg in args:
            weight = 1
            if '@' in arg.name:
                prefix, _, rest = arg.name.partition('@')
                weight = parse_u32(prefix, 'or weight')
                if weight == 0:
                    raise PolicyError("or() weights must be positive")
                arg = Tree(rest, arg.args)
            weights.append(weight)
            subs.append(_policy_from_tree(arg, ctx, strict))
        return Policy('or', subs=subs, weights=weights)
    if name == 'thresh':
        if len(args) < 2:
            raise PolicyError("thresh() needs a threshold and at least one sub-policy")
        k = parse_u32(args[0].terminal('thresh'), 'thresh')
        subs = [_policy_from_tree(a, ctx, strict) for a in args[1:]]
        if not 0 < k <= len(subs):
            raise PolicyError(f"Threshold k must be greater than 0 and less than or equal to n 0<k<={len(subs)}")
        return Policy('thresh', subs=subs, k=k)
    raise PolicyError(f"unknown policy fragment: {name}")


def _expect_args(name: str, args, count: int) -> None:
    if len(args) != count:
        raise PolicyError(f"{name}() takes {count} argument{'s' if count > 1 else ''}, got {len(args)}")


class _PolicyCompiler:

    def __init__(self, ctx: ScriptContext):
        self.ctx = ctx
        from . import miniscript
        self.ms = miniscript

    def node(self, fragment, **kwargs) -> 'Miniscript':
        return self.ms.Miniscript(self.ctx, fragment, **kwargs)

    def compile(self, policy: Policy) -> 'Miniscript':
        kind = policy.kind
        if kind == 'unsatisfiable':
            return self.node('0')
        if kind == 'trivial':
            return self.node('1')
        if kind == 'pk':
            return self.node('pk_k', keys=[policy.key]).wrap('c')
        if kind in ('after', 'older'):
            return self.node(kind, value=policy.value)
        if kind in HASH_LENGTHS:
            return self.node(kind, value=policy.hash)
        subs = [self.compile(sub) for sub in policy.subs]
        if kind == 'and' or (kind == 'thresh' and policy.k == len(subs)):
            return self.compile_and(subs)
        if kind == 'or' or policy.k == 1:
            return self.compile_or(subs)
        if all(sub.kind == 'pk' for sub in policy.subs):
            keys = [sub.key for sub in policy.subs]
            if self.ctx.is_tap:
                return self.node('multi_a', k=policy.k, keys=keys)
            if len(keys) <= 20:
                return self.node('multi', k=policy.k, keys=keys)
        first = self.as_bdu(subs[0])
        rest = [self.as_w(sub) for sub in subs[1:]]
        return self.node('thresh', k=policy.k, subs=[first] + rest)

    def compile_and(self, subs: List['Miniscript']) -> 'Miniscript':
        result = subs[-1]
        for sub in reversed(subs[:-1]):
            result = self.node('and_v', subs=[sub.wrap('v'), result])
        return result

    def compile_or(self, subs: List['Miniscript']) -> 'Miniscript':
        result = subs[-1]
        for sub in reversed(subs[:-1]):
            if sub.has_type('Bdu'):
                result = self.node('or_d', subs=[sub, result])
            elif result.has_type('Bdu'):
                result = self.node('or_d', subs=[result, sub])
            else:
                result = self.node('or_i', subs=[sub, result])
        return result

    def as_bdu(self, ms: 'Miniscript') -> 'Miniscript':
        if ms.has_type('Bdu'):
            return ms
        if ms.has_type('Bz'):
            return ms.wrap('v').wrap('d')
        if ms.has_type('Bnu'):
            return ms.wrap('j')
        raise PolicyError(f"cannot use {ms} as a thresh() argument")

    def as_w(self, ms: 'Miniscript') -> 'Miniscript':
        ms = self.as_bdu(ms)
        return ms.wrap('s') if ms.has_type('o') else ms.wrap('a')
