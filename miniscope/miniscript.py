# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Miniscript: parsing, type checking, encoding, analysis and lifting.

Covers the Legacy (P2SH), Segwit v0 (P2WSH) and Tapscript contexts.
The type system follows the correctness/malleability rules of the
miniscript reference (base types B, V, K, W and the z, o, n, d, u, e,
f, s, m, x properties, plus the g, h, i, j, k timelock bookkeeping).
Satisfaction costs are tracked as in the rust implementation: witness
bytes and scriptSig bytes, stack element counts, and executed op
counts, each for the satisfaction and the dissatisfaction.
"""

from typing import Optional, Sequence, List, Tuple, FrozenSet, Dict, Iterator

from .bitcoin import (opcodes, construct_script, script_to_asm, script_GetOp,
                      script_num_from_bytes, MalformedBitcoinScript,
                      LOCKTIME_THRESHOLD, SEQUENCE_LOCKTIME_TYPE_FLAG)
from .expression import Tree, parse_tree
from .keys import (ScriptContext, MiniscriptKey, parse_key, key_from_bytes,
                   parse_hash, parse_u32, HASH_LENGTHS)
from .policy import (SemanticPolicy, Key, After, Older, HashLock, Thresh,
                     Trivial, Unsatisfiable)
from .util import ParseError, bfh


MAX_OPS_PER_SCRIPT = 201
MAX_SCRIPT_ELEMENT_SIZE = 520
MAX_SCRIPTSIG_SIZE = 1650
MAX_STANDARD_P2WSH_SCRIPT_SIZE = 3600
MAX_STANDARD_P2WSH_STACK_ITEMS = 100
MAX_STACK_SIZE = 1000
MAX_PUBKEYS_PER_MULTISIG = 20
MAX_PUBKEYS_PER_MULTI_A = 999

WRAPPERS = 'asctdvjnlu'
_PLAIN_WRAPPERS = 'ascdvjn'
TWO_ARG_FRAGMENTS = ('and_v', 'and_b', 'or_b', 'or_c', 'or_d', 'or_i')
PROPERTY_ORDER = 'zonduefsmxk'

_EMPTY = frozenset()  # type: FrozenSet[str]


class AnalysisError(ParseError):
    pass


def _has(t: FrozenSet[str], props: str) -> bool:
    return all(p in t for p in props)


def _pick(t: FrozenSet[str], props: str) -> FrozenSet[str]:
    return frozenset(p for p in props if p in t)


def _when(cond: bool, props) -> FrozenSet[str]:
    return frozenset(props) if cond else _EMPTY


def _mixes_timelocks(x: FrozenSet[str], y: FrozenSet[str]) -> bool:
    return (('g' in x and 'h' in y) or ('h' in x and 'g' in y)
            or ('i' in x and 'j' in y) or ('j' in x and 'i' in y))


def _compute_type(fragment: str, subtypes: Sequence[FrozenSet[str]], *,
                  k: int = 0, value=None) -> FrozenSet[str]:
    t = frozenset
    if fragment == '0':
        return t("Bzudemsxk")
    if fragment == '1':
        return t("Bzufmxk")
    if fragment == 'pk_k':
        return t("Konudemsxk")
    if fragment == 'pk_h':
        return t("Knudemsxk")
    if fragment == 'older':
        return t("Bzfmxk") | t("g" if value & SEQUENCE_LOCKTIME_TYPE_FLAG else "h")
    if fragment == 'after':
        return t("Bzfmxk") | t("i" if value >= LOCKTIME_THRESHOLD else "j")
    if fragment in HASH_LENGTHS:
        return t("Bonudmk")
    if fragment == 'multi':
        return t("Bnudemsk")
    if fragment == 'multi_a':
        return t("Budemsk")
    if fragment == 'thresh':
        return _compute_thresh_type(subtypes, k)
    x = subtypes[0]
    if fragment == 'a':
        return _when(_has(x, "B"), "W") | _pick(x, "ghijk") | _pick(x, "udfems") | t("x")
    if fragment == 's':
        return _when(_has(x, "Bo"), "W") | _pick(x, "ghijk") | _pick(x, "udfemsx")
    if fragment == 'c':
        return _when(_has(x, "K"), "B") | _pick(x, "ghijk") | _pick(x, "ondfem") | t("us")
    if fragment == 'd':
        return (_when(_has(x, "Vz"), "B") | _when(_has(x, "z"), "o") | _when(_has(x, "f"), "e")
                | _pick(x, "ghijk") | _pick(x, "ms") | t("nudx"))
    if fragment == 'v':
        return _when(_has(x, "B"), "V") | _pick(x, "ghijk") | _pick(x, "zonms") | t("fx")
    if fragment == 'j':
        return (_when(_has(x, "Bn"), "B") | _when(_has(x, "f"), "e") | _pick(x, "ghijk")
                | _pick(x, "oums") | t("ndx"))
    if fragment == 'n':
        return _pick(x, "ghijk") | _pick(x, "Bzondfems") | t("ux")
    y = subtypes[1]
    no_mix_k = _when(_has(x & y, "k") and not _mixes_timelocks(x, y), "k")
    if fragment == 'and_v':
        return ((_pick(y, "KVB") if _has(x, "V") else _EMPTY) | _pick(x, "n")
                | (_pick(y, "n") if _has(x, "z") else _EMPTY)
                | (_pick(x | y, "o") if _has(x | y, "z") else _EMPTY)
                | _pick(x & y, "dmz") | _pick(x | y, "s")
                | _when(_has(y, "f") or _has(x, "s"), "f")
                | _pick(y, "ux") | _pick(x | y, "ghij") | no_mix_k)
    if fragment == 'and_b':
        return ((_pick(x, "B") if _has(y, "W") else _EMPTY)
                | (_pick(x | y, "o") if _has(x | y, "z") else _EMPTY)
                | _pick(x, "n") | (_pick(y, "n") if _has(x, "z") else _EMPTY)
                | (_pick(x & y, "e") if _has(x & y, "s") else _EMPTY)
                | _pick(x & y, "dzm")
                | _when(_has(x & y, "f") or _has(x, "sf") or _has(y, "sf"), "f")
                | _pick(x | y, "s") | t("ux") | _pick(x | y, "ghij") | no_mix_k)
    if fragment == 'or_b':
        return (_when(_has(x, "Bd") and _has(y, "Wd"), "B")
                | (_pick(x | y, "o") if _has(x | y, "z") else _EMPTY)
                | (_pick(x & y, "m") if _has(x | y, "s") and _has(x & y, "e") else _EMPTY)
                | _pick(x & y, "zse") | t("dux") | _pick(x | y, "ghij") | _pick(x & y, "k"))
    if fragment == 'or_d':
        return ((_pick(y, "B") if _has(x, "Bdu") else _EMPTY)
                | (_pick(x, "o") if _has(y, "z") else _EMPTY)
                | (_pick(x & y, "m") if _has(x, "e") and _has(x | y, "s") else _EMPTY)
                | _pick(x & y, "zs") | _pick(y, "ufde") | t("x")
                | _pick(x | y, "ghij") | _pick(x & y, "k"))
    if fragment == 'or_c':
        return ((_pick(y, "V") if _has(x, "Bdu") else _EMPTY)
                | (_pick(x, "o") if _has(y, "z") else _EMPTY)
                | (_pick(x & y, "m") if _has(x, "e") and _has(x | y, "s") else _EMPTY)
                | _pick(x & y, "zs") | t("fx") | _pick(x | y, "ghij") | _pick(x & y, "k"))
    if fragment == 'or_i':
        return (_pick(x & y, "VBKufs") | _when(_has(x & y, "z"), "o")
                | (_pick(x | y, "e") if _has(x | y, "f") else _EMPTY)
                | (_pick(x & y, "m") if _has(x | y, "s") else _EMPTY)
                | _pick(x | y, "d") | t("x") | _pick(x | y, "ghij") | _pick(x & y, "k"))
    if fragment == 'andor':
        z = subtypes[2]
        yz = y & z
        return ((_pick(yz, "BKV") if _has(x, "Bdu") else _EMPTY)
                | _pick(x & yz, "z")
                | (_pick(x | yz, "o") if _has(x | yz, "z") else _EMPTY)
                | _pick(yz, "u")
                | (_pick(z, "f") if _has(x, "s") or _has(y, "f") else _EMPTY)
                | _pick(z, "d")
                | (_pick(z, "e") if _has(x, "s") or _has(y, "f") else _EMPTY)
                | (_pick(x & yz, "m") if _has(x, "e") and _has(x | y | z, "s") else _EMPTY)
                | _pick(z & (x | y), "s") | t("x") | _pick(x | y | z, "ghij")
                | _when(_has(x & yz, "k") and not _mixes_timelocks(x, y), "k"))
    raise ParseError(f"unknown fragment: {fragment}")


def _compute_thresh_type(subtypes: Sequence[FrozenSet[str]], k: int) -> FrozenSet[str]:
    all_e = all_m = True
    args = num_s = 0
    acc_tl = frozenset("k")
    for i, sub in enumerate(subtypes):
        if not _has(sub, "Bdu" if i == 0 else "Wdu"):
            return _EMPTY
        all_e = all_e and 'e' in sub
        all_m = all_m and 'm' in sub
        num_s += 's' in sub
        args += 0 if 'z' in sub else 1 if 'o' in sub else 2
        acc_tl = (_pick(acc_tl | sub, "ghij")
                  | _when(_has(acc_tl & sub, "k") and (k <= 1 or not _mixes_timelocks(acc_tl, sub)), "k"))
    n = len(subtypes)
    return (frozenset("B") | _when(args == 0, "z") | _when(args == 1, "o")
            | _when(all_e and num_s == n, "e")
            | _when(all_e and all_m and num_s >= n - k, "m")
            | _when(num_s >= n - k + 1, "s") | frozenset("dux") | acc_tl)


# Satisfaction metrics. Each value is a tuple so that sums and maxima
# work the same for all of them; None means "impossible".
#   size:  (witness bytes, scriptSig bytes)
#   elems: (stack elements,)
#   ops:   (non-push opcodes executed beyond the static count,)
METRICS = ('size', 'elems', 'ops')


def _metric_costs(ctx: ScriptContext) -> Dict[str, Dict[str, tuple]]:
    sig = ctx.max_sig_bytes
    key = ctx.pushed_key_bytes
    return {
        'size': {'nil': (0, 0), 'zero': (1, 1), 'one': (2, 1), 'sig': (sig, sig),
                 'key': (key, key), 'preimage': (33, 33)},
        'elems': {'nil': (0,), 'zero': (1,), 'one': (1,), 'sig': (1,),
                  'key': (1,), 'preimage': (1,)},
        'ops': {'nil': (0,), 'zero': (0,), 'one': (0,), 'sig': (0,),
                'key': (0,), 'preimage': (0,)},
    }


_COSTS = {ctx: _metric_costs(ctx) for ctx in ScriptContext}


def _add(*values: Optional[tuple]) -> Optional[tuple]:
    if any(v is None for v in values):
        return None
    return tuple(map(sum, zip(*values)))


def _scale(value: tuple, n: int) -> tuple:
    return tuple(x * n for x in value)


def _max(*values: Optional[tuple]) -> Optional[tuple]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _thresh_sat(sats: Sequence[Optional[tuple]], dissats: Sequence[Optional[tuple]], k: int) -> Optional[tuple]:
    required = [i for i, d in enumerate(dissats) if d is None]
    if len(required) > k or any(sats[i] is None for i in required):
        return None
    optional = [i for i in range(len(sats)) if dissats[i] is not None and sats[i] is not None]
    if len(required) + len(optional) < k:
        return None
    # satisfy the subs whose satisfaction outweighs their dissatisfaction the most
    optional.sort(key=lambda i: tuple(a - b for a, b in zip(sats[i], dissats[i])), reverse=True)
    chosen = set(required) | set(optional[:k - len(required)])
    return _add(*[sats[i] if i in chosen else dissats[i] for i in range(len(sats))])


_VERIFY_MERGE = {
    opcodes.OP_EQUAL: opcodes.OP_EQUALVERIFY,
    opcodes.OP_CHECKSIG: opcodes.OP_CHECKSIGVERIFY,
    opcodes.OP_CHECKMULTISIG: opcodes.OP_CHECKMULTISIGVERIFY,
    opcodes.OP_NUMEQUAL: opcodes.OP_NUMEQUALVERIFY,
}
_VERIFY_SPLIT = {v: k for k, v in _VERIFY_MERGE.items()}

_HASH_OPS = {
    'sha256': opcodes.OP_SHA256,
    'hash256': opcodes.OP_HASH256,
    'ripemd160': opcodes.OP_RIPEMD160,
    'hash160': opcodes.OP_HASH160,
}


class Miniscript:
    """A type-checked miniscript node.

    Nodes are immutable and built bottom-up; constructing a node whose
    sub-expressions do not type check raises ParseError.
    """

    def __init__(self, ctx: ScriptContext, fragment: str, *,
                 subs: Sequence['Miniscript'] = (), keys: Sequence[MiniscriptKey] = (),
                 k: int = 0, value=None):
        self.ctx = ctx
        self.fragment = fragment
        self.subs = tuple(subs)
        self.keys = tuple(keys)
        self.k = k
        self.value = value
        self._script = None  # type: Optional[bytes]
        self._check_arity()
        self.type = _compute_type(fragment, [s.type for s in self.subs], k=k, value=value)
        if sum(1 for base in "BVKW" if base in self.type) != 1:
            raise ParseError(f"type check failed: {self}")
        self._sat = {}    # type: Dict[str, Optional[tuple]]
        self._dissat = {}  # type: Dict[str, Optional[tuple]]
        costs = _COSTS[ctx]
        for metric in METRICS:
            self._sat[metric], self._dissat[metric] = self._satisfaction(metric, costs[metric])

    def _check_arity(self) -> None:
        f = self.fragment
        if f == 'multi':
            if self.ctx.is_tap:
                raise ParseError("multi is not allowed in Taproot context, use multi_a")
            if not 0 < self.k <= len(self.keys) <= MAX_PUBKEYS_PER_MULTISIG:
                raise ParseError(f"invalid multi threshold {self.k} of {len(self.keys)} keys")
        elif f == 'multi_a':
            if not self.ctx.is_tap:
                raise ParseError("multi_a is only allowed in Taproot context, use multi")
            if not 0 < self.k <= len(self.keys) <= MAX_PUBKEYS_PER_MULTI_A:
                raise ParseError(f"invalid multi_a threshold {self.k} of {len(self.keys)} keys")
        elif f == 'thresh':
            if not 0 < self.k <= len(self.subs):
                raise ParseError(f"invalid thresh threshold {self.k} of {len(self.subs)}")
        elif f in ('older', 'after'):
            if not 0 < self.value < 0x80000000:
                raise ParseError(f"{f}({self.value}) is out of range")

    # ---- construction ----

    @classmethod
    def from_str(cls, s: str, ctx: ScriptContext, *, strict: bool = True) -> 'Miniscript':
        """Parses a miniscript expression.

        With strict=False, keys that are not valid public keys for the
        context are kept as opaque names (enough for analysis and sizing).
        """
        ms = cls._from_tree(parse_tree(s), ctx, strict)
        if 'B' not in ms.type:
            raise ParseError(f"{ms} is not a top-level miniscript (type {ms.type_string()}, must be B)")
        return ms

    @classmethod
    def _from_tree(cls, tree: Tree, ctx: ScriptContext, strict: bool) -> 'Miniscript':
        name, args = tree.name, tree.args
        if ':' in name:
            wrappers, _, frag = name.partition(':')
            if not wrappers or not frag:
                raise ParseError(f"invalid wrapper syntax: {name}")
            ms = cls._from_tree(Tree(frag, args), ctx, strict)
            for ch in reversed(wrappers):
                ms = ms.wrap(ch)
            return ms

        def arity(count):
            if len(args) != count:
                raise ParseError(f"{name} expects {count} argument{'s' if count > 1 else ''}, got {len(args)}")

        def sub(i):
            return cls._from_tree(args[i], ctx, strict)

        if name in ('0', '1'):
            arity(0)
            return cls(ctx, name)
        if name in ('pk', 'pkh', 'pk_k', 'pk_h'):
            arity(1)
            key = parse_key(args[0].terminal(name), ctx, strict=strict)
            node = cls(ctx, 'pk_h' if name in ('pkh', 'pk_h') else 'pk_k', keys=[key])
            return node.wrap('c') if name in ('pk', 'pkh') else node
        if name in ('older', 'after'):
            arity(1)
            return cls(ctx, name, value=parse_u32(args[0].terminal(name), name))
        if name in HASH_LENGTHS:
            arity(1)
            return cls(ctx, name, value=parse_hash(name, args[0].terminal(name)))
        if name in TWO_ARG_FRAGMENTS:
            arity(2)
            return cls(ctx, name, subs=[sub(0), sub(1)])
        if name == 'and_n':
            arity(2)
            return cls(ctx, 'andor', subs=[sub(0), sub(1), cls(ctx, '0')])
        if name == 'andor':
            arity(3)
            return cls(ctx, 'andor', subs=[sub(0), sub(1), sub(2)])
        if name in ('thresh', 'multi', 'multi_a'):
            if len(args) < 2:
                raise ParseError(f"{name} needs a threshold and at least one argument")
            k = parse_u32(args[0].terminal(name), name)
            if name == 'thresh':
                return cls(ctx, name, k=k, subs=[sub(i) for i in range(1, len(args))])
            keys = [parse_key(a.terminal(name), ctx, strict=strict) for a in args[1:]]
            return cls(ctx, name, k=k, keys=keys)
        raise ParseError(f"unknown fragment: {name}")

    def wrap(self, ch: str) -> 'Miniscript':
        ctx = self.ctx
        if ch == 't':
            return Miniscript(ctx, 'and_v', subs=[self, Miniscript(ctx, '1')])
        if ch == 'l':
            return Miniscript(ctx, 'or_i', subs=[Miniscript(ctx, '0'), self])
        if ch == 'u':
            return Miniscript(ctx, 'or_i', subs=[self, Miniscript(ctx, '0')])
        if ch in _PLAIN_WRAPPERS:
            return Miniscript(ctx, ch, subs=[self])
        raise ParseError(f"unknown wrapper: {ch!r}")

    @classmethod
    def from_script(cls, script: bytes, ctx: ScriptContext) -> 'Miniscript':
        """Decodes a script back into miniscript.

        Only canonical encodings are accepted: the result must encode
        to exactly the same bytes.
        """
        try:
            tokens = _tokenize(script)
        except MalformedBitcoinScript as e:
            raise ParseError(f"invalid script: {e}") from e
        ms = _ScriptDecoder(tokens, ctx).parse()
        if 'B' not in ms.type:
            raise ParseError(f"{ms} is not a top-level miniscript (type {ms.type_string()}, must be B)")
        if ms.encode() != script:
            raise ParseError("script is not the canonical encoding of a miniscript")
        return ms

    # ---- display ----

    def __str__(self):
        wrappers = []
        node = self
        while True:
            f = node.fragment
            if f == 'c' and node.subs[0].fragment == 'pk_k':
                body = f"pk({node.subs[0].keys[0]})"
                break
            if f == 'c' and node.subs[0].fragment == 'pk_h':
                body = f"pkh({node.subs[0].keys[0]})"
                break
            if f in _PLAIN_WRAPPERS:
                wrappers.append(f)
                node = node.subs[0]
                continue
            if f == 'and_v' and node.subs[1].fragment == '1':
                wrappers.append('t')
                node = node.subs[0]
                continue
            if f == 'or_i' and node.subs[0].fragment == '0':
                wrappers.append('l')
                node = node.subs[1]
                continue
            if f == 'or_i' and node.subs[1].fragment == '0':
                wrappers.append('u')
                node = node.subs[0]
                continue
            body = node._fragment_str()
            break
        if wrappers:
            return "".join(wrappers) + ":" + body
        return body

    def _fragment_str(self) -> str:
        f = self.fragment
        if f in ('0', '1'):
            return f
        if f in ('pk_k', 'pk_h'):
            return f"{f}({self.keys[0]})"
        if f in ('older', 'after') or f in HASH_LENGTHS:
            return f"{f}({self.value})"
        if f in ('multi', 'multi_a'):
            return "{}({},{})".format(f, self.k, ",".join(map(str, self.keys)))
        if f == 'thresh':
            return "thresh({},{})".format(self.k, ",".join(map(str, self.subs)))
        if f == 'andor' and self.subs[2].fragment == '0':
            return f"and_n({self.subs[0]},{self.subs[1]})"
        return "{}({})".format(f, ",".join(map(str, self.subs)))

    def __repr__(self):
        return f"<Miniscript {self.ctx.value} {self}>"

    def __eq__(self, other):
        return isinstance(other, Miniscript) and self.ctx == other.ctx and str(self) == str(other)

    def __hash__(self):
        return hash((self.ctx, str(self)))

    def has_type(self, props: str) -> bool:
        return _has(self.type, props)

    def type_string(self) -> str:
        base = next((b for b in "BVKW" if b in self.type), "?")
        return base + "".join(p for p in PROPERTY_ORDER if p in self.type)

    # ---- encoding ----

    def _items(self) -> list:
        f = self.fragment
        s = self.subs
        if f == '0':
            return [opcodes.OP_0]
        if f == '1':
            return [opcodes.OP_1]
        if f == 'pk_k':
            return [self.keys[0].to_bytes(self.ctx)]
        if f == 'pk_h':
            return [opcodes.OP_DUP, opcodes.OP_HASH160, self.keys[0].hash160(self.ctx), opcodes.OP_EQUALVERIFY]
        if f == 'older':
            return [self.value, opcodes.OP_CHECKSEQUENCEVERIFY]
        if f == 'after':
            return [self.value, opcodes.OP_CHECKLOCKTIMEVERIFY]
        if f in HASH_LENGTHS:
            return [opcodes.OP_SIZE, 32, opcodes.OP_EQUALVERIFY, _HASH_OPS[f], bfh(self.value), opcodes.OP_EQUAL]
        if f == 'multi':
            keys = [key.to_bytes(self.ctx) for key in self.keys]
            return [self.k, *keys, len(keys), opcodes.OP_CHECKMULTISIG]
        if f == 'multi_a':
            items = [self.keys[0].to_bytes(self.ctx), opcodes.OP_CHECKSIG]
            for key in self.keys[1:]:
                items += [key.to_bytes(self.ctx), opcodes.OP_CHECKSIGADD]
            return items + [self.k, opcodes.OP_NUMEQUAL]
        if f == 'a':
            return [opcodes.OP_TOALTSTACK, *s[0]._items(), opcodes.OP_FROMALTSTACK]
        if f == 's':
            return [opcodes.OP_SWAP, *s[0]._items()]
        if f == 'c':
            return [*s[0]._items(), opcodes.OP_CHECKSIG]
        if f == 'd':
            return [opcodes.OP_DUP, opcodes.OP_IF, *s[0]._items(), opcodes.OP_ENDIF]
        if f == 'v':
            items = s[0]._items()
            last = items[-1]
            if isinstance(last, opcodes) and last in _VERIFY_MERGE:
                return items[:-1] + [_VERIFY_MERGE[last]]
            return items + [opcodes.OP_VERIFY]
        if f == 'j':
            return [opcodes.OP_SIZE, opcodes.OP_0NOTEQUAL, opcodes.OP_IF, *s[0]._items(), opcodes.OP_ENDIF]
        if f == 'n':
            return [*s[0]._items(), opcodes.OP_0NOTEQUAL]
        if f == 'and_v':
            return s[0]._items() + s[1]._items()
        if f == 'and_b':
            return s[0]._items() + s[1]._items() + [opcodes.OP_BOOLAND]
        if f == 'or_b':
            return s[0]._items() + s[1]._items() + [opcodes.OP_BOOLOR]
        if f == 'or_c':
            return [*s[0]._items(), opcodes.OP_NOTIF, *s[1]._items(), opcodes.OP_ENDIF]
        if f == 'or_d':
            return [*s[0]._items(), opcodes.OP_IFDUP, opcodes.OP_NOTIF, *s[1]._items(), opcodes.OP_ENDIF]
        if f == 'or_i':
            return [opcodes.OP_IF, *s[0]._items(), opcodes.OP_ELSE, *s[1]._items(), opcodes.OP_ENDIF]
        if f == 'andor':
            return [*s[0]._items(), opcodes.OP_NOTIF, *s[2]._items(),
                    opcodes.OP_ELSE, *s[1]._items(), opcodes.OP_ENDIF]
        if f == 'thresh':
            items = s[0]._items()
            for sub in s[1:]:
                items += sub._items() + [opcodes.OP_ADD]
            return items + [self.k, opcodes.OP_EQUAL]
        raise ParseError(f"cannot encode fragment {f}")

    def encode(self) -> bytes:
        if self._script is None:
            self._script = construct_script(self._items())
        return self._script

    def to_asm(self) -> str:
        return script_to_asm(self.encode())

    def script_size(self) -> int:
        return len(self.encode())

    def pk_cost(self) -> int:
        return self.script_size()

    def ops_count(self) -> int:
        """Non-push opcodes in the script."""
        return sum(1 for item in self._items()
                   if isinstance(item, opcodes) and item > opcodes.OP_16)

    def ops_count_sat(self) -> int:
        """Opcodes counted against the 201 limit on the worst satisfaction."""
        extra = self._sat['ops']
        return self.ops_count() + (extra[0] if extra is not None else 0)

    # ---- satisfaction costs ----

    def _satisfaction(self, metric: str, c: Dict[str, tuple]) -> Tuple[Optional[tuple], Optional[tuple]]:
        f = self.fragment

        def S(i):
            return self.subs[i]._sat[metric]

        def D(i):
            return self.subs[i]._dissat[metric]

        if f == '1':
            return c['nil'], None
        if f == '0':
            return None, c['nil']
        if f == 'pk_k':
            return c['sig'], c['zero']
        if f == 'pk_h':
            return _add(c['sig'], c['key']), _add(c['zero'], c['key'])
        if f in ('older', 'after'):
            return c['nil'], None
        if f in HASH_LENGTHS:
            return c['preimage'], c['preimage']
        if f == 'multi':
            if metric == 'ops':
                # CHECKMULTISIG counts every key it looks at
                return (len(self.keys),), (len(self.keys),)
            return _add(c['zero'], _scale(c['sig'], self.k)), _scale(c['zero'], self.k + 1)
        if f == 'multi_a':
            n = len(self.keys)
            return _add(_scale(c['zero'], n - self.k), _scale(c['sig'], self.k)), _scale(c['zero'], n)
        if f in ('a', 's', 'c', 'n'):
            return S(0), D(0)
        if f == 'd':
            return _add(S(0), c['one']), c['zero']
        if f == 'v':
            return S(0), None
        if f == 'j':
            return S(0), c['zero']
        if f == 'and_v':
            return _add(S(0), S(1)), None
        if f == 'and_b':
            return _add(S(0), S(1)), _add(D(0), D(1))
        if f == 'andor':
            return _max(_add(S(0), S(1)), _add(D(0), S(2))), _add(D(0), D(2))
        if f == 'or_b':
            return _max(_add(S(0), D(1)), _add(D(0), S(1))), _add(D(0), D(1))
        if f == 'or_d':
            return _max(S(0), _add(D(0), S(1))), _add(D(0), D(1))
        if f == 'or_c':
            return _max(S(0), _add(D(0), S(1))), None
        if f == 'or_i':
            return (_max(_add(S(0), c['one']), _add(S(1), c['zero'])),
                    _max(_add(D(0), c['one']), _add(D(1), c['zero'])))
        if f == 'thresh':
            sats = [sub._sat[metric] for sub in self.subs]
            dissats = [sub._dissat[metric] for sub in self.subs]
            return _thresh_sat(sats, dissats, self.k), _add(*dissats)
        raise ParseError(f"unknown fragment: {f}")

    def max_satisfaction_size(self) -> Optional[int]:
        """Worst-case satisfaction size in bytes: the scriptSig part for
        Legacy, the witness stack (with length prefixes) otherwise."""
        size = self._sat['size']
        if size is None:
            return None
        return size[1] if self.ctx == ScriptContext.LEGACY else size[0]

    def max_satisfaction_witness_elements(self) -> Optional[int]:
        elems = self._sat['elems']
        if elems is None:
            return None
        # plus the witness script itself
        return elems[0] + 1

    # ---- analysis ----

    def iter_nodes(self) -> Iterator['Miniscript']:
        yield self
        for sub in self.subs:
            yield from sub.iter_nodes()

    def iter_keys(self) -> Iterator[MiniscriptKey]:
        for node in self.iter_nodes():
            yield from node.keys

    def get_keys(self) -> List[MiniscriptKey]:
        return list(self.iter_keys())

    def has_repeated_keys(self) -> bool:
        keys = self.get_keys()
        return len(keys) != len(set(keys))

    def requires_sig(self) -> bool:
        return 's' in self.type

    def is_non_malleable(self) -> bool:
        return 'm' in self.type

    def has_mixed_timelocks(self) -> bool:
        return 'k' not in self.type

    def within_resource_limits(self) -> bool:
        size = self.script_size()
        elems = self._sat['elems']
        if self.ctx == ScriptContext.LEGACY:
            max_sat = self.max_satisfaction_size()
            return (size <= MAX_SCRIPT_ELEMENT_SIZE
                    and self.ops_count_sat() <= MAX_OPS_PER_SCRIPT
                    and (max_sat is None or max_sat <= MAX_SCRIPTSIG_SIZE))
        if self.ctx == ScriptContext.SEGWITV0:
            return (size <= MAX_STANDARD_P2WSH_SCRIPT_SIZE
                    and self.ops_count_sat() <= MAX_OPS_PER_SCRIPT
                    and (elems is None or elems[0] <= MAX_STANDARD_P2WSH_STACK_ITEMS))
        return elems is None or elems[0] <= MAX_STACK_SIZE

    def sanity_check(self) -> None:
        if not self.requires_sig():
            raise AnalysisError("All spend paths must require a signature")
        if not self.is_non_malleable():
            raise AnalysisError("Miniscript is malleable")
        if not self.within_resource_limits():
            raise AnalysisError("At least one spend path exceeds the resource limits(stack depth/satisfaction size..)")
        if self.has_repeated_keys():
            raise AnalysisError("Miniscript contains repeated pubkeys or pubkeyhashes")
        if self.has_mixed_timelocks():
            raise AnalysisError("Contains a combination of heightlock and timelock")

    def is_sane(self) -> bool:
        try:
            self.sanity_check()
        except AnalysisError:
            return False
        return True

    def lift(self) -> SemanticPolicy:
        if self.has_mixed_timelocks():
            raise AnalysisError("Cannot lift policies that have a combination of height and timelocks")
        return self._lift().normalized()

    def _lift(self) -> SemanticPolicy:
        f = self.fragment
        if f == '0':
            return Unsatisfiable()
        if f == '1':
            return Trivial()
        if f in ('pk_k', 'pk_h'):
            return Key(self.keys[0])
        if f == 'after':
            return After(self.value)
        if f == 'older':
            return Older(self.value)
        if f in HASH_LENGTHS:
            return HashLock(f, self.value)
        if f in _PLAIN_WRAPPERS:
            return self.subs[0]._lift()
        if f in ('and_v', 'and_b'):
            return Thresh(2, [sub._lift() for sub in self.subs])
        if f == 'andor':
            x, y, z = (sub._lift() for sub in self.subs)
            return Thresh(1, [Thresh(2, [x, y]), z])
        if f in ('or_b', 'or_c', 'or_d', 'or_i'):
            return Thresh(1, [sub._lift() for sub in self.subs])
        if f == 'thresh':
            return Thresh(self.k, [sub._lift() for sub in self.subs])
        if f in ('multi', 'multi_a'):
            return Thresh(self.k, [Key(key) for key in self.keys])
        raise ParseError(f"cannot lift fragment {f}")

    def debug_properties(self) -> dict:
        return {
            'type': self.type_string(),
            'base': self.type_string()[0],
            'properties': [p for p in PROPERTY_ORDER if p in self.type],
            'ops_count': self.ops_count(),
            'ops_count_sat': self.ops_count_sat(),
            'script_size': self.script_size(),
            'max_satisfaction_size': self.max_satisfaction_size(),
            'max_satisfaction_witness_elements': self.max_satisfaction_witness_elements(),
            'max_dissatisfaction_size': (self._dissat['size'] or (None, None))[
                1 if self.ctx == ScriptContext.LEGACY else 0],
        }


def _tokenize(script: bytes) -> List[tuple]:
    """Splits a script into ('op', opcode), ('num', n) and ('data', bytes)
    tokens. *VERIFY opcodes are split into the base opcode + OP_VERIFY."""
    tokens = []
    for opcode, data, _ in script_GetOp(script):
        if opcode == opcodes.OP_0:
            tokens.append(('num', 0))
        elif data is not None:
            if len(data) in (20, 32, 33, 65):
                tokens.append(('data', data))
            else:
                tokens.append(('num', script_num_from_bytes(data)))
        elif opcodes.OP_1 <= opcode <= opcodes.OP_16:
            tokens.append(('num', opcode - opcodes.OP_1 + 1))
        elif opcode in _VERIFY_SPLIT:
            tokens.append(('op', _VERIFY_SPLIT[opcode]))
            tokens.append(('op', opcodes.OP_VERIFY))
        else:
            try:
                tokens.append(('op', opcodes(opcode)))
            except ValueError:
                raise ParseError(f"unknown opcode 0x{opcode:02x}") from None
    return tokens


def _tok_str(tok) -> str:
    if tok is None:
        return "start of script"
    kind, value = tok
    if kind == 'op':
        return value.name
    if kind == 'data':
        return f"<{len(value)}-byte push>"
    return f"number {value}"


class _ScriptDecoder:
    """Decodes miniscript from script tokens, reading from the end."""

    _AND_V_STOP = (opcodes.OP_IF, opcodes.OP_ELSE, opcodes.OP_NOTIF,
                   opcodes.OP_TOALTSTACK, opcodes.OP_SWAP)

    def __init__(self, tokens: List[tuple], ctx: ScriptContext):
        self.tokens = tokens
        self.pos = len(tokens)
        self.ctx = ctx

    def peek(self, back: int = 0):
        i = self.pos - 1 - back
        return self.tokens[i] if i >= 0 else None

    def next(self):
        if self.pos == 0:
            raise ParseError("unexpected start of script")
        self.pos -= 1
        return self.tokens[self.pos]

    @staticmethod
    def is_op(tok, *ops) -> bool:
        return tok is not None and tok[0] == 'op' and tok[1] in ops

    def expect_op(self, op) -> None:
        tok = self.next()
        if not self.is_op(tok, op):
            raise ParseError(f"expected {op.name}, got {_tok_str(tok)}")

    def expect_num(self) -> int:
        tok = self.next()
        if tok[0] != 'num':
            raise ParseError(f"expected a number, got {_tok_str(tok)}")
        return tok[1]

    def expect_key(self) -> MiniscriptKey:
        tok = self.next()
        if tok[0] != 'data':
            raise ParseError(f"expected a public key, got {_tok_str(tok)}")
        return key_from_bytes(tok[1], self.ctx)

    def node(self, fragment: str, **kwargs) -> Miniscript:
        return Miniscript(self.ctx, fragment, **kwargs)

    def parse(self) -> Miniscript:
        ms = self.parse_bkv()
        if self.pos != 0:
            raise ParseError(f"unexpected {_tok_str(self.peek())} before the end of the miniscript")
        return ms

    def parse_bkv(self) -> Miniscript:
        parts = [self.parse_single()]
        while self.pos > 0 and not self.is_op(self.peek(), *self._AND_V_STOP):
            parts.append(self.parse_single())
        node = parts[0]
        for left in parts[1:]:
            node = self.node('and_v', subs=[left, node])
        return node

    def parse_w(self) -> Miniscript:
        if self.is_op(self.peek(), opcodes.OP_FROMALTSTACK):
            self.next()
            x = self.parse_bkv()
            self.expect_op(opcodes.OP_TOALTSTACK)
            return x.wrap('a')
        x = self.parse_bkv()
        self.expect_op(opcodes.OP_SWAP)
        return x.wrap('s')

    def parse_single(self) -> Miniscript:
        tok = self.next()
        kind, value = tok
        if kind == 'num':
            if value in (0, 1):
                return self.node(str(value))
            raise ParseError(f"unexpected {_tok_str(tok)}")
        if kind == 'data':
            return self.node('pk_k', keys=[key_from_bytes(value, self.ctx)])
        op = value
        if op == opcodes.OP_EQUAL:
            return self.parse_equal()
        if op == opcodes.OP_VERIFY:
            if (self.is_op(self.peek(), opcodes.OP_EQUAL) and self.peek(1) is not None
                    and self.peek(1)[0] == 'data' and len(self.peek(1)[1]) == 20
                    and self.is_op(self.peek(2), opcodes.OP_HASH160)
                    and self.is_op(self.peek(3), opcodes.OP_DUP)):
                raise ParseError("Miniscript contains raw pkh: the public key is not part of the script")
            return self.parse_single().wrap('v')
        if op == opcodes.OP_CHECKSIG:
            return self.parse_single().wrap('c')
        if op == opcodes.OP_CHECKSEQUENCEVERIFY:
            return self.node('older', value=self.expect_num())
        if op == opcodes.OP_CHECKLOCKTIMEVERIFY:
            return self.node('after', value=self.expect_num())
        if op == opcodes.OP_0NOTEQUAL:
            return self.parse_single().wrap('n')
        if op == opcodes.OP_CHECKMULTISIG:
            n = self.expect_num()
            keys = [self.expect_key() for _ in range(n)]
            keys.reverse()
            return self.node('multi', k=self.expect_num(), keys=keys)
        if op == opcodes.OP_NUMEQUAL:
            k = self.expect_num()
            keys = []
            while self.is_op(self.peek(), opcodes.OP_CHECKSIGADD):
                self.next()
                keys.append(self.expect_key())
            self.expect_op(opcodes.OP_CHECKSIG)
            keys.append(self.expect_key())
            keys.reverse()
            return self.node('multi_a', k=k, keys=keys)
        if op == opcodes.OP_BOOLAND:
            y = self.parse_w()
            return self.node('and_b', subs=[self.parse_single(), y])
        if op == opcodes.OP_BOOLOR:
            z = self.parse_w()
            return self.node('or_b', subs=[self.parse_single(), z])
        if op == opcodes.OP_ENDIF:
            return self.parse_endif()
        raise ParseError(f"unexpected {_tok_str(tok)}")

    def parse_equal(self) -> Miniscript:
        nxt = self.peek()
        if nxt is not None and nxt[0] == 'data' and len(nxt[1]) in (20, 32):
            digest = self.next()[1]
            hash_tok = self.next()
            kind = next((name for name, op in _HASH_OPS.items()
                         if self.is_op(hash_tok, op) and HASH_LENGTHS[name] == len(digest)), None)
            if kind is None:
                raise ParseError(f"unexpected {_tok_str(hash_tok)} in hash lock")
            self.expect_op(opcodes.OP_VERIFY)
            self.expect_op(opcodes.OP_EQUAL)
            if self.expect_num() != 32:
                raise ParseError("hash lock must check for a 32-byte preimage")
            self.expect_op(opcodes.OP_SIZE)
            return self.node(kind, value=digest.hex())
        if nxt is not None and nxt[0] == 'num':
            k = self.next()[1]
            subs = []
            while self.is_op(self.peek(), opcodes.OP_ADD):
                self.next()
                subs.append(self.parse_w())
            subs.append(self.parse_single())
            subs.reverse()
            return self.node('thresh', k=k, subs=subs)
        raise ParseError(f"unexpected OP_EQUAL before {_tok_str(nxt)}")

    def parse_endif(self) -> Miniscript:
        first = self.parse_bkv()
        tok = self.next()
        if self.is_op(tok, opcodes.OP_ELSE):
            second = self.parse_bkv()
            tok = self.next()
            if self.is_op(tok, opcodes.OP_IF):
                return self.node('or_i', subs=[second, first])
            if self.is_op(tok, opcodes.OP_NOTIF):
                return self.node('andor', subs=[self.parse_single(), first, second])
        elif self.is_op(tok, opcodes.OP_IF):
            if self.is_op(self.peek(), opcodes.OP_DUP):
                self.next()
                return first.wrap('d')
            if self.is_op(self.peek(), opcodes.OP_0NOTEQUAL) and self.is_op(self.peek(1), opcodes.OP_SIZE):
                self.next()
                self.next()
                return first.wrap('j')
        elif self.is_op(tok, opcodes.OP_NOTIF):
            if self.is_op(self.peek(), opcodes.OP_IFDUP):
                self.next()
                return self.node('or_d', subs=[self.parse_single(), first])
            return self.node('or_c', subs=[self.parse_single(), first])
        raise ParseError(f"unexpected {_tok_str(tok)} in conditional")
