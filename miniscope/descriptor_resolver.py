# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Recognizes HD key fragments inside policy/miniscript expressions.

Fragments look like ``[c8fe8d4f/48h/1h/123h/2h]xpub.../0/*`` or a bare
``xpub.../1/5``. Fixed fragments are replaced by the compressed public
key they derive to. If any fragment is ranged, the expression is handed
on as a ``wsh()`` descriptor instead.
"""

import functools
import re
from typing import Dict, List, Optional, Sequence, Tuple, Callable

import attr

from .bip32 import BIP32Node, KeyOriginInfo
from .util import BitcoinException, DerivationError, UnsupportedPattern
from .logging import get_logger


_logger = get_logger(__name__)

# child path slot that takes the wildcard index
WILDCARD = 0xFFFFFFFF

_XPUB = r"([xyzt]pub[A-Za-z0-9]+)"
_ORIGIN = r"\[([^\]/]+)((?:/[^\]]*)?)\]"
_XPUB_TOKEN_RE = re.compile(r"[xyzt]pub[A-Za-z0-9]{20,}")


@attr.s(frozen=True, slots=True)
class DescriptorInfo:
    fingerprint = attr.ib(type=bytes)
    derivation_path = attr.ib(type=str)
    xpub = attr.ib(type=BIP32Node, repr=False)
    child_paths = attr.ib(type=tuple)  # at most 2 slots, WILDCARD marks where the index goes
    is_wildcard = attr.ib(type=bool)
    multipath = attr.ib(type=tuple, default=())

    def derivation_steps(self, child_index: int, *, multipath_index: int = 0) -> List[int]:
        steps = []
        if self.multipath:
            if not 0 <= multipath_index < len(self.multipath):
                raise DerivationError(f"multipath index {multipath_index} out of range")
            steps.append(self.multipath[multipath_index])
        for slot in self.child_paths:
            steps.append(child_index if slot == WILDCARD else slot)
        return steps


@attr.s(frozen=True, slots=True)
class ParsedDescriptor:
    original = attr.ib(type=str)
    info = attr.ib(type=DescriptorInfo)
    span = attr.ib(type=tuple, repr=False)


# (name, suffix regex, builder of (child_paths, is_wildcard, multipath) from the suffix groups)
_Builder = Callable[[Sequence[str]], Tuple[tuple, bool, tuple]]
_SUFFIXES = [
    ('multipath', r"/<([0-9;]+)>/\*",
     lambda g: ((WILDCARD,), True, _parse_multipath(g[0]))),
    ('double-wildcard', r"/\*/\*",
     lambda g: ((WILDCARD, WILDCARD), True, ())),
    ('fixed-wildcard', r"/([0-9]+)/\*",
     lambda g: ((_parse_index(g[0]), WILDCARD), True, ())),
    ('wildcard-fixed', r"/\*/([0-9]+)",
     lambda g: ((WILDCARD, _parse_index(g[0])), True, ())),
    ('single-wildcard', r"/\*",
     lambda g: ((WILDCARD,), True, ())),
    ('fixed-double', r"/([0-9]+)/([0-9]+)",
     lambda g: ((_parse_index(g[0]), _parse_index(g[1])), False, ())),
    ('fixed-single', r"/([0-9]+)",
     lambda g: ((_parse_index(g[0]),), False, ())),
    ('plain', r"",
     lambda g: ((), False, ())),
]  # type: List[Tuple[str, str, _Builder]]


def _parse_index(text: str) -> int:
    value = int(text)
    if value >= WILDCARD:
        raise DerivationError(f"Invalid child number: {text}")
    return value


def _parse_multipath(text: str) -> tuple:
    try:
        return tuple(_parse_index(part) for part in text.split(";"))
    except ValueError:
        raise DerivationError(f"Invalid child path: {text}") from None


@functools.lru_cache(maxsize=1)
def descriptor_patterns() -> List[Tuple[str, bool, re.Pattern, _Builder]]:
    """The matching ladder, most specific first: every bracketed shape,
    then the same shapes for bare extended keys."""
    ladder = []
    for bracketed in (True, False):
        for name, suffix, builder in _SUFFIXES:
            prefix = _ORIGIN + _XPUB if bracketed else _XPUB
            label = ("bracketed-" if bracketed else "bare-") + name
            ladder.append((label, bracketed, re.compile(prefix + suffix), builder))
    return ladder


def _parse_xpub(text: str) -> BIP32Node:
    try:
        return BIP32Node.from_xkey(text)
    except BitcoinException as e:
        raise DerivationError(f"Invalid xpub: {e}") from e


def _check_boundary(expression: str, end: int, fragment: str) -> None:
    following = expression[end:end + 1]
    if following in ("h", "H", "'"):
        raise DerivationError(f"Hardened derivation is not possible from a public key: {fragment}{following}")
    if following == "/":
        raise UnsupportedPattern(f"Unsupported descriptor pattern: {fragment}/...")


def _overlaps(span: Tuple[int, int], taken: List[Tuple[int, int]]) -> bool:
    return any(span[0] < end and start < span[1] for start, end in taken)


def parse_descriptors(expression: str) -> Dict[str, ParsedDescriptor]:
    """Finds every HD key fragment of the expression.

    A match that overlaps a fragment captured by a more specific
    pattern is skipped.
    """
    descriptors = {}  # type: Dict[str, ParsedDescriptor]
    taken = []  # type: List[Tuple[int, int]]
    for label, bracketed, pattern, builder in descriptor_patterns():
        for m in pattern.finditer(expression):
            if _overlaps(m.span(), taken):
                continue
            fragment = m.group(0)
            taken.append(m.span())
            if fragment in descriptors:
                continue
            _check_boundary(expression, m.end(), fragment)
            if bracketed:
                origin = KeyOriginInfo.from_string(m.group(1) + m.group(2))
                xpub_str, groups = m.group(3), m.groups()[3:]
            else:
                origin = KeyOriginInfo(b"\x00" * 4, [])
                xpub_str, groups = m.group(1), m.groups()[1:]
            child_paths, is_wildcard, multipath = builder(groups)
            info = DescriptorInfo(
                fingerprint=origin.fingerprint,
                derivation_path=origin.get_derivation_path(),
                xpub=_parse_xpub(xpub_str),
                child_paths=child_paths,
                is_wildcard=is_wildcard,
                multipath=multipath,
            )
            _logger.debug(f"matched {label}: {fragment[:24]}... child_paths={child_paths}")
            descriptors[fragment] = ParsedDescriptor(original=fragment, info=info, span=m.span())
    for m in _XPUB_TOKEN_RE.finditer(expression):
        if not _overlaps(m.span(), taken):
            raise UnsupportedPattern(f"Unsupported descriptor pattern: {m.group(0)}")
    _logger.debug(f"found {len(descriptors)} descriptors in expression of length {len(expression)}")
    return descriptors


def expand_descriptor(descriptor: ParsedDescriptor, child_index: int = 0, *, multipath_index: int = 0) -> str:
    """Derives the compressed public key (66 hex characters) of a fragment."""
    info = descriptor.info
    steps = info.derivation_steps(child_index, multipath_index=multipath_index)
    node = info.xpub.subkey_at_public_derivation(steps)
    return node.get_public_key_bytes().hex()


def replace_descriptors_with_keys(expression: str, descriptors: Dict[str, ParsedDescriptor], *,
                                  child_index: int = 0, xonly: bool = False) -> str:
    result = expression
    # longest first, so that a fragment is never replaced inside a longer one
    for original in sorted(descriptors, key=len, reverse=True):
        key = expand_descriptor(descriptors[original], child_index)
        result = result.replace(original, key[2:] if xonly else key)
    return result


def contains_descriptor(expression: str) -> bool:
    return bool(_XPUB_TOKEN_RE.search(expression))


def process_expression_descriptors(expression: str, *, child_index: int = 0, xonly: bool = False) -> str:
    """Returns the expression with fixed fragments replaced by keys, or
    wrapped in wsh() if any fragment is ranged."""
    descriptors = parse_descriptors(expression)
    if not descriptors:
        return expression
    if any(d.info.is_wildcard for d in descriptors.values()):
        _logger.debug(f"found {len(descriptors)} descriptors with ranges, wrapping in wsh()")
        return f"wsh({expression})"
    return replace_descriptors_with_keys(expression, descriptors, child_index=child_index, xonly=xonly)


def resolve_key(text: str, *, child_index: int = 0, xonly: bool = False) -> Optional[str]:
    """Resolves a single key expression to hex, None if it holds no HD fragment."""
    descriptors = parse_descriptors(text)
    if not descriptors:
        return None
    parsed = max(descriptors.values(), key=lambda d: len(d.original))
    key = expand_descriptor(parsed, child_index)
    return key[2:] if xonly else key
