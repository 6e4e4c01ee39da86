# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Taproot output construction for a miniscript expression.

Three strategies produce different outputs from the same expression:

- multi-leaf: the key of the first ``pk()`` is the internal key, the
  whole expression is the only leaf (key-path spend stays possible)
- single-leaf: the NUMS point is the internal key, one leaf
- script-path: the NUMS point is the internal key, and a top-level
  ``or_d``/``or_c``/``or_i`` is split into a two leaf tree when possible
"""

import re
from enum import Enum
from typing import Optional, List, Tuple

import attr

from . import constants
from .bitcoin import script_to_asm, is_xonly_pubkey
from .descriptor import parse_descriptor, TRDescriptor
from .descriptor_resolver import (contains_descriptor, parse_descriptors,
                                  replace_descriptors_with_keys, resolve_key)
from .keys import ScriptContext
from .miniscript import Miniscript
from .util import ParseError, DerivationError, TreeTransformFallback, AddressGenerationError, is_hex_str
from .logging import get_logger


_logger = get_logger(__name__)

# a Schnorr signature with sighash byte, in witness bytes
SCHNORR_SIG_WU = 65
CONTROL_BLOCK_BASE_WU = 33
CONTROL_BLOCK_STEP_WU = 32

_FIRST_PK_RE = re.compile(r"pk\(([^)]+)\)")
_TREE_OR_PREFIXES = ("or_d(", "or_c(", "or_i(")


class TaprootMode(Enum):
    MULTI_LEAF = 'multi-leaf'
    SINGLE_LEAF = 'single-leaf'
    SCRIPT_PATH = 'script-path'

    @classmethod
    def from_str(cls, name: str) -> 'TaprootMode':
        key = name.strip().lower().replace('_', '-')
        for mode in cls:
            if mode.value == key:
                return mode
        raise ValueError(f"Unknown taproot mode: {name}")


@attr.s(frozen=True, kw_only=True)
class TaprootLeafWeight:
    path = attr.ib(type=str)
    miniscript = attr.ib(type=str)
    script_hex = attr.ib(type=str)
    script_asm = attr.ib(type=str)
    depth = attr.ib(type=int)
    sig_wu = attr.ib(type=int)
    script_wu = attr.ib(type=int)
    control_wu = attr.ib(type=int)
    total_wu = attr.ib(type=int)


@attr.s(frozen=True, kw_only=True)
class TaprootBranch:
    path = attr.ib(type=str)
    miniscript = attr.ib(type=str)
    policy = attr.ib(type=Optional[str])


@attr.s(frozen=True, kw_only=True)
class TaprootCompilation:
    mode = attr.ib(type=TaprootMode)
    internal_key = attr.ib(type=str)
    descriptor = attr.ib(type=str)
    output_script = attr.ib(type=bytes)
    address = attr.ib(type=str)
    miniscript = attr.ib(type=Miniscript, repr=False)
    leaves = attr.ib(type=tuple)
    is_tree = attr.ib(type=bool)

    @property
    def max_satisfaction_size(self) -> Optional[int]:
        return self.miniscript.max_satisfaction_size()


def leaf_weight(ms: Miniscript, depth: int, *, path: str = "root") -> TaprootLeafWeight:
    """Witness weight of spending through one leaf.

    The signature part counts whole 65 byte signatures that fit in the
    worst case satisfaction. Script and control block are the leaf
    script with its length byte and 33 + 32 per tree level.
    """
    script = ms.encode()
    max_sat = ms.max_satisfaction_size() or 0
    sig_wu = (max_sat // SCHNORR_SIG_WU) * SCHNORR_SIG_WU
    script_wu = len(script) + 1
    control_wu = CONTROL_BLOCK_BASE_WU + CONTROL_BLOCK_STEP_WU * depth
    return TaprootLeafWeight(
        path=path,
        miniscript=str(ms),
        script_hex=script.hex(),
        script_asm=script_to_asm(script),
        depth=depth,
        sig_wu=sig_wu,
        script_wu=script_wu,
        control_wu=control_wu,
        total_wu=sig_wu + script_wu + control_wu + 1,
    )


def _split_top_level_or(expression: str) -> Tuple[str, str]:
    s = expression.strip()
    if not s.startswith(_TREE_OR_PREFIXES):
        raise TreeTransformFallback("top-level fragment is not or_d/or_c/or_i")
    inner = s[s.index("(") + 1:]
    depth = 0
    comma = None
    end = None
    for i, ch in enumerate(inner):
        if ch == "(":
            depth += 1
        elif ch == ")":
            if depth == 0:
                end = i
                break
            depth -= 1
        elif ch == "," and depth == 0 and comma is None:
            comma = i
    if comma is None:
        raise TreeTransformFallback("no depth-0 comma in OR")
    if end is None:
        end = len(inner)
    return inner[:comma].strip(), inner[comma + 1:end].strip()


def transform_or_to_tree(expression: str) -> str:
    """Rewrites ``or_X(A,B)`` as ``{A,B}``; other input is returned unchanged."""
    try:
        left, right = _split_top_level_or(expression)
    except TreeTransformFallback as e:
        _logger.debug(f"no tree transform: {e}")
        return expression
    return "{" + left + "," + right + "}"


def resolve_for_taproot(expression: str, *, child_index: int = 0) -> str:
    """Replaces HD fragments by x-only keys (ranged ones at child_index)."""
    expression = expression.strip()
    if not contains_descriptor(expression):
        return expression
    return replace_descriptors_with_keys(expression, parse_descriptors(expression),
                                         child_index=child_index, xonly=True)


def extract_internal_key(expression: str, *, nums_key: str = constants.NUMS_POINT, child_index: int = 0) -> str:
    """The key inside the first pk() of the expression, as x-only hex.
    Falls back to nums_key if there is none or it is unusable."""
    m = _FIRST_PK_RE.search(expression)
    if m is None:
        _logger.debug("no pk() found, using NUMS point")
        return nums_key
    content = m.group(1).strip()
    if contains_descriptor(content):
        try:
            content = resolve_key(content, child_index=child_index, xonly=True) or content
        except ParseError as e:
            _logger.debug(f"cannot resolve internal key descriptor: {e}")
            return nums_key
    if is_hex_str(content) and len(content) == 66 and content[:2] in ("02", "03"):
        content = content[2:]
    if is_hex_str(content) and is_xonly_pubkey(bytes.fromhex(content)):
        return content.lower()
    _logger.debug(f"extracted internal key unusable: {content[:16]}, using NUMS point")
    return nums_key


def _build(mode: TaprootMode, internal_key: str, tree_expr: str, ms: Miniscript, *, net) -> TaprootCompilation:
    descriptor = parse_descriptor(f"tr({internal_key},{tree_expr})")
    assert isinstance(descriptor, TRDescriptor)
    expanded = descriptor.expand()
    address = expanded.address(net=net)
    if address is None:
        raise AddressGenerationError("Address generation failed for taproot output")
    leaves = tuple(
        leaf_weight(leaf.get_miniscript(), len(path), path=path or "root")
        for path, leaf in descriptor.iter_leaves())
    return TaprootCompilation(
        mode=mode,
        internal_key=internal_key,
        descriptor=descriptor.to_string(),
        output_script=expanded.output_script,
        address=address,
        miniscript=ms,
        leaves=leaves,
        is_tree=descriptor.get_max_tree_depth() > 0,
    )


def compile_taproot(expression: str, mode: TaprootMode, *, nums_key: Optional[str] = None,
                    net=None, child_index: int = 0) -> TaprootCompilation:
    if nums_key is None:
        nums_key = constants.NUMS_POINT
    if not (is_hex_str(nums_key) and is_xonly_pubkey(bytes.fromhex(nums_key))):
        raise ParseError(f"Failed to parse NUMS key: {nums_key}")
    if net is None:
        net = constants.net
    processed = resolve_for_taproot(expression, child_index=child_index)
    ms = Miniscript.from_str(processed, ScriptContext.TAP)
    normalized = str(ms)
    _logger.debug(f"taproot {mode.value}: {normalized}")

    if mode == TaprootMode.MULTI_LEAF:
        internal_key = extract_internal_key(expression, nums_key=nums_key, child_index=child_index)
        return _build(mode, internal_key, normalized, ms, net=net)

    if mode == TaprootMode.SCRIPT_PATH:
        tree_expr = transform_or_to_tree(normalized)
        if tree_expr != normalized:
            try:
                return _build(mode, nums_key, tree_expr, ms, net=net)
            except ParseError as e:
                _logger.debug(f"tree notation rejected, using a single leaf: {e}")
    return _build(mode, nums_key, normalized, ms, net=net)


def _parse_tr(descriptor: str) -> TRDescriptor:
    try:
        desc = parse_descriptor(descriptor)
    except (ParseError, DerivationError) as e:
        raise ParseError(f"Failed to parse descriptor: {e}") from e
    if not isinstance(desc, TRDescriptor):
        raise ParseError("Not a taproot descriptor")
    if desc.desc_tree is None:
        raise ParseError("No script paths (key-only descriptor)")
    return desc


def get_taproot_branches(descriptor: str) -> List[TaprootBranch]:
    """Every leaf of a tr() descriptor with its lifted policy."""
    desc = _parse_tr(descriptor)
    pos = 0 if desc.is_range() else None
    branches = []
    for path, leaf in desc.iter_leaves():
        ms = leaf.get_miniscript(pos=pos)
        try:
            policy = str(ms.lift())
        except ParseError as e:
            _logger.debug(f"leaf {path or 'root'} cannot be lifted: {e}")
            policy = None
        branches.append(TaprootBranch(path=path or "root", miniscript=str(ms), policy=policy))
    return branches


def get_taproot_branch_weights(descriptor: str) -> Tuple[str, List[TaprootLeafWeight]]:
    """Internal key (x-only hex) and the weight breakdown of every leaf."""
    desc = _parse_tr(descriptor)
    pos = 0 if desc.is_range() else None
    internal_key = desc.get_internal_key(pos=pos).hex()
    weights = [leaf_weight(leaf.get_miniscript(pos=pos), len(path), path=path or "root")
               for path, leaf in desc.iter_leaves()]
    return internal_key, weights

