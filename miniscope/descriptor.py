# Copyright (c) 2017 Andrew Chow
# Copyright (c) 2023 The Electrum developers
# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
#
# Output Script Descriptors carrying miniscript
# See https://github.com/bitcoin/bitcoin/blob/master/doc/descriptors.md
#
# Supported: sh(MS), wsh(MS), sh(wsh(MS)), tr(KEY) and tr(KEY,TREE) where
# MS is a miniscript whose keys may be hex keys or extended public keys
# with origin info, wildcards and <a;b> multipath steps.

import enum
import re
from enum import Enum
from typing import List, Optional, Tuple, Union, Dict

from .bip32 import convert_bip32_strpath_to_intpath, BIP32Node, KeyOriginInfo
from .bitcoin import (taproot_output_script, p2wsh_output_script, p2sh_output_script,
                      output_script_to_address, TAPROOT_LEAF_TAPSCRIPT)
from .expression import Tree, parse_tree
from .keys import ScriptContext
from .miniscript import Miniscript
from .util import ParseError, DerivationError, BitcoinException, is_hex_str
from .logging import get_logger


_logger = get_logger(__name__)

MAX_TAPROOT_DEPTH = 128

_KEY_FRAGMENTS = ('pk', 'pkh', 'pk_k', 'pk_h')
_MULTI_FRAGMENTS = ('multi', 'multi_a')
_MULTIPATH_RE = re.compile(r"<(\d+(?:;\d+)+)>")


class ExpandedScripts:

    def __init__(
        self,
        *,
        output_script: bytes,
        redeem_script: Optional[bytes] = None,
        witness_script: Optional[bytes] = None,
        miniscript: Optional[Miniscript] = None,
    ):
        self.output_script = output_script
        self.redeem_script = redeem_script
        self.witness_script = witness_script
        self.miniscript = miniscript

    def address(self, *, net=None) -> Optional[str]:
        return output_script_to_address(self.output_script, net=net)


def _polymod(c: int, val: int) -> int:
    # see DescriptorChecksum in bitcoin/src/script/descriptor.cpp
    c0 = c >> 35
    c = ((c & 0x7ffffffff) << 5) ^ val
    for bit, gen in enumerate((0xf5dee51989, 0xa9fdca3312, 0x1bab10e32d, 0x3706b1677a, 0x644d626ffd)):
        if c0 & (1 << bit):
            c ^= gen
    return c


_INPUT_CHARSET = "0123456789()[],'/*abcdefgh@:$%{}IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~ijklmnopqrstuvwxyzABCDEFGH`#\"\\ "
_INPUT_CHARSET_INV = {c: i for (i, c) in enumerate(_INPUT_CHARSET)}
_CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def descriptor_checksum(desc: str) -> str:
    """Returns the 8 character checksum of a descriptor string."""
    c = 1
    groups = []
    for ch in desc:
        try:
            pos = _INPUT_CHARSET_INV[ch]
        except KeyError:
            raise ParseError(f"invalid character in descriptor: {ch!r}") from None
        c = _polymod(c, pos & 31)
        groups.append(pos >> 5)
        if len(groups) == 3:
            c = _polymod(c, groups[0] * 9 + groups[1] * 3 + groups[2])
            groups = []
    if groups:
        cls = 0
        for g in groups:
            cls = cls * 3 + g
        c = _polymod(c, cls)
    for _ in range(8):
        c = _polymod(c, 0)
    c ^= 1
    return "".join(_CHECKSUM_CHARSET[(c >> (5 * (7 - j))) & 31] for j in range(8))


def add_checksum(desc: str) -> str:
    return desc + "#" + descriptor_checksum(desc)


class PubkeyProvider(object):
    """A key expression: optional origin, then a hex key or an xpub
    followed by a derivation suffix.

    The suffix may hold wildcards (``*``, replaced by the position) and a
    single multipath step (``<a;b>``).
    """

    def __init__(self, origin: Optional[KeyOriginInfo], pubkey: str, deriv_path: Optional[str]):
        self.origin = origin
        self.pubkey = pubkey
        self.deriv_path = deriv_path
        self.extkey = None  # type: Optional[BIP32Node]
        if deriv_path is not None:
            if not deriv_path.startswith("/"):
                raise ParseError(f"derivation suffix must start with a '/'. got {deriv_path!r}")
            if len(_MULTIPATH_RE.findall(deriv_path)) > 1:
                raise ParseError("only one multipath step is allowed in a key expression")
        if is_hex_str(pubkey):
            if deriv_path:
                raise ParseError("derivation suffix present for simple pubkey")
            if len(pubkey) not in (64, 66, 130):
                raise ParseError(f"invalid public key length: {len(pubkey)} hex characters")
        else:
            try:
                self.extkey = BIP32Node.from_xkey(pubkey)
            except BitcoinException as e:
                raise DerivationError(f"Invalid xpub: {e}") from e

    @classmethod
    def parse(cls, s: str) -> 'PubkeyProvider':
        origin = None
        deriv_path = None
        if not s:
            raise ParseError("empty key expression")
        if s[0] == "[":
            end = s.find("]")
            if end == -1:
                raise ParseError(f"key origin start '[' without end ']': {s}")
            origin = KeyOriginInfo.from_string(s[1:end])
            s = s[end + 1:]
        pubkey = s
        slash_idx = s.find("/")
        if slash_idx != -1:
            pubkey = s[:slash_idx]
            deriv_path = s[slash_idx:]
        return cls(origin, pubkey, deriv_path)

    def to_string(self) -> str:
        s = ""
        if self.origin:
            s += "[{}]".format(self.origin.to_string())
        s += self.pubkey
        if self.deriv_path:
            s += self.deriv_path
        return s

    def __str__(self):
        return self.to_string()

    def is_range(self) -> bool:
        return bool(self.deriv_path) and "*" in self.deriv_path

    def multipath_count(self) -> int:
        if not self.deriv_path:
            return 1
        m = _MULTIPATH_RE.search(self.deriv_path)
        return len(m.group(1).split(";")) if m else 1

    def get_der_suffix(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> List[int]:
        if not self.deriv_path:
            return []
        if self.is_range() and pos is None:
            raise ValueError("pos must be set for ranged key expression")
        suffix = self.deriv_path
        m = _MULTIPATH_RE.search(suffix)
        if m:
            choices = m.group(1).split(";")
            if not 0 <= multipath_index < len(choices):
                raise ValueError(f"multipath index {multipath_index} out of range")
            suffix = suffix[:m.start()] + choices[multipath_index] + suffix[m.end():]
        suffix = suffix.replace("*", str(pos))
        try:
            return convert_bip32_strpath_to_intpath(suffix)
        except ValueError as e:
            raise DerivationError(f"Invalid derivation path: {e}") from e

    def get_pubkey_bytes(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> bytes:
        """Key bytes as written (hex keys) or compressed (derived from an xpub)."""
        if self.extkey is None:
            return bytes.fromhex(self.pubkey)
        path = self.get_der_suffix(pos=pos, multipath_index=multipath_index)
        return self.extkey.subkey_at_public_derivation(path).get_public_key_bytes()

    def get_key_for_context(self, ctx: ScriptContext, *, pos: Optional[int] = None,
                            multipath_index: int = 0) -> bytes:
        key = self.get_pubkey_bytes(pos=pos, multipath_index=multipath_index)
        if ctx.is_tap and len(key) == 33:
            return key[1:]
        return key

    def __lt__(self, other: 'PubkeyProvider') -> bool:
        return self.pubkey < other.pubkey


def _map_keys(tree: Tree, fn) -> Tree:
    """Applies fn to every key terminal of a miniscript tree."""
    name = tree.name.rsplit(":", 1)[-1]
    if name in _KEY_FRAGMENTS and len(tree.args) == 1:
        return Tree(tree.name, (Tree(fn(tree.args[0].terminal(name)), ()),))
    if name in _MULTI_FRAGMENTS and tree.args:
        keys = tuple(Tree(fn(arg.terminal(name)), ()) for arg in tree.args[1:])
        return Tree(tree.name, (tree.args[0],) + keys)
    return Tree(tree.name, tuple(_map_keys(arg, fn) for arg in tree.args))


class Descriptor(object):
    """Base class of the descriptor tree."""

    def __init__(self, pubkeys: List[PubkeyProvider], subdescriptors: List['Descriptor'], name: str):
        self.pubkeys = pubkeys
        self.subdescriptors = subdescriptors
        self.name = name

    def to_string_no_checksum(self) -> str:
        return "{}({}{})".format(
            self.name,
            ",".join([p.to_string() for p in self.pubkeys]),
            self.subdescriptors[0].to_string_no_checksum() if len(self.subdescriptors) > 0 else ""
        )

    def to_string(self) -> str:
        return add_checksum(self.to_string_no_checksum())

    def __str__(self):
        return self.to_string()

    def expand(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> ExpandedScripts:
        raise NotImplementedError("The Descriptor base class does not implement this method")

    def get_all_pubkeys(self) -> List[PubkeyProvider]:
        pubkeys = list(self.pubkeys)
        for desc in self.subdescriptors:
            pubkeys.extend(desc.get_all_pubkeys())
        return pubkeys

    def is_range(self) -> bool:
        return any(p.is_range() for p in self.get_all_pubkeys())

    def multipath_count(self) -> int:
        return max([p.multipath_count() for p in self.get_all_pubkeys()] + [1])

    def is_segwit(self) -> bool:
        return any(desc.is_segwit() for desc in self.subdescriptors)

    def is_taproot(self) -> bool:
        return False

    def address(self, *, pos: Optional[int] = None, multipath_index: int = 0, net=None) -> Optional[str]:
        if self.is_range() and pos is None:
            pos = 0
        return self.expand(pos=pos, multipath_index=multipath_index).address(net=net)


class MiniscriptDescriptor(Descriptor):
    """A miniscript leaf whose keys are key expressions."""

    def __init__(self, tree: Tree, ctx: ScriptContext):
        self.tree = tree
        self.ctx = ctx
        self._providers = {}  # type: Dict[str, PubkeyProvider]
        pubkeys = []

        def collect(text):
            if text not in self._providers:
                provider = PubkeyProvider.parse(text)
                self._providers[text] = provider
                pubkeys.append(provider)
            return text

        _map_keys(tree, collect)
        super().__init__(pubkeys=[], subdescriptors=[], name=tree.name)
        self._keys = pubkeys

    @classmethod
    def parse(cls, s: str, ctx: ScriptContext) -> 'MiniscriptDescriptor':
        return cls(parse_tree(s), ctx)

    def get_all_pubkeys(self) -> List[PubkeyProvider]:
        return list(self._keys)

    def to_string_no_checksum(self) -> str:
        return _map_keys(self.tree, lambda text: self._providers[text].to_string()).to_string()

    def is_segwit(self) -> bool:
        return self.ctx != ScriptContext.LEGACY

    def get_miniscript(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> Miniscript:
        def concrete(text):
            key = self._providers[text].get_key_for_context(self.ctx, pos=pos, multipath_index=multipath_index)
            return key.hex()
        return Miniscript.from_str(_map_keys(self.tree, concrete).to_string(), self.ctx)

    def expand(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> ExpandedScripts:
        ms = self.get_miniscript(pos=pos, multipath_index=multipath_index)
        return ExpandedScripts(output_script=ms.encode(), miniscript=ms)


class SHDescriptor(Descriptor):

    def __init__(self, subdescriptor: Descriptor):
        super().__init__([], [subdescriptor], "sh")

    def expand(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> ExpandedScripts:
        sub_scripts = self.subdescriptors[0].expand(pos=pos, multipath_index=multipath_index)
        redeem_script = sub_scripts.output_script
        return ExpandedScripts(
            output_script=p2sh_output_script(redeem_script),
            redeem_script=redeem_script,
            witness_script=sub_scripts.witness_script,
            miniscript=sub_scripts.miniscript,
        )


class WSHDescriptor(Descriptor):

    def __init__(self, subdescriptor: Descriptor):
        super().__init__([], [subdescriptor], "wsh")

    def expand(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> ExpandedScripts:
        sub_scripts = self.subdescriptors[0].expand(pos=pos, multipath_index=multipath_index)
        witness_script = sub_scripts.output_script
        return ExpandedScripts(
            output_script=p2wsh_output_script(witness_script),
            witness_script=witness_script,
            miniscript=sub_scripts.miniscript,
        )

    def is_segwit(self) -> bool:
        return True


TapTreeNode = Union[MiniscriptDescriptor, List['TapTreeNode']]


class TRDescriptor(Descriptor):
    """
    A descriptor for ``tr()`` descriptors
    """

    def __init__(self, internal_key: PubkeyProvider, desc_tree: Optional[TapTreeNode] = None):
        self.desc_tree = desc_tree
        desc_list = []
        if desc_tree is not None:
            if self.get_max_tree_depth() > MAX_TAPROOT_DEPTH:
                raise ParseError(f"tr() supports at most {MAX_TAPROOT_DEPTH} nesting levels")
            desc_list = [leaf for _, leaf in self.iter_leaves()]
        super().__init__(pubkeys=[internal_key], subdescriptors=desc_list, name="tr")

    def iter_leaves(self):
        """Yields (path, leaf) pairs, path being a string of 'L'/'R'
        steps from the root ('' for a single leaf tree)."""
        def walk(node, path):
            if isinstance(node, MiniscriptDescriptor):
                yield path, node
                return
            yield from walk(node[0], path + "L")
            yield from walk(node[1], path + "R")
        if self.desc_tree is not None:
            yield from walk(self.desc_tree, "")

    def to_string_no_checksum(self) -> str:
        ret = f"{self.name}({self.pubkeys[0].to_string()}"
        if self.desc_tree is not None:
            def tree_to_str(node):
                if isinstance(node, MiniscriptDescriptor):
                    return node.to_string_no_checksum()
                return "{" + tree_to_str(node[0]) + "," + tree_to_str(node[1]) + "}"
            ret += "," + tree_to_str(self.desc_tree)
        return ret + ")"

    def is_segwit(self) -> bool:
        return True

    def is_taproot(self) -> bool:
        return True

    def get_internal_key(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> bytes:
        return self.pubkeys[0].get_key_for_context(ScriptContext.TAP, pos=pos, multipath_index=multipath_index)

    def get_script_tree(self, *, pos: Optional[int] = None, multipath_index: int = 0):
        if self.desc_tree is None:
            return None

        def transform(node):
            if isinstance(node, MiniscriptDescriptor):
                leaf = node.expand(pos=pos, multipath_index=multipath_index)
                return (TAPROOT_LEAF_TAPSCRIPT, leaf.output_script)
            return [transform(node[0]), transform(node[1])]
        return transform(self.desc_tree)

    def expand(self, *, pos: Optional[int] = None, multipath_index: int = 0) -> ExpandedScripts:
        internal_pubkey = self.get_internal_key(pos=pos, multipath_index=multipath_index)
        if len(internal_pubkey) != 32:
            raise ParseError("tr() internal key must be an x-only or compressed public key")
        script_tree = self.get_script_tree(pos=pos, multipath_index=multipath_index)
        return ExpandedScripts(output_script=taproot_output_script(internal_pubkey, script_tree=script_tree))

    def get_max_tree_depth(self) -> Optional[int]:
        if self.desc_tree is None:
            return None

        def depth(node) -> int:
            if isinstance(node, MiniscriptDescriptor):
                return 0
            return 1 + max(depth(node[0]), depth(node[1]))
        return depth(self.desc_tree)


def _get_func_expr(s: str) -> Tuple[str, str]:
    """Splits ``name(inner)`` into its name and inner expression."""
    try:
        start = s.index("(")
        end = s.rindex(")")
    except ValueError:
        raise ParseError("A matching pair of parentheses cannot be found") from None
    if end != len(s) - 1:
        raise ParseError(f"unexpected trailing characters after ')': {s[end + 1:]!r}")
    return s[0:start], s[start + 1:end]


def _get_expr(s: str) -> Tuple[str, str]:
    """Extracts the expression that ``s`` begins with, up to the first
    comma or closing brace that is not nested."""
    level = 0
    for i, c in enumerate(s):
        if c in "({":
            level += 1
        elif level > 0 and c in ")}":
            level -= 1
        elif level == 0 and c in ")},":
            return s[0:i], s[i:]
    return s, ""


class _ParseDescriptorContext(Enum):
    TOP = enum.auto()
    P2SH = enum.auto()
    P2WSH = enum.auto()


def _parse_tap_tree(tree_str: str) -> Tuple[TapTreeNode, str]:
    if not tree_str:
        raise ParseError("Invalid Taproot tree expression")
    if tree_str[0] != "{":
        sarg, remaining = _get_expr(tree_str)
        return MiniscriptDescriptor.parse(sarg, ScriptContext.TAP), remaining
    left, remaining = _parse_tap_tree(tree_str[1:])
    if not remaining or remaining[0] != ",":
        raise ParseError("Invalid Taproot tree expression: expected ','")
    right, remaining = _parse_tap_tree(remaining[1:])
    if not remaining or remaining[0] != "}":
        raise ParseError("Invalid Taproot tree expression: expected '}'")
    return [left, right], remaining[1:]


def _parse_descriptor(desc: str, *, ctx: _ParseDescriptorContext) -> Descriptor:
    func, expr = _get_func_expr(desc)
    if func == "sh":
        if ctx != _ParseDescriptorContext.TOP:
            raise ParseError("Can only have sh() at top level")
        if expr.startswith("wsh("):
            return SHDescriptor(_parse_descriptor(expr, ctx=_ParseDescriptorContext.P2SH))
        return SHDescriptor(MiniscriptDescriptor.parse(expr, ScriptContext.LEGACY))
    if func == "wsh":
        if ctx not in (_ParseDescriptorContext.TOP, _ParseDescriptorContext.P2SH):
            raise ParseError("Can only have wsh() at top level or inside sh()")
        return WSHDescriptor(MiniscriptDescriptor.parse(expr, ScriptContext.SEGWITV0))
    if func == "tr":
        if ctx != _ParseDescriptorContext.TOP:
            raise ParseError("Can only have tr at top level")
        key_str, remaining = _get_expr(expr)
        internal_key = PubkeyProvider.parse(key_str)
        desc_tree = None
        if remaining:
            desc_tree, rest = _parse_tap_tree(remaining[1:])
            if rest:
                raise ParseError(f"unexpected characters after taproot tree: {rest!r}")
        return TRDescriptor(internal_key, desc_tree)
    raise ParseError("{} is not a valid descriptor function".format(func))


def parse_descriptor(desc: str) -> Descriptor:
    """Parses a descriptor string, validating the checksum if present."""
    desc = "".join(desc.split())
    i = desc.find("#")
    if i != -1:
        checksum = desc[i + 1:]
        desc = desc[:i]
        computed = descriptor_checksum(desc)
        if computed != checksum:
            raise ParseError("The checksum does not match; Got {}, expected {}".format(checksum, computed))
    descriptor = _parse_descriptor(desc, ctx=_ParseDescriptorContext.TOP)
    _logger.debug(f"parsed descriptor {descriptor.name}(), range={descriptor.is_range()}")
    return descriptor


def is_descriptor(text: str) -> bool:
    return text.strip().startswith(("sh(", "wsh(", "tr("))
