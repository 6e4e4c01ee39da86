# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

from enum import Enum
from typing import Optional

import electrum_ecc as ecc

from .crypto import sha256, hash_160
from .util import ParseError, KeyTypeMismatch, bfh, is_hex_str


class ScriptContext(Enum):
    LEGACY = 'Legacy'
    SEGWITV0 = 'Segwitv0'
    TAP = 'Tap'

    @property
    def is_tap(self) -> bool:
        return self == ScriptContext.TAP

    @property
    def max_sig_bytes(self) -> int:
        # signature plus sighash byte plus length prefix
        return 66 if self.is_tap else 73

    @property
    def pushed_key_bytes(self) -> int:
        return 33 if self.is_tap else 34

    @property
    def label(self) -> str:
        return {
            ScriptContext.LEGACY: 'Legacy',
            ScriptContext.SEGWITV0: 'Segwit v0',
            ScriptContext.TAP: 'Taproot',
        }[self]

    @classmethod
    def from_str(cls, name: str) -> 'ScriptContext':
        key = (name or '').strip().lower()
        if key in ('legacy', 'p2sh'):
            return cls.LEGACY
        if key in ('segwit', 'segwitv0', 'segwit v0', 'p2wsh'):
            return cls.SEGWITV0
        if key in ('taproot', 'tap', 'p2tr'):
            return cls.TAP
        raise ValueError(f"Unknown context: {name}. Use legacy, segwit, or taproot.")


class MiniscriptKey:
    """A key appearing in a policy or miniscript.

    Either a real public key (``pubkey`` set) or an opaque name such as
    ``Alice`` that is only good for analysis.
    """
    __slots__ = ('text', 'pubkey')

    def __init__(self, text: str, pubkey: Optional[bytes] = None):
        self.text = text
        self.pubkey = pubkey

    def __str__(self):
        return self.text

    def __repr__(self):
        return f"MiniscriptKey({self.text!r})"

    def __eq__(self, other):
        return isinstance(other, MiniscriptKey) and self.text == other.text

    def __hash__(self):
        return hash(self.text)

    def __lt__(self, other):
        return self.text < other.text

    def is_named(self) -> bool:
        return self.pubkey is None

    def to_bytes(self, ctx: ScriptContext) -> bytes:
        if self.pubkey is not None:
            return self.pubkey
        # named keys get a stand-in of the right width so sizes come out right
        digest = sha256(self.text)
        return digest if ctx.is_tap else b'\x02' + digest

    def hash160(self, ctx: ScriptContext) -> bytes:
        return hash_160(self.to_bytes(ctx))


def parse_key(text: str, ctx: ScriptContext, *, strict: bool = True) -> MiniscriptKey:
    """Parses a key for the given script context.

    In strict mode the key must be hex: 32-byte x-only for Taproot,
    33-byte compressed for Legacy and Segwit v0 (Legacy also takes
    65-byte uncompressed keys). Otherwise anything that is not a valid
    key of the right kind is kept as an opaque name.
    """
    if not text:
        raise ParseError("empty key")
    try:
        return _parse_hex_key(text, ctx)
    except ParseError:
        if strict:
            raise
    return MiniscriptKey(text)


def _parse_hex_key(text: str, ctx: ScriptContext) -> MiniscriptKey:
    if not is_hex_str(text):
        if ctx.is_tap:
            raise ParseError(f"malformed public key: {text}")
        raise ParseError(f"pubkey string should be 66 or 130 digits long, got: {len(text)}")
    data = bfh(text)
    if ctx.is_tap:
        if len(data) == 33 and data[0] in (2, 3):
            raise KeyTypeMismatch(f"malformed public key: {text}")
        if len(data) != 32:
            raise ParseError(f"malformed public key: {text}")
        candidate = b'\x02' + data
    else:
        if len(data) == 32:
            raise KeyTypeMismatch("pubkey string should be 66 or 130 digits long, got: 64")
        if len(data) not in (33, 65):
            raise ParseError(f"pubkey string should be 66 or 130 digits long, got: {len(text)}")
        if len(data) == 65 and ctx != ScriptContext.LEGACY:
            raise ParseError(f"uncompressed keys are not allowed in {ctx.label}: {text}")
        candidate = data
    try:
        ecc.ECPubkey(candidate)
    except ecc.InvalidECPointException:
        raise ParseError(f"malformed public key: {text}") from None
    return MiniscriptKey(text.lower(), data)


def key_from_bytes(data: bytes, ctx: ScriptContext) -> MiniscriptKey:
    return _parse_hex_key(data.hex(), ctx)


HASH_LENGTHS = {
    'sha256': 32,
    'hash256': 32,
    'ripemd160': 20,
    'hash160': 20,
}


def parse_hash(kind: str, text: str) -> str:
    size = HASH_LENGTHS[kind]
    if not is_hex_str(text) or len(text) != 2 * size:
        raise ParseError(f"invalid {kind} hash: {text}")
    return text.lower()


def parse_u32(text: str, what: str) -> int:
    if not text.isdigit() or (len(text) > 1 and text[0] == '0'):
        raise ParseError(f"invalid number in {what}: {text!r}")
    value = int(text)
    if value > 0xffffffff:
        raise ParseError(f"number too large in {what}: {text}")
    return value
