# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

import json
import os
import sys
from typing import Any, Set

import attr


def inv_dict(d):
    return {v: k for k, v in d.items()}


def all_subclasses(cls) -> Set:
    """Return all (transitive) subclasses of cls."""
    res = set(cls.__subclasses__())
    for sub in res.copy():
        res |= all_subclasses(sub)
    return res


class BitcoinException(Exception): pass


class UserFacingException(Exception):
    """Exception that contains information intended to be shown to the user."""


class ParseError(BitcoinException, UserFacingException):
    """Malformed expression, descriptor or key text."""


class KeyTypeMismatch(ParseError):
    """Wrong key encoding for the requested script context."""


class DerivationError(BitcoinException, UserFacingException):
    """Hardened step, bad xpub or bad fingerprint in public-only derivation."""


class UnsupportedPattern(ParseError):
    """Descriptor fragment not matched by any known shape."""


class AddressGenerationError(BitcoinException, UserFacingException):
    pass


class TreeTransformFallback(Exception):
    """Raised when an OR cannot be split into a taproot tree.
    Always caught: the caller falls back to a single leaf.
    """


class MyEncoder(json.JSONEncoder):
    def default(self, obj):
        if attr.has(type(obj)):
            return attr.asdict(obj, recurse=True)
        if isinstance(obj, (bytes, bytearray)):
            return obj.hex()
        if isinstance(obj, set):
            return sorted(obj)
        if hasattr(obj, 'to_json'):
            return obj.to_json()
        return super(MyEncoder, self).default(obj)


def print_stderr(*args):
    args = [str(item) for item in args]
    sys.stderr.write(" ".join(args) + "\n")
    sys.stderr.flush()


def print_msg(*args):
    # Stringify args
    args = [str(item) for item in args]
    sys.stdout.write(" ".join(args) + "\n")
    sys.stdout.flush()


def json_encode(obj):
    try:
        s = json.dumps(obj, sort_keys=True, indent=4, cls=MyEncoder, ensure_ascii=False)
    except TypeError:
        s = repr(obj)
    return s


def assert_bytes(*args):
    """
    porting helper, assert args type
    """
    for x in args:
        assert isinstance(x, (bytes, bytearray)), type(x)


def to_bytes(something, encoding='utf8') -> bytes:
    """
    cast string to bytes() like object
    """
    if isinstance(something, bytes):
        return something
    if isinstance(something, str):
        return something.encode(encoding)
    elif isinstance(something, bytearray):
        return bytes(something)
    else:
        raise TypeError("Not a string or bytes like object")


bfh = bytes.fromhex


def is_hex_str(text: Any) -> bool:
    if not isinstance(text, str): return False
    try:
        b = bytes.fromhex(text)
    except Exception:
        return False
    # forbid whitespaces in text:
    if len(text) != 2 * len(b):
        return False
    return True


def user_dir():
    if 'MINISCOPE_HOME' in os.environ:
        return os.environ['MINISCOPE_HOME']
    elif os.name == 'posix':
        return os.path.join(os.environ.get("HOME", "."), ".miniscope")
    elif "APPDATA" in os.environ:
        return os.path.join(os.environ["APPDATA"], "Miniscope")
    elif "LOCALAPPDATA" in os.environ:
        return os.path.join(os.environ["LOCALAPPDATA"], "Miniscope")
    else:
        return None
