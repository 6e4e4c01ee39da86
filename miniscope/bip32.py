# Copyright (C) 2018 The Electrum developers
# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

import hashlib
from typing import List, Tuple, NamedTuple, Union, Iterable, Sequence, Optional

import electrum_ecc as ecc

from .util import BitcoinException, DerivationError
from . import constants
from .crypto import hash_160, hmac_oneshot
from .bitcoin import EncodeBase58Check, DecodeBase58Check, BaseDecodeError
from .logging import get_logger


_logger = get_logger(__name__)
BIP32_PRIME = 0x80000000
UINT32_MAX = (1 << 32) - 1

BIP32_HARDENED_CHAR = "h"  # default "hardened" char we put in str paths


def protect_against_invalid_ecpoint(func):
    def func_wrapper(*args):
        child_index = args[-1]
        while True:
            is_prime = child_index & BIP32_PRIME
            try:
                return func(*args[:-1], child_index=child_index)
            except ecc.InvalidECPointException:
                _logger.warning('bip32 protect_against_invalid_ecpoint: skipping index')
                child_index += 1
                is_prime2 = child_index & BIP32_PRIME
                if is_prime != is_prime2: raise OverflowError()
    return func_wrapper


@protect_against_invalid_ecpoint
def CKD_pub(parent_pubkey: bytes, parent_chaincode: bytes, child_index: int) -> Tuple[bytes, bytes]:
    """Child public key derivation function (from public key only)
    This function allows us to find the nth public key, as long as n is
    not hardened. If n is hardened, we need the master private key to find it.
    """
    if child_index < 0: raise ValueError('the bip32 index needs to be non-negative')
    if child_index & BIP32_PRIME:
        raise DerivationError(f'cannot derive hardened child {child_index ^ BIP32_PRIME}h from a public key')
    I = hmac_oneshot(parent_chaincode,
                     parent_pubkey + int.to_bytes(child_index, length=4, byteorder="big", signed=False),
                     hashlib.sha512)
    pubkey = ecc.ECPrivkey(I[0:32]) + ecc.ECPubkey(parent_pubkey)
    if pubkey.is_at_infinity():
        raise ecc.InvalidECPointException()
    child_pubkey = pubkey.get_public_key_bytes(compressed=True)
    child_chaincode = I[32:]
    return child_pubkey, child_chaincode


class InvalidMasterKeyVersionBytes(BitcoinException): pass


class BIP32Node(NamedTuple):
    """A watch-only extended public key."""
    xtype: str
    eckey: ecc.ECPubkey
    chaincode: bytes
    depth: int = 0
    fingerprint: bytes = b'\x00'*4  # as in serialized format, this is the *parent's* fingerprint
    child_number: bytes = b'\x00'*4
    net_name: str = constants.BitcoinMainnet.NET_NAME

    @classmethod
    def from_xkey(cls, xkey: str, *, net=None) -> 'BIP32Node':
        """Parse an xpub/tpub. Without a net, the version bytes of
        every known network are accepted.
        """
        nets = [net] if net is not None else constants.NETS_LIST
        try:
            raw = DecodeBase58Check(xkey)
        except BaseDecodeError as e:
            raise BitcoinException(f'Invalid extended key encoding: {e}') from e
        if len(raw) != 78:
            raise BitcoinException('Invalid length for extended key: {}'
                                   .format(len(raw)))
        header = int.from_bytes(raw[0:4], byteorder='big')
        for candidate in nets:
            if header in candidate.XPUB_HEADERS_INV:
                xtype = candidate.XPUB_HEADERS_INV[header]
                net_name = candidate.NET_NAME
                break
        else:
            raise InvalidMasterKeyVersionBytes(f'Invalid extended public key format: {hex(header)}')
        try:
            eckey = ecc.ECPubkey(raw[13 + 32:])
        except ecc.InvalidECPointException as e:
            raise BitcoinException('Invalid public key in extended key') from e
        return BIP32Node(xtype=xtype,
                         eckey=eckey,
                         chaincode=raw[13:13 + 32],
                         depth=raw[4],
                         fingerprint=raw[5:9],
                         child_number=raw[9:13],
                         net_name=net_name)

    def to_xpub(self) -> str:
        net = constants.net_from_name(self.net_name)
        payload = (net.XPUB_HEADERS[self.xtype].to_bytes(length=4, byteorder="big") +
                   bytes([self.depth]) +
                   self.fingerprint +
                   self.child_number +
                   self.chaincode +
                   self.eckey.get_public_key_bytes(compressed=True))
        assert len(payload) == 78, f"unexpected xpub payload len {len(payload)}"
        return EncodeBase58Check(payload)

    def subkey_at_public_derivation(self, path: Union[str, Iterable[int]]) -> 'BIP32Node':
        if path is None:
            raise Exception("derivation path must not be None")
        if isinstance(path, str):
            path = convert_bip32_strpath_to_intpath(path)
        path = list(path)
        if not path:
            return self
        depth = self.depth
        chaincode = self.chaincode
        pubkey = self.eckey.get_public_key_bytes(compressed=True)
        for child_index in path:
            parent_pubkey = pubkey
            pubkey, chaincode = CKD_pub(pubkey, chaincode, child_index)
            depth += 1
        fingerprint = hash_160(parent_pubkey)[0:4]
        child_number = child_index.to_bytes(length=4, byteorder="big")
        return self._replace(eckey=ecc.ECPubkey(pubkey),
                             chaincode=chaincode,
                             depth=depth,
                             fingerprint=fingerprint,
                             child_number=child_number)

    def get_public_key_bytes(self) -> bytes:
        return self.eckey.get_public_key_bytes(compressed=True)

    def calc_fingerprint_of_this_node(self) -> bytes:
        """Returns the fingerprint of this node.
        Note that self.fingerprint is of the *parent*.
        """
        return hash_160(self.get_public_key_bytes())[0:4]


def is_xpub(text: str) -> bool:
    try:
        BIP32Node.from_xkey(text)
    except BitcoinException:
        return False
    return True


def convert_bip32_strpath_to_intpath(n: str) -> List[int]:
    """Convert bip32 path str to list of uint32 integers with prime flags
    m/0/1' -> [0, 0x80000001]
    """
    if not n:
        return []
    if n.endswith("/"):
        n = n[:-1]
    n = n.split('/')
    # cut leading "m" if present, but do not require it
    if n[0] == "m":
        n = n[1:]
    path = []
    for x in n:
        if x == '':
            # gracefully allow repeating "/" chars in path.
            continue
        prime = 0
        if x.endswith("'") or x.endswith("h") or x.endswith("H"):
            x = x[:-1]
            prime = BIP32_PRIME
        if not x.isdigit():
            raise ValueError(f"failed to parse bip32 path: invalid child number {x!r}")
        child_index = int(x)
        if child_index >= BIP32_PRIME:
            raise ValueError(f"bip32 path child index too large: {child_index}")
        path.append(child_index | prime)
    return path


def convert_bip32_intpath_to_strpath(path: Sequence[int], *, hardened_char=BIP32_HARDENED_CHAR) -> str:
    assert isinstance(hardened_char, str), hardened_char
    assert len(hardened_char) == 1, hardened_char
    s = "m/"
    for child_index in path:
        if not isinstance(child_index, int):
            raise TypeError(f"bip32 path child index must be int: {child_index}")
        if not (0 <= child_index <= UINT32_MAX):
            raise ValueError(f"bip32 path child index out of range: {child_index}")
        prime = ""
        if child_index & BIP32_PRIME:
            prime = hardened_char
            child_index = child_index ^ BIP32_PRIME
        s += str(child_index) + prime + '/'
    # cut trailing "/"
    s = s[:-1]
    return s


def is_all_public_derivation(path: Union[str, Iterable[int]]) -> bool:
    """Returns whether all levels in path use non-hardened derivation."""
    if isinstance(path, str):
        path = convert_bip32_strpath_to_intpath(path)
    return not any(child_index & BIP32_PRIME for child_index in path)


class KeyOriginInfo:
    """
    Object representing the origin of a key: [fingerprint/path] in descriptors.

    from https://github.com/bitcoin-core/HWI/blob/5f300d3dee7b317a6194680ad293eaa0962a3cc7/hwilib/key.py
    # Copyright (c) 2020 The HWI developers
    # Distributed under the MIT software license.
    """
    def __init__(self, fingerprint: bytes, path: Sequence[int]) -> None:
        """
        :param fingerprint: The 4 byte BIP 32 fingerprint of a parent key from which this key is derived from
        :param path: The derivation path to reach this key from the key at ``fingerprint``
        """
        self.fingerprint: bytes = fingerprint
        self.path: Sequence[int] = path

    def to_string(self, *, hardened_char=BIP32_HARDENED_CHAR) -> str:
        """
        Return the KeyOriginInfo as a string in the form <fingerprint>/<index>/<index>/...
        This is the same way that KeyOriginInfo is shown in descriptors
        """
        s = self.fingerprint.hex()
        strpath = convert_bip32_intpath_to_strpath(self.path, hardened_char=hardened_char)
        return s + strpath[1:]  # cut leading "m"

    @classmethod
    def from_string(cls, s: str) -> 'KeyOriginInfo':
        s = s.lower()
        entries = s.split("/")
        try:
            fingerprint = bytes.fromhex(entries[0])
        except ValueError:
            raise DerivationError(f"Invalid fingerprint hex: {entries[0]}") from None
        if len(fingerprint) != 4:
            raise DerivationError("Fingerprint must be 4 bytes")
        path: Sequence[int] = []
        if len(entries) > 1:
            try:
                path = convert_bip32_strpath_to_intpath("/".join(entries[1:]))
            except ValueError as e:
                raise DerivationError(f"Invalid derivation path: {e}") from e
        return cls(fingerprint, path)

    def get_derivation_path(self, *, hardened_char=BIP32_HARDENED_CHAR) -> str:
        return convert_bip32_intpath_to_strpath(self.path, hardened_char=hardened_char)

    def __eq__(self, other):
        if not isinstance(other, KeyOriginInfo):
            return False
        return self.fingerprint == other.fingerprint and list(self.path) == list(other.path)

    def __repr__(self):
        return f"<KeyOriginInfo [{self.to_string()}]>"
