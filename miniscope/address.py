# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

from typing import Optional

import attr

from . import constants
from .bitcoin import script_to_p2sh, script_to_p2wsh
from .keys import ScriptContext
from .miniscript import Miniscript
from .taproot import TaprootMode, compile_taproot
from .util import (is_hex_str, ParseError, AddressGenerationError,
                   UserFacingException, BitcoinException)
from .logging import get_logger


_logger = get_logger(__name__)

SCRIPT_TYPES = ("Legacy", "Segwit v0", "Taproot")


@attr.s(frozen=True, kw_only=True)
class AddressResult:
    success = attr.ib(type=bool)
    error = attr.ib(type=Optional[str], default=None)
    address = attr.ib(type=Optional[str], default=None)
    script_type = attr.ib(type=Optional[str], default=None)
    network = attr.ib(type=Optional[str], default=None)


def _script_bytes(script_or_miniscript: str, ctx: ScriptContext) -> bytes:
    text = script_or_miniscript.strip()
    if "(" in text:
        _logger.debug(f"{ctx.label} address from miniscript: {text}")
        try:
            return Miniscript.from_str(text, ctx).encode()
        except ParseError as e:
            raise ParseError(f"Descriptor parse error: {e}") from e
    if not is_hex_str(text):
        raise ParseError(f"Script decode error: not a hex string: {text[:16]}")
    return bytes.fromhex(text)


def taproot_mode_for(internal_key: Optional[str], use_single_leaf: bool) -> TaprootMode:
    """An explicit NUMS internal key asks for the script-path layout, any
    other key for the multi-leaf one."""
    if internal_key:
        if internal_key.lower() == constants.NUMS_POINT:
            return TaprootMode.SCRIPT_PATH
        return TaprootMode.MULTI_LEAF
    if use_single_leaf:
        return TaprootMode.SINGLE_LEAF
    return TaprootMode.MULTI_LEAF


def address_for(script_or_miniscript: str, script_type: str, *, net,
                internal_key: Optional[str] = None, use_single_leaf: bool = False) -> str:
    if script_type == "Legacy":
        return script_to_p2sh(_script_bytes(script_or_miniscript, ScriptContext.LEGACY), net=net)
    if script_type == "Segwit v0":
        return script_to_p2wsh(_script_bytes(script_or_miniscript, ScriptContext.SEGWITV0), net=net)
    if script_type == "Taproot":
        mode = taproot_mode_for(internal_key, use_single_leaf)
        _logger.debug(f"taproot address in {mode.value} mode")
        comp = compile_taproot(script_or_miniscript.strip(), mode, net=net)
        return comp.address
    raise AddressGenerationError(f"Unknown script type: {script_type}")


def generate_address(script_or_miniscript: str, script_type: str, network: str = 'bitcoin',
                     internal_key: Optional[str] = None, use_single_leaf: bool = False) -> AddressResult:
    """Address of a script hex or miniscript for the given script type and network."""
    try:
        net = constants.net_from_name(network)
    except ValueError as e:
        return AddressResult(success=False, error=f"Network parsing error: {e}")
    try:
        address = address_for(script_or_miniscript, script_type, net=net,
                              internal_key=internal_key, use_single_leaf=use_single_leaf)
    except (UserFacingException, BitcoinException) as e:
        _logger.debug(f"address generation failed: {e}")
        return AddressResult(success=False, error=str(e))
    return AddressResult(success=True, address=address, script_type=script_type, network=net.NET_NAME)
