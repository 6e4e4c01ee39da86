# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Lifting raw scripts to miniscript, and miniscripts to policies.

Both try the script contexts in order (Legacy, Segwit v0, Taproot) and
report every context's error if none of them works.
"""

from typing import Optional, List, Tuple, Callable, TypeVar

import attr

from .keys import ScriptContext
from .miniscript import Miniscript
from .util import is_hex_str, ParseError, UserFacingException, BitcoinException
from .logging import get_logger


_logger = get_logger(__name__)

LIFT_CONTEXTS = (ScriptContext.LEGACY, ScriptContext.SEGWITV0, ScriptContext.TAP)

T = TypeVar('T')


@attr.s(frozen=True, kw_only=True)
class LiftResult:
    success = attr.ib(type=bool)
    error = attr.ib(type=Optional[str], default=None)
    miniscript = attr.ib(type=Optional[str], default=None)
    policy = attr.ib(type=Optional[str], default=None)
    context = attr.ib(type=Optional[str], default=None)


class LiftFailed(UserFacingException):

    def __init__(self, errors: List[Tuple[ScriptContext, str]]):
        self.errors = errors
        super().__init__("; ".join(f"{ctx.label}: {err}" for ctx, err in errors))


def try_contexts(fn: Callable[[ScriptContext], T]) -> Tuple[ScriptContext, T]:
    """Returns the first context for which fn succeeds, with its result."""
    errors = []
    for ctx in LIFT_CONTEXTS:
        try:
            return ctx, fn(ctx)
        except (UserFacingException, BitcoinException) as e:
            _logger.debug(f"{ctx.label} lift failed: {e}")
            errors.append((ctx, str(e)))
    raise LiftFailed(errors)


def format_lift_error(errors: List[Tuple[ScriptContext, str]]) -> str:
    lines = [
        "❌ Script is not liftable to Miniscript",
        "",
        "This Bitcoin script cannot be lifted to miniscript. Attempted lifting across all contexts:",
        "",
    ]
    for ctx, err in errors:
        lines.append(f"📍 {ctx.label} Context:")
        lines.append(f"   • Error: ❌ {err}")
        lines.append("")
    lines.append("Note: Scripts containing raw public key hashes (P2PKH) or certain "
                 "non-miniscript constructs cannot be lifted.")
    return "\n".join(lines)


def lift_script(script: bytes) -> Tuple[ScriptContext, Miniscript]:
    return try_contexts(lambda ctx: Miniscript.from_script(script, ctx))


def lift_to_miniscript(bitcoin_script: str) -> LiftResult:
    """Decodes a hex script into miniscript."""
    text = bitcoin_script.strip()
    if not text:
        return LiftResult(success=False, error="Empty Bitcoin script")
    if not is_hex_str(text):
        return LiftResult(success=False, error="ASM parsing not implemented - please provide hex script")
    script = bytes.fromhex(text)
    _logger.debug(f"lifting script of {len(script)} bytes")
    try:
        ctx, ms = lift_script(script)
    except LiftFailed as e:
        return LiftResult(success=False, error=format_lift_error(e.errors))
    return LiftResult(success=True, miniscript=str(ms), context=ctx.label)


def _lift_policy(text: str, ctx: ScriptContext) -> str:
    try:
        ms = Miniscript.from_str(text, ctx)
    except (UserFacingException, BitcoinException) as e:
        raise ParseError(f"Miniscript parsing failed: {e}") from e
    try:
        return str(ms.lift())
    except (UserFacingException, BitcoinException) as e:
        raise ParseError(f"Policy lifting failed: {e}") from e


def lift_to_policy(miniscript: str) -> LiftResult:
    """Lifts a miniscript to its semantic policy."""
    text = miniscript.strip()
    if not text:
        return LiftResult(success=False, error="Empty miniscript")
    try:
        ctx, policy = try_contexts(lambda ctx: _lift_policy(text, ctx))
    except LiftFailed as e:
        lines = ["Failed to lift miniscript to policy:"]
        lines += [f"  {c.label} context: {err}" for c, err in e.errors]
        return LiftResult(success=False, error="\n".join(lines))
    return LiftResult(success=True, policy=policy, context=ctx.label)
