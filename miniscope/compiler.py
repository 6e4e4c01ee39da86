# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Compiles a policy or miniscript to a script and an address.

Legacy compiles to P2SH, Segwit v0 to P2WSH, and Taproot goes through
the taproot module with one of its compilation modes.
"""

import re
from enum import Enum
from typing import Optional, Type

import attr

from . import constants
from .bitcoin import (script_to_asm, script_to_p2sh, script_to_p2wsh, var_int_size,
                      push_opcode_size, MAX_SCRIPT_ELEMENT_SIZE)
from .constants import AbstractNet
from .descriptor import parse_descriptor, is_descriptor
from .descriptor_resolver import (contains_descriptor, parse_descriptors,
                                  replace_descriptors_with_keys, process_expression_descriptors)
from .keys import ScriptContext
from .miniscript import Miniscript
from .policy import Policy
from .taproot import TaprootMode, compile_taproot
from .util import ParseError, DerivationError, KeyTypeMismatch, UserFacingException, BitcoinException
from .logging import Logger, get_logger


_logger = get_logger(__name__)

NO_SINGLE_SCRIPT = "No single script - this descriptor defines multiple paths"
TYPE_LEGEND = ("[B/onduesm] = B:Base o:one-arg n:non-zero d:dissatisfiable u:unit e:expression "
               "s:safe m:has-max-size | [V/...] = V:Verify | [z/...] = z:zero-arg | [f/...] = f:forced")

_XONLY_KEY_RE = re.compile(r"\b[a-fA-F0-9]{64}\b")
_COMPRESSED_KEY_RE = re.compile(r"\b(02|03)[a-fA-F0-9]{64}\b")
_RANGE_MARKERS = ("/*", "/<")


class InputType(Enum):
    POLICY = 'policy'
    MINISCRIPT = 'miniscript'

    @classmethod
    def from_str(cls, name: str) -> 'InputType':
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid input type: {name}. Use 'policy' or 'miniscript'") from None


class CompileContext(Enum):
    LEGACY = 'legacy'
    SEGWIT = 'segwit'
    TAPROOT = 'taproot'

    @classmethod
    def from_str(cls, name: str) -> 'CompileContext':
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid context: {name}. Use 'legacy', 'segwit', or 'taproot'") from None

    @property
    def script_context(self) -> ScriptContext:
        return {
            CompileContext.LEGACY: ScriptContext.LEGACY,
            CompileContext.SEGWIT: ScriptContext.SEGWITV0,
            CompileContext.TAPROOT: ScriptContext.TAP,
        }[self]


class CompileMode(Enum):
    DEFAULT = 'default'
    SINGLE_LEAF = 'single-leaf'
    MULTI_LEAF = 'multi-leaf'
    SCRIPT_PATH = 'script-path'

    @classmethod
    def from_str(cls, name: Optional[str]) -> 'CompileMode':
        key = (name or 'default').strip().lower().replace('_', '-')
        try:
            return cls(key or 'default')
        except ValueError:
            raise ValueError(f"Invalid mode: {name}") from None

    def taproot_mode(self, input_type: InputType) -> TaprootMode:
        if self == CompileMode.DEFAULT:
            # policies keep a key path, raw miniscripts get a single NUMS leaf
            if input_type == InputType.POLICY:
                return TaprootMode.MULTI_LEAF
            return TaprootMode.SINGLE_LEAF
        return TaprootMode(self.value)


def _convert(enum_cls):
    def convert(value):
        if isinstance(value, enum_cls):
            return value
        return enum_cls.from_str(value)
    return convert


def _check_network(instance, attribute, value):
    constants.net_from_name(value)


@attr.s(frozen=True, kw_only=True)
class CompileOptions:
    input_type = attr.ib(default=InputType.MINISCRIPT, converter=_convert(InputType))
    context = attr.ib(default=CompileContext.SEGWIT, converter=_convert(CompileContext))
    mode = attr.ib(default=CompileMode.DEFAULT, converter=_convert(CompileMode))
    network = attr.ib(default='bitcoin', validator=_check_network)  # type: str
    nums_key = attr.ib(default=None)  # type: Optional[str]
    verbose_debug = attr.ib(default=False)  # type: bool
    child_index = attr.ib(default=0)  # type: int

    @classmethod
    def for_policy(cls, context: str, mode: str = None, network: str = None, **kwargs) -> 'CompileOptions':
        return cls(input_type=InputType.POLICY, context=context, mode=mode,
                   network=network or 'bitcoin', **kwargs)

    @classmethod
    def for_miniscript(cls, context: str, mode: str = None, nums_key: str = None,
                       network: str = None, **kwargs) -> 'CompileOptions':
        return cls(input_type=InputType.MINISCRIPT, context=context, mode=mode,
                   nums_key=nums_key or None, network=network or 'bitcoin', **kwargs)

    def get_network(self) -> Type[AbstractNet]:
        return constants.net_from_name(self.network)


@attr.s(frozen=True, kw_only=True)
class CompilationResult:
    success = attr.ib(type=bool)
    error = attr.ib(type=Optional[str], default=None)
    script_hex = attr.ib(type=Optional[str], default=None)
    script_asm = attr.ib(type=Optional[str], default=None)
    address = attr.ib(type=Optional[str], default=None)
    script_size = attr.ib(type=Optional[int], default=None)
    miniscript_type = attr.ib(type=Optional[str], default=None)
    compiled_miniscript = attr.ib(type=Optional[str], default=None)
    descriptor = attr.ib(type=Optional[str], default=None)
    max_satisfaction_size = attr.ib(type=Optional[int], default=None)
    max_weight_to_satisfy = attr.ib(type=Optional[int], default=None)
    sanity_check = attr.ib(type=Optional[bool], default=None)
    is_non_malleable = attr.ib(type=Optional[bool], default=None)
    leaves = attr.ib(type=Optional[tuple], default=None)
    debug_info = attr.ib(type=Optional[dict], default=None)

    def to_dict(self) -> dict:
        return attr.asdict(self)


def legacy_max_weight(ms: Miniscript) -> Optional[int]:
    """Weight of the scriptSig of a P2SH spend: the satisfaction plus
    the push of the redeem script, with its length prefix."""
    sat_size = ms.max_satisfaction_size()
    if sat_size is None:
        return None
    script_size = ms.script_size()
    scriptsig_size = sat_size + push_opcode_size(script_size) + script_size
    return 4 * (var_int_size(scriptsig_size) + scriptsig_size)


def segwit_max_weight(ms: Miniscript) -> Optional[int]:
    """Witness weight of a P2WSH spend, witness script included."""
    sat_size = ms.max_satisfaction_size()
    elements = ms.max_satisfaction_witness_elements()
    if sat_size is None or elements is None:
        return None
    script_size = ms.script_size()
    return var_int_size(script_size) + script_size + var_int_size(elements) + sat_size


def _without_hd_keys(expression: str) -> str:
    try:
        descriptors = parse_descriptors(expression)
    except (ParseError, DerivationError) as e:
        # the compile step reports it
        _logger.debug(f"key type check: HD fragments not resolved: {e}")
        return expression
    for original in sorted(descriptors, key=len, reverse=True):
        expression = expression.replace(original, "_")
    return expression


def check_key_types(expression: str, ctx: CompileContext) -> None:
    """Rejects keys of the wrong width before parsing, with a clear message.
    HD key fragments are left out of the check."""
    expression = _without_hd_keys(expression)
    if ctx == CompileContext.TAPROOT:
        if _COMPRESSED_KEY_RE.search(expression):
            raise KeyTypeMismatch("Taproot context requires x-only keys (64 characters). "
                                  "Found compressed key (66 characters starting with 02/03).")
        return
    for m in _XONLY_KEY_RE.finditer(expression):
        if expression[:m.start()].endswith(("sha256(", "hash256(")):
            continue
        label = "Legacy" if ctx == CompileContext.LEGACY else "Segwit v0"
        raise KeyTypeMismatch(f"{label} context requires compressed public keys (66 characters "
                              f"starting with 02/03). Found x-only key (64 characters).")


def _parse_error_hint(e: Exception, ctx: CompileContext) -> str:
    msg = str(e)
    if ctx == CompileContext.TAPROOT:
        if "malformed public key" in msg:
            return (f"Miniscript parsing failed: {msg}. Note: You may be using a compressed public key "
                    f"(66 characters with 02/03 prefix) which is for Legacy/Segwit contexts. Taproot requires "
                    f"X-only public keys (64 characters, no prefix). Please check your compile context selection.")
        return f"Miniscript parsing failed: {msg}"
    label = "Legacy" if ctx == CompileContext.LEGACY else "Segwit v0"
    if "pubkey string should be 66 or 130" in msg and "got: 64" in msg:
        return (f"{label} parsing failed: {msg}. Note: You may be using an X-only key (64 characters) "
                f"which is for Taproot context. {label} requires compressed public keys (66 characters).")
    return f"{label} parsing failed: {msg}"


def debug_info(ms: Miniscript, *, verbose: bool) -> dict:
    info = {
        'annotated_expression': f"{ms} [{ms.type_string()}]",
        'type_legend': TYPE_LEGEND,
        'type_properties': ms.debug_properties(),
    }
    if verbose:
        info['extended_properties'] = {
            'has_mixed_timelocks': ms.has_mixed_timelocks(),
            'has_repeated_keys': ms.has_repeated_keys(),
            'requires_sig': ms.requires_sig(),
            'within_resource_limits': ms.within_resource_limits(),
            'pk_cost': ms.pk_cost(),
            'ops_count_static': ms.ops_count(),
            'stack_elements_sat': ms.max_satisfaction_witness_elements(),
        }
    return info


class Compiler(Logger):

    LOGGING_SHORTCUT = 'C'

    def __init__(self, options: CompileOptions):
        self.options = options
        self.ctx = options.context
        self.net = options.get_network()
        Logger.__init__(self)

    def diagnostic_name(self):
        return self.options.context.value

    def _network_for(self, text: str) -> Type[AbstractNet]:
        if "tpub" in text and not self.net.TESTNET:
            self.logger.debug("tpub key found, switching to testnet")
            return constants.BitcoinTestnet
        return self.net

    def compile(self, expression: str) -> CompilationResult:
        if self.options.input_type == InputType.POLICY:
            return self.compile_policy(expression)
        return self.compile_miniscript(expression)

    # --- miniscript

    def compile_miniscript(self, expression: str) -> CompilationResult:
        text = expression.strip()
        if not text:
            raise ParseError("Empty expression - please enter a miniscript")
        net = self._network_for(text)
        if self.ctx == CompileContext.TAPROOT:
            return self.compile_taproot(text, self.options.mode.taproot_mode(InputType.MINISCRIPT), net=net)
        processed = text
        if contains_descriptor(text):
            try:
                processed = process_expression_descriptors(text, child_index=self.options.child_index)
            except (UserFacingException, BitcoinException) as e:
                raise ParseError(f"Descriptor processing failed: {e}") from e
            if self.ctx == CompileContext.LEGACY and processed.startswith("wsh("):
                processed = "sh(" + processed[4:]
        if is_descriptor(processed):
            return self.compile_descriptor(processed)
        try:
            ms = Miniscript.from_str(processed, self.ctx.script_context)
        except ParseError as e:
            raise ParseError(_parse_error_hint(e, self.ctx)) from e
        return self.script_result(ms, net=net)

    def script_result(self, ms: Miniscript, *, net) -> CompilationResult:
        script = ms.encode()
        if self.ctx == CompileContext.LEGACY:
            address = script_to_p2sh(script, net=net) if len(script) <= MAX_SCRIPT_ELEMENT_SIZE else None
            weight = legacy_max_weight(ms)
            max_sat = weight // 4 if weight is not None else None
            ms_type = "Legacy"
        else:
            address = script_to_p2wsh(script, net=net)
            weight = segwit_max_weight(ms)
            max_sat = weight
            ms_type = "Segwit v0"
        self.logger.debug(f"compiled {ms_type} script of {len(script)} bytes")
        return CompilationResult(
            success=True,
            script_hex=script.hex(),
            script_asm=script_to_asm(script),
            address=address,
            script_size=len(script),
            miniscript_type=ms_type,
            compiled_miniscript=str(ms),
            max_satisfaction_size=max_sat,
            max_weight_to_satisfy=weight,
            sanity_check=ms.is_sane(),
            is_non_malleable=ms.is_non_malleable(),
            debug_info=debug_info(ms, verbose=self.options.verbose_debug),
        )

    def compile_descriptor(self, text: str) -> CompilationResult:
        """Validates a ranged descriptor; there is no single script to show."""
        try:
            desc = parse_descriptor(text)
            desc.expand(pos=0 if desc.is_range() else None)
        except (UserFacingException, BitcoinException) as e:
            raise ParseError(f"Descriptor parsing failed: {e}") from e
        desc_str = desc.to_string()
        self.logger.debug(f"ranged descriptor {desc_str}")
        return CompilationResult(
            success=True,
            script_hex=NO_SINGLE_SCRIPT,
            script_asm=NO_SINGLE_SCRIPT,
            script_size=0,
            miniscript_type="Descriptor",
            compiled_miniscript=f"Valid descriptor: {desc_str}",
            descriptor=desc_str,
        )

    def compile_taproot(self, text: str, mode: TaprootMode, *, net) -> CompilationResult:
        try:
            comp = compile_taproot(text, mode, nums_key=self.options.nums_key, net=net,
                                   child_index=self.options.child_index)
        except ParseError as e:
            raise ParseError(_parse_error_hint(e, CompileContext.TAPROOT)) from e
        ms = comp.miniscript
        max_sat = comp.max_satisfaction_size
        self.logger.debug(f"taproot {mode.value} address {comp.address}")
        return CompilationResult(
            success=True,
            script_hex=comp.output_script.hex(),
            script_asm=script_to_asm(comp.output_script),
            address=comp.address,
            script_size=len(comp.output_script),
            miniscript_type="Taproot",
            compiled_miniscript=comp.descriptor,
            descriptor=comp.descriptor,
            max_satisfaction_size=max_sat,
            max_weight_to_satisfy=max_sat,
            sanity_check=ms.is_sane(),
            is_non_malleable=ms.is_non_malleable(),
            leaves=comp.leaves,
            debug_info=debug_info(ms, verbose=self.options.verbose_debug),
        )

    # --- policy

    def compile_policy(self, expression: str) -> CompilationResult:
        text = expression.strip()
        if not text:
            raise ParseError("Empty policy - please enter a policy expression")
        check_key_types(text, self.ctx)
        net = self._network_for(text)
        sc = self.ctx.script_context
        if contains_descriptor(text):
            if any(marker in text for marker in _RANGE_MARKERS):
                return self.compile_ranged_policy(text)
            try:
                text = replace_descriptors_with_keys(text, parse_descriptors(text),
                                                     child_index=self.options.child_index, xonly=sc.is_tap)
            except (UserFacingException, BitcoinException) as e:
                raise ParseError(f"Descriptor processing failed: {e}") from e
        try:
            policy = Policy.from_str(text, ctx=sc, strict=True)
        except ParseError as e:
            raise ParseError(f"Policy parsing failed: {e}") from e
        ms = self._compile_policy(policy)
        if self.ctx == CompileContext.TAPROOT:
            result = self.compile_taproot(str(ms), self.options.mode.taproot_mode(InputType.POLICY), net=net)
            return attr.evolve(result, compiled_miniscript=str(ms))
        return self.script_result(ms, net=net)

    def _compile_policy(self, policy: Policy) -> Miniscript:
        try:
            return policy.compile(self.ctx.script_context)
        except ParseError as e:
            if self.ctx == CompileContext.TAPROOT:
                raise ParseError(f"Failed to compile policy: {e}") from e
            label = "Legacy" if self.ctx == CompileContext.LEGACY else "Segwit v0"
            raise ParseError(f"Policy compilation failed for {label}: {e}") from e

    def compile_ranged_policy(self, text: str) -> CompilationResult:
        """A policy over ranged keys compiles to a descriptor, not a script."""
        sc = self.ctx.script_context
        try:
            policy = Policy.from_str(text, ctx=sc, strict=False)
        except ParseError as e:
            raise ParseError(f"Invalid policy with descriptors: {e}") from e
        ms = self._compile_policy(policy)
        if self.ctx == CompileContext.TAPROOT:
            nums_key = self.options.nums_key or constants.NUMS_POINT
            desc_text = f"tr({nums_key},{ms})"
        elif self.ctx == CompileContext.LEGACY:
            desc_text = f"sh({ms})"
        else:
            desc_text = f"wsh({ms})"
        try:
            result = self.compile_descriptor(desc_text)
        except ParseError as e:
            raise ParseError(f"Invalid descriptor: {e}") from e
        return attr.evolve(result, compiled_miniscript=str(ms))


def compile_expression(expression: str, options: Optional[CompileOptions] = None) -> CompilationResult:
    """Compiles a policy or miniscript; errors come back in the result."""
    if options is None:
        options = CompileOptions()
    try:
        return Compiler(options).compile(expression)
    except (UserFacingException, BitcoinException) as e:
        _logger.debug(f"compilation failed: {e}")
        return CompilationResult(success=False, error=str(e))


def compile_policy(policy: str, context: str, mode: str = None, network: str = None) -> CompilationResult:
    try:
        options = CompileOptions.for_policy(context, mode, network)
    except ValueError as e:
        return CompilationResult(success=False, error=str(e))
    return compile_expression(policy, options)


def compile_miniscript(expression: str, context: str, mode: str = None, nums_key: str = None,
                       network: str = None) -> CompilationResult:
    try:
        options = CompileOptions.for_miniscript(context, mode, nums_key, network)
    except ValueError as e:
        return CompilationResult(success=False, error=str(e))
    return compile_expression(expression, options)
