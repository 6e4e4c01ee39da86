from .version import MINISCOPE_VERSION
from .util import (BitcoinException, UserFacingException, ParseError, KeyTypeMismatch,
                   DerivationError, UnsupportedPattern, AddressGenerationError)
from .simple_config import SimpleConfig
from .keys import ScriptContext
from .miniscript import Miniscript
from .policy import Policy
from .analyzer import analyze_miniscript, analyze_policy, PolicyAnalyzer
from .compiler import CompileOptions, CompilationResult, compile_expression, compile_policy, compile_miniscript
from .taproot import TaprootMode, compile_taproot, get_taproot_branches, get_taproot_branch_weights
from .lift import lift_to_miniscript, lift_to_policy
from .address import generate_address
from .commands import Commands, known_commands
from .logging import get_logger


__version__ = MINISCOPE_VERSION

_logger = get_logger(__name__)
