#!/usr/bin/env python
#
# Electrum - lightweight Bitcoin client
# Copyright (C) 2011 thomasv@gitorious
# Copyright (C) 2024 The Miniscope developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import argparse
import ast
import re
import sys
from functools import wraps
from typing import Dict, Optional

import attr

from .version import MINISCOPE_VERSION
from .util import UserFacingException, BitcoinException, ParseError
from .simple_config import SimpleConfig
from .analyzer import analyze_miniscript, analyze_policy
from .compiler import CompileOptions, compile_expression
from .lift import lift_to_miniscript, lift_to_policy
from .address import generate_address
from .descriptor_resolver import parse_descriptors, expand_descriptor, process_expression_descriptors
from .taproot import get_taproot_branches, get_taproot_branch_weights
from .logging import Logger


known_commands = {}  # type: Dict[str, Command]


class Command:
    def __init__(self, func, name, s):
        self.name = name
        self.requires_network = 'n' in s  # commands that honour --network
        self.parse_docstring(func.__doc__)
        varnames = func.__code__.co_varnames[1:func.__code__.co_argcount]
        self.defaults = func.__defaults__
        if self.defaults:
            n = len(self.defaults)
            self.params = list(varnames[:-n])
            self.options = list(varnames[-n:])
        else:
            self.params = list(varnames)
            self.options = []
            self.defaults = []

    def parse_docstring(self, docstring):
        docstring = docstring or ''
        docstring = docstring.strip()
        self.description = docstring
        self.arg_descriptions = {}
        self.arg_types = {}
        for x in re.finditer(r'arg:(.*?):(.*?):(.*)$', docstring, flags=re.MULTILINE):
            self.arg_descriptions[x.group(2)] = x.group(3)
            self.arg_types[x.group(2)] = x.group(1)
            self.description = self.description.replace(x.group(), '')
        self.short_description = self.description.split('.')[0]


def command(s):
    def decorator(func):
        name = func.__name__
        known_commands[name] = Command(func, name, s)

        @wraps(func)
        def func_wrapper(*args, **kwargs):
            cmd_runner = args[0]  # type: Commands
            cmd = known_commands[name]  # type: Command
            if cmd.requires_network and kwargs.get('network') is None:
                kwargs['network'] = cmd_runner.config.NETWORK
            return func(*args, **kwargs)
        return func_wrapper
    return decorator


def _as_dict(result) -> dict:
    if hasattr(result, 'to_dict'):
        return result.to_dict()
    return attr.asdict(result)


class Commands(Logger):

    def __init__(self, *, config: 'SimpleConfig'):
        Logger.__init__(self)
        self.config = config

    def _run(self, method, args=(), **kwargs):
        """Entry point for tests and the command line."""
        cmd = known_commands[method]
        f = getattr(self, method)
        kwargs = {k: v for k, v in kwargs.items() if k in cmd.options}
        return f(*args, **kwargs)

    @command('')
    def version(self):
        """Return the version of Miniscope."""
        return MINISCOPE_VERSION

    @command('n')
    def compile(self, expression, context='segwit', mode='default', policy=False, nums_key=None,
                verbose=False, network=None):
        """Compile a miniscript or a policy to a script and an address.

        arg:str:expression:Miniscript expression, or policy with --policy
        arg:str:context:Script context: legacy, segwit or taproot
        arg:str:mode:Taproot mode: default, single-leaf, multi-leaf or script-path
        arg:bool:policy:Treat the expression as a policy
        arg:str:nums_key:X-only internal key used instead of the NUMS point
        arg:bool:verbose:Include extended type properties
        arg:str:network:bitcoin, testnet, signet or regtest
        """
        try:
            options = CompileOptions(
                input_type='policy' if policy else 'miniscript',
                context=context,
                mode=mode,
                network=network,
                nums_key=nums_key or (self.config.NUMS_KEY if self.config.is_set('nums_key') else None),
                verbose_debug=verbose,
                child_index=self.config.DESCRIPTOR_CHILD_INDEX,
            )
        except ValueError as e:
            raise UserFacingException(str(e)) from e
        return _as_dict(compile_expression(expression, options))

    @command('')
    def analyze(self, expression, context='segwit', policy=False):
        """Describe the spending paths, keys, timelocks and risks of an expression.

        arg:str:expression:Miniscript expression, or policy with --policy
        arg:str:context:Script context of a miniscript: legacy, segwit or taproot
        arg:bool:policy:Treat the expression as a policy
        """
        kwargs = dict(
            display_limit=self.config.GROUP_DISPLAY_LIMIT,
            preview_count=self.config.GROUP_PREVIEW_COUNT,
            max_depth=self.config.MAX_RECURSION_DEPTH,
        )
        if policy:
            return _as_dict(analyze_policy(expression, **kwargs))
        return _as_dict(analyze_miniscript(expression, context, **kwargs))

    @command('')
    def lift(self, expression, to_policy=False):
        """Lift a hex script to miniscript, or a miniscript to a policy.

        arg:str:expression:Hex script, or miniscript with --to_policy
        arg:bool:to_policy:Lift a miniscript to its semantic policy
        """
        if to_policy:
            return _as_dict(lift_to_policy(expression))
        return _as_dict(lift_to_miniscript(expression))

    @command('n')
    def address(self, script, script_type='Segwit v0', internal_key=None, single_leaf=False, network=None):
        """Address of a script hex or a miniscript.

        arg:str:script:Script hex or miniscript expression
        arg:str:script_type:Legacy, Segwit v0 or Taproot
        arg:str:internal_key:Taproot internal key (the NUMS point selects script-path)
        arg:bool:single_leaf:Taproot single leaf under the NUMS point
        arg:str:network:bitcoin, testnet, signet or regtest
        """
        return _as_dict(generate_address(script, script_type, network, internal_key=internal_key,
                                         use_single_leaf=single_leaf))

    @command('')
    def resolve(self, expression, child_index=None, xonly=False):
        """Derive the keys of the HD key fragments in an expression.

        arg:str:expression:Policy or miniscript with xpub fragments
        arg:int:child_index:Index used for ranged fragments
        arg:bool:xonly:Output x-only keys
        """
        if child_index is None:
            child_index = self.config.DESCRIPTOR_CHILD_INDEX
        try:
            descriptors = parse_descriptors(expression)
            keys = {}
            for original, parsed in descriptors.items():
                key = expand_descriptor(parsed, child_index)
                keys[original] = key[2:] if xonly else key
            processed = process_expression_descriptors(expression, child_index=child_index, xonly=xonly)
        except (UserFacingException, BitcoinException) as e:
            return {'success': False, 'error': str(e)}
        return {
            'success': True,
            'keys': keys,
            'ranged': any(d.info.is_wildcard for d in descriptors.values()),
            'expression': processed,
        }

    @command('')
    def branches(self, descriptor, weights=False):
        """List the leaves of a tr() descriptor.

        arg:str:descriptor:Taproot descriptor
        arg:bool:weights:Show the witness weight of each leaf
        """
        try:
            if weights:
                internal_key, leaves = get_taproot_branch_weights(descriptor)
                return {'success': True, 'internal_key': internal_key,
                        'leaves': [attr.asdict(w) for w in leaves]}
            return {'success': True, 'branches': [attr.asdict(b) for b in get_taproot_branches(descriptor)]}
        except ParseError as e:
            return {'success': False, 'error': str(e)}


def eval_bool(x: str) -> bool:
    if x == 'false':
        return False
    if x == 'true':
        return True
    # assume python, raise if malformed
    return bool(ast.literal_eval(x))


arg_types = {
    'int': int,
    'bool': eval_bool,
    'str': str,
}


def add_global_options(parser, suppress=False):
    group = parser.add_argument_group('global options')
    group.add_argument(
        "-v", dest="verbosity", default=None,
        help=argparse.SUPPRESS if suppress else "Set verbosity (log levels)")
    group.add_argument(
        "-V", dest="verbosity_shortcuts", default=None,
        help=argparse.SUPPRESS if suppress else "Set verbosity (shortcut-filter list)")
    group.add_argument(
        "-D", "--dir", dest="miniscope_path",
        help=argparse.SUPPRESS if suppress else "miniscope directory")
    group.add_argument(
        "--index", dest=SimpleConfig.DESCRIPTOR_CHILD_INDEX.key(), type=int, default=None,
        help=argparse.SUPPRESS if suppress else "child index for ranged HD keys")


def get_parser():
    parser = argparse.ArgumentParser(
        epilog="Run 'run_miniscope <command> -h' to see the help for a command")
    parser.add_argument("--version", dest="cmd", action='store_const', const='version',
                        help="Return the version of Miniscope.")
    add_global_options(parser)
    subparsers = parser.add_subparsers(dest='cmd', metavar='<command>')
    for cmdname in sorted(known_commands.keys()):
        cmd = known_commands[cmdname]
        p = subparsers.add_parser(
            cmdname,
            description=cmd.description,
            help=cmd.short_description,
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="Run 'run_miniscope -h' to see the list of global options",
        )
        for optname, default in zip(cmd.options, cmd.defaults):
            help = cmd.arg_descriptions.get(optname)
            if not help:
                print(f'undocumented argument {cmdname}::{optname}', file=sys.stderr)
            if default is False:
                p.add_argument('--' + optname, dest=optname, action='store_true', default=default, help=help)
            else:
                _type = arg_types.get(cmd.arg_types.get(optname), str)
                p.add_argument('--' + optname, dest=optname, default=default, help=help, type=_type)
        add_global_options(p, suppress=True)
        for param in cmd.params:
            help = cmd.arg_descriptions.get(param)
            _type = arg_types.get(cmd.arg_types.get(param))
            p.add_argument(param, help=help, type=_type)
    return parser


def run_command(config_options: dict, *, config: Optional[SimpleConfig] = None):
    """Runs the command named by config_options['cmd'] and returns its result."""
    if config is None:
        config = SimpleConfig(config_options)
    cmdname = config_options['cmd']
    cmd = known_commands[cmdname]
    args = [config_options[x] for x in cmd.params]
    kwargs = {x: config_options.get(x) for x in cmd.options if x in config_options}
    # unset options fall back to the command's defaults
    kwargs = {k: v for k, v in kwargs.items() if v is not None}
    return Commands(config=config)._run(cmdname, args, **kwargs)
