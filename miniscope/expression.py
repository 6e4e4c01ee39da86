# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Function-call expression trees, e.g. ``and_v(v:pk(A),older(144))``.

Shared by the miniscript and the policy parsers.
"""

from typing import List, NamedTuple, Tuple

from .util import ParseError


# nesting limit, mirrors the one of the reference miniscript implementation
MAX_RECURSION_DEPTH = 402


class Tree(NamedTuple):
    name: str
    args: Tuple['Tree', ...]

    def is_terminal(self) -> bool:
        return len(self.args) == 0

    def terminal(self, what: str) -> str:
        if self.args:
            raise ParseError(f"expected a terminal for {what}, got {self.name}(...)")
        return self.name

    def to_string(self) -> str:
        if not self.args:
            return self.name
        return "{}({})".format(self.name, ",".join(arg.to_string() for arg in self.args))


def parse_tree(s: str) -> Tree:
    s = "".join(s.split())
    if not s:
        raise ParseError("empty expression")
    tree, pos = _parse_at(s, 0, 0)
    if pos != len(s):
        raise ParseError(f"unexpected character {s[pos]!r} at position {pos}")
    return tree


def _parse_at(s: str, pos: int, depth: int) -> Tuple[Tree, int]:
    if depth > MAX_RECURSION_DEPTH:
        raise ParseError("expression nesting exceeds the maximum recursion depth")
    start = pos
    while pos < len(s) and s[pos] not in "(),":
        pos += 1
    name = s[start:pos]
    if pos >= len(s) or s[pos] != "(":
        if not name:
            raise ParseError(f"expected an expression at position {start}")
        return Tree(name, ()), pos
    if not name:
        raise ParseError(f"missing function name at position {start}")
    args = []  # type: List[Tree]
    pos += 1
    while True:
        arg, pos = _parse_at(s, pos, depth + 1)
        args.append(arg)
        if pos >= len(s):
            raise ParseError(f"unclosed parenthesis in {name}(")
        if s[pos] == ",":
            pos += 1
            continue
        if s[pos] == ")":
            pos += 1
            break
        raise ParseError(f"unexpected character {s[pos]!r} at position {pos}")
    return Tree(name, tuple(args)), pos
