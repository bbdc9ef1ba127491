# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

"""
Parser for the ApiRun script language.

A script is a sequence of statements, one per line:

    let total = len(body.items)
    set userId = body.id
    unset tempToken
    assert status == 200, "unexpected status"
    log "created user", body.id
    test "has an id", body.id exists

Brackets may span several lines and '#' starts a comment. The parser
only builds a tree of tuples; evaluation lives in script_sandbox.py.
"""

import re
from collections import namedtuple

from .models import ScriptError

STATEMENT_KEYWORDS = ('let', 'set', 'unset', 'assert', 'log', 'test')
RESERVED = STATEMENT_KEYWORDS + (
    'and', 'or', 'not', 'in', 'is', 'exists', 'contains', 'conforms',
    'true', 'false', 'null',
)
TYPE_NAMES = ('string', 'number', 'boolean', 'array', 'object', 'null')
COMPARISON_OPS = ('==', '!=', '<', '<=', '>', '>=')
WORD_OPS = ('in', 'contains', 'conforms')

MAX_NESTING = 64

Token = namedtuple('Token', 'kind value pos')
Statement = namedtuple('Statement', 'kind line target exprs')

TOKEN_REGEX = re.compile(r"""
    (?P<ws>\s+)
  | (?P<num>\d+\.\d+|\d+)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|<=|>=|[<>+\-*/()\[\]{},.:=])
  | (?P<str>["'])
""", re.VERBOSE)

ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', '\\': '\\', '"': '"', "'": "'"}


def iter_statements(source):
    """
    Splits a script into logical lines.
    Yields (line_number, text) with comments removed; blank lines are skipped.
    """
    line_no = 1
    start_line = 1
    depth = 0
    quote = None
    buf = []
    i = 0
    n = len(source or '')

    while i < n:
        ch = source[i]
        if ch == '\n':
            # A string never continues past the end of its line.
            quote = None
            if depth and _starts_statement(source, i + 1):
                # Unclosed bracket: the next statement starts anyway.
                depth = 0
            if depth == 0:
                text = ''.join(buf).strip()
                if text:
                    yield start_line, text
                buf = []
            else:
                buf.append(' ')
            line_no += 1
            if not ''.join(buf).strip():
                start_line = line_no
        elif quote:
            buf.append(ch)
            if ch == '\\' and i + 1 < n and source[i + 1] != '\n':
                buf.append(source[i + 1])
                i += 1
            elif ch == quote:
                quote = None
        elif ch in '"\'':
            quote = ch
            buf.append(ch)
        elif ch == '#':
            while i + 1 < n and source[i + 1] != '\n':
                i += 1
        elif ch in '([{':
            depth += 1
            buf.append(ch)
        elif ch in ')]}':
            depth = max(depth - 1, 0)
            buf.append(ch)
        else:
            buf.append(ch)
        i += 1

    text = ''.join(buf).strip()
    if text:
        yield start_line, text


STATEMENT_START_RE = re.compile(r"[ \t]*(%s)\b" % '|'.join(STATEMENT_KEYWORDS))


def _starts_statement(source, pos):
    return STATEMENT_START_RE.match(source, pos) is not None


def tokenize(text, line):
    tokens = []
    pos = 0
    while pos < len(text):
        match = TOKEN_REGEX.match(text, pos)
        if not match:
            raise ScriptError(f"unexpected character {text[pos]!r}", line=line)
        kind = match.lastgroup
        if kind == 'ws':
            pos = match.end()
        elif kind == 'str':
            value, pos = _read_string(text, match.start(), line)
            tokens.append(Token('str', value, match.start()))
        elif kind == 'num':
            raw = match.group()
            try:
                value = float(raw) if '.' in raw else int(raw)
            except ValueError:
                raise ScriptError(f"number literal too long ({len(raw)} digits)", line=line)
            tokens.append(Token('num', value, pos))
            pos = match.end()
        else:
            tokens.append(Token(kind, match.group(), pos))
            pos = match.end()
    tokens.append(Token('eof', None, len(text)))
    return tokens


def _read_string(text, start, line):
    quote = text[start]
    chars = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == '\\' and i + 1 < len(text):
            chars.append(ESCAPES.get(text[i + 1], text[i + 1]))
            i += 2
            continue
        if ch == quote:
            return ''.join(chars), i + 1
        chars.append(ch)
        i += 1
    raise ScriptError("unterminated string", line=line)


class Parser:
    """Recursive-descent parser for a single logical line."""

    def __init__(self, text, line):
        self.line = line
        self.tokens = tokenize(text, line)
        self.index = 0
        self.depth = 0

    # --- token helpers ---

    @property
    def current(self):
        return self.tokens[self.index]

    def error(self, message):
        return ScriptError(message, line=self.line)

    def at(self, kind, value=None):
        tok = self.current
        return tok.kind == kind and (value is None or tok.value == value)

    def at_word(self, *words):
        return self.current.kind == 'name' and self.current.value in words

    def advance(self):
        tok = self.current
        self.index += 1
        return tok

    def expect(self, kind, value=None):
        if not self.at(kind, value):
            found = self.current.value if self.current.kind != 'eof' else 'end of line'
            raise self.error(f"expected {value or kind}, found {found!r}")
        return self.advance()

    def expect_identifier(self):
        tok = self.expect('name')
        if tok.value in RESERVED:
            raise self.error(f"'{tok.value}' is a reserved word")
        return tok.value

    # --- statements ---

    def parse_statement(self):
        if not self.at('name') or self.current.value not in STATEMENT_KEYWORDS:
            found = self.current.value if self.current.kind != 'eof' else ''
            raise self.error(f"unknown statement {found!r}")
        keyword = self.advance().value
        target = None
        exprs = []

        if keyword in ('let', 'set'):
            target = self.expect_identifier()
            self.expect('op', '=')
            exprs.append(self.parse_expression())
        elif keyword == 'unset':
            target = self.expect_identifier()
        elif keyword == 'assert':
            exprs.append(self.parse_expression())
            if self.at('op', ','):
                self.advance()
                exprs.append(self.parse_expression())
        elif keyword == 'log':
            exprs.append(self.parse_expression())
            while self.at('op', ','):
                self.advance()
                exprs.append(self.parse_expression())
        elif keyword == 'test':
            exprs.append(self.parse_expression())
            self.expect('op', ',')
            exprs.append(self.parse_expression())

        if not self.at('eof'):
            raise self.error(f"unexpected {self.current.value!r} after statement")
        return Statement(keyword, self.line, target, tuple(exprs))

    # --- expressions, lowest precedence first ---

    def enter(self):
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise self.error("expression nested too deeply")

    def parse_expression(self):
        self.enter()
        try:
            return self.parse_or()
        finally:
            self.depth -= 1

    def parse_or(self):
        node = self.parse_and()
        while self.at_word('or'):
            self.advance()
            node = ('or', node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_not()
        while self.at_word('and'):
            self.advance()
            node = ('and', node, self.parse_not())
        return node

    def parse_not(self):
        if self.at_word('not'):
            self.advance()
            self.enter()
            try:
                return ('not', self.parse_not())
            finally:
                self.depth -= 1
        return self.parse_comparison()

    def parse_comparison(self):
        node = self.parse_additive()
        if self.at('op') and self.current.value in COMPARISON_OPS:
            op = self.advance().value
            return ('binop', op, node, self.parse_additive())
        if self.at_word(*WORD_OPS):
            op = self.advance().value
            return ('binop', op, node, self.parse_additive())
        if self.at_word('exists'):
            self.advance()
            return ('exists', node)
        if self.at_word('is'):
            self.advance()
            negate = False
            if self.at_word('not'):
                self.advance()
                negate = True
            type_name = self.expect('name').value
            if type_name not in TYPE_NAMES:
                raise self.error(f"unknown type {type_name!r}")
            return ('is', node, type_name, negate)
        return node

    def parse_additive(self):
        node = self.parse_multiplicative()
        while self.at('op', '+') or self.at('op', '-'):
            op = self.advance().value
            node = ('binop', op, node, self.parse_multiplicative())
        return node

    def parse_multiplicative(self):
        node = self.parse_unary()
        while self.at('op', '*') or self.at('op', '/'):
            op = self.advance().value
            node = ('binop', op, node, self.parse_unary())
        return node

    def parse_unary(self):
        if self.at('op', '-'):
            self.advance()
            self.enter()
            try:
                return ('neg', self.parse_unary())
            finally:
                self.depth -= 1
        return self.parse_postfix()

    def parse_postfix(self):
        node = self.parse_primary()
        while True:
            if self.at('op', '.'):
                self.advance()
                name = self.expect('name').value
                node = ('attr', node, name)
            elif self.at('op', '['):
                self.advance()
                index = self.parse_expression()
                self.expect('op', ']')
                node = ('index', node, index)
            elif self.at('op', '('):
                if node[0] != 'name':
                    raise self.error("only builtin functions can be called")
                node = ('call', node[1], self.parse_arguments())
            else:
                return node

    def parse_arguments(self):
        self.expect('op', '(')
        args = []
        if not self.at('op', ')'):
            args.append(self.parse_expression())
            while self.at('op', ','):
                self.advance()
                args.append(self.parse_expression())
        self.expect('op', ')')
        return tuple(args)

    def parse_primary(self):
        tok = self.current
        if tok.kind in ('num', 'str'):
            self.advance()
            return ('lit', tok.value)
        if tok.kind == 'name':
            self.advance()
            if tok.value == 'true':
                return ('lit', True)
            if tok.value == 'false':
                return ('lit', False)
            if tok.value == 'null':
                return ('lit', None)
            if tok.value in RESERVED:
                raise self.error(f"unexpected {tok.value!r}")
            return ('name', tok.value)
        if self.at('op', '('):
            self.advance()
            node = self.parse_expression()
            self.expect('op', ')')
            return node
        if self.at('op', '['):
            return self.parse_list()
        if self.at('op', '{'):
            return self.parse_object()
        found = tok.value if tok.kind != 'eof' else 'end of line'
        raise self.error(f"unexpected {found!r}")

    def parse_list(self):
        self.expect('op', '[')
        items = []
        if not self.at('op', ']'):
            items.append(self.parse_expression())
            while self.at('op', ','):
                self.advance()
                if self.at('op', ']'):
                    break
                items.append(self.parse_expression())
        self.expect('op', ']')
        return ('list', tuple(items))

    def parse_object(self):
        self.expect('op', '{')
        pairs = []
        while not self.at('op', '}'):
            if self.at('str') or self.at('name'):
                key = self.advance().value
            else:
                raise self.error("object keys must be names or strings")
            self.expect('op', ':')
            pairs.append((key, self.parse_expression()))
            if not self.at('op', ','):
                break
            self.advance()
        self.expect('op', '}')
        return ('object', tuple(pairs))


def parse_statement(text, line=1):
    return Parser(text, line).parse_statement()


def parse_script(source):
    """Parses a whole script, raising ScriptError on the first invalid line."""
    return [parse_statement(text, line) for line, text in iter_statements(source)]
