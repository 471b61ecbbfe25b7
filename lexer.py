from __future__ import annotations
import re
from dataclasses import dataclass
from typing import List, Optional


class APError(Exception):
    """Base class for interpreter errors."""

    kind = "Error"
    message = ""


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


class APParseError(APError):
    """Raised when the program structure is rejected before execution."""

    kind = "ParseError"

    def __init__(self, message: str, *, line: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.line = line


class APRuntimeError(APError):
    """Raised for runtime faults."""

    kind = "RuntimeError"

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class ExpressionError(APRuntimeError):
    """Raised when an expression cannot be tokenized, parsed or evaluated."""

    kind = "ExpressionError"


@dataclass
class Token:
    type: str
    value: str
    column: int


KEYWORDS = {
    "AND",
    "OR",
    "NOT",
    "MOD",
    "TRUE",
    "FALSE",
}

SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ",": "COMMA",
    "+": "PLUS",
    "-": "MINUS",
    "*": "STAR",
    "/": "SLASH",
    "%": "PERCENT",
}

# Two-character operators are matched before their one-character prefixes.
OPERATORS = {
    "<=": ("COMPARE", "<="),
    ">=": ("COMPARE", ">="),
    "!=": ("COMPARE", "!="),
    "<>": ("COMPARE", "!="),
    "==": ("COMPARE", "=="),
    "&&": ("AND", "AND"),
    "||": ("OR", "OR"),
    "<": ("COMPARE", "<"),
    ">": ("COMPARE", ">"),
    "=": ("COMPARE", "=="),
    "!": ("NOT", "NOT"),
}

GLYPHS = {
    "≤": "<=",
    "≥": ">=",
    "≠": "!=",
    "“": '"',
    "”": '"',
    "‘": "'",
    "’": "'",
}

ALLOWED_CHARACTERS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_"
    " \t"
    "+-*/%().,<>!=&|[]\"'"
)

ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}

EXPONENT = re.compile(r"[eE][+-]?\d+")


def normalize_expression(text: str) -> str:
    for glyph, canonical in GLYPHS.items():
        text = text.replace(glyph, canonical)
    return text


def check_whitelist(text: str) -> None:
    """Reject characters outside the expression alphabet.

    Quoted string contents are data and are not checked.
    """
    quote: Optional[str] = None
    escaped = False
    for index, ch in enumerate(text):
        if quote is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
            continue
        if ch not in ALLOWED_CHARACTERS:
            raise ExpressionError(
                f"Invalid character '{ch}' in expression at column {index + 1}",
                rule="WHITELIST",
            )


class Lexer:
    def __init__(self, text: str) -> None:
        self.text = normalize_expression(text)
        self.index = 0

    def tokenize(self) -> List[Token]:
        check_whitelist(self.text)
        tokens: List[Token] = []
        tokens_append = tokens.append
        text = self.text
        n = len(text)

        while self.index < n:
            ch = text[self.index]
            column = self.index + 1
            if ch == " " or ch == "\t":
                self.index += 1
                continue
            if ch in ('"', "'"):
                tokens_append(self._consume_string())
                continue
            if ch.isdigit() or (ch == "." and self.index + 1 < n and text[self.index + 1].isdigit()):
                tokens_append(self._consume_number())
                continue
            if ch.isalpha() or ch == "_":
                tokens_append(self._consume_identifier())
                continue
            pair = text[self.index:self.index + 2]
            if pair in OPERATORS:
                token_type, value = OPERATORS[pair]
                tokens_append(Token(token_type, value, column))
                self.index += 2
                continue
            if ch in OPERATORS:
                token_type, value = OPERATORS[ch]
                tokens_append(Token(token_type, value, column))
                self.index += 1
                continue
            if ch in SYMBOLS:
                tokens_append(Token(SYMBOLS[ch], ch, column))
                self.index += 1
                continue
            raise ExpressionError(f"Unexpected character '{ch}' at column {column}", rule="LEX")
        tokens_append(Token("EOF", "", n + 1))
        return tokens

    def _consume_string(self) -> Token:
        column = self.index + 1
        opening = self.text[self.index]
        self.index += 1
        chars: List[str] = []
        while self.index < len(self.text):
            ch = self.text[self.index]
            if ch == "\\" and self.index + 1 < len(self.text):
                nxt = self.text[self.index + 1]
                chars.append(ESCAPES.get(nxt, "\\" + nxt))
                self.index += 2
                continue
            if ch == opening:
                self.index += 1
                return Token("STRING", "".join(chars), column)
            chars.append(ch)
            self.index += 1
        raise ExpressionError(f"Unterminated string literal at column {column}", rule="LEX")

    def _consume_number(self) -> Token:
        column = self.index + 1
        text = self.text
        start = self.index
        while self.index < len(text) and text[self.index].isdigit():
            self.index += 1
        if self.index < len(text) and text[self.index] == ".":
            self.index += 1
            while self.index < len(text) and text[self.index].isdigit():
                self.index += 1
        exponent = EXPONENT.match(text, self.index)
        if exponent:
            self.index = exponent.end()
        return Token("NUMBER", text[start:self.index], column)

    def _consume_identifier(self) -> Token:
        column = self.index + 1
        text = self.text
        start = self.index
        while self.index < len(text) and (text[self.index].isalnum() or text[self.index] == "_"):
            self.index += 1
        value = text[start:self.index]
        upper = value.upper()
        if upper in KEYWORDS:
            return Token(upper, upper, column)
        return Token("IDENT", value, column)
