from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional


class MetalError(Exception):
    """Base class for interpreter errors."""


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str = ""


class MetalParseError(MetalError):
    """Raised when parsing fails."""

    def __init__(self, message: str, *, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location

    def __str__(self) -> str:
        if self.location is None:
            return self.message
        return f"{self.message} at {self.location.file}:{self.location.line}:{self.location.column}"


class MetalSyntaxError(MetalParseError):
    """Raised on grammar violations."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


# Whole-word keywords. Identifiers may contain them (``left_until``) but may
# not be equal to one.
KEYWORDS = {
    "space",
    "read",
    "True",
    "False",
    "not",
    "and",
    "or",
    "left",
    "right",
    "write",
    "reject",
    "accept",
    "let",
    "if",
    "else",
    "while",
    "call",
    "print",
    "func",
    "proc",
    "import",
}

SYMBOLS = {
    "{": "LBRACE",
    "}": "RBRACE",
    "(": "LPAREN",
    ")": "RPAREN",
    ":": "COLON",
}

OPERATORS = {
    "==": "EQ",
    "<=": "LE",
    "!=": "NE",
}


def keyword_type(word: str) -> str:
    return word.upper()


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in " \t\r":
                _advance()
                continue
            if ch == "\n":
                tokens_append(Token("NEWLINE", "\n", self.line, self.column))
                _advance()
                continue
            if text.startswith("//", self.index):
                self._consume_line_comment()
                continue
            if text.startswith("/*", self.index):
                self._consume_block_comment()
                continue
            two = text[self.index:self.index + 2]
            if two in OPERATORS:
                tokens_append(Token(OPERATORS[two], two, self.line, self.column))
                _advance()
                _advance()
                continue
            if ch == "=":
                tokens_append(Token("EQUALS", ch, self.line, self.column))
                _advance()
                continue
            if ch in SYMBOLS:
                tokens_append(Token(SYMBOLS[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch == "'":
                tokens_append(self._consume_symbol())
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch.isalpha() or ch == "_":
                tokens_append(self._consume_identifier())
                continue
            raise MetalSyntaxError(
                f"Unexpected character '{ch}'",
                location=SourceLocation(self.filename, self.line, self.column),
            )
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_line_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_block_comment(self) -> None:
        line, col = self.line, self.column
        end = self.text.find("*/", self.index + 2)
        if end == -1:
            raise MetalSyntaxError(
                "Unterminated block comment", location=SourceLocation(self.filename, line, col)
            )
        while self.index < end + 2:
            self._advance()

    def _consume_symbol(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume opening quote
        if self._eof or self._peek() == "\n":
            raise MetalSyntaxError(
                "Expected a tape symbol after \"'\"", location=SourceLocation(self.filename, line, col)
            )
        symbol = self._peek()
        self._advance()
        if self._eof or self._peek() != "'":
            raise MetalSyntaxError(
                "Tape symbol literals hold exactly one character",
                location=SourceLocation(self.filename, line, col),
            )
        self._advance()  # consume closing quote
        return Token("SYMBOL", symbol, line, col)

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == '"':
                self._advance()
                return Token("STRING", "".join(chars), line, col)
            if ch == "\n":
                break
            chars.append(ch)
            self._advance()
        raise MetalSyntaxError("Unterminated string literal", location=SourceLocation(self.filename, line, col))

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n:
            ch = text[self.index]
            if ch.isalnum() or ch == "_":
                chars.append(ch)
                _advance()
                continue
            break
        value = "".join(chars)
        token_type: str = keyword_type(value) if value in KEYWORDS else "IDENT"
        return Token(token_type, value, line, col)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
