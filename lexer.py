from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple


class LogoError(Exception):
    """Base class for interpreter errors."""


class LogoSyntaxError(LogoError):
    """Raised when a statement cannot be sliced out of the source."""


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Statement:
    token: str
    body: str
    location: SourceLocation
    # Where the body text starts, so nested readers report real positions.
    body_line: int
    body_column: int


COMMENT = "//"
PENUP = "PENUP"
PENDOWN = "PENDOWN"
FORWARD = "FORWARD"
BACK = "BACK"
LEFT = "LEFT"
RIGHT = "RIGHT"
SETX = "SETX"
SETY = "SETY"
SETHEADING = "SETHEADING"
TURN = "TURN"
SETPENCOLOR = "SETPENCOLOR"
MAKE = "MAKE"
ADDASSIGN = "ADDASSIGN"
IF = "IF"
WHILE = "WHILE"
TO = "TO"
END = "END"

BUILTIN_COMMANDS = {
    PENUP,
    PENDOWN,
    FORWARD,
    BACK,
    LEFT,
    RIGHT,
    SETX,
    SETY,
    SETHEADING,
    TURN,
    SETPENCOLOR,
}

NEWLINE = "\n"
CLOSE_BRACKET = "]"

TERMINATORS = {
    TO: END,
    IF: CLOSE_BRACKET,
    WHILE: CLOSE_BRACKET,
}

SEPARATORS = " \t\r\n"

# Words that open a new statement even in the middle of a line.
STATEMENT_STARTERS = BUILTIN_COMMANDS | {MAKE, ADDASSIGN, IF, WHILE, TO, END}


class Lexer:
    """Reads one statement at a time from raw program text.

    The cursor only moves forward. A body handed to a nested block or a
    procedure call gets its own ``Lexer`` seeded with the body's starting
    line and column.
    """

    def __init__(self, text: str, filename: str, *, line: int = 1, column: int = 1) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = line
        self.column = column

    def next_statement(self) -> Optional[Statement]:
        text = self.text
        n = len(text)
        _advance = self._advance

        while self.index < n:
            line, col = self.line, self.column
            start = self.index
            while self.index < n and text[self.index] not in SEPARATORS:
                _advance()
            token = text[start:self.index]
            if token == "":
                # Separator-only position: step over it.
                _advance()
                continue
            body_line, body_col = self.line, self.column
            body = self._extract_body(TERMINATORS.get(token, NEWLINE), token, line, col)
            location = SourceLocation(
                file=self.filename,
                line=line,
                column=col,
                statement=(token + body).strip(),
            )
            return Statement(
                token=token,
                body=body,
                location=location,
                body_line=body_line,
                body_column=body_col,
            )
        return None

    def _extract_body(self, terminator: str, token: str, line: int, col: int) -> str:
        text = self.text
        n = len(text)
        start = self.index
        _advance = self._advance

        if terminator == NEWLINE:
            split_commands = not token.startswith(COMMENT)
            while self.index < n and text[self.index] != "\n":
                if split_commands and text[self.index - 1] in SEPARATORS and self._starts_statement(self.index):
                    return text[start:self.index]
                _advance()
            body = text[start:self.index]
            if not self._eof:
                _advance()
            return body

        if terminator == CLOSE_BRACKET:
            depth = 0
            while self.index < n:
                if self._comment_at(self.index):
                    self._skip_line()
                    continue
                ch = text[self.index]
                if ch == "[":
                    depth += 1
                elif ch == "]":
                    depth -= 1
                    if depth <= 0:
                        body = text[start:self.index]
                        _advance()
                        return body
                _advance()
            raise LogoSyntaxError(
                f"Unterminated statement: {token} is missing a closing ']' at {self.filename}:{line}:{col}"
            )

        # Word terminator (END): must stand alone as a token.
        while self.index < n:
            if self._comment_at(self.index):
                self._skip_line()
                continue
            if text.startswith(terminator, self.index) and self._is_word_at(self.index, len(terminator)):
                body = text[start:self.index]
                for _ in range(len(terminator)):
                    _advance()
                return body
            _advance()
        raise LogoSyntaxError(
            f"Unterminated statement: {token} is missing '{terminator}' at {self.filename}:{line}:{col}"
        )

    def _starts_statement(self, index: int) -> bool:
        text = self.text
        end = index
        while end < len(text) and text[end] not in SEPARATORS:
            end += 1
        word = text[index:end]
        return word in STATEMENT_STARTERS or word.startswith(COMMENT)

    def _comment_at(self, index: int) -> bool:
        text = self.text
        return text.startswith(COMMENT, index) and (index == 0 or text[index - 1] in SEPARATORS)

    def _skip_line(self) -> None:
        # Stops on the newline so line counting stays with _advance.
        while not self._eof and self.text[self.index] != "\n":
            self._advance()

    def _is_word_at(self, index: int, length: int) -> bool:
        text = self.text
        before_ok = index == 0 or text[index - 1] in SEPARATORS
        after = index + length
        after_ok = after >= len(text) or text[after] in SEPARATORS
        return before_ok and after_ok

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def position_after(text: str, line: int, column: int) -> Tuple[int, int]:
    """Line and column reached after walking over ``text``."""
    newlines = text.count("\n")
    if newlines == 0:
        return line, column + len(text)
    return line + newlines, len(text) - text.rfind("\n")
