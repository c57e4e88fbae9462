from __future__ import annotations
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional, Tuple

if TYPE_CHECKING:
    from extensions import LanguageExtension


class FyfthError(Exception):
    """Base class for interpreter errors."""


class FyfthLexError(FyfthError):
    """Raised when source text cannot be split into words."""


ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    '"': '"',
    "\\": "\\",
}


def _strip_comment(raw: str) -> str:
    """Cut ``raw`` at the first '#' that is not backslash-escaped, quotes included."""
    backslashes = 0
    for index, ch in enumerate(raw):
        if ch == "#" and backslashes % 2 == 0:
            return raw[:index]
        backslashes = backslashes + 1 if ch == "\\" else 0
    return raw


@dataclass
class Word:
    word: str
    prefix: Optional[int]
    quoted: bool
    line: int


class Lexer:
    """Splits source text into words.

    Iteration is lazy: words are produced one at a time and a lex error is
    only raised when the offending word is reached. Every call to ``iter()``
    starts again from the first line.
    """

    def __init__(
        self,
        text: str,
        language: "LanguageExtension",
        *,
        diagnostics: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.text = text
        self.language = language
        self.diagnostics = diagnostics or (lambda text: print(text, file=sys.stderr))

    def __iter__(self) -> Iterator[Word]:
        return self._words()

    def tokenize(self) -> List[Word]:
        return list(self)

    def _words(self) -> Iterator[Word]:
        for line_number, raw in enumerate(self.text.split("\n"), start=1):
            if raw.endswith("\r"):
                raw = raw[:-1]
            line = _strip_comment(raw)
            n = len(line)
            index = 0
            while True:
                while index < n and line[index].isspace():
                    index += 1
                if index >= n:
                    break
                word, index = self._consume_word(line, index, line_number, raw)
                yield word

    def _consume_word(self, line: str, index: int, line_number: int, raw: str) -> Tuple[Word, int]:
        n = len(line)
        prefix: Optional[int] = None
        ch = line[index]
        if ch != '"':
            prefix = self.language.prefix_index(ch)
            if prefix is not None:
                index += 1
                while index < n and line[index].isspace():
                    index += 1
                if index >= n:
                    raise FyfthLexError(f"Unterminated prefix '{ch}' at line {line_number}")

        if line[index] == '"':
            text, index = self._consume_quoted(line, index + 1, raw)
            return Word(text, prefix, True, line_number), index

        start = index
        while index < n and not line[index].isspace():
            index += 1
        return Word(line[start:index], prefix, False, line_number), index

    def _consume_quoted(self, line: str, start: int, raw: str) -> Tuple[str, int]:
        # Unterminated quotes run to the end of the line.
        n = len(line)
        index = start
        escaped = False
        while index < n:
            ch = line[index]
            if ch == "\\":
                escaped = not escaped
            elif ch == '"' and not escaped:
                return self._unescape(line[start:index], raw), index + 1
            else:
                escaped = False
            index += 1
        return self._unescape(line[start:n], raw), n

    def _unescape(self, body: str, raw: str) -> str:
        chars: List[str] = []
        escaped = False
        for ch in body:
            if not escaped:
                if ch == "\\":
                    escaped = True
                else:
                    chars.append(ch)
                continue
            replacement = ESCAPES.get(ch)
            if replacement is None:
                self.diagnostics(f"Illegal escape code `\\{ch}` in {raw}")
            else:
                chars.append(replacement)
            escaped = False
        return "".join(chars)
