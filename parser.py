from __future__ import annotations
import re
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

import numpy as np

from lexer import FyfthLexError, Word
from values import (
    DUP,
    FALSE,
    ITER,
    LINE_END,
    MACRO,
    NIL,
    PUSH,
    QUEUE,
    ROTL,
    ROTR,
    SWAP,
    SWAP_N,
    TRUE,
    Variant,
    make_command,
    make_literal,
    make_num,
)

if TYPE_CHECKING:
    from extensions import LanguageExtension


CONTROL_WORDS: Dict[str, Variant] = {
    "nil": NIL,
    "iter": ITER,
    "true": TRUE,
    "false": FALSE,
    "macro": MACRO,
    "queue": QUEUE,
    "dup": DUP,
    "swap": SWAP,
    ";": LINE_END,
    "swap_n": SWAP_N,
    "rotr": ROTR,
    "rotl": ROTL,
    "push": PUSH,
}

_NUMBER = re.compile(
    r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf|infinity|nan)",
    re.IGNORECASE,
)


def parse_number(text: str) -> Optional[np.float32]:
    if not _NUMBER.fullmatch(text):
        return None
    with np.errstate(over="ignore"):
        return np.float32(float(text))


class Parser:
    """Maps lexed words to queue entries."""

    def __init__(self, language: "LanguageExtension") -> None:
        self.language = language

    def parse(self, words: Iterable[Word]) -> List[Variant]:
        entries: List[Variant] = []
        for word in words:
            entries.extend(self.parse_word(word))
        return entries

    def parse_word(self, word: Word) -> List[Variant]:
        if word.prefix is not None:
            return self._expand_prefix(word)
        if word.quoted:
            return [make_literal(word.word)]
        number = parse_number(word.word)
        if number is not None:
            return [make_num(number)]
        control = CONTROL_WORDS.get(word.word)
        if control is not None:
            return [control]
        index = self.language.get_command_id(word.word)
        if index is not None:
            return [make_command(index)]
        return [make_literal(word.word)]

    def _expand_prefix(self, word: Word) -> List[Variant]:
        info = self.language.prefixes[word.prefix]
        try:
            return list(info.fn(word.word, self.language))
        except FyfthLexError:
            raise
        except Exception as exc:
            raise FyfthLexError(
                f"Prefix '{info.char}' failed on `{word.word}` at line {word.line}: {exc}"
            ) from exc
