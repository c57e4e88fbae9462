"""Word to queue entry mapping."""
import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from commands import base_language
from extensions import LanguageExtension
from interpreter import Interpreter
from lexer import FyfthLexError, Lexer
from parser import Parser, parse_number
from values import (
    CTRL_COMMAND,
    DUP,
    FALSE,
    ITER,
    LINE_END,
    MACRO,
    NIL,
    QUEUE,
    TRUE,
    TYPE_LITERAL,
    TYPE_NUM,
    make_literal,
)


def _parse(text, language=None):
    language = language or base_language()
    return Parser(language).parse(Lexer(text, language))


class TestNumbers(unittest.TestCase):
    def test_accepted_forms(self):
        self.assertEqual(parse_number("1"), np.float32(1))
        self.assertEqual(parse_number("-2.5"), np.float32(-2.5))
        self.assertEqual(parse_number("+3"), np.float32(3))
        self.assertEqual(parse_number("1e3"), np.float32(1000))
        self.assertEqual(parse_number(".5"), np.float32(0.5))
        self.assertEqual(parse_number("7."), np.float32(7))
        self.assertTrue(np.isinf(parse_number("inf")))
        self.assertTrue(np.isinf(parse_number("-Infinity")))
        self.assertTrue(np.isnan(parse_number("NaN")))

    def test_rejected_forms(self):
        for text in ("1_000", "0x10", "e5", "1e", "one", "", "--1", "1.2.3"):
            self.assertIsNone(parse_number(text), text)

    def test_rounds_to_single_precision(self):
        self.assertEqual(parse_number("0.1"), np.float32(0.1))
        self.assertIsInstance(parse_number("0.1"), np.float32)


class TestParser(unittest.TestCase):
    def test_control_words(self):
        entries = _parse("nil true false iter macro queue dup ;")
        self.assertEqual(entries, [NIL, TRUE, FALSE, ITER, MACRO, QUEUE, DUP, LINE_END])

    def test_keyword_becomes_command(self):
        language = base_language()
        (entry,) = _parse("add", language)
        self.assertEqual(entry.type, CTRL_COMMAND)
        self.assertEqual(entry.value, language.get_command_id("add"))

    def test_unknown_word_is_literal(self):
        self.assertEqual(_parse("hello"), [make_literal("hello")])

    def test_quoted_words_are_always_literals(self):
        entries = _parse('"12" "add" "nil"')
        self.assertTrue(all(e.type == TYPE_LITERAL for e in entries))
        self.assertEqual([e.value for e in entries], ["12", "add", "nil"])

    def test_numbers_win_over_keywords(self):
        (entry,) = _parse("3")
        self.assertEqual(entry.type, TYPE_NUM)

    def test_load_prefix(self):
        language = base_language()
        entries = _parse("*foo", language)
        self.assertEqual(entries[0], make_literal("foo"))
        self.assertEqual(entries[1].value, language.get_command_id("load"))

    def test_queue_prefix(self):
        entries = _parse("$foo")
        self.assertEqual(len(entries), 3)
        self.assertEqual(entries[2], QUEUE)

    def test_entity_prefix(self):
        language = base_language()
        entries = _parse("@cube", language)
        self.assertEqual(entries[0], make_literal("cube"))
        self.assertEqual(entries[1], make_literal("fuzzent"))
        self.assertEqual(entries[-1].value, language.get_command_id("index"))

    def test_prefix_without_its_command_fails(self):
        from commands import _prefix_load

        language = LanguageExtension()
        language.register_prefix("*", _prefix_load)
        with self.assertRaises(FyfthLexError):
            _parse("*foo", language)

    def test_failing_prefix_leaves_queue_untouched(self):
        def broken(word, language):
            raise RuntimeError("nope")

        language = base_language()
        language.register_prefix("!", broken)
        interpreter = Interpreter(language)
        interpreter.parse_code("1 2")
        with self.assertRaises(FyfthLexError):
            interpreter.parse_code("3 !boom 4")
        self.assertEqual(len(interpreter.queue), 2)


if __name__ == "__main__":
    unittest.main()
