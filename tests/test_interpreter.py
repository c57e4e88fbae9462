"""Execution engine: control words, dispatch, broadcasting, limits."""
import json
import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from commands import PRELUDE, base_language
from extensions import IGNORE_ITER, MAY_ITER, FyfthExtensionError
from host import InMemoryHost, demo_host
from interpreter import (
    FyfthDomainError,
    FyfthPreludeError,
    FyfthSyntaxError,
    Interpreter,
    IterationLimitExceeded,
    TraceFormatter,
)
from values import TYPE_ITER, make_iter, make_literal, make_num


def run(source, *, language=None, host=None, **kwargs):
    interpreter = Interpreter(language or base_language(), **kwargs)
    interpreter.parse_code(source)
    result = interpreter.run(host if host is not None else InMemoryHost())
    return interpreter, result


def nums(interpreter):
    return [float(v.value) for v in interpreter.stack]


class TestValuesAndCommands(unittest.TestCase):
    def test_values_are_pushed(self):
        interpreter, result = run('1 "two" nil true')
        self.assertTrue(result.ok)
        self.assertEqual(interpreter.pretty_print_stack(), '1 "two" nil true')

    def test_command_consumes_arguments(self):
        interpreter, result = run("1 2 add")
        self.assertTrue(result.ok)
        self.assertEqual(nums(interpreter), [3.0])

    def test_arguments_keep_stack_order(self):
        interpreter, _ = run("10 4 sub")
        self.assertEqual(nums(interpreter), [6.0])

    def test_arity_error_leaves_stack(self):
        interpreter, result = run("1 add")
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, FyfthSyntaxError)
        self.assertEqual(result.output, "Syntax error: function `add` expects 2 arguments but stack has only 1 items")
        self.assertEqual(nums(interpreter), [1.0])

    def test_printed_text_survives_failure(self):
        _, result = run('"hi" print 1 add')
        self.assertFalse(result.ok)
        self.assertEqual(
            result.output,
            '"hi"\nSyntax error: function `add` expects 2 arguments but stack has only 1 items',
        )

    def test_line_end_is_ignored(self):
        interpreter, result = run("1 ; 2 ;")
        self.assertTrue(result.ok)
        self.assertEqual(nums(interpreter), [1.0, 2.0])

    def test_failure_leaves_rest_of_queue(self):
        interpreter, result = run("swap 1 2")
        self.assertFalse(result.ok)
        self.assertEqual(len(interpreter.queue), 2)

    def test_unexpected_exception_is_contained(self):
        language = base_language()
        language.register("explode", lambda ctx, args: 1 / 0, ())
        interpreter, result = run("1 explode", language=language)
        self.assertFalse(result.ok)
        self.assertTrue(result.output.startswith("Error: Internal interpreter error:"))
        self.assertEqual(result.error.rule, "explode")


class TestControlWords(unittest.TestCase):
    def test_iter_collects_whole_stack(self):
        interpreter, _ = run("1 2 3 iter")
        self.assertEqual(len(interpreter.stack), 1)
        self.assertEqual(interpreter.pretty_print_stack(), "[3 items; 1, 2, 3]")

    def test_iter_on_empty_stack(self):
        interpreter, _ = run("iter")
        self.assertEqual(interpreter.pretty_print_stack(), "[0 items; ]")

    def test_push_spreads_iter(self):
        interpreter, _ = run("1 2 iter push")
        self.assertEqual(nums(interpreter), [1.0, 2.0])

    def test_push_needs_iter(self):
        _, result = run("1 push")
        self.assertEqual(result.output, "Syntax error: `push` expects the top of the stack to be `iter`")

    def test_dup(self):
        interpreter, _ = run("1 dup")
        self.assertEqual(nums(interpreter), [1.0, 1.0])

    def test_dup_on_empty_stack_is_noop(self):
        interpreter, result = run("dup")
        self.assertTrue(result.ok)
        self.assertEqual(interpreter.stack, [])

    def test_swap(self):
        interpreter, _ = run("1 2 swap")
        self.assertEqual(nums(interpreter), [2.0, 1.0])

    def test_swap_needs_two(self):
        _, result = run("1 swap")
        self.assertEqual(result.output, "Syntax error: `swap` expects two items on the stack")

    def test_swap_n(self):
        interpreter, _ = run("1 2 3 4 2 swap_n")
        self.assertEqual(nums(interpreter), [1.0, 4.0, 3.0, 2.0])

    def test_swap_n_zero_is_noop(self):
        interpreter, _ = run("1 2 0 swap_n")
        self.assertEqual(nums(interpreter), [1.0, 2.0])

    def test_swap_n_out_of_range(self):
        _, result = run("1 2 2 swap_n")
        self.assertIsInstance(result.error, FyfthDomainError)
        self.assertEqual(result.output, "Error: not enough items on the stack to apply `swap_n`")
        _, result = run("1 2 -1 swap_n")
        self.assertFalse(result.ok)

    def test_swap_n_needs_number(self):
        _, result = run('1 "a" swap_n')
        self.assertEqual(result.output, "Syntax error: `swap_n` must follow a number")

    def test_rotations(self):
        interpreter, _ = run("1 2 3 3 rotr")
        self.assertEqual(nums(interpreter), [3.0, 1.0, 2.0])
        interpreter, _ = run("1 2 3 3 rotl")
        self.assertEqual(nums(interpreter), [2.0, 3.0, 1.0])
        interpreter, _ = run("1 2 3 2 rotr")
        self.assertEqual(nums(interpreter), [1.0, 3.0, 2.0])

    def test_small_rotation_is_noop(self):
        interpreter, result = run("1 2 1 rotr 0 rotl")
        self.assertTrue(result.ok)
        self.assertEqual(nums(interpreter), [1.0, 2.0])

    def test_rotation_too_large(self):
        _, result = run("1 2 5 rotr")
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, FyfthDomainError)


class TestMacros(unittest.TestCase):
    def test_define_and_run(self):
        interpreter, result = run('macro "inc" 1 add ; 5 "inc" load queue')
        self.assertTrue(result.ok)
        self.assertEqual(nums(interpreter), [6.0])

    def test_queue_prefix_runs_macro(self):
        interpreter, _ = run('macro "inc" 1 add ; 5 $inc $inc')
        self.assertEqual(nums(interpreter), [7.0])

    def test_body_is_not_executed_on_definition(self):
        interpreter, _ = run('macro "m" 1 2 add ;')
        self.assertEqual(interpreter.stack, [])
        body = interpreter.vars["m"]
        self.assertEqual(body.type, TYPE_ITER)
        self.assertEqual(len(body.value), 3)

    def test_nested_definition(self):
        interpreter, result = run('macro "outer" macro "inner" 2 ; ; $outer $inner')
        self.assertTrue(result.ok)
        self.assertEqual(nums(interpreter), [2.0])
        self.assertEqual(len(interpreter.vars["outer"].value), 4)

    def test_missing_name(self):
        _, result = run("macro 1 2 ;")
        self.assertEqual(result.output, "Syntax error: `macro` needs to be followed by a name for the macro")

    def test_unclosed_macro_takes_rest_of_queue(self):
        interpreter, result = run('macro "m" 1 2')
        self.assertTrue(result.ok)
        self.assertEqual(len(interpreter.vars["m"].value), 2)
        self.assertEqual(len(interpreter.queue), 0)

    def test_queue_needs_iter(self):
        _, result = run("1 queue")
        self.assertEqual(result.output, "Syntax error: `queue` expects the top of the stack to be `iter`")


class TestBroadcasting(unittest.TestCase):
    def test_iter_with_scalar(self):
        interpreter, _ = run("1 2 3 iter 10 add")
        self.assertEqual(interpreter.pretty_print_stack(), "[3 items; 11, 12, 13]")

    def test_two_iters_of_same_length(self):
        interpreter, result = run('1 2 iter "a" store 3 4 iter "b" store *a *b add')
        self.assertTrue(result.ok)
        self.assertEqual(interpreter.pretty_print_stack(), "[2 items; 4, 6]")

    def test_differing_lengths(self):
        interpreter, result = run('1 2 iter "a" store 3 4 5 iter *a add')
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, FyfthDomainError)
        self.assertEqual(result.output, "Error: function `add` cannot combine iterators of differing lenths.")

    def test_ignore_iter_argument_is_whole(self):
        interpreter, _ = run("1 2 3 iter len")
        self.assertEqual(nums(interpreter), [3.0])

    def test_none_results_are_skipped(self):
        interpreter, _ = run('1 2 3 iter "v" store *v *v 2 geq filter')
        self.assertEqual(interpreter.pretty_print_stack(), "[2 items; 2, 3]")

    def test_empty_iter_broadcast(self):
        interpreter, _ = run("iter 1 add")
        self.assertEqual(interpreter.pretty_print_stack(), "[0 items; ]")

    def test_custom_command_sees_elements(self):
        seen = []

        def record(ctx, args):
            seen.append([float(a.value) for a in args])
            return None

        language = base_language()
        language.register("record", record, (MAY_ITER, IGNORE_ITER))
        interpreter, result = run("1 2 iter 5 record", language=language)
        self.assertTrue(result.ok)
        self.assertEqual(seen, [[1.0, 5.0], [2.0, 5.0]])
        self.assertEqual(interpreter.pretty_print_stack(), "[0 items; ]")


class TestIterationLimit(unittest.TestCase):
    def test_runaway_macro_is_stopped(self):
        interpreter, result = run('macro "loop" $loop ; $loop')
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, IterationLimitExceeded)
        self.assertEqual(result.output, "Error: reached iteration limit")

    def test_exact_limit(self):
        interpreter, result = run("1 2 3 4 5", iteration_limit=5)
        self.assertTrue(result.ok)
        interpreter, result = run("1 2 3 4 5 6", iteration_limit=5)
        self.assertFalse(result.ok)
        self.assertEqual(len(interpreter.stack), 5)

    def test_limit_is_per_run(self):
        interpreter = Interpreter(base_language(), iteration_limit=3)
        host = InMemoryHost()
        for _ in range(3):
            interpreter.parse_code("1 2 3")
            self.assertTrue(interpreter.run(host).ok)


class TestInterpreterLifecycle(unittest.TestCase):
    def test_clone_is_independent(self):
        interpreter, _ = run('1 "x" store 2')
        copy = interpreter.clone()
        copy.parse_code('3 "y" store 4')
        self.assertTrue(copy.run(InMemoryHost()).ok)
        self.assertEqual(nums(interpreter), [2.0])
        self.assertEqual(nums(copy), [2.0, 4.0])
        self.assertNotIn("y", interpreter.vars)
        self.assertIs(copy.language, interpreter.language)

    def test_language_is_sealed(self):
        language = base_language()
        Interpreter(language)
        with self.assertRaises(FyfthExtensionError):
            language.register("late", lambda ctx, args: None, ())

    def test_state_persists_between_runs(self):
        interpreter, _ = run('5 "five" store')
        interpreter.parse_code("*five *five mul")
        self.assertTrue(interpreter.run(InMemoryHost()).ok)
        self.assertEqual(nums(interpreter), [25.0])

    def test_from_prelude(self):
        host = demo_host()
        interpreter = Interpreter.from_prelude(base_language(), host, sources=(PRELUDE,))
        self.assertIn("fuzzent", interpreter.vars)
        interpreter.parse_code("@cube name")
        result = interpreter.run(host)
        self.assertTrue(result.ok, result.output)
        self.assertEqual(interpreter.stack[-1], make_literal("debug cube 0"))

    def test_prelude_files(self):
        import tempfile

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "answer.fy")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write('42 "answer" store\n')
            interpreter = Interpreter.from_prelude(base_language(), InMemoryHost(), paths=[path])
        self.assertEqual(interpreter.vars["answer"], make_num(42))

    def test_failing_prelude(self):
        with self.assertRaises(FyfthPreludeError):
            Interpreter.from_prelude(base_language(), InMemoryHost(), sources=("1 add",))


class TestTrace(unittest.TestCase):
    def test_steps_are_recorded(self):
        interpreter, result = run("1 2 add", verbose=True)
        rules = [entry.rule for entry in interpreter.logger.entries]
        self.assertEqual(rules, ["push", "push", "add"])
        self.assertEqual(interpreter.logger.entries[-1].snapshot, "1 2")

    def test_snapshots_only_when_verbose(self):
        interpreter, _ = run("1 2 add")
        self.assertIsNone(interpreter.logger.entries[-1].snapshot)

    def test_error_step_index(self):
        interpreter, result = run("1 2 3 swap pop add add")
        self.assertFalse(result.ok)
        self.assertEqual(result.error.step_index, 6)

    def test_formatter(self):
        interpreter, result = run("1 swap", verbose=True)
        formatter = TraceFormatter(interpreter)
        text = formatter.format_text(result.error)
        self.assertIn("step 1: swap", text)
        self.assertIn("FyfthSyntaxError", text)
        data = json.loads(formatter.to_json(result.error))
        self.assertEqual(data["error"]["rule"], "swap")
        self.assertEqual(data["error"]["failing_step_index"], 1)
        self.assertEqual(data["trace"][0]["stack"], "")


class TestNumbersStayFloat32(unittest.TestCase):
    def test_result_type(self):
        interpreter, _ = run("0.1 0.2 add")
        self.assertIsInstance(interpreter.stack[0].value, np.float32)
        self.assertEqual(interpreter.stack[0], make_num(np.float32(0.1) + np.float32(0.2)))

    def test_iter_equality(self):
        self.assertEqual(make_iter([make_num(1)]), make_iter([make_num(1.0)]))


if __name__ == "__main__":
    unittest.main()
