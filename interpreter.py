from __future__ import annotations

import json
import os
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from extensions import BroadcastBehavior, CommandContext, CommandInfo, LanguageExtension
from lexer import FyfthError, FyfthLexError, Lexer
from parser import Parser
from printer import format_stack
from values import (
    CONTROL_KEYWORDS,
    CTRL_COMMAND,
    CTRL_DUP,
    CTRL_ITER,
    CTRL_LINE_END,
    CTRL_MACRO,
    CTRL_PUSH,
    CTRL_QUEUE,
    CTRL_ROTL,
    CTRL_ROTR,
    CTRL_SWAP,
    CTRL_SWAP_N,
    TYPE_ITER,
    TYPE_LITERAL,
    TYPE_NUM,
    Variant,
    as_i32,
    make_iter,
)


ITERATION_LIMIT = 100_000
STATE_LOG_CAPACITY = 256


class FyfthRuntimeError(FyfthError):
    """Raised for faults while the queue is being executed."""

    label = "Error"

    def __init__(self, message: str, *, rule: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.rule = rule
        self.step_index: Optional[int] = None

    def render(self) -> str:
        return f"{self.label}: {self.message}"


class FyfthSyntaxError(FyfthRuntimeError):
    label = "Syntax error"


class FyfthTypeError(FyfthRuntimeError):
    """A command was given arguments of the wrong shape."""

    label = "Syntax error"


class FyfthDomainError(FyfthRuntimeError):
    pass


class IterationLimitExceeded(FyfthRuntimeError):
    pass


class FyfthPreludeError(FyfthError):
    pass


@dataclass
class RunResult:
    output: str
    ok: bool
    error: Optional[FyfthRuntimeError] = None


@dataclass
class StepEntry:
    step_index: int
    rule: str
    stack_depth: int
    queue_depth: int
    snapshot: Optional[str]


class StateLogger:
    """Keeps the most recent executed steps of the current run."""

    def __init__(self, verbose: bool, capacity: int = STATE_LOG_CAPACITY) -> None:
        self.verbose = verbose
        self.entries: Deque[StepEntry] = deque(maxlen=capacity)
        self.next_step_index = 0

    def reset(self) -> None:
        self.entries.clear()
        self.next_step_index = 0

    def record(self, *, rule: str, stack_depth: int, queue_depth: int, snapshot: Optional[str] = None) -> StepEntry:
        entry = StepEntry(
            step_index=self.next_step_index,
            rule=rule,
            stack_depth=stack_depth,
            queue_depth=queue_depth,
            snapshot=snapshot,
        )
        self.next_step_index += 1
        self.entries.append(entry)
        return entry

    @property
    def last(self) -> Optional[StepEntry]:
        return self.entries[-1] if self.entries else None


def _stderr(text: str) -> None:
    print(text, file=sys.stderr)


class Interpreter:
    def __init__(
        self,
        language: LanguageExtension,
        *,
        iteration_limit: int = ITERATION_LIMIT,
        verbose: bool = False,
        diagnostics: Optional[Callable[[str], None]] = None,
    ) -> None:
        language.seal()
        self.language = language
        self.parser = Parser(language)
        self.iteration_limit = iteration_limit
        self.verbose = verbose
        self.diagnostics = diagnostics or _stderr
        self.stack: List[Variant] = []
        self.queue: Deque[Variant] = deque()
        self.vars: Dict[str, Variant] = {}
        self.logger = StateLogger(verbose)
        self._control: Dict[str, Callable[[], None]] = {
            CTRL_MACRO: self._define_macro,
            CTRL_QUEUE: self._queue_iter,
            CTRL_PUSH: self._push_iter,
            CTRL_DUP: self._dup,
            CTRL_SWAP: self._swap,
            CTRL_SWAP_N: self._swap_n,
            CTRL_ROTR: self._rotate_right,
            CTRL_ROTL: self._rotate_left,
        }

    @classmethod
    def from_prelude(
        cls,
        language: LanguageExtension,
        host: Any,
        *,
        paths: Sequence[str] = (),
        sources: Sequence[str] = (),
        **kwargs: Any,
    ) -> "Interpreter":
        """Build an interpreter and run prelude code through it.

        ``sources`` run first, then every file in ``paths``; the resulting
        stack, variables and macros are kept. Any failure is fatal.
        """
        interpreter = cls(language, **kwargs)
        programs = [("<prelude>", source) for source in sources]
        for path in paths:
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    programs.append((os.path.abspath(path), handle.read()))
            except OSError as exc:
                raise FyfthPreludeError(f"Failed to read prelude {path}: {exc}") from exc
        for name, source in programs:
            try:
                interpreter.parse_code(source)
            except FyfthLexError as exc:
                raise FyfthPreludeError(f"{name}: {exc}") from exc
            result = interpreter.run(host)
            if not result.ok:
                raise FyfthPreludeError(f"{name}: {result.output}")
        return interpreter

    def clone(self) -> "Interpreter":
        other = Interpreter(
            self.language,
            iteration_limit=self.iteration_limit,
            verbose=self.verbose,
            diagnostics=self.diagnostics,
        )
        other.stack = [value.clone() for value in self.stack]
        other.queue = deque(self.queue)
        other.vars = {name: value.clone() for name, value in self.vars.items()}
        return other

    def parse_code(self, code: str) -> None:
        """Append the entries of ``code`` to the queue, or nothing on a lex error."""
        lexer = Lexer(code, self.language, diagnostics=self.diagnostics)
        entries = self.parser.parse(lexer)
        self.queue.extend(entries)

    def pretty_print_stack(self, host: Any = None, delimiter: str = " ") -> str:
        return format_stack(self.stack, host, self.language, delimiter)

    # ---- execution ----
    def run(self, host: Any) -> RunResult:
        output: List[str] = []
        self.logger.reset()
        try:
            self._run_queue(output, host)
        except FyfthRuntimeError as error:
            if error.step_index is None and self.logger.last is not None:
                error.step_index = self.logger.last.step_index
            self._append_error(output, error)
            return RunResult(output="".join(output), ok=False, error=error)
        except Exception as exc:
            # Commands are arbitrary Python; keep their failures inside the run.
            last = self.logger.last
            wrapped = FyfthRuntimeError(
                f"Internal interpreter error: {exc}",
                rule=last.rule if last else "internal",
            )
            if last is not None:
                wrapped.step_index = last.step_index
            self._append_error(output, wrapped)
            return RunResult(output="".join(output), ok=False, error=wrapped)
        return RunResult(output="".join(output), ok=True)

    @staticmethod
    def _append_error(output: List[str], error: FyfthRuntimeError) -> None:
        if output and not output[-1].endswith("\n"):
            output.append("\n")
        output.append(error.render())

    def _run_queue(self, output: List[str], host: Any) -> None:
        iterations = 0
        queue = self.queue
        while queue:
            if iterations >= self.iteration_limit:
                raise IterationLimitExceeded("reached iteration limit", rule="limit")
            iterations += 1
            current = queue.popleft()
            self._log_step(current, host)
            kind = current.type
            if current.is_value:
                self.stack.append(current)
            elif kind == CTRL_LINE_END:
                continue
            elif kind == CTRL_ITER:
                self.stack = [make_iter(self.stack)]
            elif kind == CTRL_COMMAND:
                info = self.language.command_at(current.value)
                ctx = CommandContext(output=output, host=host, vars=self.vars, language=self.language)
                self.call_command(info, ctx)
            else:
                self._control[kind]()

    def _log_step(self, current: Variant, host: Any) -> None:
        if current.type == CTRL_COMMAND:
            rule = self.language.command_at(current.value).keyword
        elif current.is_value:
            rule = "push"
        else:
            rule = CONTROL_KEYWORDS[current.type]
        snapshot = self.pretty_print_stack(host) if self.verbose else None
        self.logger.record(rule=rule, stack_depth=len(self.stack), queue_depth=len(self.queue), snapshot=snapshot)

    def call_command(self, info: CommandInfo, ctx: CommandContext) -> None:
        """Pop the command's arguments, call it and push what it returns.

        When a ``MAY_ITER`` argument is an iter the command runs once per
        element; every iter-valued ``MAY_ITER`` argument contributes its i-th
        element and other arguments are passed unchanged each time.
        """
        arity = info.arity
        if len(self.stack) < arity:
            raise FyfthSyntaxError(
                f"function `{info.keyword}` expects {arity} arguments but stack has only {len(self.stack)} items",
                rule=info.keyword,
            )
        split = len(self.stack) - arity
        args = self.stack[split:]
        del self.stack[split:]

        lengths = {
            len(arg.value)
            for arg, behavior in zip(args, info.broadcast_behaviors)
            if behavior is BroadcastBehavior.MAY_ITER and arg.type == TYPE_ITER
        }
        if not lengths:
            result = info.fn(ctx, args)
            if result is not None:
                self.stack.append(result)
            return
        if len(lengths) > 1:
            raise FyfthDomainError(
                f"function `{info.keyword}` cannot combine iterators of differing lenths.",
                rule=info.keyword,
            )

        results: List[Variant] = []
        for i in range(lengths.pop()):
            call_args = [
                arg.value[i] if behavior is BroadcastBehavior.MAY_ITER and arg.type == TYPE_ITER else arg
                for arg, behavior in zip(args, info.broadcast_behaviors)
            ]
            result = info.fn(ctx, call_args)
            if result is not None:
                results.append(result)
        self.stack.append(make_iter(results))

    # ---- control words ----
    def _define_macro(self) -> None:
        name = self.queue.popleft() if self.queue else None
        if name is None or name.type != TYPE_LITERAL:
            raise FyfthSyntaxError("`macro` needs to be followed by a name for the macro", rule="macro")
        depth = 1
        end = 0
        for entry in self.queue:
            if entry.type == CTRL_MACRO:
                depth += 1
            elif entry.type == CTRL_LINE_END:
                depth -= 1
                if depth == 0:
                    break
            end += 1
        body = [self.queue.popleft() for _ in range(end)]
        self.vars[name.value] = make_iter(body)

    def _pop_iter(self, rule: str) -> Variant:
        if not self.stack or self.stack[-1].type != TYPE_ITER:
            raise FyfthSyntaxError(f"`{rule}` expects the top of the stack to be `iter`", rule=rule)
        return self.stack.pop()

    def _queue_iter(self) -> None:
        items = self._pop_iter("queue").value
        self.queue.extendleft(reversed(items))

    def _push_iter(self) -> None:
        items = self._pop_iter("push").value
        self.stack.extend(items)

    def _dup(self) -> None:
        if self.stack:
            self.stack.append(self.stack[-1].clone())

    def _swap(self) -> None:
        if len(self.stack) < 2:
            raise FyfthSyntaxError("`swap` expects two items on the stack", rule="swap")
        self.stack[-1], self.stack[-2] = self.stack[-2], self.stack[-1]

    def _pop_count(self, rule: str) -> int:
        if not self.stack:
            raise FyfthSyntaxError(f"`{rule}` must follow a number", rule=rule)
        top = self.stack.pop()
        if top.type != TYPE_NUM:
            raise FyfthSyntaxError(f"`{rule}` must follow a number", rule=rule)
        return as_i32(top.value)

    def _swap_n(self) -> None:
        index = self._pop_count("swap_n")
        size = len(self.stack)
        if index < 0 or index + 1 >= size:
            raise FyfthDomainError("not enough items on the stack to apply `swap_n`", rule="swap_n")
        if index == 0:
            return
        other = size - 1 - index
        self.stack[-1], self.stack[other] = self.stack[other], self.stack[-1]

    def _rotation_start(self, rule: str) -> Optional[int]:
        size = self._pop_count(rule)
        if size < 0 or size > len(self.stack):
            raise FyfthDomainError(f"not enough items on the stack to apply `{rule}`", rule=rule)
        if size <= 1:
            return None
        return len(self.stack) - size

    def _rotate_right(self) -> None:
        start = self._rotation_start("rotr")
        if start is not None:
            self.stack.insert(start, self.stack.pop())

    def _rotate_left(self) -> None:
        start = self._rotation_start("rotl")
        if start is not None:
            self.stack.append(self.stack.pop(start))


class TraceFormatter:
    def __init__(self, interpreter: Interpreter, *, depth: int = 10) -> None:
        self.interpreter = interpreter
        self.depth = depth

    def recent_steps(self) -> List[StepEntry]:
        entries = list(self.interpreter.logger.entries)
        return entries[-self.depth:]

    def format_text(self, error: FyfthRuntimeError) -> str:
        lines = ["Trace (most recent step last):"]
        for entry in self.recent_steps():
            lines.append(
                f"  step {entry.step_index}: {entry.rule}  (stack {entry.stack_depth}, queue {entry.queue_depth})"
            )
            if entry.snapshot is not None:
                lines.append(f"    stack: {entry.snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: FyfthRuntimeError) -> str:
        steps: List[Dict[str, Any]] = []
        for entry in self.recent_steps():
            step: Dict[str, Any] = {
                "step_index": entry.step_index,
                "rule": entry.rule,
                "stack_depth": entry.stack_depth,
                "queue_depth": entry.queue_depth,
            }
            if entry.snapshot is not None:
                step["stack"] = entry.snapshot
            steps.append(step)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "trace": steps,
        }
        return json.dumps(data, indent=2)

