from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray


TYPE_NIL = "nil"
TYPE_BOOL = "bool"
TYPE_NUM = "num"
TYPE_LITERAL = "literal"
TYPE_ENTITY = "Entity"
TYPE_ITER = "iter"
TYPE_VEC2 = "vec2"
TYPE_VEC3 = "vec3"
TYPE_QUAT = "quat"
TYPE_COMPONENT = "component"

# Control variants only ever live in the queue or inside macro bodies.
CTRL_ITER = "ctrl.iter"
CTRL_MACRO = "ctrl.macro"
CTRL_LINE_END = "ctrl.line_end"
CTRL_QUEUE = "ctrl.queue"
CTRL_PUSH = "ctrl.push"
CTRL_DUP = "ctrl.dup"
CTRL_SWAP = "ctrl.swap"
CTRL_SWAP_N = "ctrl.swap_n"
CTRL_ROTR = "ctrl.rotr"
CTRL_ROTL = "ctrl.rotl"
CTRL_COMMAND = "ctrl.command"

VALUE_TYPES = frozenset(
    {
        TYPE_NIL,
        TYPE_BOOL,
        TYPE_NUM,
        TYPE_LITERAL,
        TYPE_ENTITY,
        TYPE_ITER,
        TYPE_VEC2,
        TYPE_VEC3,
        TYPE_QUAT,
        TYPE_COMPONENT,
    }
)

CONTROL_KEYWORDS = {
    CTRL_ITER: "iter",
    CTRL_MACRO: "macro",
    CTRL_LINE_END: ";",
    CTRL_QUEUE: "queue",
    CTRL_PUSH: "push",
    CTRL_DUP: "dup",
    CTRL_SWAP: "swap",
    CTRL_SWAP_N: "swap_n",
    CTRL_ROTR: "rotr",
    CTRL_ROTL: "rotl",
}

VECTOR_SIZES = {TYPE_VEC2: 2, TYPE_VEC3: 3, TYPE_QUAT: 4}


@dataclass(frozen=True, eq=False)
class Variant:
    """A stack or queue entry.

    ``value`` depends on ``type``: ``bool`` for Bool, ``np.float32`` for Num,
    ``str`` for Literal, a tuple of variants for Iter, a read-only float32
    array for Vec2/Vec3/Quat, an ``Entity`` handle, a ``ComponentRef`` for
    components and the command index for ``CTRL_COMMAND``.
    """

    type: str
    value: Any = None

    @property
    def is_value(self) -> bool:
        return self.type in VALUE_TYPES

    def clone(self) -> "Variant":
        """Copy components held anywhere inside this value.

        Nested iters are walked with an explicit stack so that nesting depth
        is not bounded by the interpreter's recursion limit.
        """
        if self.type == TYPE_COMPONENT:
            return Variant(TYPE_COMPONENT, self.value.clone())
        if self.type != TYPE_ITER:
            return self
        frames: List[Tuple[Iterator[Variant], List[Variant]]] = [(iter(self.value), [])]
        while True:
            items, built = frames[-1]
            item = next(items, None)
            if item is None:
                frames.pop()
                done = Variant(TYPE_ITER, tuple(built))
                if not frames:
                    return done
                frames[-1][1].append(done)
            elif item.type == TYPE_ITER:
                frames.append((iter(item.value), []))
            else:
                built.append(item.clone())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Variant):
            return NotImplemented
        pending = [(self, other)]
        while pending:
            lhs, rhs = pending.pop()
            if lhs.type != rhs.type:
                return False
            if lhs.type == TYPE_ITER:
                if len(lhs.value) != len(rhs.value):
                    return False
                pending.extend(zip(lhs.value, rhs.value))
            elif not lhs._same_scalar(rhs):
                return False
        return True

    def _same_scalar(self, other: "Variant") -> bool:
        if self.type in VECTOR_SIZES:
            return bool(np.all(self.value == other.value))
        # NaN never equals itself
        return bool(self.value == other.value)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        if self.value is None:
            return f"Variant({self.type})"
        return f"Variant({self.type}, {self.value!r})"


NIL = Variant(TYPE_NIL)
TRUE = Variant(TYPE_BOOL, True)
FALSE = Variant(TYPE_BOOL, False)

ITER = Variant(CTRL_ITER)
MACRO = Variant(CTRL_MACRO)
LINE_END = Variant(CTRL_LINE_END)
QUEUE = Variant(CTRL_QUEUE)
PUSH = Variant(CTRL_PUSH)
DUP = Variant(CTRL_DUP)
SWAP = Variant(CTRL_SWAP)
SWAP_N = Variant(CTRL_SWAP_N)
ROTR = Variant(CTRL_ROTR)
ROTL = Variant(CTRL_ROTL)


def make_bool(value: bool) -> Variant:
    return TRUE if value else FALSE


def make_num(value: Any) -> Variant:
    return Variant(TYPE_NUM, np.float32(value))


def make_literal(text: str) -> Variant:
    return Variant(TYPE_LITERAL, text)


def make_iter(items: Iterable[Variant]) -> Variant:
    return Variant(TYPE_ITER, tuple(items))


def make_entity(entity: Any) -> Variant:
    return Variant(TYPE_ENTITY, entity)


def make_component(ref: Any) -> Variant:
    return Variant(TYPE_COMPONENT, ref)


def make_command(index: int) -> Variant:
    return Variant(CTRL_COMMAND, index)


def _frozen_array(values: Iterable[Any]) -> NDArray[np.float32]:
    array = np.array(list(values), dtype=np.float32)
    array.setflags(write=False)
    return array


def make_vec2(x: Any, y: Any) -> Variant:
    return Variant(TYPE_VEC2, _frozen_array((x, y)))


def make_vec3(x: Any, y: Any, z: Any) -> Variant:
    return Variant(TYPE_VEC3, _frozen_array((x, y, z)))


def make_quat(x: Any, y: Any, z: Any, w: Any) -> Variant:
    return Variant(TYPE_QUAT, _frozen_array((x, y, z, w)))


def make_vector(type_: str, values: Iterable[Any]) -> Variant:
    array = _frozen_array(values)
    if array.shape != (VECTOR_SIZES[type_],):
        raise ValueError(f"{type_} needs {VECTOR_SIZES[type_]} components, got {array.shape}")
    return Variant(type_, array)


def normalize_quat(x: Any, y: Any, z: Any, w: Any) -> Variant:
    q = np.array([x, y, z, w], dtype=np.float32)
    with np.errstate(all="ignore"):
        q = q / np.float32(np.sqrt(np.dot(q, q)))
    return make_vector(TYPE_QUAT, q)


def quat_mul(lhs: NDArray[np.float32], rhs: NDArray[np.float32]) -> Variant:
    """Hamilton product of two (x, y, z, w) quaternions."""
    ax, ay, az, aw = lhs
    bx, by, bz, bw = rhs
    return make_quat(
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    )


def type_name(value: Variant) -> str:
    if value.type == TYPE_COMPONENT:
        ident: Optional[str] = value.value.type_ident
        return ident if ident else "anonymous component"
    if value.type in VALUE_TYPES:
        return value.type
    if value.type in (CTRL_MACRO, CTRL_LINE_END):
        return "special"
    return "func"


def as_i32(value: Any) -> int:
    """Truncate toward zero and saturate to 32 bits; NaN becomes 0."""
    x = float(value)
    if math.isnan(x):
        return 0
    if math.isinf(x):
        return 2**31 - 1 if x > 0 else -(2**31)
    return max(-(2**31), min(2**31 - 1, int(x)))
