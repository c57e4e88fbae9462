from __future__ import annotations

import re
from typing import Callable, List, Optional, Sequence

import numpy as np

from bridge import ComponentRef, extract_component, fuzzy_match, get_component_field, insert_component, set_component_field
from extensions import IGNORE_ITER, MAY_ITER, CommandContext, LanguageExtension, build_language
from host import IGNORE_MARKER
from interpreter import FyfthDomainError, FyfthTypeError
from lexer import FyfthLexError
from printer import format_num, format_value
from values import (
    NIL,
    QUEUE,
    TYPE_BOOL,
    TYPE_COMPONENT,
    TYPE_ENTITY,
    TYPE_ITER,
    TYPE_LITERAL,
    TYPE_NUM,
    TYPE_QUAT,
    TYPE_VEC2,
    TYPE_VEC3,
    VECTOR_SIZES,
    Variant,
    as_i32,
    make_bool,
    make_command,
    make_entity,
    make_iter,
    make_literal,
    make_num,
    make_vector,
    normalize_quat,
    quat_mul,
    type_name,
)

M = MAY_ITER
I = IGNORE_ITER

ENUM_LIMIT = 1_000_000

# `@word` relies on this macro being defined.
PRELUDE = """\
# word fuzzent -> entities whose name fuzzy-matches word
macro "fuzzent" "fuzzent_needle" store entities dup name *fuzzent_needle fuzzy filter ;
"""

Args = Sequence[Variant]


def _incompatible(keyword: str, *args: Variant) -> FyfthTypeError:
    names = " ".join(type_name(arg) for arg in args)
    return FyfthTypeError(f"the operation `{keyword}` is incompatible with types `{names}`.", rule=keyword)


def _expects(keyword: str, shape: str) -> FyfthTypeError:
    return FyfthTypeError(f"the operation `{keyword}` needs to operate on `{shape}`.", rule=keyword)


def _num(value: Variant) -> bool:
    return value.type == TYPE_NUM


def _resolve_index(items: Sequence[Variant], index: np.float32) -> int:
    # negative indices count from the end
    if index >= 0:
        return as_i32(index)
    return len(items) + as_i32(index)


# ---- Host access ----


def _entities(ctx: CommandContext, args: Args) -> Variant:
    return make_iter(make_entity(entity) for entity in ctx.host.entities(without=IGNORE_MARKER))


def _get(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if lhs.type == TYPE_ITER and _num(rhs):
        items = lhs.value
        index = _resolve_index(items, rhs.value)
        if not 0 <= index < len(items):
            raise FyfthDomainError(f"`get` tried getting index {index} of an iter of length {len(items)}", rule="get")
        return items[index]
    if lhs.type in VECTOR_SIZES and rhs.type == TYPE_LITERAL:
        axes = "xyzw"[: VECTOR_SIZES[lhs.type]]
        if len(rhs.value) != 1 or rhs.value not in axes:
            raise FyfthDomainError(f"{lhs.type} has no `{rhs.value}` component", rule="get")
        return make_num(lhs.value[axes.index(rhs.value)])
    if lhs.type == TYPE_ENTITY and rhs.type == TYPE_LITERAL:
        return extract_component(ctx.host, lhs.value, rhs.value)
    if lhs.type == TYPE_COMPONENT and rhs.type == TYPE_LITERAL:
        return get_component_field(lhs.value, rhs.value, ctx.host.components)
    raise _incompatible("get", lhs, rhs)


def _set(ctx: CommandContext, args: Args) -> Variant:
    lhs, mhs, rhs = args
    if lhs.type == TYPE_ITER and _num(mhs):
        items = list(lhs.value)
        index = _resolve_index(items, mhs.value)
        if not 0 <= index < len(items):
            raise FyfthDomainError(f"`set` tried setting index {index} of an iter of length {len(items)}", rule="set")
        items[index] = rhs.clone()
        return make_iter(items)
    if lhs.type == TYPE_COMPONENT and mhs.type == TYPE_LITERAL:
        rendered = format_value(rhs, ctx.host, ctx.language)
        ref: ComponentRef = lhs.value
        return Variant(TYPE_COMPONENT, set_component_field(ref, mhs.value, rhs, rendered))
    raise _incompatible("set", lhs, mhs, rhs)


def _name(ctx: CommandContext, args: Args) -> Variant:
    (value,) = args
    if value.type == TYPE_ENTITY:
        name = ctx.host.name_of(value.value) if ctx.host.exists(value.value) else None
        return NIL if name is None else make_literal(name)
    if value.type == TYPE_COMPONENT:
        return make_literal(value.value.type_path)
    raise _expects("name", "Entity")


# ---- Arithmetic ----


def _arith(keyword: str, op: Callable[[object, object], object], lhs: Variant, rhs: Variant) -> Optional[Variant]:
    with np.errstate(all="ignore"):
        if _num(lhs) and _num(rhs):
            return make_num(op(lhs.value, rhs.value))
        if lhs.type in (TYPE_VEC2, TYPE_VEC3):
            if rhs.type == lhs.type or (_num(rhs) and keyword in ("mul", "div")):
                return make_vector(lhs.type, op(lhs.value, rhs.value))
        if _num(lhs) and rhs.type in (TYPE_VEC2, TYPE_VEC3) and keyword == "mul":
            return make_vector(rhs.type, op(lhs.value, rhs.value))
    return None


def _add(ctx: CommandContext, args: Args) -> Optional[Variant]:
    lhs, rhs = args
    if lhs.type == TYPE_LITERAL and rhs.type == TYPE_LITERAL:
        return make_literal(lhs.value + rhs.value)
    if lhs.type == TYPE_LITERAL and _num(rhs):
        return make_literal(lhs.value + format_num(rhs.value))
    if lhs.type == TYPE_ENTITY and rhs.type == TYPE_COMPONENT:
        insert_component(ctx.host, lhs.value, rhs.value)
        return None
    result = _arith("add", np.add, lhs, rhs)
    if result is None:
        raise _incompatible("add", lhs, rhs)
    return result


def _sub(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    result = _arith("sub", np.subtract, lhs, rhs)
    if result is None:
        raise _incompatible("sub", lhs, rhs)
    return result


def _mul(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if lhs.type == TYPE_QUAT and rhs.type == TYPE_QUAT:
        return quat_mul(lhs.value, rhs.value)
    result = _arith("mul", np.multiply, lhs, rhs)
    if result is None:
        raise _incompatible("mul", lhs, rhs)
    return result


def _div(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    result = _arith("div", np.divide, lhs, rhs)
    if result is None:
        raise _incompatible("div", lhs, rhs)
    return result


def _mod(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if not _num(rhs):
        raise _expects("mod", "X num")
    if not _num(lhs):
        return NIL
    a, b = as_i32(lhs.value), as_i32(rhs.value)
    if b == 0:
        raise FyfthDomainError("`mod` by zero", rule="mod")
    # remainder takes the sign of the dividend
    remainder = abs(a) % abs(b)
    return make_num(-remainder if a < 0 else remainder)


def _unary_math(keyword: str, fn: Callable[[np.float32], np.float32]) -> Callable[[CommandContext, Args], Variant]:
    def command(ctx: CommandContext, args: Args) -> Variant:
        (value,) = args
        if not _num(value):
            raise _expects(keyword, "num")
        with np.errstate(all="ignore"):
            return make_num(fn(value.value))

    command.__name__ = f"_{keyword}"
    return command


def _atan2(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if not (_num(lhs) and _num(rhs)):
        raise _expects("atan2", "num num")
    return make_num(np.arctan2(lhs.value, rhs.value))


def _vector_constructor(kind: str) -> Callable[[CommandContext, Args], Variant]:
    shape = " ".join(["num"] * VECTOR_SIZES[kind])

    def command(ctx: CommandContext, args: Args) -> Variant:
        if not all(_num(arg) for arg in args):
            raise _expects(kind, shape)
        values = [arg.value for arg in args]
        if kind == TYPE_QUAT:
            return normalize_quat(*values)
        return make_vector(kind, values)

    command.__name__ = f"_{kind}"
    return command


# ---- Comparison and logic ----


def _geq(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if not (_num(lhs) and _num(rhs)):
        raise _expects("geq", "num num")
    return make_bool(bool(lhs.value >= rhs.value))


def _leq(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if not (_num(lhs) and _num(rhs)):
        raise _expects("leq", "num num")
    return make_bool(bool(lhs.value <= rhs.value))


def _eq(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    return make_bool(lhs == rhs)


def _not(ctx: CommandContext, args: Args) -> Variant:
    (value,) = args
    if value.type != TYPE_BOOL:
        raise _expects("not", "bool")
    return make_bool(not value.value)


def _filter(ctx: CommandContext, args: Args) -> Optional[Variant]:
    value, cond = args
    if cond.type != TYPE_BOOL:
        raise _expects("filter", "X bool")
    return value if cond.value else None


def _select(ctx: CommandContext, args: Args) -> Variant:
    cond, then_value, else_value = args
    if cond.type != TYPE_BOOL:
        raise _expects("select", "bool X Y")
    return then_value if cond.value else else_value


# ---- Text ----


def _fuzzy(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if rhs.type != TYPE_LITERAL:
        raise _expects("fuzzy", "X literal")
    if lhs.type != TYPE_LITERAL:
        return make_bool(False)
    return make_bool(fuzzy_match(lhs.value, rhs.value))


def _regex(ctx: CommandContext, args: Args) -> Variant:
    """Search ``lhs`` for ``rhs``; named groups of all matches become variables."""
    lhs, rhs = args
    if rhs.type != TYPE_LITERAL:
        raise _expects("regex", "X literal")
    if lhs.type != TYPE_LITERAL:
        return make_bool(False)
    try:
        pattern = re.compile(rhs.value)
    except re.error as exc:
        raise FyfthDomainError(f"failed to parse regex: {exc}", rule="regex") from exc
    if pattern.search(lhs.value) is None:
        return make_bool(False)
    for group in pattern.groupindex:
        captures = [m.group(group) for m in pattern.finditer(lhs.value) if m.group(group) is not None]
        if len(captures) == 1:
            ctx.vars[group] = make_literal(captures[0])
        elif captures:
            ctx.vars[group] = make_iter(make_literal(c) for c in captures)
    return make_bool(True)


# ---- Variables and output ----


def _print(ctx: CommandContext, args: Args) -> None:
    (value,) = args
    ctx.write(format_value(value, ctx.host, ctx.language))


def _store(ctx: CommandContext, args: Args) -> None:
    value, name = args
    if name.type != TYPE_LITERAL:
        raise _expects("store", "X literal")
    ctx.vars[name.value] = value.clone()


def _load(ctx: CommandContext, args: Args) -> Variant:
    (name,) = args
    if name.type != TYPE_LITERAL:
        raise _expects("load", "literal")
    value = ctx.vars.get(name.value)
    if value is None:
        raise FyfthDomainError(f"no variable of the name `{name.value}` found", rule="load")
    return value.clone()


def _print_vars(ctx: CommandContext, args: Args) -> None:
    for name, value in ctx.vars.items():
        ctx.write(f'"{name}" : {format_value(value, ctx.host, ctx.language)}\n')


def _pop(ctx: CommandContext, args: Args) -> None:
    return None


def _type(ctx: CommandContext, args: Args) -> Variant:
    (value,) = args
    return make_literal(type_name(value))


# ---- Iterators ----


def _index(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if not (lhs.type == TYPE_ITER and _num(rhs)):
        raise _expects("index", "iter num")
    items = lhs.value
    index = _resolve_index(items, rhs.value)
    if not 0 <= index < len(items):
        raise FyfthDomainError(f"index `{index}` out of range for an iterator of length {len(items)}.", rule="index")
    return items[index]


def _enum(ctx: CommandContext, args: Args) -> Variant:
    (value,) = args
    if value.type == TYPE_ITER:
        return make_iter(make_num(i) for i in range(len(value.value)))
    if _num(value):
        if not 0 <= value.value <= ENUM_LIMIT:
            raise FyfthDomainError(f"{format_num(value.value)} is not a valid `enum` range", rule="enum")
        return make_iter(make_num(i) for i in range(as_i32(value.value)))
    raise _expects("enum", "iter` or `num")


def _len(ctx: CommandContext, args: Args) -> Variant:
    (value,) = args
    if value.type != TYPE_ITER:
        raise _expects("len", "iter")
    return make_num(len(value.value))


def _append(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if lhs.type != TYPE_ITER:
        raise _expects("append", "iter X")
    return make_iter(lhs.value + (rhs,))


def _extend(ctx: CommandContext, args: Args) -> Variant:
    lhs, rhs = args
    if lhs.type != TYPE_ITER or rhs.type != TYPE_ITER:
        raise _expects("extend", "iter iter")
    return make_iter(lhs.value + rhs.value)


def _reverse(ctx: CommandContext, args: Args) -> Variant:
    (value,) = args
    if value.type != TYPE_ITER:
        raise _expects("reverse", "iter")
    return make_iter(reversed(value.value))


# ---- Prefixes ----


def _command_id(language: LanguageExtension, keyword: str, char: str) -> int:
    index = language.get_command_id(keyword)
    if index is None:
        raise FyfthLexError(f"prefix '{char}' needs the `{keyword}` command")
    return index


def _prefix_load(word: str, language: LanguageExtension) -> List[Variant]:
    return [make_literal(word), make_command(_command_id(language, "load", "*"))]


def _prefix_queue_macro(word: str, language: LanguageExtension) -> List[Variant]:
    return [make_literal(word), make_command(_command_id(language, "load", "$")), QUEUE]


def _prefix_fuzzy_entity(word: str, language: LanguageExtension) -> List[Variant]:
    return [
        make_literal(word),
        make_literal("fuzzent"),
        make_command(_command_id(language, "load", "@")),
        QUEUE,
        make_num(0),
        make_command(_command_id(language, "index", "@")),
    ]


def base_language() -> LanguageExtension:
    lang = LanguageExtension(name="fyfth")
    lang.register("entities", _entities, (), doc="all entities of the host")
    lang.register("get", _get, (M, M), doc="iter index, vector axis, entity component or component field")
    lang.register("set", _set, (M, M, M), doc="copy of an iter or component with one entry replaced")
    lang.register("add", _add, (M, M))
    lang.register("sub", _sub, (M, M))
    lang.register("mul", _mul, (M, M))
    lang.register("div", _div, (M, M))
    lang.register("print", _print, (I,))
    lang.register("store", _store, (I, I), doc="X name store")
    lang.register("load", _load, (M,))
    lang.register("print_vars", _print_vars, ())
    lang.register("geq", _geq, (M, M))
    lang.register("leq", _leq, (M, M))
    lang.register("eq", _eq, (M, M))
    lang.register("eqq", _eq, (I, I), doc="equality of whole values")
    lang.register("not", _not, (M,))
    lang.register("name", _name, (M,))
    lang.register("pop", _pop, (I,))
    lang.register("index", _index, (I, M))
    lang.register("enum", _enum, (I,))
    lang.register("len", _len, (I,))
    lang.register("type", _type, (I,))
    lang.register("append", _append, (I, I))
    lang.register("extend", _extend, (I, I))
    lang.register("reverse", _reverse, (I,))
    lang.register("filter", _filter, (M, M), doc="X cond filter")
    lang.register("select", _select, (M, M, M), doc="cond then else select")
    lang.register("mod", _mod, (M, M))
    lang.register("vec2", _vector_constructor(TYPE_VEC2), (M, M))
    lang.register("vec3", _vector_constructor(TYPE_VEC3), (M, M, M))
    lang.register("quat", _vector_constructor(TYPE_QUAT), (M, M, M, M), doc="normalized x y z w quaternion")
    lang.register("fuzzy", _fuzzy, (M, M))
    lang.register("regex", _regex, (M, M))
    lang.register("sin", _unary_math("sin", np.sin), (M,))
    lang.register("cos", _unary_math("cos", np.cos), (M,))
    lang.register("tan", _unary_math("tan", np.tan), (M,))
    lang.register("atan", _unary_math("atan", np.arctan), (M,))
    lang.register("atan2", _atan2, (M, M))

    lang.register_prefix("*", _prefix_load)
    lang.register_prefix("$", _prefix_queue_macro)
    lang.register_prefix("@", _prefix_fuzzy_entity)
    return lang


def default_language(extension_paths: Sequence[str] = ()) -> LanguageExtension:
    return build_language(base_language(), extension_paths)
