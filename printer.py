from __future__ import annotations
from typing import Any, Iterable, List, Optional, TYPE_CHECKING, Union

import numpy as np

from values import (
    CONTROL_KEYWORDS,
    CTRL_COMMAND,
    TYPE_BOOL,
    TYPE_COMPONENT,
    TYPE_ENTITY,
    TYPE_ITER,
    TYPE_LITERAL,
    TYPE_NIL,
    TYPE_NUM,
    VECTOR_SIZES,
    Variant,
)

if TYPE_CHECKING:
    from extensions import LanguageExtension


def format_num(value: Any) -> str:
    """Shortest decimal text that round-trips through float32."""
    x = np.float32(value)
    if np.isnan(x):
        return "NaN"
    if np.isinf(x):
        return "inf" if x > 0 else "-inf"
    return np.format_float_positional(x, trim="-")


def format_entity(entity: Any, host: Any = None) -> str:
    name = None
    if host is not None and host.exists(entity):
        name = host.name_of(entity)
    if name is None:
        return f"({entity})"
    return f'({entity} - "{name}")'


def format_value(
    value: Variant,
    host: Any = None,
    language: Optional["LanguageExtension"] = None,
) -> str:
    if value.type != TYPE_ITER:
        return _format_single(value, host, language)
    parts: List[str] = []
    # entries are values still to format or text to emit as is
    pending: List[Union[Variant, str]] = [value]
    while pending:
        item = pending.pop()
        if isinstance(item, str):
            parts.append(item)
        elif item.type != TYPE_ITER:
            parts.append(_format_single(item, host, language))
        else:
            items = item.value
            pending.append("]")
            for index in range(len(items) - 1, -1, -1):
                pending.append(items[index])
                if index:
                    pending.append(", ")
            pending.append(f"[{len(items)} items; ")
    return "".join(parts)


def _format_single(value: Variant, host: Any, language: Optional["LanguageExtension"]) -> str:
    kind = value.type
    if kind == TYPE_NIL:
        return "nil"
    if kind == TYPE_BOOL:
        return "true" if value.value else "false"
    if kind == TYPE_NUM:
        return format_num(value.value)
    if kind == TYPE_LITERAL:
        return f'"{value.value}"'
    if kind == TYPE_ENTITY:
        return format_entity(value.value, host)
    if kind in VECTOR_SIZES:
        parts = " ".join(format_num(c) for c in value.value)
        return f"{kind}({parts})"
    if kind == TYPE_COMPONENT:
        return str(value.value)
    if kind == CTRL_COMMAND:
        if language is not None and 0 <= value.value < len(language.commands):
            return language.commands[value.value].keyword
        return f"<command {value.value}>"
    return CONTROL_KEYWORDS[kind]


def format_stack(
    stack: Iterable[Variant],
    host: Any = None,
    language: Optional["LanguageExtension"] = None,
    delimiter: str = " ",
) -> str:
    return delimiter.join(format_value(value, host, language) for value in stack)
