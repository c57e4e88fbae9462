"""Fyfth extension: focus markers.

Adds ``focus`` and ``unfocus`` (mark or unmark an entity, broadcasting over
iters of entities) and ``focused`` (all currently marked entities).
"""

from __future__ import annotations

from typing import Sequence

from extensions import MAY_ITER, CommandContext, ExtensionAPI


FYFTH_EXTENSION_NAME = "focus"
FYFTH_EXTENSION_API_VERSION = 1

FOCUS_MARKER = "fyfth.focus"


def _focus_target(ctx: CommandContext, args: Sequence, keyword: str):
    from interpreter import FyfthDomainError, FyfthTypeError
    from values import TYPE_ENTITY

    (value,) = args
    if value.type != TYPE_ENTITY:
        raise FyfthTypeError(f"the operation `{keyword}` needs to operate on `Entity`.", rule=keyword)
    if not ctx.host.exists(value.value):
        raise FyfthDomainError(f"entity ({value.value}) no longer exists.", rule=keyword)
    return value.value


def _focus(ctx: CommandContext, args: Sequence) -> None:
    ctx.host.insert_marker(_focus_target(ctx, args, "focus"), FOCUS_MARKER)


def _unfocus(ctx: CommandContext, args: Sequence) -> None:
    ctx.host.remove_marker(_focus_target(ctx, args, "unfocus"), FOCUS_MARKER)


def _focused(ctx: CommandContext, args: Sequence):
    from values import make_entity, make_iter

    return make_iter(make_entity(entity) for entity in ctx.host.query_marker(FOCUS_MARKER))


def fyfth_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=FYFTH_EXTENSION_NAME, version="0.1.0")
    ext.register_command("focus", _focus, (MAY_ITER,), doc="mark an entity as focused")
    ext.register_command("unfocus", _unfocus, (MAY_ITER,), doc="remove the focus mark")
    ext.register_command("focused", _focused, (), doc="iter of focused entities")
