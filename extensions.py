from __future__ import annotations

import enum
import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from lexer import FyfthError
from values import Variant


EXTENSION_API_VERSION = 1


class FyfthExtensionError(FyfthError):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


class BroadcastBehavior(enum.Enum):
    MAY_ITER = "may_iter"
    IGNORE_ITER = "ignore_iter"


MAY_ITER = BroadcastBehavior.MAY_ITER
IGNORE_ITER = BroadcastBehavior.IGNORE_ITER


@dataclass
class CommandContext:
    """What a command sees while it runs."""

    output: List[str]
    host: Any
    vars: Dict[str, Variant]
    language: "LanguageExtension"

    def write(self, text: str) -> None:
        self.output.append(text)


CommandFn = Callable[[CommandContext, Sequence[Variant]], Optional[Variant]]
PrefixFn = Callable[[str, "LanguageExtension"], List[Variant]]


@dataclass(frozen=True)
class CommandInfo:
    keyword: str
    fn: CommandFn
    broadcast_behaviors: Tuple[BroadcastBehavior, ...]
    doc: str = ""

    @property
    def arity(self) -> int:
        return len(self.broadcast_behaviors)


@dataclass(frozen=True)
class PrefixInfo:
    char: str
    fn: PrefixFn


@dataclass
class LanguageExtension:
    """Keyword and prefix vocabulary of an interpreter.

    Command indices are positions in ``commands``; ``keywords`` maps each
    keyword to its index. Once sealed (an interpreter seals the extension it
    is built with) the vocabulary can no longer change.
    """

    name: str = "fyfth"
    keywords: Dict[str, int] = field(default_factory=dict)
    commands: List[CommandInfo] = field(default_factory=list)
    prefixes: List[PrefixInfo] = field(default_factory=list)
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    sealed: bool = False

    def seal(self) -> None:
        self.sealed = True

    def _ensure_open(self) -> None:
        if self.sealed:
            raise FyfthExtensionError(f"Language extension '{self.name}' is in use and cannot be modified")

    # ---- commands ----
    def register(
        self,
        keyword: str,
        fn: CommandFn,
        broadcast_behaviors: Sequence[BroadcastBehavior],
        *,
        doc: str = "",
    ) -> "LanguageExtension":
        self._ensure_open()
        if not keyword or any(ch.isspace() for ch in keyword):
            raise FyfthExtensionError(f"Invalid command keyword: {keyword!r}")
        if keyword in self.keywords:
            raise FyfthExtensionError(f"Command '{keyword}' is already defined")
        behaviors = tuple(BroadcastBehavior(b) for b in broadcast_behaviors)
        self.keywords[keyword] = len(self.commands)
        self.commands.append(CommandInfo(keyword=keyword, fn=fn, broadcast_behaviors=behaviors, doc=doc))
        return self

    with_command = register

    def command(self, keyword: str, *broadcast_behaviors: BroadcastBehavior, doc: str = ""):
        def deco(fn: CommandFn) -> CommandFn:
            self.register(keyword, fn, broadcast_behaviors, doc=doc)
            return fn

        return deco

    def get_command_id(self, keyword: str) -> Optional[int]:
        return self.keywords.get(keyword)

    def command_at(self, index: int) -> CommandInfo:
        return self.commands[index]

    # ---- prefixes ----
    def register_prefix(self, char: str, fn: PrefixFn) -> "LanguageExtension":
        self._ensure_open()
        if len(char) != 1:
            raise FyfthExtensionError(f"Prefix must be a single character, got {char!r}")
        if char == '"' or char == "#" or char.isspace():
            raise FyfthExtensionError(f"{char!r} cannot be used as a prefix")
        if self.prefix_index(char) is not None:
            raise FyfthExtensionError(f"Prefix '{char}' is already defined")
        self.prefixes.append(PrefixInfo(char=char, fn=fn))
        return self

    with_prefix = register_prefix

    def prefix(self, char: str):
        def deco(fn: PrefixFn) -> PrefixFn:
            self.register_prefix(char, fn)
            return fn

        return deco

    def prefix_index(self, char: str) -> Optional[int]:
        for index, info in enumerate(self.prefixes):
            if info.char == char:
                return index
        return None

    # ---- merge ----
    def merge(self, other: "LanguageExtension") -> "LanguageExtension":
        """Append ``other``'s vocabulary to this one.

        Nothing is changed if any keyword or prefix character collides; the
        error lists every collision.
        """
        self._ensure_open()
        keyword_clashes = sorted(k for k in other.keywords if k in self.keywords)
        prefix_clashes = sorted(p.char for p in other.prefixes if self.prefix_index(p.char) is not None)
        if keyword_clashes or prefix_clashes:
            parts: List[str] = []
            if keyword_clashes:
                parts.append("keywords " + ", ".join(f"`{k}`" for k in keyword_clashes))
            if prefix_clashes:
                parts.append("prefixes " + ", ".join(f"`{p}`" for p in prefix_clashes))
            raise FyfthExtensionError(
                f"Cannot merge '{other.name}' into '{self.name}': conflicting {' and '.join(parts)}"
            )
        offset = len(self.commands)
        for keyword, index in other.keywords.items():
            self.keywords[keyword] = index + offset
        self.commands.extend(other.commands)
        self.prefixes.extend(other.prefixes)
        self.metadata.extend(other.metadata)
        return self


class ExtensionAPI:
    def __init__(self, *, language: LanguageExtension, ext_name: str) -> None:
        self._language = language
        self._ext_name = ext_name

    # ---- metadata ----
    def metadata(
        self, *, name: Optional[str] = None, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION
    ) -> None:
        self._language.metadata.append(
            ExtensionMetadata(name=name or self._ext_name, version=version, requires_api=requires_api)
        )

    # ---- commands ----
    def register_command(
        self,
        keyword: str,
        fn: CommandFn,
        broadcast_behaviors: Sequence[BroadcastBehavior] = (),
        *,
        doc: str = "",
    ) -> None:
        self._language.register(keyword, fn, broadcast_behaviors, doc=doc)

    def command(self, keyword: str, *broadcast_behaviors: BroadcastBehavior, doc: str = ""):
        return self._language.command(keyword, *broadcast_behaviors, doc=doc)

    # ---- prefixes ----
    def register_prefix(self, char: str, fn: PrefixFn) -> None:
        self._language.register_prefix(char, fn)

    def prefix(self, char: str):
        return self._language.prefix(char)


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"fyfth_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise FyfthExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_unique_module_name(path), path)
    if spec is None or spec.loader is None:
        raise FyfthExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Extensions import the interpreter modules and their own siblings.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def read_fyx(pointer_file: str) -> List[str]:
    if not os.path.exists(pointer_file):
        raise FyfthExtensionError(f".fyx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    out: List[str] = []
    with open(pointer_file, "r", encoding="utf-8") as handle:
        for raw in handle.read().splitlines():
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            if not os.path.isabs(line):
                line = os.path.join(base_dir, line)
            out.append(os.path.abspath(line))
    return out


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for p in paths:
        if p.lower().endswith(".fyx"):
            expanded.extend(read_fyx(p))
        else:
            expanded.append(p)
    return [os.path.abspath(p) for p in expanded]


def load_language_extensions(paths: Sequence[str]) -> List[LanguageExtension]:
    """Load every extension module and return one vocabulary per module."""
    loaded: List[LanguageExtension] = []
    for path in gather_extension_paths(paths):
        module = load_extension_module(path)
        api_version = getattr(module, "FYFTH_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise FyfthExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "fyfth_register", None)
        if register is None or not callable(register):
            raise FyfthExtensionError(f"Extension {path} must define callable fyfth_register(ext)")
        ext_name = str(getattr(module, "FYFTH_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        language = LanguageExtension(name=ext_name)
        register(ExtensionAPI(language=language, ext_name=ext_name))
        loaded.append(language)
    return loaded


def build_language(base: LanguageExtension, paths: Sequence[str]) -> LanguageExtension:
    for extension in load_language_extensions(paths):
        base.merge(extension)
    return base
