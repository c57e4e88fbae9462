from __future__ import annotations

import copy
import dataclasses
import math
import numbers
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Optional, Tuple

import numpy as np

from extensions import FyfthExtensionError
from host import Entity
from interpreter import FyfthDomainError
from printer import format_num
from values import (
    TYPE_BOOL,
    TYPE_COMPONENT,
    TYPE_ENTITY,
    TYPE_LITERAL,
    TYPE_NUM,
    VECTOR_SIZES,
    Variant,
    make_bool,
    make_component,
    make_entity,
    make_literal,
    make_num,
    make_vector,
)


def fuzzy_match(haystack: str, needle: str) -> bool:
    """True when ``needle``'s characters appear in ``haystack`` in order, ignoring case."""
    remaining = iter(haystack.lower())
    return all(ch in remaining for ch in needle.lower())


def case_ignored_match(lhs: str, rhs: str) -> bool:
    return lhs.lower() == rhs.lower()


class ComponentNotFound(FyfthDomainError):
    pass


class AmbiguousComponent(FyfthDomainError):
    def __init__(self, message: str, *, matches: List[str], rule: Optional[str] = None) -> None:
        super().__init__(message, rule=rule)
        self.matches = matches


class ComponentCapability(ABC):
    """Everything the interpreter may do with one host component type."""

    type_key: Hashable
    full_path: str
    type_ident: Optional[str]

    @abstractmethod
    def default(self) -> Any:
        ...

    @abstractmethod
    def from_host(self, value: Any) -> Optional[Any]:
        """Copy ``value`` if it is an instance of this type, else ``None``."""

    def extract(self, host: Any, entity: Entity) -> Optional[Any]:
        value = host.get_component(entity, self.type_key)
        if value is None:
            return None
        return self.clone(value)

    def insert(self, host: Any, entity: Entity, component: Any) -> None:
        host.insert_component(entity, self.type_key, self.clone(component))

    @abstractmethod
    def clone(self, component: Any) -> Any:
        ...

    @abstractmethod
    def equals(self, lhs: Any, rhs: Any) -> bool:
        ...

    @abstractmethod
    def describe(self, component: Any) -> str:
        ...

    @abstractmethod
    def fields(self, component: Any) -> Tuple[str, ...]:
        ...

    @abstractmethod
    def get_field(self, component: Any, name: str) -> Any:
        ...

    @abstractmethod
    def with_field(self, component: Any, name: str, value: Any) -> Any:
        """Return a copy of ``component`` whose field ``name`` holds ``value``."""


def _field_equals(lhs: Any, rhs: Any) -> bool:
    if isinstance(lhs, np.ndarray) or isinstance(rhs, np.ndarray):
        return bool(np.array_equal(lhs, rhs))
    return bool(lhs == rhs)


def _describe_field(value: Any) -> str:
    if isinstance(value, (bool, np.bool_)):
        return "true" if value else "false"
    if isinstance(value, np.ndarray):
        return "(" + ", ".join(format_num(v) for v in value.ravel()) + ")"
    if isinstance(value, (float, np.floating)):
        return format_num(value)
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


class DataclassCapability(ComponentCapability):
    """Capability for components written as Python dataclasses."""

    def __init__(self, cls: type) -> None:
        if not dataclasses.is_dataclass(cls):
            raise FyfthExtensionError(f"{cls!r} is not a dataclass")
        self.cls = cls
        self.type_key = cls
        self.full_path = f"{cls.__module__}.{cls.__qualname__}"
        self.type_ident = cls.__name__

    def default(self) -> Any:
        return self.cls()

    def from_host(self, value: Any) -> Optional[Any]:
        if type(value) is not self.cls:
            return None
        return self.clone(value)

    def clone(self, component: Any) -> Any:
        return copy.deepcopy(component)

    def equals(self, lhs: Any, rhs: Any) -> bool:
        if type(lhs) is not type(rhs):
            return False
        return all(_field_equals(getattr(lhs, name), getattr(rhs, name)) for name in self.fields(lhs))

    def describe(self, component: Any) -> str:
        parts = ", ".join(f"{name}: {_describe_field(getattr(component, name))}" for name in self.fields(component))
        return f"{self.type_ident} {{ {parts} }}"

    def fields(self, component: Any) -> Tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(component))

    def get_field(self, component: Any, name: str) -> Any:
        return getattr(component, name)

    def with_field(self, component: Any, name: str, value: Any) -> Any:
        updated = self.clone(component)
        if getattr(type(updated), "__dataclass_params__").frozen:
            return dataclasses.replace(updated, **{name: value})
        setattr(updated, name, value)
        return updated


class ComponentRef:
    """A component value detached from its host."""

    __slots__ = ("capability", "component")

    def __init__(self, capability: ComponentCapability, component: Any) -> None:
        self.capability = capability
        self.component = component

    @property
    def type_key(self) -> Hashable:
        return self.capability.type_key

    @property
    def type_path(self) -> str:
        return self.capability.full_path

    @property
    def type_ident(self) -> Optional[str]:
        return self.capability.type_ident

    def clone(self) -> "ComponentRef":
        return ComponentRef(self.capability, self.capability.clone(self.component))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ComponentRef):
            return NotImplemented
        return self.type_key == other.type_key and self.capability.equals(self.component, other.component)

    __hash__ = None  # type: ignore[assignment]

    def __str__(self) -> str:
        return self.capability.describe(self.component)

    def __repr__(self) -> str:
        return f"ComponentRef({self})"


@dataclass(frozen=True)
class ComponentInfo:
    full_path: str
    type_ident: Optional[str]
    type_key: Hashable


class ComponentRegistry:
    def __init__(self) -> None:
        self.infos: List[ComponentInfo] = []
        self._capabilities: Dict[Hashable, ComponentCapability] = {}

    def register(self, capability: ComponentCapability) -> ComponentCapability:
        if capability.type_key in self._capabilities:
            raise FyfthExtensionError(f"Component `{capability.full_path}` is already registered")
        self._capabilities[capability.type_key] = capability
        self.infos.append(
            ComponentInfo(
                full_path=capability.full_path,
                type_ident=capability.type_ident,
                type_key=capability.type_key,
            )
        )
        return capability

    def register_dataclass(self, cls: type) -> ComponentCapability:
        return self.register(DataclassCapability(cls))

    def info_for(self, type_key: Hashable) -> Optional[ComponentInfo]:
        for info in self.infos:
            if info.type_key == type_key:
                return info
        return None

    def capability(self, type_key: Hashable) -> ComponentCapability:
        return self._capabilities[type_key]

    def capability_for(self, value: Any) -> Optional[ComponentCapability]:
        return self._capabilities.get(type(value))

    def find_by_name(self, name: str) -> ComponentInfo:
        """Resolve a user-typed component name.

        Tried in order, stopping at the first pass with any match: the type
        identifier ignoring case, a fuzzy match on the identifier, a fuzzy
        match on the full path. More than one match in a pass is ambiguous.
        """
        passes = (
            lambda info: info.type_ident is not None and case_ignored_match(info.type_ident, name),
            lambda info: info.type_ident is not None and fuzzy_match(info.type_ident, name),
            lambda info: fuzzy_match(info.full_path, name),
        )
        for matches_name in passes:
            matches = [info for info in self.infos if matches_name(info)]
            if len(matches) == 1:
                return matches[0]
            if matches:
                listing = "".join(f"\n  {info.full_path}" for info in matches)
                raise AmbiguousComponent(
                    f"multiple components fit the name '{name}'. Specify the name more clearly to avoid "
                    f"ambiguity. The matching components are:{listing}",
                    matches=[info.full_path for info in matches],
                )
        raise ComponentNotFound(
            f"could not find component `{name}` in registry. Make sure it is registered with the host."
        )


# ---- Host value <-> Variant ----


def variant_from_host(value: Any, registry: ComponentRegistry) -> Optional[Variant]:
    """Convert a host field value, or ``None`` if its type is unsupported."""
    if isinstance(value, (bool, np.bool_)):
        return make_bool(bool(value))
    if isinstance(value, numbers.Real):
        return make_num(value)
    if isinstance(value, str):
        return make_literal(value)
    if isinstance(value, Entity):
        return make_entity(value)
    if isinstance(value, np.ndarray):
        if value.ndim == 1 and np.issubdtype(value.dtype, np.number):
            for kind, size in VECTOR_SIZES.items():
                if value.shape[0] == size:
                    return make_vector(kind, value)
        return None
    capability = registry.capability_for(value)
    if capability is not None:
        component = capability.from_host(value)
        if component is not None:
            return make_component(ComponentRef(capability, component))
    return None


def _coerce_num(current: Any, x: np.float32) -> Any:
    if isinstance(current, (bool, np.bool_)):
        raise TypeError("num cannot be written to a bool field")
    if isinstance(current, np.floating):
        return type(current)(x)
    if isinstance(current, float):
        return float(x)
    if isinstance(current, (int, np.integer)):
        if not math.isfinite(float(x)):
            raise ValueError(f"{format_num(x)} is not a finite number")
        truncated = int(x)
        if isinstance(current, np.integer):
            limits = np.iinfo(type(current))
            if not limits.min <= truncated <= limits.max:
                raise ValueError(f"{truncated} does not fit in {type(current).__name__}")
            return type(current)(truncated)
        return truncated
    raise TypeError(f"num cannot be written to a {type(current).__name__} field")


def coerce_for_field(current: Any, value: Variant) -> Any:
    """The host value to store in a field currently holding ``current``.

    Raises ``TypeError`` or ``ValueError`` when ``value`` cannot be written
    to a field of that type.
    """
    kind = value.type
    if kind == TYPE_NUM:
        return _coerce_num(current, value.value)
    if kind == TYPE_BOOL:
        if isinstance(current, (bool, np.bool_)):
            return type(current)(value.value)
    elif kind == TYPE_LITERAL:
        if isinstance(current, str):
            return value.value
    elif kind == TYPE_ENTITY:
        if isinstance(current, Entity):
            return value.value
    elif kind in VECTOR_SIZES:
        if isinstance(current, np.ndarray) and current.shape == value.value.shape:
            return value.value.astype(current.dtype, copy=True)
    elif kind == TYPE_COMPONENT:
        if type(current) is value.value.type_key or current is None:
            return value.value.capability.clone(value.value.component)
    raise TypeError(f"{kind} cannot be written to a {type(current).__name__} field")


def get_component_field(ref: ComponentRef, name: str, registry: ComponentRegistry) -> Variant:
    capability = ref.capability
    if name not in capability.fields(ref.component):
        raise FyfthDomainError(f"component `{ref.type_path}` does not have a field `{name}`", rule="get")
    converted = variant_from_host(capability.get_field(ref.component, name), registry)
    if converted is None:
        raise FyfthDomainError(f"field `{name}` of component `{ref.type_path}` has an unsupported type", rule="get")
    return converted


def set_component_field(ref: ComponentRef, name: str, value: Variant, rendered: str) -> ComponentRef:
    capability = ref.capability
    if name not in capability.fields(ref.component):
        raise FyfthDomainError(f"component `{ref.type_path}` does not have a field `{name}`", rule="set")
    try:
        coerced = coerce_for_field(capability.get_field(ref.component, name), value)
    except (TypeError, ValueError) as exc:
        raise FyfthDomainError(
            f"failed to set field `{name}` of component `{ref.type_path}` to value `{rendered}`: {exc}",
            rule="set",
        ) from exc
    return ComponentRef(capability, capability.with_field(ref.component, name, coerced))


def extract_component(host: Any, entity: Entity, name: str) -> Variant:
    registry: ComponentRegistry = host.components
    info = registry.find_by_name(name)
    if not host.exists(entity):
        raise FyfthDomainError(f"entity ({entity}) no longer exists.", rule="get")
    capability = registry.capability(info.type_key)
    component = capability.extract(host, entity)
    if component is None:
        raise FyfthDomainError(f"entity ({entity}) does not contain component `{info.full_path}`", rule="get")
    return make_component(ComponentRef(capability, component))


def insert_component(host: Any, entity: Entity, ref: ComponentRef) -> None:
    if not host.exists(entity):
        raise FyfthDomainError(f"entity ({entity}) no longer exists.", rule="add")
    ref.capability.insert(host, entity, ref.component)
