from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional, Set, TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

if TYPE_CHECKING:
    from bridge import ComponentRegistry


IGNORE_MARKER = "fyfth.ignore"


@dataclass(frozen=True, order=True)
class Entity:
    index: int
    generation: int = 0

    def __str__(self) -> str:
        return f"{self.index}v{self.generation}"


class Host(ABC):
    """The object store a run operates on.

    Implementations own the entities and their components; the interpreter
    only ever holds ``Entity`` handles and reaches components through the
    registry returned by ``components``.
    """

    @property
    @abstractmethod
    def components(self) -> "ComponentRegistry":
        ...

    @abstractmethod
    def entities(self, without: Optional[Hashable] = IGNORE_MARKER) -> List[Entity]:
        ...

    @abstractmethod
    def exists(self, entity: Entity) -> bool:
        ...

    @abstractmethod
    def name_of(self, entity: Entity) -> Optional[str]:
        ...

    @abstractmethod
    def get_component(self, entity: Entity, type_key: Hashable) -> Optional[Any]:
        ...

    @abstractmethod
    def insert_component(self, entity: Entity, type_key: Hashable, component: Any) -> None:
        ...

    @abstractmethod
    def insert_marker(self, entity: Entity, marker: Hashable) -> None:
        ...

    @abstractmethod
    def remove_marker(self, entity: Entity, marker: Hashable) -> None:
        ...

    @abstractmethod
    def has_marker(self, entity: Entity, marker: Hashable) -> bool:
        ...

    @abstractmethod
    def query_marker(self, marker: Hashable) -> List[Entity]:
        ...


@dataclass
class _Record:
    name: Optional[str]
    components: Dict[Hashable, Any] = field(default_factory=dict)
    markers: Set[Hashable] = field(default_factory=set)


class InMemoryHost(Host):
    """Dictionary-backed host; entity indices are reused with a new generation."""

    def __init__(self, registry: Optional["ComponentRegistry"] = None) -> None:
        if registry is None:
            from bridge import ComponentRegistry

            registry = ComponentRegistry()
        self._registry = registry
        self._records: Dict[Entity, _Record] = {}
        self._generations: Dict[int, int] = {}
        self._free: List[int] = []
        self._next_index = 0

    @property
    def components(self) -> "ComponentRegistry":
        return self._registry

    def spawn(self, name: Optional[str] = None, *components: Any, markers: Any = ()) -> Entity:
        if self._free:
            index = self._free.pop()
        else:
            index = self._next_index
            self._next_index += 1
        entity = Entity(index, self._generations.get(index, 0))
        self._records[entity] = _Record(name=name, markers=set(markers))
        for component in components:
            self.insert_component(entity, type(component), component)
        return entity

    def despawn(self, entity: Entity) -> None:
        self._lookup(entity)
        del self._records[entity]
        self._generations[entity.index] = entity.generation + 1
        self._free.append(entity.index)

    def set_name(self, entity: Entity, name: Optional[str]) -> None:
        self._lookup(entity).name = name

    def _lookup(self, entity: Entity) -> _Record:
        record = self._records.get(entity)
        if record is None:
            raise KeyError(f"entity {entity} does not exist")
        return record

    def entities(self, without: Optional[Hashable] = IGNORE_MARKER) -> List[Entity]:
        return [
            entity
            for entity, record in self._records.items()
            if without is None or without not in record.markers
        ]

    def exists(self, entity: Entity) -> bool:
        return entity in self._records

    def name_of(self, entity: Entity) -> Optional[str]:
        record = self._records.get(entity)
        if record is None or IGNORE_MARKER in record.markers:
            return None
        return record.name

    def get_component(self, entity: Entity, type_key: Hashable) -> Optional[Any]:
        record = self._records.get(entity)
        if record is None:
            return None
        return record.components.get(type_key)

    def insert_component(self, entity: Entity, type_key: Hashable, component: Any) -> None:
        self._lookup(entity).components[type_key] = component

    def insert_marker(self, entity: Entity, marker: Hashable) -> None:
        self._lookup(entity).markers.add(marker)

    def remove_marker(self, entity: Entity, marker: Hashable) -> None:
        self._lookup(entity).markers.discard(marker)

    def has_marker(self, entity: Entity, marker: Hashable) -> bool:
        record = self._records.get(entity)
        return record is not None and marker in record.markers

    def query_marker(self, marker: Hashable) -> List[Entity]:
        return [entity for entity, record in self._records.items() if marker in record.markers]


# ---- Sample components ----


def _vec3(x: float = 0.0, y: float = 0.0, z: float = 0.0) -> NDArray[np.float32]:
    return np.array([x, y, z], dtype=np.float32)


@dataclass
class Transform:
    translation: NDArray[np.float32] = field(default_factory=_vec3)
    rotation: NDArray[np.float32] = field(default_factory=lambda: np.array([0, 0, 0, 1], dtype=np.float32))
    scale: NDArray[np.float32] = field(default_factory=lambda: _vec3(1.0, 1.0, 1.0))


@dataclass
class Visibility:
    visible: bool = True


@dataclass
class Health:
    current: int = 100
    maximum: int = 100


def demo_host(count: int = 3) -> InMemoryHost:
    """A host with a camera, a light and ``count`` named cubes."""
    from bridge import ComponentRegistry, DataclassCapability

    registry = ComponentRegistry()
    for cls in (Transform, Visibility, Health):
        registry.register(DataclassCapability(cls))
    host = InMemoryHost(registry)
    host.spawn("camera", Transform(translation=_vec3(0.0, 2.0, 10.0)))
    host.spawn("light", Transform(translation=_vec3(4.0, 8.0, 4.0)), Visibility())
    for i in range(count):
        host.spawn(
            f"debug cube {i}",
            Transform(translation=_vec3(float(i) * 2.0, 0.0, 0.0)),
            Visibility(),
            Health(),
        )
    return host
