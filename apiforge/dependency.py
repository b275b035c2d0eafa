"""Dependency graph that instantiates and wires singleton collaborators."""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Callable, Iterable, get_args, get_origin, get_type_hints

from .exceptions import (
    DependencyCycleError,
    DependencyError,
    DuplicateRegistrationError,
    UnfilledDependencyError,
    _describe,
)

_LOGGER = logging.getLogger("apiforge")


class DependencyTime(str, Enum):
    ON_CONSTRUCTION = "construction"
    ON_USE = "use"


@dataclass(frozen=True, slots=True)
class Dependency:
    """Edge from a node to one of the references it needs.

    Construction dependencies are passed positionally to the factory;
    on-use dependencies are assigned to ``attribute`` on the new instance.
    """

    reference: Any
    time: DependencyTime = DependencyTime.ON_CONSTRUCTION
    attribute: str | None = None

    def __post_init__(self) -> None:
        if self.time is DependencyTime.ON_USE and not self.attribute:
            raise ValueError("On-use dependencies require an attribute name")


class _InjectMarker:
    def __repr__(self) -> str:
        return "Inject"


_INJECT = _InjectMarker()


class Inject:
    """Annotation marking a class attribute as an on-use dependency.

    >>> class Service:
    ...     repository: Inject[Repository]
    """

    def __class_getitem__(cls, item: Any) -> Any:
        return Annotated[item, _INJECT]


class DependencyNode:
    def __init__(
        self,
        reference: Any,
        factory: Callable[..., Any] | None = None,
        dependencies: Iterable[Dependency] = (),
    ) -> None:
        if factory is None:
            if not callable(reference):
                raise ValueError(
                    f"Dependency {_describe(reference)} needs a factory"
                )
            factory = reference
        self.reference = reference
        self.factory = factory
        self.dependencies: list[Dependency] = list(dependencies)
        self.instance: Any = None
        self.resolved = False
        self.lock = asyncio.Lock()

    @classmethod
    def with_constructor(
        cls, reference: type, dependencies: Iterable[Dependency] = ()
    ) -> "DependencyNode":
        return cls(reference, reference, dependencies)

    @classmethod
    def with_factory(
        cls,
        reference: Any,
        factory: Callable[..., Any],
        dependencies: Iterable[Dependency] = (),
    ) -> "DependencyNode":
        return cls(reference, factory, dependencies)

    @classmethod
    def with_instance(cls, reference: Any, instance: Any) -> "DependencyNode":
        node = cls(reference, lambda: instance)
        node.instance = instance
        node.resolved = True
        return node

    def __repr__(self) -> str:
        state = "resolved" if self.resolved else "pending"
        return f"DependencyNode({_describe(self.reference)}, {state})"


def infer_dependencies(target: Callable[..., Any]) -> list[Dependency]:
    """Derive dependency edges from the type hints of *target*.

    For a class, the annotated parameters of ``__init__`` without defaults
    become construction dependencies in signature order, and class
    attributes annotated with ``Inject[...]`` become on-use dependencies.
    For any other callable its own annotated parameters are used.
    """

    func = target.__init__ if inspect.isclass(target) else target
    dependencies: list[Dependency] = []
    if func is not object.__init__:
        hints = get_type_hints(func)
        for param in inspect.signature(func).parameters.values():
            if param.name == "self" or param.default is not inspect.Parameter.empty:
                continue
            if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
                continue
            if param.name not in hints:
                raise DependencyError(
                    f"Cannot infer dependency for parameter '{param.name}' "
                    f"of {_describe(target)}: missing type annotation"
                )
            dependencies.append(Dependency(hints[param.name]))
    if inspect.isclass(target):
        for name, hint in get_type_hints(target, include_extras=True).items():
            if get_origin(hint) is Annotated and _INJECT in hint.__metadata__:
                dependencies.append(
                    Dependency(get_args(hint)[0], DependencyTime.ON_USE, name)
                )
    return dependencies


class DependencyGraph:
    """Registry of dependency nodes resolved lazily in dependency order."""

    def __init__(self) -> None:
        self._ids: dict[Any, int] = {}
        self._counter = itertools.count()
        self._nodes: dict[int, DependencyNode | None] = {}
        self._edges: dict[int, list[int]] = {}

    def _identity(self, reference: Any) -> int:
        ident = self._ids.get(reference)
        if ident is None:
            ident = next(self._counter)
            self._ids[reference] = ident
        return ident

    def _reaches(self, start: int, target: int) -> bool:
        seen: set[int] = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._edges.get(current, ()))
        return False

    def register(self, node: DependencyNode) -> DependencyNode:
        known = set(self._ids)
        ident = self._identity(node.reference)
        if self._nodes.get(ident) is not None:
            raise DuplicateRegistrationError(
                f"Dependency {_describe(node.reference)}"
            )
        dep_ids = [self._identity(d.reference) for d in node.dependencies]
        if any(self._reaches(dep_id, ident) for dep_id in dep_ids):
            for reference in set(self._ids) - known:
                del self._ids[reference]
            raise DependencyCycleError(node.reference)
        for dep_id in dep_ids:
            self._nodes.setdefault(dep_id, None)
        self._nodes[ident] = node
        self._edges[ident] = dep_ids
        _LOGGER.debug(
            "Registered dependency %s with %d dependencies",
            _describe(node.reference),
            len(dep_ids),
        )
        return node

    def add_dependency(
        self,
        reference: Any,
        factory: Callable[..., Any] | None = None,
        dependencies: Iterable[Any] | None = None,
    ) -> DependencyNode:
        """Register *reference*, inferring its dependencies when not given.

        Entries of *dependencies* may be :class:`Dependency` edges or bare
        references, which become construction dependencies.
        """

        if dependencies is None:
            edges = infer_dependencies(factory or reference)
        else:
            edges = [
                d if isinstance(d, Dependency) else Dependency(d)
                for d in dependencies
            ]
        return self.register(DependencyNode(reference, factory, edges))

    def add_instance(self, reference: Any, instance: Any) -> DependencyNode:
        return self.register(DependencyNode.with_instance(reference, instance))

    def get_node(self, reference: Any) -> DependencyNode | None:
        ident = self._ids.get(reference)
        if ident is None:
            return None
        return self._nodes.get(ident)

    def __contains__(self, reference: Any) -> bool:
        return self.get_node(reference) is not None

    def is_resolved(self, reference: Any) -> bool:
        node = self.get_node(reference)
        return node is not None and node.resolved

    def _instantiation_order(self, ident: int) -> list[int]:
        pending: dict[int, int] = {}
        stack = [ident]
        while stack:
            current = stack.pop()
            node = self._nodes.get(current)
            if current in pending or node is None or node.resolved:
                continue
            pending[current] = len(self._edges[current])
            stack.extend(self._edges[current])

        blocking = {
            nid: sum(1 for dep in set(self._edges[nid]) if dep in pending)
            for nid in pending
        }
        dependents: dict[int, list[int]] = {nid: [] for nid in pending}
        for nid in pending:
            for dep in set(self._edges[nid]):
                if dep in pending:
                    dependents[dep].append(nid)
        ready = [(pending[nid], nid) for nid, count in blocking.items() if count == 0]
        heapq.heapify(ready)
        order: list[int] = []
        while ready:
            _, nid = heapq.heappop(ready)
            order.append(nid)
            for dependent in dependents[nid]:
                blocking[dependent] -= 1
                if blocking[dependent] == 0:
                    heapq.heappush(ready, (pending[dependent], dependent))
        return order

    async def _instantiate(self, ident: int) -> None:
        node = self._nodes[ident]
        if node is None:
            raise DependencyError(f"Dependency id {ident} is not registered")
        async with node.lock:
            if node.resolved:
                return
            providers = [self._nodes.get(dep_id) for dep_id in self._edges[ident]]
            filled = sum(1 for p in providers if p is not None and p.resolved)
            if filled != len(providers):
                raise UnfilledDependencyError(node.reference, len(providers), filled)
            args = [
                provider.instance
                for dep, provider in zip(node.dependencies, providers)
                if dep.time is DependencyTime.ON_CONSTRUCTION
            ]
            instance = node.factory(*args)
            if inspect.isawaitable(instance):
                instance = await instance
            for dep, provider in zip(node.dependencies, providers):
                if dep.time is DependencyTime.ON_USE:
                    setattr(instance, dep.attribute, provider.instance)
            node.instance = instance
            node.resolved = True
            _LOGGER.debug("Instantiated dependency %s", _describe(node.reference))

    async def resolve(self, reference: Any) -> Any:
        """Return the singleton for *reference*, constructing it if needed."""

        node = self.get_node(reference)
        if node is None:
            raise DependencyError(
                f"Dependency {_describe(reference)} is not registered"
            )
        if node.resolved:
            return node.instance
        for ident in self._instantiation_order(self._ids[reference]):
            await self._instantiate(ident)
        return node.instance


__all__ = [
    "Dependency",
    "DependencyGraph",
    "DependencyNode",
    "DependencyTime",
    "Inject",
    "infer_dependencies",
]
