from __future__ import annotations

import inspect
import threading
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING

from loguru import logger

from .allocator import Allocator
from .descriptor import (
    ConstructorDescriptor,
    Dependency,
    DependencyKind,
    Dtor,
    FactoryDescriptor,
    GenericBaseDescriptor,
    GenericWrapperDescriptor,
    LifeCycle,
    LifeCycleLike,
    ServiceDescriptor,
    coerce_dependencies,
    extract_dependencies,
    factory_argument,
    infer_factory_key,
    normalize_lifecycle,
    validate_destructor,
)
from .errors import CircularDependencyError, DIError, LifeCycleError, ServiceNotFoundError
from .generics import GenericKey, TypeKey, key_label

if TYPE_CHECKING:
    from .provider import ServiceProvider


class Container:
    """
    Registry of service descriptors.

    Each key has at most one default registration (`register_*`); factory
    registrations (`register_*_with_factory`) are kept in a side list per key
    so several implementations of one key can be resolved together with
    `resolve_slice`.

    Registration is expected to finish before `create_service_provider()`,
    which validates the whole graph once. The only registry mutation after
    that point is the lazy materialization of generic keys, serialized by the
    internal lock.
    """

    def __init__(self) -> None:
        self._dependencies: dict[TypeKey, ServiceDescriptor] = {}
        self._factories: dict[TypeKey, list[ServiceDescriptor]] = {}
        self._lock = threading.RLock()

    def __enter__(self) -> Container:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __contains__(self, key: object) -> bool:
        return self.get_descriptor(key) is not None

    # --------------------------------------------------------------------- #
    # Registration                                                          #
    # --------------------------------------------------------------------- #

    def _add_dependency(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        with self._lock:
            if descriptor.key in self._dependencies:
                logger.warning(f"Service registration replaced: {descriptor.label}")
            self._dependencies[descriptor.key] = descriptor
        logger.debug(
            f"Service registered: key={descriptor.label}, lifecycle={descriptor.lifecycle.name}, "
            f"id={descriptor.registration_id}"
        )
        return descriptor

    def _add_factory(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        with self._lock:
            self._factories.setdefault(descriptor.key, []).append(descriptor)
        logger.debug(
            f"Service factory registered: key={descriptor.label}, "
            f"lifecycle={descriptor.lifecycle.name}, id={descriptor.registration_id}"
        )
        return descriptor

    def register(
        self,
        service: type | Callable[..., type],
        lifecycle: LifeCycleLike = LifeCycle.SINGLETON,
        *,
        dependencies: Sequence[object] | None = None,
        dtor: Dtor = None,
    ) -> ServiceDescriptor:
        """
        Register a class, or a generic base, under its own key.

        A class is built by calling it with its dependencies. They are taken
        from `dependencies` (passed positionally, in order) when given, else
        read from the `__init__` signature: `require()` defaults first, then
        type hints. Parameters with ordinary defaults are left alone.

        A non-class callable registers a generic base: a class factory taking
        type parameters. Its lifecycle becomes the default lifecycle of every
        `generic(base, ...)` key resolved later.
        """
        resolved_lifecycle = normalize_lifecycle(lifecycle)
        label = key_label(service)
        validate_destructor(dtor, label)

        if inspect.isclass(service):
            deps = (
                coerce_dependencies(dependencies)
                if dependencies is not None
                else extract_dependencies(service)
            )
            descriptor: ServiceDescriptor = ConstructorDescriptor(
                key=service,
                lifecycle=resolved_lifecycle,
                dependencies=deps,
                dtor=dtor,
                service_cls=service,
            )
        elif callable(service):
            if dependencies is not None:
                raise ValueError(
                    f"Generic base '{label}' cannot declare dependencies; "
                    "they are read from the class it produces."
                )
            descriptor = GenericBaseDescriptor(
                key=service,
                lifecycle=resolved_lifecycle,
                dtor=dtor,
                base=service,
            )
        else:
            msg = f"Cannot register {service!r}: expected a class or a generic base function."
            logger.error(msg)
            raise TypeError(msg)

        return self._add_dependency(descriptor)

    def register_singleton(self, service: type | Callable[..., type], **kwargs: object) -> ServiceDescriptor:
        return self.register(service, LifeCycle.SINGLETON, **kwargs)  # type: ignore[arg-type]

    def register_scoped(self, service: type | Callable[..., type], **kwargs: object) -> ServiceDescriptor:
        return self.register(service, LifeCycle.SCOPED, **kwargs)  # type: ignore[arg-type]

    def register_transient(self, service: type | Callable[..., type], **kwargs: object) -> ServiceDescriptor:
        return self.register(service, LifeCycle.TRANSIENT, **kwargs)  # type: ignore[arg-type]

    def register_with_factory(
        self,
        factory: Callable[..., object],
        lifecycle: LifeCycleLike = LifeCycle.SINGLETON,
        *,
        key: TypeKey | None = None,
        dtor: Dtor = None,
    ) -> ServiceDescriptor:
        """
        Register a factory function as one more implementation of `key`.

        The key defaults to the factory's return annotation. Factories take no
        argument, the provider, or the allocator (when annotated `Allocator`).
        Generator factories yield the instance once and are finalized when the
        instance is torn down.
        """
        resolved_lifecycle = normalize_lifecycle(lifecycle)
        service_key = key if key is not None else infer_factory_key(factory)
        if service_key is None:
            msg = (
                f"Factory registration failed for {key_label(factory)}: unable to infer service type. "
                "Please provide a return annotation or an explicit key."
            )
            logger.error(msg)
            raise TypeError(msg)

        label = key_label(service_key)
        validate_destructor(dtor, label)
        descriptor = FactoryDescriptor(
            key=service_key,
            lifecycle=resolved_lifecycle,
            dtor=dtor,
            factory=factory,
            argument=factory_argument(factory, label),
        )
        return self._add_factory(descriptor)

    def register_singleton_with_factory(self, factory: Callable[..., object], **kwargs: object) -> ServiceDescriptor:
        return self.register_with_factory(factory, LifeCycle.SINGLETON, **kwargs)  # type: ignore[arg-type]

    def register_scoped_with_factory(self, factory: Callable[..., object], **kwargs: object) -> ServiceDescriptor:
        return self.register_with_factory(factory, LifeCycle.SCOPED, **kwargs)  # type: ignore[arg-type]

    def register_transient_with_factory(self, factory: Callable[..., object], **kwargs: object) -> ServiceDescriptor:
        return self.register_with_factory(factory, LifeCycle.TRANSIENT, **kwargs)  # type: ignore[arg-type]

    # --------------------------------------------------------------------- #
    # Lookup                                                                #
    # --------------------------------------------------------------------- #

    def get_descriptor(self, key: object) -> ServiceDescriptor | None:
        """Default registration of `key`, else its most recent factory."""
        with self._lock:
            descriptor = self._dependencies.get(key)
            if descriptor is not None:
                return descriptor
            factories = self._factories.get(key)
            return factories[-1] if factories else None

    def get_factories(self, key: object) -> tuple[ServiceDescriptor, ...]:
        with self._lock:
            return tuple(self._factories.get(key, ()))

    def get_all(self, key: object) -> list[ServiceDescriptor]:
        """Every registration of `key`: the default one first, then factories in order."""
        with self._lock:
            descriptors: list[ServiceDescriptor] = []
            default = self._dependencies.get(key)
            if default is not None:
                descriptors.append(default)
            descriptors.extend(self._factories.get(key, ()))
            return descriptors

    def descriptors(self) -> list[ServiceDescriptor]:
        with self._lock:
            result = list(self._dependencies.values())
            for factories in self._factories.values():
                result.extend(factories)
            return result

    # --------------------------------------------------------------------- #
    # Validation                                                            #
    # --------------------------------------------------------------------- #

    def _edge_targets(
        self,
        parent: ServiceDescriptor,
        dep: Dependency,
        *,
        follow_generics: bool,
    ) -> list[ServiceDescriptor]:
        if dep.is_reserved:
            return []
        if dep.kind == DependencyKind.GENERIC:
            if not follow_generics:
                return []
            materialized = self.get_descriptor(dep.key)
            return [materialized] if materialized is not None else []
        if dep.kind == DependencyKind.SLICE:
            contributors = self.get_all(dep.key)
            if not contributors:
                msg = (
                    f"Service '{parent.label}' depends on every '{key_label(dep.key)}', "
                    "but no service provides it."
                )
                logger.error(msg)
                raise ServiceNotFoundError(msg)
            return contributors

        target = self.get_descriptor(dep.key)
        if target is None:
            msg = (
                f"Service '{parent.label}' depends on '{key_label(dep.key)}', "
                "but that service is not registered."
            )
            logger.error(msg)
            raise ServiceNotFoundError(msg)
        return [target]

    def _dependency_graph(
        self,
        roots: Iterable[ServiceDescriptor],
        *,
        follow_generics: bool,
    ) -> dict[int, list[ServiceDescriptor]]:
        graph: dict[int, list[ServiceDescriptor]] = {}
        pending = list(roots)
        while pending:
            descriptor = pending.pop()
            if descriptor.registration_id in graph:
                continue
            children: list[ServiceDescriptor] = []
            for dep in descriptor.dependencies:
                children.extend(self._edge_targets(descriptor, dep, follow_generics=follow_generics))
            graph[descriptor.registration_id] = children
            pending.extend(children)
        return graph

    def _validate(self, roots: Iterable[ServiceDescriptor], *, follow_generics: bool) -> None:
        roots = list(roots)
        graph = self._dependency_graph(roots, follow_generics=follow_generics)

        labels: dict[int, str] = {}
        for children in graph.values():
            for child in children:
                labels[child.registration_id] = child.label
        for root in roots:
            labels[root.registration_id] = root.label

        cycle = _detect_cycle(
            {node: [child.registration_id for child in children] for node, children in graph.items()}
        )
        if cycle:
            cycle_path = " -> ".join(labels.get(node, str(node)) for node in cycle)
            msg = f"Detected circular service dependency: {cycle_path}"
            logger.error(msg)
            raise CircularDependencyError(msg)

        for root in roots:
            for child in graph[root.registration_id]:
                check_lifecycles(root, child)

    def validate(self) -> None:
        """
        Validate every registration: missing dependencies, cycles (direct,
        transitive and self) and lifecycle compatibility of every edge.

        Generic dependencies are skipped here; they are validated when they
        are first resolved.
        """
        with self._lock:
            self._validate(self.descriptors(), follow_generics=False)

    def get_or_add_generic(self, key: GenericKey) -> ServiceDescriptor:
        """
        Return the descriptor of a generic key, registering it on first use.

        The wrapper and its concrete inner class take the lifecycle of the
        concrete class when it was registered explicitly, else the lifecycle of
        the generic base. The induced registrations are validated right away
        and removed again when validation fails.
        """
        with self._lock:
            inner_type = key.concrete_type()
            base_descriptor = self._dependencies.get(key.base)
            concrete_descriptor = self.get_descriptor(inner_type)
            wrapper_descriptor = self.get_descriptor(key)

            if base_descriptor is None and concrete_descriptor is None:
                msg = f"Requesting unregistered generic service: {key!r}"
                logger.error(msg)
                raise ServiceNotFoundError(msg)

            if wrapper_descriptor is not None and concrete_descriptor is not None:
                return wrapper_descriptor

            lifecycle = (
                concrete_descriptor.lifecycle
                if concrete_descriptor is not None
                else base_descriptor.lifecycle  # type: ignore[union-attr]
            )

            added: list[ServiceDescriptor] = []
            if concrete_descriptor is None:
                added.append(
                    self._add_dependency(
                        ConstructorDescriptor(
                            key=inner_type,
                            lifecycle=lifecycle,
                            dependencies=extract_dependencies(inner_type),
                            service_cls=inner_type,
                        )
                    )
                )
            if wrapper_descriptor is None:
                added.append(
                    self._add_dependency(
                        GenericWrapperDescriptor(
                            key=key,
                            lifecycle=lifecycle,
                            dependencies=(Dependency(inner_type),),
                        )
                    )
                )

            try:
                self._validate(added, follow_generics=True)
            except DIError:
                for descriptor in added:
                    if self._dependencies.get(descriptor.key) is descriptor:
                        del self._dependencies[descriptor.key]
                raise

            return self._dependencies[key]

    # --------------------------------------------------------------------- #
    # Provider                                                              #
    # --------------------------------------------------------------------- #

    def create_service_provider(self, allocator: Allocator | None = None) -> ServiceProvider:
        """Validate the registrations and create the root provider."""
        from .provider import ServiceProvider

        self.validate()
        provider = ServiceProvider(self, allocator if allocator is not None else Allocator())
        logger.debug(f"Service provider created with {len(self.descriptors())} registration(s)")
        return provider

    def close(self) -> None:
        with self._lock:
            self._dependencies.clear()
            self._factories.clear()
        logger.debug("Container closed; all registrations dropped.")


def check_lifecycles(parent: ServiceDescriptor, child: ServiceDescriptor) -> None:
    """A singleton may only use singletons; a scoped service may not use transients."""
    if parent.lifecycle == LifeCycle.SINGLETON and child.lifecycle != LifeCycle.SINGLETON:
        kind = "singleton"
    elif parent.lifecycle == LifeCycle.SCOPED and child.lifecycle == LifeCycle.TRANSIENT:
        kind = "scoped"
    else:
        return
    msg = (
        f"{parent.label} is {kind} and has dependency {child.label} "
        f"with shorter lifecycle ({child.lifecycle.name.lower()})."
    )
    logger.warning(msg)
    raise LifeCycleError(msg)


def _detect_cycle(dependency_map: dict[int, list[int]]) -> list[int] | None:
    UNVISITED = 0
    VISITING = 1
    VISITED = 2

    state: dict[int, int] = dict.fromkeys(dependency_map, UNVISITED)
    stack: list[int] = []

    def dfs(node: int) -> list[int] | None:
        state[node] = VISITING
        stack.append(node)

        for dep in dependency_map.get(node, ()):
            dep_state = state.get(dep, UNVISITED)
            if dep_state == UNVISITED:
                cycle = dfs(dep)
                if cycle is not None:
                    return cycle
            elif dep_state == VISITING:
                start = stack.index(dep)
                return stack[start:] + [dep]

        stack.pop()
        state[node] = VISITED
        return None

    for node in dependency_map:
        if state[node] == UNVISITED:
            cycle = dfs(node)
            if cycle is not None:
                return cycle

    return None
