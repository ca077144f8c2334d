from __future__ import annotations

import contextvars
import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TypeVar, overload

from .container import Container
from .descriptor import Dtor, LifeCycle, LifeCycleLike, normalize_lifecycle

logger = logging.getLogger(__name__)

_SERVICE_DEFINITION_ATTR = "__ioctree_definition__"
_S = TypeVar("_S", bound=object)


@dataclass(frozen=True)
class ServiceDefinition:
    origin: str
    service_cls: type[object]
    lifecycle: LifeCycle
    dependencies: tuple[object, ...] | None = None
    dtor: Dtor = None


@dataclass
class _RegistrationCapture:
    container: Container
    origins: set[str] = field(default_factory=set)


_ACTIVE_REGISTRATION_CAPTURE: contextvars.ContextVar[_RegistrationCapture | None] = (
    contextvars.ContextVar("_ioctree_active_registration_capture", default=None)
)


def _register_definition_into_active_container(definition: ServiceDefinition) -> None:
    capture = _ACTIVE_REGISTRATION_CAPTURE.get()
    if capture is None:
        raise RuntimeError(
            "No active service registration capture. "
            "Decorated services must be defined or imported inside capture_service_registrations()."
        )
    if definition.origin in capture.origins:
        return
    capture.container.register(
        definition.service_cls,
        definition.lifecycle,
        dependencies=definition.dependencies,
        dtor=definition.dtor,
    )
    capture.origins.add(definition.origin)
    logger.debug("Captured service definition %s", definition.origin)


def get_service_definition(service_cls: type[object]) -> ServiceDefinition | None:
    definition = service_cls.__dict__.get(_SERVICE_DEFINITION_ATTR)
    return definition if isinstance(definition, ServiceDefinition) else None


def _register_service_class(
    service_cls: type[object],
    *,
    lifecycle: LifeCycleLike,
    dependencies: Sequence[object] | None,
    dtor: Dtor,
) -> type[object]:
    definition = ServiceDefinition(
        origin=f"{service_cls.__module__}.{service_cls.__qualname__}",
        service_cls=service_cls,
        lifecycle=normalize_lifecycle(lifecycle),
        dependencies=tuple(dependencies) if dependencies is not None else None,
        dtor=dtor,
    )
    setattr(service_cls, _SERVICE_DEFINITION_ATTR, definition)
    _register_definition_into_active_container(definition)
    return service_cls


@overload
def Service(
    service_cls: type[_S],
    *,
    lifecycle: LifeCycleLike = LifeCycle.SINGLETON,
    dependencies: Sequence[object] | None = None,
    dtor: Dtor = None,
) -> type[_S]:
    ...


@overload
def Service(
    service_cls: None = None,
    *,
    lifecycle: LifeCycleLike = LifeCycle.SINGLETON,
    dependencies: Sequence[object] | None = None,
    dtor: Dtor = None,
) -> Callable[[type[_S]], type[_S]]:
    ...


def Service(
    service_cls: type[object] | None = None,
    *,
    lifecycle: LifeCycleLike = LifeCycle.SINGLETON,
    dependencies: Sequence[object] | None = None,
    dtor: Dtor = None,
) -> Callable[[type[object]], type[object]] | type[object]:
    """
    Register a service class into the container of the active capture.

    Supported forms:
    - @Service
    - @Service()
    - @Service(lifecycle="transient")
    - @Service(lifecycle=LifeCycle.SCOPED, dependencies=[Logger])
    """

    def _decorator(cls: type[object]) -> type[object]:
        return _register_service_class(
            cls,
            lifecycle=lifecycle,
            dependencies=dependencies,
            dtor=dtor,
        )

    if isinstance(service_cls, type):
        return _decorator(service_cls)
    if service_cls is not None:
        raise TypeError("Service() expects a service class or no positional argument.")
    return _decorator


def register_service_definitions(container: Container, services: Sequence[type[object]]) -> None:
    """Register classes already decorated with `@Service` into `container`."""
    with capture_service_registrations(container):
        for service_cls in services:
            definition = get_service_definition(service_cls)
            if definition is None:
                raise ValueError(f"{service_cls.__qualname__} is not decorated with @Service.")
            _register_definition_into_active_container(definition)


@contextmanager
def capture_service_registrations(container: Container) -> Iterator[Container]:
    """Route `@Service` registrations made in this block into `container`."""
    token = _ACTIVE_REGISTRATION_CAPTURE.set(_RegistrationCapture(container=container))
    try:
        yield container
    finally:
        _ACTIVE_REGISTRATION_CAPTURE.reset(token)
