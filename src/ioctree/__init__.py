from .allocator import Allocator, FailingAllocator
from .container import Container
from .descriptor import (
    Dependency,
    DependencyKind,
    LifeCycle,
    ServiceDescriptor,
    require,
    require_all,
)
from .errors import (
    CircularDependencyError,
    DIError,
    LifeCycleError,
    NoActiveScopeError,
    NoResolveContextFoundError,
    ServiceNotFoundError,
    UnresolveLifeCycleShouldBeTransientError,
)
from .generics import GenericInstance, GenericKey, generic
from .install import DISettings, Inject, RequestScopeMiddleware, install_di
from .provider import Scope, ServiceProvider
from .registry import Service, capture_service_registrations, register_service_definitions

__all__ = [
    "Allocator",
    "CircularDependencyError",
    "Container",
    "DIError",
    "DISettings",
    "Dependency",
    "DependencyKind",
    "FailingAllocator",
    "GenericInstance",
    "GenericKey",
    "Inject",
    "LifeCycle",
    "LifeCycleError",
    "NoActiveScopeError",
    "NoResolveContextFoundError",
    "RequestScopeMiddleware",
    "Scope",
    "Service",
    "ServiceDescriptor",
    "ServiceNotFoundError",
    "ServiceProvider",
    "UnresolveLifeCycleShouldBeTransientError",
    "capture_service_registrations",
    "generic",
    "install_di",
    "register_service_definitions",
    "require",
    "require_all",
]
