from __future__ import annotations


class DIError(RuntimeError):
    """Base class for container and provider failures."""


class ServiceNotFoundError(DIError):
    """The requested key has no registration (or capability) to build it from."""


class CircularDependencyError(DIError):
    """A dependency chain revisits a key it is already building."""


class LifeCycleError(DIError):
    """A service depends on a service with a shorter lifecycle."""


class UnresolveLifeCycleShouldBeTransientError(DIError):
    """Only transient instances can be released manually."""


class NoResolveContextFoundError(DIError):
    """The instance was not produced by this provider, or was already released."""


class NoActiveScopeError(DIError):
    """A scoped service was requested outside of a scope."""


__all__ = [
    "CircularDependencyError",
    "DIError",
    "LifeCycleError",
    "NoActiveScopeError",
    "NoResolveContextFoundError",
    "ServiceNotFoundError",
    "UnresolveLifeCycleShouldBeTransientError",
]
