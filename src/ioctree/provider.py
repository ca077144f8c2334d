from __future__ import annotations

import inspect
import threading
from typing import TYPE_CHECKING

from loguru import logger

from .allocator import Allocator
from .container import check_lifecycles
from .descriptor import Dependency, DependencyKind, LifeCycle, ServiceDescriptor
from .errors import (
    CircularDependencyError,
    NoActiveScopeError,
    NoResolveContextFoundError,
    ServiceNotFoundError,
    UnresolveLifeCycleShouldBeTransientError,
)
from .generics import GenericInstance, GenericKey, TypeKey, key_label
from .resolved import OnceResolvedServices, Resolved, TransientPool

if TYPE_CHECKING:
    from .container import Container


class BuildContext:
    """State of one `resolve` call: the keys being built and the node receiving children."""

    __slots__ = ("chain", "current")

    def __init__(self) -> None:
        self.chain: list[TypeKey] = []
        self.current: Resolved | None = None


class ServiceProvider:
    """
    Resolution engine created by `Container.create_service_provider()`.

    The root provider owns the singleton store and the per-registration
    singleton locks; providers cloned for scopes share both. Every provider
    owns a private transient pool.

    Each `resolve` call grows a tree of `Resolved` nodes mirroring the
    dependencies it built. Transient subtrees are torn down by `unresolve`
    or `close`; a failing build tears down what it created before the error
    propagates.

    Instances obtained by a constructor calling `resolve` itself (instead of
    declaring the dependency) start their own tree. They are not released
    with the caller and stay active until `unresolve`d or the provider closes.
    """

    def __init__(
        self,
        container: Container,
        allocator: Allocator,
        *,
        root: ServiceProvider | None = None,
        scope: Scope | None = None,
    ) -> None:
        self.container = container
        self.allocator = allocator
        self._root = root if root is not None else self
        self._scope = scope
        self._pool = TransientPool(allocator)
        self._closed = False
        if root is None:
            self._singletons = OnceResolvedServices(allocator)
            self._singleton_locks: dict[int, threading.Lock] = {}
            self._locks_lock = threading.Lock()
        else:
            self._singletons = root._singletons
            self._singleton_locks = root._singleton_locks
            self._locks_lock = root._locks_lock

    def __enter__(self) -> ServiceProvider:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_root(self) -> bool:
        return self._root is self

    @property
    def scope(self) -> Scope | None:
        return self._scope

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_transient_count(self) -> int:
        return len(self._pool.active_nodes())

    @property
    def available_transient_count(self) -> int:
        return self._pool.available_count

    @property
    def singleton_count(self) -> int:
        return len(self._singletons)

    def _ensure_open(self) -> None:
        if self._closed:
            msg = "Requesting service from a closed provider."
            logger.error(msg)
            raise RuntimeError(msg)

    # --------------------------------------------------------------------- #
    # Public API                                                            #
    # --------------------------------------------------------------------- #

    def resolve(self, key: TypeKey) -> object:
        """
        Build or fetch the instance registered under `key`.

        `Allocator` and `ServiceProvider` return the capabilities themselves.
        A `GenericKey` returns a `GenericInstance` wrapping its concrete
        service.
        """
        self._ensure_open()
        if _is_subclass(key, Allocator):
            return self.allocator
        if _is_subclass(key, ServiceProvider):
            return self
        ctx = BuildContext()
        if isinstance(key, GenericKey):
            descriptor = self.container.get_or_add_generic(key)
            return self._build_simple(ctx, key, descriptor).instance
        return self._build_simple(ctx, key).instance

    def resolve_slice(self, key: TypeKey) -> list[object]:
        """Build one instance per registration of `key`: the default one, then factories."""
        self._ensure_open()
        node = self._build_slice(BuildContext(), key)
        return node.instance  # type: ignore[return-value]

    def unresolve(self, instance: object, key: TypeKey | None = None) -> None:
        """
        Release a transient instance, or a list returned by `resolve_slice`,
        together with the transient services built for it.

        `key` defaults to the type of `instance`; pass it for services
        registered under another key.
        """
        self._ensure_open()
        if isinstance(instance, list) and key is None:
            node = self._pool.find_multi(instance)
            if node is None:
                msg = "Unresolving a list that was not produced by resolve_slice() on this provider."
                logger.error(msg)
                raise NoResolveContextFoundError(msg)
            self._pool.release(node, self)
            logger.debug(f"Service slice released ({len(instance)} element(s))")
            return

        if key is None:
            key = instance.key if isinstance(instance, GenericInstance) else type(instance)
        descriptor = self.container.get_descriptor(key)
        if descriptor is None:
            msg = f"Unresolving unregistered service: {key_label(key)}"
            logger.error(msg)
            raise ServiceNotFoundError(msg)
        if descriptor.lifecycle != LifeCycle.TRANSIENT:
            msg = (
                f"Cannot unresolve {descriptor.label}: only transient services can be released, "
                f"it is {descriptor.lifecycle.name.lower()}."
            )
            logger.error(msg)
            raise UnresolveLifeCycleShouldBeTransientError(msg)

        node = self._pool.find(instance, key)
        if node is None:
            msg = f"No active resolution of {descriptor.label} holds the given instance."
            logger.error(msg)
            raise NoResolveContextFoundError(msg)
        self._pool.release(node, self)

    def init_scope(self) -> Scope:
        return self.init_scope_with_allocator(self.allocator)

    def init_scope_with_allocator(self, allocator: Allocator) -> Scope:
        """Open a scope sharing this provider's singletons, allocating through `allocator`."""
        self._ensure_open()
        scope = Scope(self, allocator)
        logger.debug("Service scope opened")
        return scope

    def close(self) -> None:
        """
        Release every active transient tree, then (root provider only) every
        singleton in reverse creation order. Idempotent.
        """
        if self._closed:
            return
        self._closed = True
        self._pool.close(self)
        if self.is_root:
            logger.debug("Starting destruction of all singleton services...")
            self._singletons.close(self)
            logger.debug("Finished destruction of all singleton services.")

    # --------------------------------------------------------------------- #
    # Building                                                              #
    # --------------------------------------------------------------------- #

    def _resolve_dependency(self, ctx: BuildContext, parent: ServiceDescriptor, dep: Dependency) -> object:
        if dep.kind == DependencyKind.ALLOCATOR:
            return self.allocator
        if dep.kind == DependencyKind.PROVIDER:
            return self
        if dep.kind == DependencyKind.SLICE:
            return self._build_slice(ctx, dep.key).instance
        if dep.kind == DependencyKind.GENERIC:
            descriptor = self.container.get_or_add_generic(dep.key)  # type: ignore[arg-type]
            check_lifecycles(parent, descriptor)
            return self._build_simple(ctx, dep.key, descriptor).instance
        return self._build_simple(ctx, dep.key).instance

    def _construct(self, ctx: BuildContext, node: Resolved, descriptor: ServiceDescriptor) -> None:
        parent = ctx.current
        ctx.current = node
        try:
            instance, finalizer = descriptor.create(
                self,
                lambda dep: self._resolve_dependency(ctx, descriptor, dep),
            )
        finally:
            ctx.current = parent
        node.set_instance(instance, finalizer)

    def _build_simple(
        self,
        ctx: BuildContext,
        key: TypeKey,
        descriptor: ServiceDescriptor | None = None,
    ) -> Resolved:
        if descriptor is None:
            descriptor = self.container.get_descriptor(key)
        if descriptor is None:
            msg = f"Requesting unregistered service: {key_label(key)}"
            logger.error(msg)
            raise ServiceNotFoundError(msg)

        if key in ctx.chain:
            cycle_path = " -> ".join(key_label(k) for k in [*ctx.chain[ctx.chain.index(key):], key])
            msg = f"Detected circular service dependency: {cycle_path}"
            logger.error(msg)
            raise CircularDependencyError(msg)

        ctx.chain.append(key)
        try:
            if descriptor.lifecycle == LifeCycle.TRANSIENT:
                node = self._build_transient(ctx, descriptor)
            elif descriptor.lifecycle == LifeCycle.SINGLETON:
                node = self._get_or_build_singleton(ctx, descriptor)
            else:
                node = self._get_or_build_scoped(ctx, descriptor)
        finally:
            ctx.chain.pop()

        if ctx.current is not None:
            ctx.current.attach(node)
        return node

    def _build_transient(self, ctx: BuildContext, descriptor: ServiceDescriptor) -> Resolved:
        node = self._pool.acquire()
        node.descriptor = descriptor
        try:
            self._construct(ctx, node, descriptor)
        except Exception:
            logger.debug(f"Rolling back failed build of transient service: {descriptor.label}")
            self._pool.release(node, self)
            raise
        logger.debug(f"Transient service created: {descriptor.label}")
        return node

    def _singleton_lock(self, descriptor: ServiceDescriptor) -> threading.Lock:
        lock = self._singleton_locks.get(descriptor.registration_id)
        if lock is None:
            with self._locks_lock:
                lock = self._singleton_locks.setdefault(descriptor.registration_id, threading.Lock())
        return lock

    def _build_once(
        self,
        ctx: BuildContext,
        descriptor: ServiceDescriptor,
        allocator: Allocator,
    ) -> Resolved:
        node = allocator.create(Resolved)
        node.descriptor = descriptor
        node.active = True
        try:
            self._construct(ctx, node, descriptor)
        except Exception:
            logger.debug(f"Rolling back failed build of service: {descriptor.label}")
            node.release_owned_slices(self, allocator)
            for child in list(node.children):
                if child.is_transient and child.index >= 0:
                    self._pool.release(child, self)
            node.reset()
            allocator.destroy(node)
            raise
        return node

    def _get_or_build_singleton(self, ctx: BuildContext, descriptor: ServiceDescriptor) -> Resolved:
        store = self._singletons
        node = store.get(descriptor)
        if node is not None:
            return node

        with self._singleton_lock(descriptor):
            node = store.get(descriptor)
            if node is not None:
                return node
            node = self._build_once(ctx, descriptor, self._root.allocator)
            store.add(descriptor, node)
        logger.debug(f"Singleton service created: {descriptor.label}")
        return node

    def _get_or_build_scoped(self, ctx: BuildContext, descriptor: ServiceDescriptor) -> Resolved:
        if self._scope is None:
            msg = f"Scoped service {descriptor.label} requested without an active scope; call init_scope() first."
            logger.error(msg)
            raise NoActiveScopeError(msg)

        store = self._scope._scoped
        node = store.get(descriptor)
        if node is not None:
            return node
        node = self._build_once(ctx, descriptor, self.allocator)
        store.add(descriptor, node)
        logger.debug(f"Scoped service created: {descriptor.label}")
        return node

    def _build_slice(self, ctx: BuildContext, key: TypeKey) -> Resolved:
        descriptors = self.container.get_all(key)
        if not descriptors:
            msg = f"Requesting slice of unregistered service: {key_label(key)}"
            logger.error(msg)
            raise ServiceNotFoundError(msg)

        parent = ctx.current
        # Slices injected into a singleton or scoped service live and die with it.
        owner = parent if parent is not None and not parent.is_transient else None
        if owner is None:
            allocator = self.allocator
            node = self._pool.acquire()
        else:
            lifecycle = owner.descriptor.lifecycle  # type: ignore[union-attr]
            allocator = self._root.allocator if lifecycle == LifeCycle.SINGLETON else self.allocator
            node = allocator.create(Resolved)
            node.active = True
        node.is_multi = True
        try:
            items: list[object] = allocator.create(list)
            node.set_instance(items)
            ctx.current = node
            for descriptor in descriptors:
                items.append(self._build_simple(ctx, key, descriptor).instance)
        except Exception:
            ctx.current = parent
            logger.debug(f"Rolling back failed slice build: {key_label(key)}")
            if owner is None:
                self._pool.release(node, self)
            else:
                node.dispose(self, allocator)
                node.reset()
                allocator.destroy(node)
            raise
        ctx.current = parent

        if parent is not None:
            parent.attach(node)
        return node


class Scope:
    """
    Resolution session with its own scoped store and transient pool.

    Singletons come from the root provider and outlive the scope.
    """

    def __init__(self, parent: ServiceProvider, allocator: Allocator) -> None:
        self.allocator = allocator
        self._scoped = OnceResolvedServices(allocator)
        self.provider = ServiceProvider(parent.container, allocator, root=parent._root, scope=self)

    def __enter__(self) -> Scope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def scoped_count(self) -> int:
        return len(self._scoped)

    def resolve(self, key: TypeKey) -> object:
        return self.provider.resolve(key)

    def resolve_slice(self, key: TypeKey) -> list[object]:
        return self.provider.resolve_slice(key)

    def unresolve(self, instance: object, key: TypeKey | None = None) -> None:
        self.provider.unresolve(instance, key)

    def close(self) -> None:
        if self.provider.closed:
            return
        self.provider.close()
        self._scoped.close(self.provider)
        logger.debug("Service scope closed")


def _is_subclass(candidate: object, parent: type) -> bool:
    return inspect.isclass(candidate) and issubclass(candidate, parent)
