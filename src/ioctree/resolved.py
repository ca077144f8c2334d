from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import TYPE_CHECKING

from loguru import logger

from .allocator import Allocator
from .descriptor import Finalizer, LifeCycle, ServiceDescriptor

if TYPE_CHECKING:
    from .provider import ServiceProvider


class Resolved:
    """
    One constructed instance and the subtree it pulled in while being built.

    Transient nodes are pool slots addressed by `index`; singleton and scoped
    nodes live in a `OnceResolvedServices` store and carry index -1, as do
    slice nodes owned by them.
    """

    __slots__ = (
        "index",
        "active",
        "built",
        "instance",
        "descriptor",
        "children",
        "parent",
        "is_multi",
        "finalizer",
    )

    def __init__(self, index: int = -1) -> None:
        self.index = index
        self.active = False
        self.built = False
        self.instance: object | None = None
        self.descriptor: ServiceDescriptor | None = None
        self.children: list[Resolved] = []
        self.parent: Resolved | None = None
        self.is_multi = False
        self.finalizer: Finalizer | None = None

    def __repr__(self) -> str:
        label = "slice" if self.is_multi else (self.descriptor.label if self.descriptor else None)
        return f"Resolved(index={self.index}, service={label}, children={len(self.children)})"

    @property
    def is_transient(self) -> bool:
        return self.is_multi or (
            self.descriptor is not None and self.descriptor.lifecycle == LifeCycle.TRANSIENT
        )

    def attach(self, child: Resolved) -> None:
        self.children.append(child)
        # Shared singleton and scoped nodes have no single owner.
        if child.is_transient:
            child.parent = self

    def detach(self) -> None:
        parent = self.parent
        if parent is None:
            return
        for i, child in enumerate(parent.children):
            if child is self:
                del parent.children[i]
                break
        self.parent = None

    def iter_transient(self) -> Iterator[Resolved]:
        """Depth-first, parent before children, following transient and slice nodes only."""
        if not self.is_transient:
            return
        stack = [self]
        while stack:
            current = stack.pop()
            # Push in reverse so children are visited left to right.
            for child in reversed(current.children):
                if child.is_transient:
                    stack.append(child)
            yield current

    def set_instance(self, instance: object, finalizer: Finalizer | None = None) -> None:
        self.instance = instance
        self.finalizer = finalizer
        self.built = True

    def dispose(self, provider: ServiceProvider, allocator: Allocator) -> None:
        """
        Tear down the instance held by this node.

        Hook failures are logged so that teardown of the remaining nodes
        continues.
        """
        if not self.built:
            return
        instance = self.instance
        if self.is_multi:
            # The backing list only; elements belong to their own nodes.
            allocator.destroy(instance)
        elif self.descriptor is not None:
            label = self.descriptor.label
            try:
                self.descriptor.deinit(instance, provider)
            except Exception:
                logger.exception(f"Error deinitializing service: {label}")
            if self.finalizer is not None:
                try:
                    self.finalizer()
                except Exception:
                    logger.exception(f"Error finalizing service: {label}")
            logger.debug(f"Service instance released: {label}")
        self.instance = None
        self.finalizer = None
        self.built = False

    def release_owned_slices(self, provider: ServiceProvider, allocator: Allocator) -> None:
        """Free the slice nodes held by a singleton or scoped node."""
        for child in self.children:
            if child.is_multi and child.index < 0:
                child.dispose(provider, allocator)
                child.reset()
                allocator.destroy(child)

    def reset(self) -> None:
        self.active = False
        self.built = False
        self.instance = None
        self.descriptor = None
        self.children.clear()
        self.parent = None
        self.is_multi = False
        self.finalizer = None


class TransientPool:
    """
    Arena of index-addressed resolution slots with a free list.

    Released slots are pushed onto the free list and handed out again before
    any new slot is allocated.
    """

    def __init__(self, allocator: Allocator) -> None:
        self._allocator = allocator
        self._slots: list[Resolved] = []
        self._available: list[int] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def available_count(self) -> int:
        with self._lock:
            return len(self._available)

    def active_nodes(self) -> list[Resolved]:
        with self._lock:
            return [slot for slot in self._slots if slot.active]

    def acquire(self) -> Resolved:
        with self._lock:
            if self._available:
                node = self._slots[self._available.pop()]
            else:
                node = self._allocator.create(Resolved, len(self._slots))
                self._slots.append(node)
            node.active = True
            return node

    def find(self, instance: object, key: object) -> Resolved | None:
        """Most recent active node holding `instance` under a registration of `key`."""
        found: Resolved | None = None
        for node in self.active_nodes():
            if (
                node.built
                and not node.is_multi
                and node.instance is instance
                and node.descriptor is not None
                and node.descriptor.key == key
            ):
                found = node
        return found

    def find_multi(self, instance: object) -> Resolved | None:
        for node in self.active_nodes():
            if node.is_multi and node.built and node.instance is instance:
                return node
        return None

    def release(self, node: Resolved, provider: ServiceProvider) -> None:
        """Tear down the transient subtree rooted at `node` and recycle its slots."""
        if not node.active:
            return
        node.detach()
        subtree = list(node.iter_transient())
        for current in subtree:
            current.dispose(provider, self._allocator)
        for current in subtree:
            current.reset()
            with self._lock:
                self._available.append(current.index)

    def close(self, provider: ServiceProvider) -> None:
        active = self.active_nodes()
        for node in reversed([n for n in active if n.parent is None]):
            self.release(node, provider)
        for node in reversed(self.active_nodes()):
            self.release(node, provider)
        with self._lock:
            for slot in self._slots:
                self._allocator.destroy(slot)
            self._slots.clear()
            self._available.clear()


class OnceResolvedServices:
    """Store of singleton or scoped nodes, one per registration."""

    def __init__(self, allocator: Allocator) -> None:
        self._allocator = allocator
        self._items: dict[int, Resolved] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def get(self, descriptor: ServiceDescriptor) -> Resolved | None:
        return self._items.get(descriptor.registration_id)

    def add(self, descriptor: ServiceDescriptor, node: Resolved) -> Resolved:
        with self._lock:
            self._items[descriptor.registration_id] = node
        return node

    def close(self, provider: ServiceProvider) -> None:
        """Destroy every stored instance in reverse creation order."""
        with self._lock:
            nodes = list(self._items.values())
            self._items.clear()
        for node in reversed(nodes):
            node.dispose(provider, self._allocator)
            node.release_owned_slices(provider, self._allocator)
            node.reset()
            self._allocator.destroy(node)
