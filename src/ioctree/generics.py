from __future__ import annotations

import inspect
import threading
from collections.abc import Callable, Hashable
from dataclasses import dataclass

from loguru import logger

TypeKey = Hashable
GenericBase = Callable[..., type]

_CONCRETE_TYPES: dict[GenericKey, type] = {}
_CONCRETE_TYPES_LOCK = threading.Lock()


def key_label(key: object) -> str:
    """Human readable name of a type key, used in logs and error messages."""
    if isinstance(key, GenericKey):
        return repr(key)
    qualname = getattr(key, "__qualname__", None)
    if isinstance(qualname, str):
        return qualname
    return repr(key)


@dataclass(frozen=True)
class GenericKey:
    """
    Type key of a parameterized service.

    `base` is a class factory taking type parameters and returning the
    concrete class, for example::

        def Repository(model: type) -> type:
            class _Repository:
                def __init__(self, session: Session) -> None: ...
            return _Repository

        key = generic(Repository, User)

    Two keys built from the same base and the same parameters compare and
    hash equal, so every request for one parameterization reaches the same
    registration.
    """

    base: GenericBase
    params: tuple[Hashable, ...]

    def __repr__(self) -> str:
        params = ", ".join(key_label(param) for param in self.params)
        return f"{key_label(self.base)}[{params}]"

    def concrete_type(self) -> type:
        """
        Return the class produced by `base(*params)`.

        The base is called once per key; later calls return the cached class so
        the concrete type key stays stable.
        """
        with _CONCRETE_TYPES_LOCK:
            cached = _CONCRETE_TYPES.get(self)
            if cached is not None:
                return cached
            concrete = self.base(*self.params)
            if not inspect.isclass(concrete):
                msg = f"Generic base {key_label(self.base)} must return a class, got {concrete!r}."
                logger.error(msg)
                raise TypeError(msg)
            _CONCRETE_TYPES[self] = concrete
            logger.debug(f"Generic type materialized: {self!r} -> {key_label(concrete)}")
            return concrete


def generic(base: GenericBase, *params: Hashable) -> GenericKey:
    """Build the stable key of `base` parameterized by `params`."""
    if inspect.isclass(base) or not callable(base):
        raise TypeError("generic() expects a class factory function as its base")
    if not params:
        raise ValueError("generic() requires at least one type parameter")
    return GenericKey(base=base, params=tuple(params))


class GenericInstance:
    """Instance handed out for a `GenericKey`; `payload` is the concrete service."""

    __slots__ = ("key", "payload")

    def __init__(self, key: GenericKey, payload: object) -> None:
        self.key = key
        self.payload = payload

    def __repr__(self) -> str:
        return f"GenericInstance({self.key!r}, payload={self.payload!r})"
