from __future__ import annotations

import inspect
import itertools
import types
from collections.abc import Callable, Generator, Hashable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Annotated, Literal, Union, cast, get_args, get_origin, get_type_hints

from loguru import logger

from .allocator import Allocator
from .errors import ServiceNotFoundError
from .generics import GenericBase, GenericInstance, GenericKey, TypeKey, key_label

if TYPE_CHECKING:
    from .provider import ServiceProvider

# Destructor: takes the instance, optionally followed by the provider.
Dtor = Callable[..., object] | None
Finalizer = Callable[[], None]
FactoryArgument = Literal["provider", "allocator"] | None
ResolveDependency = Callable[["Dependency"], object]

_REGISTRATION_IDS = itertools.count(1)


class LifeCycle(IntEnum):
    """
    Lifecycle of a registered service.

    SINGLETON:
        One instance per root provider, shared by all of its scopes.
    TRANSIENT:
        A new instance for every resolution.
    SCOPED:
        One instance per scope.
    """

    SINGLETON = 0
    TRANSIENT = 1
    SCOPED = 2


LifeCycleLike = LifeCycle | int | str


def normalize_lifecycle(lifecycle: LifeCycleLike) -> LifeCycle:
    if isinstance(lifecycle, LifeCycle):
        return lifecycle
    if isinstance(lifecycle, bool):
        raise TypeError(f"Invalid lifecycle type: {type(lifecycle)!r}.")
    if isinstance(lifecycle, int):
        try:
            return LifeCycle(lifecycle)
        except ValueError as exc:
            raise ValueError(
                f"Unsupported lifecycle value: {lifecycle!r}. Use LifeCycle or 0/1/2."
            ) from exc
    if isinstance(lifecycle, str):
        normalized = lifecycle.strip().upper()
        if normalized in LifeCycle.__members__:
            return LifeCycle[normalized]
        raise ValueError(
            f"Unsupported lifecycle string: {lifecycle!r}. Use 'Singleton', 'Scoped' or 'Transient'."
        )
    raise TypeError(
        "Invalid lifecycle type: "
        f"{type(lifecycle)!r}. Use LifeCycle, int (0/1/2), or 'Singleton'/'Scoped'/'Transient'."
    )


class DependencyKind(Enum):
    DIRECT = "direct"
    GENERIC = "generic"
    ALLOCATOR = "allocator"
    PROVIDER = "provider"
    SLICE = "slice"


@dataclass(frozen=True)
class Dependency:
    key: TypeKey
    kind: DependencyKind = DependencyKind.DIRECT
    # Constructor keyword the value is passed as; None means positional.
    name: str | None = None

    @property
    def is_reserved(self) -> bool:
        return self.kind in (DependencyKind.ALLOCATOR, DependencyKind.PROVIDER)


def _provider_class() -> type:
    from .provider import ServiceProvider

    return ServiceProvider


def _is_subclass(candidate: object, parent: type) -> bool:
    return inspect.isclass(candidate) and issubclass(candidate, parent)


def _dependency_for_key(target: TypeKey) -> Dependency:
    if isinstance(target, Dependency):
        return target
    if isinstance(target, GenericKey):
        return Dependency(target, DependencyKind.GENERIC)
    if _is_subclass(target, Allocator):
        return Dependency(Allocator, DependencyKind.ALLOCATOR)
    if _is_subclass(target, _provider_class()):
        return Dependency(_provider_class(), DependencyKind.PROVIDER)
    return Dependency(target, DependencyKind.DIRECT)


def require(target: TypeKey) -> Dependency:
    """
    Declare a constructor dependency explicitly, as a parameter default::

        def __init__(self, repo=require(generic(Repository, User))) -> None: ...
    """
    if isinstance(target, Dependency):
        raise TypeError("require() expects a type key, not a Dependency")
    return _dependency_for_key(target)


def require_all(target: TypeKey) -> Dependency:
    """Declare a dependency on every registration of `target`, injected as a list."""
    if isinstance(target, Dependency):
        raise TypeError("require_all() expects a type key, not a Dependency")
    return Dependency(target, DependencyKind.SLICE)


def dependency_from_annotation(annotation: object, name: str | None = None) -> Dependency:
    """
    Map a constructor type hint onto a dependency.

    `ServiceProvider` and `Allocator` are reserved capabilities, `list[X]` and
    `Sequence[X]` request every registration of X, and
    `Annotated[..., generic(...)]` or `Annotated[..., require(...)]` carry an
    explicit key.
    """
    if get_origin(annotation) is Annotated:
        base, *extras = get_args(annotation)
        for extra in extras:
            if isinstance(extra, Dependency):
                return replace(extra, name=name)
            if isinstance(extra, GenericKey):
                return Dependency(extra, DependencyKind.GENERIC, name)
        annotation = base

    origin = get_origin(annotation)
    if origin in (list, Sequence):
        args = get_args(annotation)
        if len(args) != 1:
            raise TypeError(f"Slice dependency {annotation!r} must name exactly one element type.")
        return Dependency(args[0], DependencyKind.SLICE, name)

    return replace(_dependency_for_key(cast(Hashable, annotation)), name=name)


def _get_init_type_hints(service_cls: type) -> dict[str, object]:
    try:
        init = inspect.getattr_static(service_cls, "__init__")
        return get_type_hints(init, include_extras=True)
    except TypeError:
        return {}
    except NameError as exc:
        logger.warning(
            f"'{exc.name}' name error retrieving {service_cls.__qualname__} type hints; "
            "use require() defaults for types that are not importable from its module."
        )
        return {}


def extract_dependencies(service_cls: type) -> tuple[Dependency, ...]:
    """Read the ordered dependency list of `service_cls` from its `__init__`."""
    if service_cls.__init__ is object.__init__:
        return ()

    signature = inspect.signature(service_cls)
    hints = _get_init_type_hints(service_cls)
    deps: list[Dependency] = []
    for name, parameter in signature.parameters.items():
        if parameter.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        param_name = None if parameter.kind is inspect.Parameter.POSITIONAL_ONLY else name

        default = parameter.default
        if isinstance(default, Dependency):
            deps.append(replace(default, name=param_name))
            continue
        if default is not inspect.Parameter.empty:
            continue

        annotation = hints.get(name, parameter.annotation)
        if annotation is inspect.Parameter.empty or isinstance(annotation, str):
            msg = (
                f"Cannot infer dependency for parameter '{name}' of {service_cls.__qualname__}: "
                "add a resolvable type hint or a require() default."
            )
            logger.error(msg)
            raise TypeError(msg)
        deps.append(dependency_from_annotation(annotation, param_name))
    return tuple(deps)


def coerce_dependencies(items: Sequence[object]) -> tuple[Dependency, ...]:
    """Turn an explicit `dependencies=[...]` list into positional dependencies."""
    return tuple(
        replace(item, name=None) if isinstance(item, Dependency) else dependency_from_annotation(item)
        for item in items
    )


def infer_factory_key(factory: Callable[..., object]) -> TypeKey | None:
    """
    Infer the service key from the factory's return annotation.

    - def f() -> MyType: key is MyType
    - def f() -> Iterator[MyType] / Generator[MyType, ...]: key is MyType
    - Optional[MyType] / MyType | None unwrap to MyType
    """
    try:
        hints = get_type_hints(factory, include_extras=True)
    except Exception:
        # Type hints are best-effort only; never break registration on failures.
        hints = {}
    ann = hints.get("return")
    if ann is None or isinstance(ann, str):
        return None

    if get_origin(ann) is Annotated:
        ann = get_args(ann)[0]

    origin = get_origin(ann)
    if origin in (types.UnionType, Union):
        u_args = [a for a in get_args(ann) if a is not type(None)]
        if len(u_args) != 1:
            return None
        ann = u_args[0]
        origin = get_origin(ann)

    if origin in (Iterator, Generator):
        args = get_args(ann)
        return cast(Hashable, args[0]) if args else None

    if ann is type(None):
        return None
    return cast(Hashable, ann)


def factory_argument(factory: Callable[..., object], label: str) -> FactoryArgument:
    """Work out what a factory expects: nothing, the provider, or the allocator."""
    if inspect.iscoroutinefunction(factory) or inspect.isasyncgenfunction(factory):
        msg = f"Factory for '{label}' is asynchronous; factories must be synchronous callables."
        logger.error(msg)
        raise TypeError(msg)

    signature = inspect.signature(factory)
    required = [
        p
        for p in signature.parameters.values()
        if p.default is inspect.Parameter.empty
        and p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
    ]
    if not required:
        return None
    if len(required) > 1:
        msg = (
            f"Factory for '{label}' takes {len(required)} arguments; "
            "supported signatures are f() and f(provider) or f(allocator)."
        )
        logger.error(msg)
        raise TypeError(msg)

    try:
        hints = get_type_hints(factory)
    except Exception:
        hints = {}
    annotation = hints.get(required[0].name, required[0].annotation)
    if _is_subclass(annotation, Allocator):
        return "allocator"
    return "provider"


def validate_destructor(dtor: object | None, label: str) -> None:
    if dtor is None:
        return
    if not callable(dtor):
        msg = (
            f"Invalid destructor for service '{label}': "
            f"expected a callable or None, got {type(dtor)!r}."
        )
        logger.error(msg)
        raise TypeError(msg)
    try:
        signature = inspect.signature(dtor)
    except (TypeError, ValueError):
        return
    try:
        signature.bind(object())
    except TypeError:
        try:
            signature.bind(object(), object())
        except TypeError as exc:
            msg = (
                f"Invalid destructor signature for service '{label}': "
                "destructor must accept the instance, optionally followed by the provider."
            )
            logger.error(msg)
            raise TypeError(msg) from exc


def _call_with_optional_provider(
    hook: Callable[..., object],
    args: tuple[object, ...],
    provider: ServiceProvider,
) -> None:
    try:
        signature = inspect.signature(hook)
    except (TypeError, ValueError):
        hook(*args)
        return
    try:
        signature.bind(*args, provider)
    except TypeError:
        hook(*args)
    else:
        hook(*args, provider)


def open_instance(result: object, label: str) -> tuple[object, Finalizer | None]:
    """
    Unwrap a factory result.

    Contextmanager-style factories yield exactly once; the returned finalizer
    advances the generator to completion so its `else/finally` blocks run.
    """
    if not inspect.isgenerator(result):
        return result, None

    gen = result
    try:
        instance = next(gen)
    except StopIteration:
        msg = f"Contextmanager service '{label}' did not yield a value."
        logger.error(msg)
        raise RuntimeError(msg) from None

    def _close_gen() -> None:
        try:
            try:
                next(gen)
            except StopIteration:
                return
            msg = f"Contextmanager service '{label}' must yield exactly once."
            logger.error(msg)
            raise RuntimeError(msg)
        finally:
            gen.close()

    return instance, _close_gen


@dataclass(frozen=True, eq=False)
class ServiceDescriptor:
    """Static metadata of one registration."""

    key: TypeKey
    lifecycle: LifeCycle
    dependencies: tuple[Dependency, ...] = ()
    dtor: Dtor = None
    registration_id: int = field(default_factory=lambda: next(_REGISTRATION_IDS))

    @property
    def label(self) -> str:
        return key_label(self.key)

    def build(self, provider: ServiceProvider, resolve: ResolveDependency) -> object:
        raise NotImplementedError

    def create(
        self,
        provider: ServiceProvider,
        resolve: ResolveDependency,
    ) -> tuple[object, Finalizer | None]:
        return open_instance(self.build(provider, resolve), self.label)

    def deinit(self, instance: object, provider: ServiceProvider) -> None:
        """
        Run the deinitialization hook of `instance`.

        The registration's destructor wins over a `deinit` method on the
        instance; either may take the provider as an extra argument.
        """
        if self.dtor is not None:
            _call_with_optional_provider(self.dtor, (instance,), provider)
            return
        method = getattr(instance, "deinit", None)
        if callable(method):
            _call_with_optional_provider(method, (), provider)


@dataclass(frozen=True, eq=False)
class ConstructorDescriptor(ServiceDescriptor):
    service_cls: type | None = None

    def build(self, provider: ServiceProvider, resolve: ResolveDependency) -> object:
        _ = provider
        service_cls = cast(type, self.service_cls)
        args: list[object] = []
        kwargs: dict[str, object] = {}
        for dep in self.dependencies:
            value = resolve(dep)
            if dep.name is None:
                args.append(value)
            else:
                kwargs[dep.name] = value
        return service_cls(*args, **kwargs)


@dataclass(frozen=True, eq=False)
class FactoryDescriptor(ServiceDescriptor):
    factory: Callable[..., object] | None = None
    argument: FactoryArgument = None

    def build(self, provider: ServiceProvider, resolve: ResolveDependency) -> object:
        _ = resolve
        factory = cast(Callable[..., object], self.factory)
        if self.argument == "provider":
            return factory(provider)
        if self.argument == "allocator":
            return factory(provider.allocator)
        return factory()


@dataclass(frozen=True, eq=False)
class GenericBaseDescriptor(ServiceDescriptor):
    """Lifecycle carrier of a generic base; its parameterizations are built instead."""

    base: GenericBase | None = None

    def build(self, provider: ServiceProvider, resolve: ResolveDependency) -> object:
        msg = f"'{self.label}' is a generic base; resolve generic({self.label}, ...) instead."
        logger.error(msg)
        raise ServiceNotFoundError(msg)


@dataclass(frozen=True, eq=False)
class GenericWrapperDescriptor(ServiceDescriptor):
    def build(self, provider: ServiceProvider, resolve: ResolveDependency) -> object:
        _ = provider
        (inner,) = self.dependencies
        return GenericInstance(cast(GenericKey, self.key), resolve(inner))
