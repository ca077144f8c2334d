from __future__ import annotations

import threading
import time
from collections.abc import Iterator

from ioctree import Allocator, ServiceProvider, generic, require
from tests.di_test_services.helpers import record


class Logger:
    def __init__(self) -> None:
        self.lines: list[str] = []
        record("Logger.init")

    def log(self, message: str) -> None:
        self.lines.append(message)

    def deinit(self) -> None:
        record("Logger.deinit")


class Database:
    def __init__(self, logger: Logger) -> None:
        self.logger = logger
        record("Database.init")

    def deinit(self) -> None:
        record("Database.deinit")


class Connection:
    def __init__(self, db: Database, logger: Logger) -> None:
        self.db = db
        self.logger = logger

    def deinit(self) -> None:
        record("Connection.deinit")


class RequestContext:
    def __init__(self) -> None:
        self.items: dict[str, object] = {}

    def deinit(self) -> None:
        record("RequestContext.deinit")


class Handler:
    def __init__(self, context: RequestContext, logger: Logger) -> None:
        self.context = context
        self.logger = logger

    def deinit(self) -> None:
        record("Handler.deinit")


class Unregistered:
    pass


class NeedsMissing:
    def __init__(self, missing: Unregistered) -> None:
        self.missing = missing


class CycleA:
    def __init__(self, b: CycleB) -> None:
        self.b = b


class CycleB:
    def __init__(self, c: CycleC) -> None:
        self.c = c


class CycleC:
    def __init__(self, a: CycleA) -> None:
        self.a = a


class SelfReferencing:
    def __init__(self, me: SelfReferencing) -> None:
        self.me = me


class Exploding:
    def __init__(self, db: Database, connection: Connection) -> None:
        raise RuntimeError("boom")


class ManualResolver:
    """Resolves a Database itself instead of declaring it."""

    def __init__(self, provider: ServiceProvider) -> None:
        self.db = provider.resolve(Database)


class FailingManualResolver:
    def __init__(self, provider: ServiceProvider) -> None:
        self.db = provider.resolve(Database)
        raise RuntimeError("failed after manual resolve")


class ManualExploding:
    def __init__(self, provider: ServiceProvider) -> None:
        self.value = provider.resolve(Exploding)


class Capabilities:
    def __init__(self, allocator: Allocator, provider: ServiceProvider) -> None:
        self.allocator = allocator
        self.provider = provider


class Plugin:
    def __init__(self, name: str = "default") -> None:
        self.name = name

    def deinit(self) -> None:
        record(f"Plugin.deinit:{self.name}")


def make_alpha_plugin() -> Plugin:
    return Plugin("alpha")


def make_beta_plugin() -> Plugin:
    return Plugin("beta")


def make_broken_plugin() -> Plugin:
    raise ValueError("broken plugin")


class PluginHost:
    def __init__(self, plugins: list[Plugin]) -> None:
        self.plugins = plugins


class FailingPluginHost:
    def __init__(self, plugins: list[Plugin]) -> None:
        raise RuntimeError(f"host refused {len(plugins)} plugin(s)")


class Session:
    def __init__(self, logger: Logger) -> None:
        self.logger = logger


def open_session(provider: ServiceProvider) -> Iterator[Session]:
    session = Session(provider.resolve(Logger))  # type: ignore[arg-type]
    record("Session.open")
    try:
        yield session
    finally:
        record("Session.close")


def buffer_factory(allocator: Allocator) -> bytearray:
    allocator.create(bytearray)
    return bytearray(16)


class SlowSingleton:
    instances = 0
    _lock = threading.Lock()

    def __init__(self) -> None:
        with SlowSingleton._lock:
            SlowSingleton.instances += 1
        time.sleep(0.05)


class User:
    pass


class Order:
    pass


def Repository(model: type) -> type:
    class _Repository:
        def __init__(self, logger=require(Logger)) -> None:
            self.model = model
            self.logger = logger

        def deinit(self) -> None:
            record(f"Repository.deinit:{model.__name__}")

    _Repository.__qualname__ = f"Repository[{model.__qualname__}]"
    return _Repository


class UserService:
    def __init__(self, users=require(generic(Repository, User))) -> None:
        self.users = users


def Wrapper(target: type) -> type:
    class _Wrapper:
        def __init__(self, value=require(target)) -> None:
            self.value = value

    _Wrapper.__qualname__ = f"Wrapper[{target.__qualname__}]"
    return _Wrapper


class GenericCycleHead:
    def __init__(self, tail: GenericCycleTail) -> None:
        self.tail = tail


class GenericCycleTail:
    def __init__(self, wrapped=require(generic(Wrapper, GenericCycleHead))) -> None:
        self.wrapped = wrapped
