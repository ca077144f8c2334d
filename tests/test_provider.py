from __future__ import annotations

import pytest

from ioctree import (
    Allocator,
    Container,
    FailingAllocator,
    NoActiveScopeError,
    NoResolveContextFoundError,
    ServiceNotFoundError,
    ServiceProvider,
    UnresolveLifeCycleShouldBeTransientError,
)
from tests.di_test_services.helpers import events, record, reset_events
from tests.di_test_services.services import (
    Capabilities,
    Connection,
    Database,
    Exploding,
    FailingManualResolver,
    FailingPluginHost,
    Logger,
    ManualExploding,
    ManualResolver,
    Plugin,
    RequestContext,
    Session,
    buffer_factory,
    make_alpha_plugin,
    open_session,
)


@pytest.fixture(autouse=True)
def _clear_events() -> None:
    reset_events()


def _logger_and_database(container: Container | None = None) -> Container:
    container = container or Container()
    container.register_singleton(Logger)
    container.register_transient(Database)
    return container


def test_singleton_is_built_once() -> None:
    container = Container()
    container.register_singleton(Logger)

    with container.create_service_provider() as provider:
        first = provider.resolve(Logger)
        second = provider.resolve(Logger)

        assert first is second
        assert events() == ["Logger.init"]
        assert provider.singleton_count == 1


def test_transients_are_distinct_and_released_independently() -> None:
    with _logger_and_database().create_service_provider() as provider:
        first = provider.resolve(Database)
        second = provider.resolve(Database)

        assert isinstance(first, Database)
        assert first is not second
        assert first.logger is second.logger

        provider.unresolve(first)
        assert events().count("Database.deinit") == 1
        assert provider.active_transient_count == 1

        # The other instance is still tracked and can be released.
        provider.unresolve(second)
        assert provider.active_transient_count == 0
        assert "Logger.deinit" not in events()

    assert events()[-1] == "Logger.deinit"


def test_transient_subtree_is_released_parent_first() -> None:
    container = _logger_and_database()
    container.register_transient(Connection)

    with container.create_service_provider() as provider:
        connection = provider.resolve(Connection)
        assert provider.active_transient_count == 2

        provider.unresolve(connection)
        assert events()[-2:] == ["Connection.deinit", "Database.deinit"]
        assert provider.active_transient_count == 0


def test_released_slot_is_reused() -> None:
    allocator = Allocator()
    with _logger_and_database().create_service_provider(allocator) as provider:
        db = provider.resolve(Database)
        allocations = allocator.allocations

        provider.unresolve(db)
        assert provider.available_transient_count == 1

        provider.resolve(Database)
        assert allocator.allocations == allocations
        assert provider.available_transient_count == 0


def test_unresolve_of_unknown_instance_fails() -> None:
    with _logger_and_database().create_service_provider() as provider:
        with pytest.raises(NoResolveContextFoundError):
            provider.unresolve(Database(Logger()))


def test_double_unresolve_fails() -> None:
    with _logger_and_database().create_service_provider() as provider:
        db = provider.resolve(Database)
        provider.unresolve(db)
        with pytest.raises(NoResolveContextFoundError):
            provider.unresolve(db)


def test_unresolve_of_singleton_fails() -> None:
    with _logger_and_database().create_service_provider() as provider:
        logger = provider.resolve(Logger)
        with pytest.raises(UnresolveLifeCycleShouldBeTransientError):
            provider.unresolve(logger)


def test_unresolve_of_unregistered_type_fails() -> None:
    with _logger_and_database().create_service_provider() as provider:
        with pytest.raises(ServiceNotFoundError):
            provider.unresolve(object())


def test_resolving_unregistered_service_fails() -> None:
    with Container().create_service_provider() as provider:
        with pytest.raises(ServiceNotFoundError, match="Requesting unregistered service: Logger"):
            provider.resolve(Logger)


def test_scoped_service_without_scope_fails() -> None:
    container = Container()
    container.register_scoped(RequestContext)

    with container.create_service_provider() as provider:
        with pytest.raises(NoActiveScopeError):
            provider.resolve(RequestContext)


def test_capabilities_are_injected_without_registration() -> None:
    container = Container()
    container.register_transient(Capabilities)
    allocator = Allocator()

    with container.create_service_provider(allocator) as provider:
        assert provider.resolve(Allocator) is allocator
        assert provider.resolve(ServiceProvider) is provider

        capabilities = provider.resolve(Capabilities)
        assert isinstance(capabilities, Capabilities)
        assert capabilities.allocator is allocator
        assert capabilities.provider is provider


def test_failed_build_rolls_back_transient_children() -> None:
    container = _logger_and_database()
    container.register_transient(Connection)
    container.register_transient(Exploding)

    with container.create_service_provider() as provider:
        with pytest.raises(RuntimeError, match="boom"):
            provider.resolve(Exploding)

        assert provider.active_transient_count == 0
        assert events().count("Database.deinit") == 2
        assert events().count("Connection.deinit") == 1
        # Singletons built on the way stay cached.
        assert provider.singleton_count == 1


def test_failed_singleton_build_is_not_stored() -> None:
    attempts = 0

    class Flaky:
        def __init__(self) -> None:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ConnectionError("not yet")

    container = Container()
    container.register_singleton(Flaky)
    allocator = Allocator()

    with container.create_service_provider(allocator) as provider:
        with pytest.raises(ConnectionError):
            provider.resolve(Flaky)
        assert provider.singleton_count == 0
        assert allocator.live == 0

        flaky = provider.resolve(Flaky)
        assert provider.resolve(Flaky) is flaky
        assert attempts == 2


def test_failed_singleton_build_releases_its_slice() -> None:
    container = Container()
    container.register_singleton(Plugin)
    container.register_singleton_with_factory(make_alpha_plugin)
    container.register_singleton(FailingPluginHost)
    allocator = Allocator()

    with container.create_service_provider(allocator) as provider:
        with pytest.raises(RuntimeError, match="host refused 2 plugin"):
            provider.resolve(FailingPluginHost)

        assert provider.active_transient_count == 0
        assert provider.available_transient_count == 0
        # The plugins stay cached; host node, slice node and list are freed.
        assert provider.singleton_count == 2
        assert allocator.live == 2


def test_failing_allocator_leaves_no_partial_state() -> None:
    allocator = FailingAllocator(fail_index=1)

    with _logger_and_database().create_service_provider(allocator) as provider:
        # The Database slot is allocated, the Logger node is refused.
        with pytest.raises(MemoryError):
            provider.resolve(Database)

        assert provider.singleton_count == 0
        assert provider.active_transient_count == 0
        assert provider.available_transient_count == 1
        assert events() == []


def test_failing_allocator_on_first_slot() -> None:
    with _logger_and_database().create_service_provider(FailingAllocator()) as provider:
        with pytest.raises(MemoryError):
            provider.resolve(Database)
        assert provider.active_transient_count == 0
        assert provider.available_transient_count == 0


def test_manual_resolution_inside_constructor_is_not_owned() -> None:
    container = _logger_and_database()
    container.register_transient(ManualResolver)

    with container.create_service_provider() as provider:
        resolver = provider.resolve(ManualResolver)
        assert provider.active_transient_count == 2

        provider.unresolve(resolver)
        # The manually resolved Database is a separate root and leaks.
        assert provider.active_transient_count == 1
        assert "Database.deinit" not in events()

        provider.unresolve(resolver.db)
        assert provider.active_transient_count == 0


def test_manual_resolution_leaks_when_constructor_fails() -> None:
    container = _logger_and_database()
    container.register_transient(FailingManualResolver)

    with container.create_service_provider() as provider:
        with pytest.raises(RuntimeError, match="failed after manual resolve"):
            provider.resolve(FailingManualResolver)

        assert provider.active_transient_count == 1
        assert "Database.deinit" not in events()

    # Provider teardown still releases the leaked instance.
    assert "Database.deinit" in events()


def test_failure_inside_manual_resolution_is_rolled_back_in_its_own_tree() -> None:
    container = _logger_and_database()
    container.register_transient(Connection)
    container.register_transient(Exploding)
    container.register_transient(ManualExploding)

    with container.create_service_provider() as provider:
        with pytest.raises(RuntimeError, match="boom"):
            provider.resolve(ManualExploding)

        assert provider.active_transient_count == 0
        assert events().count("Database.deinit") == 2


def test_generator_factory_is_finalized_on_unresolve() -> None:
    container = Container()
    container.register_singleton(Logger)
    container.register_transient_with_factory(open_session)

    with container.create_service_provider() as provider:
        session = provider.resolve(Session)
        assert isinstance(session, Session)
        assert events()[-1] == "Session.open"

        provider.unresolve(session)
        assert events()[-1] == "Session.close"


def test_generator_factory_yielding_twice_is_reported() -> None:
    def twice() -> Session:
        yield Session(Logger())  # type: ignore[misc]
        yield Session(Logger())  # type: ignore[misc]

    container = Container()
    container.register_transient_with_factory(twice, key=Session)

    with container.create_service_provider() as provider:
        session = provider.resolve(Session)
        # Finalizer errors are logged; release still completes.
        provider.unresolve(session)
        assert provider.active_transient_count == 0


def test_allocator_factory_receives_provider_allocator() -> None:
    container = Container()
    container.register_transient_with_factory(buffer_factory)
    allocator = Allocator()

    with container.create_service_provider(allocator) as provider:
        buffer = provider.resolve(bytearray)
        assert isinstance(buffer, bytearray)
        # One slot plus the allocation made by the factory.
        assert allocator.allocations == 2


def test_dtor_receives_provider_when_it_accepts_one() -> None:
    seen: list[tuple[object, object]] = []

    def close_logger(instance: Logger, provider: ServiceProvider) -> None:
        seen.append((instance, provider))

    container = Container()
    container.register_singleton(Logger, dtor=close_logger)

    provider = container.create_service_provider()
    logger = provider.resolve(Logger)
    provider.close()

    assert seen == [(logger, provider)]
    # dtor replaces the deinit method.
    assert "Logger.deinit" not in events()


def test_deinit_errors_do_not_stop_teardown() -> None:
    def broken_dtor(instance: Database) -> None:
        raise OSError("cannot close")

    container = Container()
    container.register_singleton(Logger)
    container.register_transient(Database, dtor=broken_dtor)

    provider = container.create_service_provider()
    provider.resolve(Database)
    provider.close()

    assert events()[-1] == "Logger.deinit"


def test_close_releases_transients_then_singletons_in_reverse_order() -> None:
    class Metrics:
        def deinit(self) -> None:
            record("Metrics.deinit")

    container = _logger_and_database()
    container.register_singleton(Metrics)

    provider = container.create_service_provider()
    provider.resolve(Logger)
    provider.resolve(Metrics)
    provider.resolve(Database)
    provider.close()

    assert events()[-3:] == ["Database.deinit", "Metrics.deinit", "Logger.deinit"]
    assert provider.closed

    provider.close()
    assert events().count("Logger.deinit") == 1


def test_closed_provider_rejects_resolution() -> None:
    provider = _logger_and_database().create_service_provider()
    provider.close()

    with pytest.raises(RuntimeError, match="closed provider"):
        provider.resolve(Logger)


def test_allocator_balances_after_close() -> None:
    allocator = Allocator()
    container = _logger_and_database()
    container.register_transient(Connection)

    provider = container.create_service_provider(allocator)
    provider.resolve(Connection)
    db = provider.resolve(Database)
    provider.unresolve(db)
    provider.close()

    assert allocator.allocations > 0
    assert allocator.live == 0
