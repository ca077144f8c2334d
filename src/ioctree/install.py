from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI
from fastapi.params import Depends
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Receive, Send
from starlette.types import Scope as ASGIScope

from .container import Container
from .generics import TypeKey, key_label
from .provider import Scope, ServiceProvider

logger = logging.getLogger(__name__)

REQUEST_SCOPE_STATE_KEY = "_ioctree_request_scope"


@dataclass(frozen=True)
class DISettings:
    strict: bool = True
    auto_add_scope_middleware: bool = True
    close_provider_on_shutdown: bool = True


def get_service_provider(app_state: object) -> ServiceProvider | None:
    """Root provider installed on the app state by `install_di()`, if running."""
    if app_state is None:
        return None
    provider = getattr(app_state, "di_provider", None)
    return provider if isinstance(provider, ServiceProvider) else None


def get_request_scope(connection: HTTPConnection) -> Scope | None:
    # scope["state"] is a plain dict, not the State wrapper object.
    state = connection.scope.get("state")
    if not state:
        return None
    di_scope = state.get(REQUEST_SCOPE_STATE_KEY)
    return di_scope if isinstance(di_scope, Scope) else None


class RequestScopeMiddleware:
    """
    ASGI middleware opening one service scope per HTTP request or WebSocket
    connection and closing it once the connection is done.

    Usage:

        app.add_middleware(RequestScopeMiddleware)
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: ASGIScope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        provider = get_service_provider(getattr(scope.get("app"), "state", None))
        if provider is None or provider.closed:
            await self.app(scope, receive, send)
            return

        state = scope.get("state")
        if state is None:
            state = {}
            scope["state"] = state

        di_scope = provider.init_scope()
        state[REQUEST_SCOPE_STATE_KEY] = di_scope
        try:
            await self.app(scope, receive, send)
        finally:
            state.pop(REQUEST_SCOPE_STATE_KEY, None)
            try:
                di_scope.close()
            except Exception:
                logger.exception("Error closing request service scope.")


def Inject(target: TypeKey, *, many: bool = False) -> Depends:
    """
    Create a FastAPI dependency marker resolving a service from the request scope.

    In endpoints you can write:

        @router.get("/items")
        async def endpoint(repo: Repository = Inject(Repository)):
            ...

    `many=True` resolves every registration of `target` as a list.
    """

    async def _dependency_callable(request: HTTPConnection) -> object:
        di_scope = get_request_scope(request)
        if di_scope is None:
            if get_service_provider(getattr(request.app, "state", None)) is None:
                msg = "Service provider not initialized on FastAPI app state (di_provider)."
            else:
                msg = "No request service scope; add RequestScopeMiddleware to the app."
            logger.error(msg)
            raise RuntimeError(msg)
        if many:
            return di_scope.resolve_slice(target)
        return di_scope.resolve(target)

    _dependency_callable.__name__ = f"inject_{'many' if many else 'one'}_{key_label(target)}"
    _dependency_callable.__qualname__ = _dependency_callable.__name__
    return Depends(_dependency_callable)


def _has_middleware(app: FastAPI, middleware_cls: type[object]) -> bool:
    for middleware in app.user_middleware:
        if getattr(middleware, "cls", None) is middleware_cls:
            return True
    return False


def install_di(
    app: FastAPI,
    container: Container,
    *,
    strict: bool = True,
    auto_add_scope_middleware: bool = True,
    close_provider_on_shutdown: bool = True,
) -> DISettings:
    """
    Install the service provider lifecycle into a FastAPI app.

    The root provider is created (and the registrations validated) at
    startup and stored on `app.state.di_provider`; it is closed at shutdown.
    With `strict=False` a failing startup is logged and the app runs without
    a provider.
    """
    if isinstance(getattr(app.state, "di_settings", None), DISettings):
        raise RuntimeError("install_di() has already been called for this FastAPI app.")

    settings = DISettings(
        strict=strict,
        auto_add_scope_middleware=auto_add_scope_middleware,
        close_provider_on_shutdown=close_provider_on_shutdown,
    )

    if settings.auto_add_scope_middleware and not _has_middleware(app, RequestScopeMiddleware):
        # Register early so user middlewares run inside the request scope.
        app.add_middleware(RequestScopeMiddleware)

    previous_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def _combined_lifespan(inner_app: FastAPI) -> AsyncIterator[None]:
        provider: ServiceProvider | None = None
        try:
            try:
                provider = container.create_service_provider()
                inner_app.state.di_provider = provider
            except Exception:
                if settings.strict:
                    raise
                logger.exception("DI startup failed; continuing without DI because strict=False")
                provider = None
                inner_app.state.di_provider = None

            async with previous_lifespan(inner_app):
                yield

        finally:
            if provider is not None and settings.close_provider_on_shutdown:
                provider.close()
                inner_app.state.di_provider = None

    app.router.lifespan_context = _combined_lifespan
    app.state.di_settings = settings
    app.state.di_provider = None
    return settings
