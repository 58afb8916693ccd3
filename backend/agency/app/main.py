"""FastAPI application factory for the agency API."""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from backend.agency.db.base import create_all, create_engine, dispose_engine

from .config import settings
from .errors import register_exception_handlers
from .logging import bind_contextvars, clear_contextvars, get_logger
from .routes import auth, users


logger = get_logger("agency.main")

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def _lifespan(app: FastAPI):  # pragma: no cover - exercised by deployments
    """Initialise and tear down shared application resources."""

    create_engine(settings.database_url, echo=settings.sqlalchemy_echo)
    await create_all()
    logger.info("app.started", env=settings.env)
    try:
        yield
    finally:
        await dispose_engine()


def create_app(*, api_prefix: str | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    api_prefix:
        Optional path prefix under which the API routers are mounted. When
        ``None`` the routers are mounted at the application root, which is
        what the tests use; deployments pass ``"/api"``.
    """

    app = FastAPI(title="Agency API", version="1.0", lifespan=_lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    register_exception_handlers(app)

    @app.middleware("http")
    async def _bind_request_context(request: Request, call_next):
        request_id = (request.headers.get(REQUEST_ID_HEADER) or "")[:64] or uuid.uuid4().hex
        clear_contextvars()
        bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_contextvars()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    router_prefix = (api_prefix or "").rstrip("/")
    if router_prefix and not router_prefix.startswith("/"):
        router_prefix = f"/{router_prefix}"

    app.include_router(auth.router, prefix=router_prefix)
    app.include_router(users.router, prefix=router_prefix)
    return app


app = create_app(api_prefix="/api")
