"""FastAPI server exposing the usage engine to the tray UI."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cldbar.api.routes import router
from cldbar.cache.store import CacheStore
from cldbar.config import Settings, settings as default_settings
from cldbar.errors import UsageError
from cldbar.profiles.registry import ProfileRegistry
from cldbar.token_tracker.engine import UsageEngine

logger = logging.getLogger(__name__)

# Known error kinds never surface as a 500
ERROR_STATUS = {
    "profile_not_found": 404,
    "auth_error": 401,
    "rate_limited": 429,
    "network_error": 502,
    "config_invalid": 422,
    "source_unavailable": 503,
}


def build_engine(settings: Settings) -> UsageEngine:
    """Wire registry, cache store and engine from settings."""
    registry = ProfileRegistry(path=settings.profiles_file)
    registry.load()
    store = CacheStore(settings.cache_db_path)
    engine = UsageEngine(registry, store, settings)
    engine.prune_cache()
    return engine


async def usage_error_handler(request: Request, exc: UsageError) -> JSONResponse:
    status = ERROR_STATUS.get(exc.kind, 500)
    logger.info("%s %s -> %d %s", request.method, request.url.path, status, exc.kind)
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers["Retry-After"] = str(int(retry_after))
    return JSONResponse(status_code=status, content={"error": exc.to_dict()}, headers=headers)


def create_app(engine: UsageEngine | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build the engine on startup unless one was injected."""
        if getattr(app.state, "engine", None) is None:
            app.state.engine = build_engine(settings)
        logger.info(
            "Usage engine ready: %d profiles, cache at %s",
            len(app.state.engine.registry.profiles),
            settings.cache_db_path,
        )
        yield

    app = FastAPI(
        title="cldbar - usage aggregation engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(UsageError, usage_error_handler)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
