import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from adpublisher.config import settings
from adpublisher.db.base import engine
from adpublisher.routers import meta_ads
from adpublisher.services.drive_assets import DriveAssetStoreConfigError
from adpublisher.services.meta_ads import MetaAdsConfigError

logger = logging.getLogger(__name__)

_SCHEMA_DRIFT_MARKERS = ("undefined column", "undefined table", "does not exist", "no such column", "no such table")


def _is_schema_drift(exc: ProgrammingError) -> bool:
    orig = getattr(exc, "orig", None)
    # 42703 undefined_column, 42P01 undefined_table
    if getattr(orig, "pgcode", None) in {"42703", "42P01"}:
        return True
    message = str(orig or exc).lower()
    return any(marker in message for marker in _SCHEMA_DRIFT_MARKERS)


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    logger.info("app.startup", extra={"environment": settings.ENVIRONMENT})
    try:
        yield
    finally:
        engine.dispose()


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MetaAdsConfigError)
    @app.exception_handler(DriveAssetStoreConfigError)
    async def adapter_config_error_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.error("app.adapter_not_configured", extra={"error": str(exc)})
        return ORJSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(ProgrammingError)
    async def programming_error_handler(_request: Request, exc: ProgrammingError) -> ORJSONResponse:
        logger.exception("Database programming error", exc_info=exc)
        if not _is_schema_drift(exc):
            return ORJSONResponse(status_code=500, content={"detail": "Database query failed."})
        return ORJSONResponse(
            status_code=503,
            content={"detail": "Database schema is out of date. Run `alembic upgrade head` and redeploy."},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Marketing Ads Publisher API",
        default_response_class=ORJSONResponse,
        lifespan=_lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(set(settings.BACKEND_CORS_ORIGINS)),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/health/db")
    def health_db() -> dict[str, str]:
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except Exception as exc:  # pragma: no cover - runtime probe
            return {"db": f"error: {exc}", "dialect": engine.dialect.name}
        return {"db": "ok", "dialect": engine.dialect.name}

    app.include_router(meta_ads.router)
    return app


app = create_app()
