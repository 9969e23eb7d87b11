"""
Application entry point. FastAPI app wrapped in the request pipeline.
Run: python main.py, or uvicorn main:create_app --factory --host 0.0.0.0 --port 3000
"""

import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.routes import health_router, index_router, public_router, users_router
from core.config import Settings, get_settings
from core.database import Database, DatabaseUnavailableError
from core.dependencies import build_services
from core.errors import register_exception_handlers
from core.middleware import build_stages
from core.pipeline import Pipeline, PipelineMiddleware
from utils.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: validate the database connection once; failure aborts startup.
    Shutdown: close the pool.
    """
    services = app.state.services
    settings = services.settings
    logger = services.logger
    logger.info(
        "startup",
        extra={
            "app": settings.APP_NAME,
            "env": settings.ENVIRONMENT,
            "log_level": settings.LOG_LEVEL,
        },
    )
    try:
        services.database.authenticate()
    except DatabaseUnavailableError:
        logger.exception("database_connection_failed")
        raise
    yield
    services.database.dispose()
    logger.info("shutdown", extra={"app": settings.APP_NAME})


def create_app(settings: Settings | None = None, database: Database | None = None) -> FastAPI:
    """Factory for FastAPI app. Enables testing with overrides."""
    settings = settings or get_settings()
    services = build_services(settings, database)
    app = FastAPI(
        title=settings.APP_NAME,
        description="Generic web-application server behind an explicit request pipeline",
        version="1.0.0",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.services = services

    pipeline = Pipeline(
        build_stages(settings, services.logger, services.rate_limiter, services.templates),
        services.error_handler,
    )
    app.add_middleware(PipelineMiddleware, pipeline=pipeline)

    app.include_router(index_router)
    app.include_router(health_router)
    app.include_router(public_router)
    app.include_router(users_router)

    register_exception_handlers(app, services.error_handler)
    return app


def serve(settings: Settings | None = None) -> None:
    """
    CLI entry: refuse to start when the database is unreachable (exit code 1),
    otherwise hand over to uvicorn.
    Without explicit settings uvicorn builds the app from the environment
    through the factory (reload allowed); explicit settings are served as a
    prebuilt app.
    """
    import uvicorn

    s = settings or get_settings()
    logger = setup_logging(s.LOG_LEVEL, s.LOG_JSON)
    database = Database(s.DATABASE_URL, logger.getChild("database"))
    try:
        database.authenticate()
    except DatabaseUnavailableError:
        logger.exception("database_connection_failed")
        sys.exit(1)
    finally:
        database.dispose()

    if settings is None:
        target = "main:create_app"
        options = {"factory": True, "reload": s.is_development}
    else:
        target = create_app(settings)
        options = {}
    uvicorn.run(
        target,
        host=s.HOST,
        port=s.PORT,
        log_level=s.LOG_LEVEL.lower(),
        **options,
    )


if __name__ == "__main__":
    serve()
