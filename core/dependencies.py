"""
Services container and FastAPI dependency injection.
Everything shared across requests (settings, logger, database, limiter, error
handler, templates) is built once per app and reached through the request.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, Request
from fastapi.templating import Jinja2Templates

from core.config import Settings
from core.database import Database
from core.errors import ErrorHandler, UnauthorizedError
from core.rate_limit import SlidingWindowRateLimiter
from utils.logging import setup_logging


@dataclass
class AppServices:
    settings: Settings
    logger: logging.Logger
    database: Database
    rate_limiter: SlidingWindowRateLimiter
    error_handler: ErrorHandler
    templates: Jinja2Templates


def build_services(settings: Settings, database: Database | None = None) -> AppServices:
    """Construct the per-process services. Nothing here touches the network."""
    logger = setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    if database is None:
        database = Database(settings.DATABASE_URL, logger.getChild("database"))
    return AppServices(
        settings=settings,
        logger=logger,
        database=database,
        rate_limiter=SlidingWindowRateLimiter(
            settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS
        ),
        error_handler=ErrorHandler(logger.getChild("errors"), expose_stack=settings.is_development),
        templates=Jinja2Templates(directory=str(settings.TEMPLATES_DIR)),
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_app_settings(request: Request) -> Settings:
    return get_services(request).settings


def get_database(request: Request) -> Database:
    return get_services(request).database


async def get_current_user(request: Request) -> dict[str, Any]:
    """
    Claims verified by the authentication stage.
    Routes outside the protected prefixes get 401 if they ask for this.
    """
    user = getattr(request.state, "user", None)
    if not user:
        raise UnauthorizedError("Not authenticated")
    return user


ServicesDep = Annotated[AppServices, Depends(get_services)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
DatabaseDep = Annotated[Database, Depends(get_database)]
CurrentUser = Annotated[dict, Depends(get_current_user)]
