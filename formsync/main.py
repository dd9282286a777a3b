import contextlib
import logging

import structlog
from fastapi import FastAPI
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from formsync.cache import close_redis_pool, init_redis_pool
from formsync.config import settings
from formsync.database import close_db, init_db
from formsync.exceptions import (
    AppError, app_error_handler, http_error_handler, validation_error_handler,
)
from formsync.middleware import LoggingMiddleware
from formsync.routers.admin import router as admin_router
from formsync.routers.oauth import router as oauth_router
from formsync.routers.questionnaires import router as questionnaires_router


def configure_logging() -> None:
    """JSON log lines; anything bound in contextvars (request id) is merged in."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
log = structlog.get_logger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("app.starting", env=settings.ENVIRONMENT, version=settings.APP_VERSION)
    await init_db()
    await init_redis_pool()
    try:
        yield
    finally:
        await close_redis_pool()
        await close_db()
        log.info("app.stopped")


def create_app() -> FastAPI:
    show_docs = settings.ENVIRONMENT == "development"
    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/docs" if show_docs else None,
        redoc_url="/redoc" if show_docs else None,
        lifespan=lifespan,
    )

    # Added last runs first: CORS wraps the request logger.
    application.add_middleware(LoggingMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["X-API-Key", settings.USER_ID_HEADER, "Content-Type"],
    )

    application.add_exception_handler(AppError, app_error_handler)
    application.add_exception_handler(HTTPException, http_error_handler)
    application.add_exception_handler(RequestValidationError, validation_error_handler)

    for router in (questionnaires_router, oauth_router, admin_router):
        application.include_router(router)
    return application


app = create_app()
