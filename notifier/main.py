from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, status
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from notifier.api.router import LINK_PREFIX, api_router
from notifier.core.config import Settings, get_settings
from notifier.core.telemetry import configure_logging, start_telemetry, stop_telemetry
from notifier.services.repository import get_repository

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        stop_telemetry(app.state.telemetry)
        await get_repository().close()
        get_repository.cache_clear()


async def invalid_input_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Only the link endpoints answer malformed bodies with the flat ok/error shape.
    if not request.url.path.startswith(LINK_PREFIX):
        return await request_validation_exception_handler(request, exc)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False, "error": "invalid input"})


async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(correlate=settings.otel_log_correlation)

    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.add_exception_handler(RequestValidationError, invalid_input_handler)
    application.middleware("http")(log_requests)
    application.include_router(api_router)
    application.state.telemetry = start_telemetry(settings, app=application)
    return application


app = create_app()
