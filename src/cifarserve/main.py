"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from starlette.types import ASGIApp, Message, Receive, Scope, Send

    from cifarserve.config import Settings

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cifarserve.api.controller import utc_timestamp
from cifarserve.api.routes import API_VERSION, router
from cifarserve.config import get_settings
from cifarserve.errors import ClassifierError, InvalidUpload, ModelLoadFailed
from cifarserve.ml.inference import InferencePool
from cifarserve.ml.model_service import ModelService

logger = logging.getLogger(__name__)

SECURITY_HEADERS: tuple[tuple[bytes, bytes], ...] = (
    (b"x-content-type-options", b"nosniff"),
    (b"x-frame-options", b"SAMEORIGIN"),
    (b"referrer-policy", b"no-referrer"),
    (b"x-dns-prefetch-control", b"off"),
    (b"cross-origin-resource-policy", b"same-origin"),
)


def init_state(app: FastAPI, settings: Settings, model_service: ModelService | None = None) -> None:
    """Attach settings, the (unloaded) model service and the inference pool to the app."""
    app.state.settings = settings
    app.state.model_service = model_service or ModelService(settings)
    app.state.inference_pool = InferencePool(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting cifarserve (device=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_path,
    )

    init_state(app, settings)
    model_service: ModelService = app.state.model_service
    try:
        model_service.load_model()
    except ModelLoadFailed:
        logger.critical("Failed to start server: model could not be loaded")
        app.state.inference_pool.shutdown()
        raise

    logger.info("cifarserve ready")
    yield

    logger.info("Shutting down cifarserve")
    app.state.inference_pool.shutdown()
    model_service.shutdown()
    logger.info("cifarserve shutdown complete")


async def _classifier_error_handler(request: Request, exc: ClassifierError) -> JSONResponse:
    if exc.__cause__ is not None:
        logger.warning("%s %s failed: %s (cause: %r)", request.method, request.url.path, exc.message, exc.__cause__)
    else:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "timestamp": utc_timestamp()},
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render malformed form fields (e.g. text sent as ``image``) as a missing upload."""
    if any("image" in error.get("loc", ()) for error in exc.errors()):
        upload_error = InvalidUpload(
            'Please upload an image file using the "image" field',
            error="No image file provided",
        )
    else:
        upload_error = InvalidUpload("Malformed request body", error="Invalid request")
    return await _classifier_error_handler(request, upload_error)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "Something went wrong",
            "timestamp": utc_timestamp(),
        },
    )


class SecurityHeadersMiddleware:
    """Add hardening headers to every HTTP response."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                present = {name.lower() for name, _ in message.get("headers", [])}
                extra = [header for header in SECURITY_HEADERS if header[0] not in present]
                message["headers"] = [*message.get("headers", []), *extra]
            await send(message)

        await self.app(scope, receive, send_with_headers)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="cifarserve",
        description="CIFAR-10 image classification API",
        version=API_VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_middleware(SecurityHeadersMiddleware)

    application.add_exception_handler(ClassifierError, _classifier_error_handler)  # type: ignore[arg-type]
    application.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    application.add_exception_handler(Exception, _unhandled_error_handler)

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "cifarserve.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
