"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, File, Request, Response, UploadFile, status

from cifarserve.api.controller import ClassificationController, UploadedImage, utc_timestamp
from cifarserve.api.schemas import (
    ApiDescription,
    ClassifyResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfoResponse,
)
from cifarserve.errors import InvalidUpload

if TYPE_CHECKING:
    from cifarserve.config import Settings
    from cifarserve.ml.inference import InferencePool
    from cifarserve.ml.model_service import ModelService

router = APIRouter()

API_VERSION = "1.0.0"

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_model_service(request: Request) -> ModelService:
    service: ModelService = request.app.state.model_service
    return service


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_controller(request: Request) -> ClassificationController:
    return ClassificationController(
        _get_model_service(request),
        _get_inference_pool(request),
        _get_settings(request),
    )


async def _read_upload(image: UploadFile | None, settings: Settings) -> UploadedImage | None:
    """Enforce the upload boundary: image MIME type and size ceiling."""
    if image is None or not image.filename:
        return None

    content_type = image.content_type or ""
    if not content_type.startswith("image/"):
        raise InvalidUpload("Only image files are allowed!")

    content = await image.read(settings.max_file_size + 1)
    if len(content) > settings.max_file_size:
        raise InvalidUpload(f"File too large (limit {settings.max_file_size} bytes)")

    return UploadedImage(content=content, filename=image.filename, content_type=content_type)


@router.get("/", response_model=ApiDescription, summary="API description")
async def index() -> ApiDescription:
    return ApiDescription(
        message="CIFAR-10 Image Classification API",
        version=API_VERSION,
        endpoints={
            "POST /classify": "Upload an image for classification",
            "POST /classify/preview": "Return the normalized 32x32 model input as JPEG",
            "GET /model-info": "Model readiness, classes and input format",
            "GET /health": "Health check endpoint",
        },
    )


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    responses=_ERROR_RESPONSES,
    summary="Classify an uploaded image",
)
async def classify(
    request: Request,
    image: Annotated[UploadFile | None, File()] = None,
) -> ClassifyResponse:
    """Classify an uploaded image and return the top ranked classes."""
    upload = await _read_upload(image, _get_settings(request))
    return await _get_controller(request).classify(upload)


@router.post(
    "/classify/preview",
    response_class=Response,
    responses={**_ERROR_RESPONSES, status.HTTP_200_OK: {"content": {"image/jpeg": {}}}},
    summary="Preview the preprocessed model input",
)
async def classify_preview(
    request: Request,
    image: Annotated[UploadFile | None, File()] = None,
) -> Response:
    upload = await _read_upload(image, _get_settings(request))
    jpeg = await _get_controller(request).preview(upload)
    return Response(content=jpeg, media_type="image/jpeg")


@router.get("/model-info", response_model=ModelInfoResponse, summary="Model information")
async def model_info(request: Request) -> ModelInfoResponse:
    return _get_controller(request).model_info()


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="healthy",
        timestamp=utc_timestamp(),
        model_loaded=_get_model_service(request).is_model_loaded(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        rejected_requests=pool.rejected_count,
    )
