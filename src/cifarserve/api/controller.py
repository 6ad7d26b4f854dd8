"""Request orchestration for classification.

Per request: upload check -> model readiness -> validate -> preprocess ->
predict -> format. Failures surface as ``ClassifierError`` subclasses and are
rendered by the application's exception handlers. Nothing is retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from fastapi.concurrency import run_in_threadpool

from cifarserve.api.schemas import (
    ClassificationMetadata,
    ClassificationResult,
    ClassifyResponse,
    ClassProbability,
    ModelDetails,
    ModelInfoResponse,
    OriginalImage,
    ProcessingInfo,
)
from cifarserve.errors import InvalidUpload, ModelNotLoaded
from cifarserve.ml import preprocessing
from cifarserve.ml.formatting import format_prediction

if TYPE_CHECKING:
    from cifarserve.config import Settings
    from cifarserve.ml.inference import InferencePool
    from cifarserve.ml.model_service import ModelService

logger = logging.getLogger(__name__)

TOP_K = 5
MODEL_INPUT_SIZE = "x".join(str(d) for d in preprocessing.INPUT_SHAPE)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class UploadedImage:
    """Raw upload as received for a single request."""

    content: bytes
    filename: str
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


class ClassificationController:
    """Runs the classification pipeline against a shared model service."""

    def __init__(self, model_service: ModelService, inference_pool: InferencePool, settings: Settings) -> None:
        self._model_service = model_service
        self._pool = inference_pool
        self._settings = settings

    async def classify(self, upload: UploadedImage | None) -> ClassifyResponse:
        if upload is None or not upload.content:
            raise InvalidUpload(
                'Please upload an image file using the "image" field',
                error="No image file provided",
            )

        if not self._model_service.is_model_loaded():
            raise ModelNotLoaded(
                "The classification model is not loaded yet. Please try again later.",
                error="Model not available",
            )

        started = time.perf_counter()

        metadata = preprocessing.validate_image(upload.content, self._settings.max_image_pixels)
        logger.info(
            "Processing image: filename=%s size=%d mimetype=%s dimensions=%s",
            upload.filename,
            upload.size,
            upload.content_type,
            metadata.dimensions,
        )

        tensor = await run_in_threadpool(preprocessing.preprocess, upload.content)
        with tensor:
            probabilities = await self._pool.predict(self._model_service, tensor)
            elapsed_ms = int((time.perf_counter() - started) * 1000)

            prediction = format_prediction(probabilities, self._model_service.get_classes())

        logger.info(
            "Classified %s as %s (%.4f) in %dms",
            upload.filename,
            prediction.predicted_class,
            prediction.confidence,
            elapsed_ms,
        )

        return ClassifyResponse(
            success=True,
            result=ClassificationResult(
                predicted_class=prediction.predicted_class,
                confidence=prediction.confidence,
                confidence_percentage=prediction.confidence_percentage,
                all_predictions=[
                    ClassProbability(class_name=s.class_name, probability=s.probability, percentage=s.percentage)
                    for s in prediction.top(TOP_K)
                ],
            ),
            metadata=ClassificationMetadata(
                original_image=OriginalImage(
                    filename=upload.filename,
                    size=upload.size,
                    mimetype=upload.content_type,
                    dimensions=metadata.dimensions,
                ),
                processing=ProcessingInfo(
                    time_ms=elapsed_ms,
                    model_input_size=MODEL_INPUT_SIZE,
                    normalization=preprocessing.NORMALIZATION,
                ),
            ),
            timestamp=utc_timestamp(),
        )

    async def preview(self, upload: UploadedImage | None) -> bytes:
        """Return a JPEG of the normalized 32x32 model input."""
        if upload is None or not upload.content:
            raise InvalidUpload(
                'Please upload an image file using the "image" field',
                error="No image file provided",
            )

        preprocessing.validate_image(upload.content, self._settings.max_image_pixels)
        tensor = await run_in_threadpool(preprocessing.preprocess, upload.content)
        with tensor:
            return await run_in_threadpool(preprocessing.render_preview, tensor)

    def model_info(self) -> ModelInfoResponse:
        return ModelInfoResponse(
            model_loaded=self._model_service.is_model_loaded(),
            classes=self._model_service.get_classes(),
            model_info=ModelDetails(
                input_shape=list(preprocessing.INPUT_SHAPE),
                output_classes=len(self._model_service.get_classes()),
                normalization=preprocessing.NORMALIZATION,
                supported_formats=list(preprocessing.SUPPORTED_FORMATS),
            ),
        )
