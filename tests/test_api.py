"""Tests for the cifarserve HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import numpy as np
import pytest
from fastapi import FastAPI, status
from PIL import Image

from cifarserve.config import get_settings
from cifarserve.errors import ModelLoadFailed
from cifarserve.main import create_app, init_state, lifespan
from cifarserve.ml import preprocessing
from cifarserve.ml.inference import InferencePool
from cifarserve.ml.model_service import CIFAR10_CLASSES, ModelService

# Highest score on "cat" (index 3), then "dog", then "plane".
_SCORES = [0.10, 0.01, 0.02, 0.55, 0.03, 0.20, 0.04, 0.02, 0.02, 0.01]


class FakeBackend:
    model_name = "fake_cifar10"

    def __init__(self, scores: list[float] | None = None, error: Exception | None = None) -> None:
        self.scores = np.asarray(scores if scores is not None else _SCORES, dtype=np.float32)
        self.error = error
        self.calls = 0

    def run(self, batch: np.ndarray) -> np.ndarray:
        self.calls += 1
        assert batch.shape == (1, 32, 32, 3)
        if self.error is not None:
            raise self.error
        return self.scores.reshape(1, -1)


def _image_bytes(size: tuple[int, int] = (500, 400), fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color="orange" if mode == "RGB" else 0).save(buffer, format=fmt)
    return buffer.getvalue()


def _init_app_state(
    app: FastAPI,
    backend: FakeBackend | None = None,
    *,
    load: bool = True,
    **env_overrides: str,
) -> FakeBackend:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    backend = backend or FakeBackend()
    service = ModelService(settings, backend_factory=lambda _settings: backend)
    if load:
        service.load_model()
    init_state(app, settings, service)
    return backend


async def _make_client(app: FastAPI, raise_app_exceptions: bool = True) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app, raise_app_exceptions=raise_app_exceptions),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with a loaded fake model."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestIndexEndpoint:
    async def test_index_describes_endpoints(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["version"] == "1.0.0"
        assert "POST /classify" in data["endpoints"]
        assert "GET /health" in data["endpoints"]


class TestHealthEndpoint:
    async def test_health_reports_model_loaded(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["modelLoaded"] is True
        assert data["timestamp"].endswith("Z")
        assert data["concurrentRequests"] == 0
        assert data["queueDepth"] == 0
        assert data["rejectedRequests"] == 0

    async def test_health_reports_model_not_loaded(self) -> None:
        app = create_app()
        _init_app_state(app, load=False)
        async for ac in _make_client(app):
            response = await ac.get("/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["modelLoaded"] is False


class TestModelInfoEndpoint:
    async def test_model_info(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/model-info")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["modelLoaded"] is True
        assert data["classes"] == list(CIFAR10_CLASSES)
        info = data["modelInfo"]
        assert info["type"] == "CIFAR-10 Image Classifier"
        assert info["inputShape"] == [32, 32, 3]
        assert info["outputClasses"] == 10
        assert info["normalization"] == "Range [-1, 1]"
        assert info["supportedFormats"] == ["jpeg", "jpg", "png", "webp", "gif", "bmp"]


class TestClassifyEndpoint:
    async def test_classify_jpeg(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/classify",
            files={"image": ("cat.jpg", io.BytesIO(_image_bytes()), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True

        result = data["result"]
        assert result["predictedClass"] == "cat"
        assert result["confidence"] == pytest.approx(0.55)
        assert result["confidencePercentage"] == "55.00"

        top = result["allPredictions"]
        assert len(top) == 5
        assert [p["class"] for p in top[:3]] == ["cat", "dog", "plane"]
        probabilities = [p["probability"] for p in top]
        assert probabilities == sorted(probabilities, reverse=True)
        assert top[1]["percentage"] == "20.00"

        original = data["metadata"]["originalImage"]
        assert original["filename"] == "cat.jpg"
        assert original["mimetype"] == "image/jpeg"
        assert original["dimensions"] == "500x400"
        assert original["size"] > 0

        processing = data["metadata"]["processing"]
        assert isinstance(processing["timeMs"], int)
        assert processing["modelInputSize"] == "32x32x3"
        assert processing["normalization"] == "Range [-1, 1]"
        assert data["timestamp"].endswith("Z")

    async def test_classify_transparent_png(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/classify",
            files={"image": ("icon.png", io.BytesIO(_image_bytes((64, 48), "PNG", "RGBA")), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["metadata"]["originalImage"]["dimensions"] == "64x48"

    async def test_missing_file_returns_400_without_processing(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        with patch("cifarserve.ml.preprocessing.preprocess") as mock_preprocess:
            response = await client.post("/classify", data={"note": "no image here"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["error"] == "No image file provided"
        assert '"image"' in data["message"]
        assert "timestamp" in data
        mock_preprocess.assert_not_called()
        assert app.state.model_service._backend.calls == 0

    async def test_non_image_upload_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/classify",
            files={"image": ("notes.txt", io.BytesIO(b"hello"), "text/plain")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["message"] == "Only image files are allowed!"

    async def test_oversized_upload_rejected(self) -> None:
        app = create_app()
        _init_app_state(app, CIFARSERVE_MAX_FILE_SIZE="100")
        async for ac in _make_client(app):
            response = await ac.post(
                "/classify",
                files={"image": ("big.jpg", io.BytesIO(_image_bytes()), "image/jpeg")},
            )
            assert response.status_code == status.HTTP_400_BAD_REQUEST
            assert response.json()["error"] == "File upload error"
            assert "too large" in response.json()["message"]

    async def test_model_not_loaded_returns_503(self) -> None:
        app = create_app()
        _init_app_state(app, load=False)
        async for ac in _make_client(app):
            response = await ac.post(
                "/classify",
                files={"image": ("cat.jpg", io.BytesIO(_image_bytes()), "image/jpeg")},
            )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert response.json()["error"] == "Model not available"

    async def test_unsupported_format_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/classify",
            files={"image": ("scan.tiff", io.BytesIO(_image_bytes((40, 40), "TIFF")), "image/tiff")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["error"] == "Invalid image"
        assert "Unsupported image format: tiff" in data["message"]

    async def test_corrupt_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/classify",
            files={"image": ("broken.png", io.BytesIO(b"\x89PNG not really"), "image/png")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid image"

    async def test_prediction_failure_returns_500_and_releases_tensor(self) -> None:
        app = create_app()
        _init_app_state(app, FakeBackend(error=RuntimeError("onnx exploded")))
        produced: list[preprocessing.NormalizedTensor] = []
        real_preprocess = preprocessing.preprocess

        def _capture(image_bytes: bytes) -> preprocessing.NormalizedTensor:
            tensor = real_preprocess(image_bytes)
            produced.append(tensor)
            return tensor

        async for ac in _make_client(app):
            with patch("cifarserve.ml.preprocessing.preprocess", side_effect=_capture):
                response = await ac.post(
                    "/classify",
                    files={"image": ("cat.jpg", io.BytesIO(_image_bytes()), "image/jpeg")},
                )
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            data = response.json()
            assert data["error"] == "Classification failed"
            assert "onnx exploded" not in data["message"]

        assert len(produced) == 1
        assert produced[0].released

    async def test_busy_inference_pool_returns_503(self) -> None:
        app = create_app()
        backend = _init_app_state(app, CIFARSERVE_MAX_CONCURRENT="1", CIFARSERVE_QUEUE_TIMEOUT="0.05")
        pool: InferencePool = app.state.inference_pool
        async for ac in _make_client(app):
            # Hold the only slot so the request has to queue.
            await pool._semaphore.acquire()
            try:
                response = await ac.post(
                    "/classify",
                    files={"image": ("cat.jpg", io.BytesIO(_image_bytes()), "image/jpeg")},
                )
            finally:
                pool._semaphore.release()
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert response.json()["error"] == "Service unavailable"
            assert backend.calls == 0

            health = await ac.get("/health")
            assert health.json()["rejectedRequests"] == 1

    async def test_text_in_image_field_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/classify", data={"image": "not a file"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["error"] == "No image file provided"
        assert '"image"' in data["message"]
        assert "timestamp" in data
        assert "detail" not in data

    async def test_truncated_image_hides_decoder_message(self, client: httpx.AsyncClient) -> None:
        buffer = io.BytesIO()
        noise = np.random.default_rng(0).integers(0, 256, (256, 256, 3), dtype=np.uint8)
        Image.fromarray(noise).save(buffer, format="JPEG")
        truncated = buffer.getvalue()[: len(buffer.getvalue()) // 3]

        response = await client.post(
            "/classify",
            files={"image": ("cut.jpg", io.BytesIO(truncated), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["error"] == "Invalid image"
        assert data["message"] == "Image preprocessing failed: unable to decode image data"
        assert "truncated" not in data["message"]

    async def test_unexpected_error_returns_generic_500(self) -> None:
        app = create_app()
        _init_app_state(app)
        async for ac in _make_client(app, raise_app_exceptions=False):
            with patch("cifarserve.api.controller.format_prediction", side_effect=ValueError("boom")):
                response = await ac.post(
                    "/classify",
                    files={"image": ("cat.jpg", io.BytesIO(_image_bytes()), "image/jpeg")},
                )
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            assert response.json()["error"] == "Internal server error"
            assert "boom" not in response.json()["message"]


class TestPreviewEndpoint:
    async def test_preview_returns_jpeg(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/classify/preview",
            files={"image": ("cat.jpg", io.BytesIO(_image_bytes()), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "image/jpeg"
        with Image.open(io.BytesIO(response.content)) as preview:
            assert preview.size == (32, 32)


class TestLifespan:
    async def test_startup_fails_when_model_missing(self, tmp_path) -> None:
        app = create_app()
        env = {"CIFARSERVE_MODEL_PATH": str(tmp_path / "missing.onnx")}
        with patch.dict(os.environ, env), pytest.raises(ModelLoadFailed):
            async with lifespan(app):
                pytest.fail("server must not start without a model")


class TestSecurityHeaders:
    async def test_headers_on_success(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["referrer-policy"] == "no-referrer"

    async def test_headers_on_error(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/classify", data={"note": "no image here"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.headers["x-content-type-options"] == "nosniff"
