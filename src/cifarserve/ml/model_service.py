"""Model runtime adapter: owns the loaded classifier and its lifecycle.

Lifecycle: constructed unloaded -> ``load_model()`` -> ready -> ``shutdown()``.
A single instance is created per application and injected through app state.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

import numpy as np

from cifarserve.errors import ModelLoadFailed, ModelNotLoaded, PredictionFailed
from cifarserve.ml.backend import load_onnx_backend

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from cifarserve.config import Settings
    from cifarserve.ml.backend import ClassifierBackend
    from cifarserve.ml.preprocessing import NormalizedTensor

logger = logging.getLogger(__name__)

# Positional contract with the model's output vector.
CIFAR10_CLASSES: tuple[str, ...] = (
    "plane",
    "car",
    "bird",
    "cat",
    "deer",
    "dog",
    "frog",
    "horse",
    "ship",
    "truck",
)


class ModelService:
    """Loads the classifier once and runs predictions against it."""

    def __init__(
        self,
        settings: Settings,
        backend_factory: Callable[[Settings], ClassifierBackend] = load_onnx_backend,
        classes: tuple[str, ...] = CIFAR10_CLASSES,
    ) -> None:
        self._settings = settings
        self._backend_factory = backend_factory
        self._classes = classes
        self._backend: ClassifierBackend | None = None
        self._lock = threading.Lock()

    def load_model(self) -> None:
        """Load the classifier. Calling again after a successful load is a no-op.

        Raises:
            ModelLoadFailed: If the artifact cannot be found or loaded.
        """
        with self._lock:
            if self._backend is not None:
                return
            try:
                backend = self._backend_factory(self._settings)
            except Exception as exc:
                logger.exception("Error loading model from %s", self._settings.model_path)
                raise ModelLoadFailed(f"Failed to load model: {exc}") from exc
            self._backend = backend
        logger.info("Model %s loaded successfully", backend.model_name)

    def is_model_loaded(self) -> bool:
        return self._backend is not None

    @property
    def model_name(self) -> str | None:
        backend = self._backend
        return backend.model_name if backend is not None else None

    def predict(self, tensor: NormalizedTensor) -> NDArray[np.float32]:
        """Return the raw score vector for a single normalized image.

        The caller keeps ownership of ``tensor`` and must release it.

        Raises:
            ModelNotLoaded: If ``load_model`` has not succeeded.
            PredictionFailed: If inference fails or returns the wrong shape.
        """
        backend = self._backend
        if backend is None:
            raise ModelNotLoaded("Model not loaded. Call load_model() first.")

        try:
            output = backend.run(tensor.array)
        except Exception as exc:
            logger.exception("Error during prediction")
            raise PredictionFailed("An error occurred during image classification") from exc

        probabilities = np.asarray(output, dtype=np.float32).reshape(-1)
        if probabilities.shape[0] != len(self._classes):
            logger.error(
                "Model returned %d scores, expected %d",
                probabilities.shape[0],
                len(self._classes),
            )
            raise PredictionFailed("An error occurred during image classification")
        return probabilities

    def get_classes(self) -> list[str]:
        """Return a copy of the ordered class names."""
        return list(self._classes)

    def shutdown(self) -> None:
        """Drop the loaded backend."""
        with self._lock:
            self._backend = None
        logger.info("Model unloaded")
