"""Classifier runtime: locate the ONNX artifact and wrap an InferenceSession.

The rest of the service only sees the ``ClassifierBackend`` protocol, a
black-box ``batch -> scores`` function, so the concrete runtime can be
replaced without touching preprocessing or formatting.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from cifarserve.config import Settings

logger = logging.getLogger(__name__)


class ClassifierBackend(Protocol):
    """Protocol for an opaque image classifier."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def run(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        """Score a batch of normalized images.

        Args:
            batch: Float32 array of shape (N, 32, 32, 3), values in [-1, 1].

        Returns:
            Array of shape (N, num_classes) with one score per class.
        """
        ...


class OnnxClassifierBackend:
    """Runs the classifier through an ONNX Runtime session."""

    def __init__(self, session: InferenceSession, model_name: str) -> None:
        self._session = session
        self._model_name = model_name
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._model_name

    def run(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        # InferenceSession.run is safe to call from several threads at once.
        outputs = self._session.run(None, {self._input_name: batch})
        return np.asarray(outputs[0], dtype=np.float32)


def resolve_model_path(settings: Settings) -> Path:
    """Return the local model file, downloading it from HuggingFace if configured.

    Raises:
        FileNotFoundError: If the file is missing and no repository is configured.
    """
    path = Path(settings.model_path)
    if path.is_file():
        return path

    if settings.model_repo_id is None:
        raise FileNotFoundError(f"Model file does not exist: {path}")

    models_dir = Path(settings.models_dir)
    models_dir.mkdir(parents=True, exist_ok=True)
    downloaded = Path(
        hf_hub_download(
            repo_id=settings.model_repo_id,
            filename=settings.model_filename,
            local_dir=str(models_dir),
        )
    )
    logger.info("Downloaded %s to %s", settings.model_filename, downloaded)
    return downloaded


def load_onnx_backend(settings: Settings) -> OnnxClassifierBackend:
    """Create an ONNX-backed classifier from the configured artifact."""
    model_path = resolve_model_path(settings)
    logger.info("Loading model from %s (device=%s)", model_path, settings.device)
    session = InferenceSession(
        str(model_path),
        sess_options=build_session_options(settings),
        providers=build_providers(settings),
    )
    return OnnxClassifierBackend(session, model_name=model_path.stem)


def build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    device = settings.device
    if device == "cuda":
        return [
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "CPUExecutionProvider",
        ]
    if device == "openvino":
        return [
            ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts
