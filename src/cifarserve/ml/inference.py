"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ModelService.predict

A request that cannot get a slot within ``queue_timeout`` seconds is rejected
with ``ModelUnavailable`` (503). Nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from cifarserve.errors import ModelUnavailable

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from cifarserve.config import Settings
    from cifarserve.ml.model_service import ModelService
    from cifarserve.ml.preprocessing import NormalizedTensor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounds concurrent predictions and runs them off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._timeout = settings.queue_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._rejected_count: int = 0
        self._counter_lock = threading.Lock()

    async def predict(self, model_service: ModelService, tensor: NormalizedTensor) -> NDArray[np.float32]:
        """Score one normalized image. The tensor stays owned by the caller."""
        return await self.run(model_service.predict, tensor)

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous call in the worker pool once a slot is free.

        Raises:
            ModelUnavailable: If no slot frees up within ``queue_timeout``.
        """
        await self._acquire_slot()

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    async def _acquire_slot(self) -> None:
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError as exc:
            with self._counter_lock:
                self._rejected_count += 1
            logger.warning("Inference queue full; rejected after %.1fs", self._timeout)
            raise ModelUnavailable("Classification model is busy. Please try again later.") from exc
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

    @property
    def active_count(self) -> int:
        """Number of predictions currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    @property
    def rejected_count(self) -> int:
        """Requests turned away because the queue timed out."""
        with self._counter_lock:
            return self._rejected_count

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
