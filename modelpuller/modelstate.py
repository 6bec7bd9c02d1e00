"""Serialise load and unload requests per model.

Requests for the same model run one after another, in the order they were
submitted. Requests for different models run concurrently.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from modelpuller.messages import (
    LoadModelRequest,
    LoadModelResponse,
    UnloadModelRequest,
    UnloadModelResponse,
)

logger = logging.getLogger(__name__)

STATE_MANAGER_QUEUE_LENGTH = 25


class ModelStateError(Exception):
    """Raised when a request cannot be queued, is not understood or times out."""


@runtime_checkable
class ModelHandler(Protocol):
    """Does the actual work of loading and unloading models."""

    def load_model(self, request: LoadModelRequest) -> LoadModelResponse:
        """Load the model described by ``request``."""

    def unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        """Unload the model named by ``request``."""


@dataclass
class _Pending:
    request: Any
    done: threading.Event = field(default_factory=threading.Event)
    response: Any = None
    error: BaseException | None = None


class _ModelWorker:
    def __init__(self, queue_length: int) -> None:
        self.queue: queue.Queue[_Pending] = queue.Queue(maxsize=queue_length)
        self.ref_count = 0
        self.thread: threading.Thread | None = None


class ModelStateManager:
    """Runs requests through ``handler``, one at a time for each model id."""

    def __init__(
        self, handler: ModelHandler, queue_length: int = STATE_MANAGER_QUEUE_LENGTH
    ) -> None:
        if queue_length < 1:
            raise ValueError("queue_length must be at least 1")
        self.handler = handler
        self._queue_length = queue_length
        self._lock = threading.Lock()
        self._workers: dict[str, _ModelWorker] = {}
        self._closed = False

    def __enter__(self) -> ModelStateManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def submit_request(self, request: Any, timeout: float | None = None) -> Any:
        """Queue ``request`` behind earlier requests for its model and wait for the result.

        Raises ModelStateError when the model's queue is full or when no result
        arrives within ``timeout`` seconds; errors from the handler propagate.
        """
        model_id = request.model_id
        pending = _Pending(request)
        with self._lock:
            if self._closed:
                raise ModelStateError(
                    "Unable to send load/unload model request: manager is closed"
                )
            worker = self._workers.get(model_id)
            is_new = worker is None
            if worker is None:
                worker = _ModelWorker(self._queue_length)
            try:
                worker.queue.put_nowait(pending)
            except queue.Full:
                raise ModelStateError(
                    "Unable to send load/unload model request"
                ) from None
            worker.ref_count += 1
            if is_new:
                self._workers[model_id] = worker
                worker.thread = threading.Thread(
                    target=self._run,
                    args=(model_id, worker),
                    name=f"model-{model_id}",
                    daemon=True,
                )
                worker.thread.start()

        if not pending.done.wait(timeout):
            raise ModelStateError("Context cancelled while waiting for response")
        if pending.error is not None:
            raise pending.error
        return pending.response

    def load_model(
        self, request: LoadModelRequest, timeout: float | None = None
    ) -> LoadModelResponse | None:
        """Submit a load request; returns the handler's response."""
        response = self.submit_request(request, timeout)
        return response if isinstance(response, LoadModelResponse) else None

    def unload_model(
        self, request: UnloadModelRequest, timeout: float | None = None
    ) -> UnloadModelResponse | None:
        """Submit an unload request; returns the handler's response."""
        response = self.submit_request(request, timeout)
        return response if isinstance(response, UnloadModelResponse) else None

    def active_models(self) -> list[str]:
        """Model ids that still have requests queued or running, sorted."""
        with self._lock:
            return sorted(self._workers)

    def close(self) -> None:
        """Refuse new requests and wait for the queued ones to finish."""
        with self._lock:
            self._closed = True
            threads = [w.thread for w in self._workers.values() if w.thread]
        for thread in threads:
            thread.join()

    def _dispatch(self, request: Any) -> Any:
        if isinstance(request, LoadModelRequest):
            return self.handler.load_model(request)
        if isinstance(request, UnloadModelRequest):
            return self.handler.unload_model(request)
        raise ModelStateError(
            f"unrecognized request type: {type(request).__name__}"
        )

    def _run(self, model_id: str, worker: _ModelWorker) -> None:
        while True:
            pending = worker.queue.get()
            try:
                pending.response = self._dispatch(pending.request)
            except Exception as exc:  # handed back to the submitter
                pending.error = exc
            with self._lock:
                worker.ref_count -= 1
                finished = worker.ref_count <= 0
                if finished and self._workers.get(model_id) is worker:
                    del self._workers[model_id]
            pending.done.set()
            if finished:
                return