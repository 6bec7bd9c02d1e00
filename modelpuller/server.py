"""The puller server: pulls models before handing requests to the model runtime."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from modelpuller.config import PullerServerConfiguration
from modelpuller.messages import (
    LoadModelRequest,
    LoadModelResponse,
    ModelSizeRequest,
    ModelSizeResponse,
    PredictModelSizeRequest,
    PredictModelSizeResponse,
    RpcError,
    RuntimeStatus,
    RuntimeStatusRequest,
    RuntimeStatusResponse,
    StatusCode,
    UnloadModelRequest,
    UnloadModelResponse,
    status_code_of,
)
from modelpuller.modelstate import ModelStateManager
from modelpuller.puller import Puller

logger = logging.getLogger(__name__)

PURGE_EXCLUDE_PREFIXES = ("_",)


@runtime_checkable
class ModelRuntimeClient(Protocol):
    """Client of the model runtime service the puller sits in front of."""

    def load_model(self, request: LoadModelRequest) -> LoadModelResponse:
        """Load a model whose files are already local."""

    def unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        """Unload a model."""

    def predict_model_size(
        self, request: PredictModelSizeRequest
    ) -> PredictModelSizeResponse:
        """Predict the size of a model that is not loaded yet."""

    def model_size(self, request: ModelSizeRequest) -> ModelSizeResponse:
        """Size of a loaded model."""

    def runtime_status(self, request: RuntimeStatusRequest) -> RuntimeStatusResponse:
        """Status and parameters of the runtime."""


class _Handler:
    def __init__(self, server: PullerServer) -> None:
        self._server = server

    def load_model(self, request: LoadModelRequest) -> LoadModelResponse:
        return self._server._pull_and_load(request)

    def unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        return self._server._unload_and_clean(request)


class PullerServer:
    """Serves the model runtime API, pulling model files before each load."""

    def __init__(
        self,
        puller: Puller,
        runtime_client: ModelRuntimeClient,
        config: PullerServerConfiguration | None = None,
    ) -> None:
        self.puller = puller
        self.runtime_client = runtime_client
        self.config = config if config is not None else PullerServerConfiguration()
        self._state = ModelStateManager(_Handler(self))

    def __enter__(self) -> PullerServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def load_model(
        self, request: LoadModelRequest, timeout: float | None = None
    ) -> LoadModelResponse | None:
        """Pull the model, then load it in the runtime; returns once loaded."""
        logger.info("Enqueuing loading of the model")
        return self._state.load_model(request, timeout)

    def unload_model(
        self, request: UnloadModelRequest, timeout: float | None = None
    ) -> UnloadModelResponse | None:
        """Unload the model from the runtime and delete its local files."""
        logger.info("Enqueuing unloading of the model")
        return self._state.unload_model(request, timeout)

    def predict_model_size(
        self, request: PredictModelSizeRequest
    ) -> PredictModelSizeResponse:
        """Pass through to the runtime."""
        logger.info(
            "Predicting model size (model_id=%s, model_path=%s, model_type=%s)",
            request.model_id,
            request.model_path,
            request.model_type,
        )
        return self.runtime_client.predict_model_size(request)

    def model_size(self, request: ModelSizeRequest) -> ModelSizeResponse:
        """Pass through to the runtime."""
        logger.info("Getting model size (model_id=%s)", request.model_id)
        return self.runtime_client.model_size(request)

    def runtime_status(self, request: RuntimeStatusRequest) -> RuntimeStatusResponse:
        """Runtime status; once the runtime is ready, unload every earlier model."""
        logger.info("Getting runtime status")
        response = self.runtime_client.runtime_status(request)
        if response.status != RuntimeStatus.READY:
            return response

        logger.info("Unloading all prior loaded models to return to zero state")
        try:
            self.unload_all()
        except Exception:
            logger.exception("Error unloading all models")
            raise
        return response

    def unload_all(self) -> None:
        """Unload and delete every local model not named with an excluded prefix."""
        for model_id in self.puller.list_models():
            if model_id.startswith(PURGE_EXCLUDE_PREFIXES):
                logger.info(
                    "Skipping purge because it is excluded from deletion (filename=%s)",
                    model_id,
                )
                continue
            try:
                self.runtime_client.unload_model(UnloadModelRequest(model_id=model_id))
            except Exception as exc:
                if status_code_of(exc) != StatusCode.NOT_FOUND:
                    logger.error("Error requesting unload of model: %s", exc)
                    raise
            self.puller.cleanup_model(model_id)

    def close(self) -> None:
        """Stop accepting requests and wait for the queued ones."""
        self._state.close()

    def _pull_and_load(self, request: LoadModelRequest) -> LoadModelResponse:
        logger.info(
            "Loading model (model_id=%s, model_path=%s, model_type=%s)",
            request.model_id,
            request.model_path,
            request.model_type,
        )
        try:
            request = self.puller.process_load_model_request(request)
        except Exception:
            logger.exception("Failed to pull model from storage")
            raise

        try:
            return self.runtime_client.load_model(request)
        except Exception as exc:
            logger.error(
                "Model runtime failed to load model (model_id=%s): %s",
                request.model_id,
                exc,
            )
            raise RpcError(
                status_code_of(exc),
                f"Failed to load model due to model runtime error: {exc}",
            ) from exc

    def _unload_and_clean(self, request: UnloadModelRequest) -> UnloadModelResponse:
        logger.info("Unloading model (model_id=%s)", request.model_id)
        try:
            self.runtime_client.unload_model(request)
        except Exception as exc:
            code = status_code_of(exc)
            if code == StatusCode.NOT_FOUND:
                logger.info("Unload request for model not found in the runtime: %s", exc)
            else:
                logger.error("Failed to unload model from runtime: %s", exc)
                raise RpcError(code, "Failed to unload model from runtime") from exc

        try:
            self.puller.cleanup_model(request.model_id)
        except Exception as exc:
            raise RpcError(
                status_code_of(exc),
                f"Failed to delete model from local filesystem: {exc}",
            ) from exc
        return UnloadModelResponse()