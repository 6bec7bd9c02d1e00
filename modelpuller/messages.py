"""Request and response messages of the model runtime service, and its status codes."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class StatusCode(enum.IntEnum):
    """Status codes carried by RPC errors."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class RpcError(Exception):
    """An error that carries an RPC status code."""

    def __init__(self, code: StatusCode, message: str = "") -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.name} desc = {self.message}"


def status_code_of(error: BaseException | None) -> StatusCode:
    """Return the status code of ``error``: OK for None, UNKNOWN for plain exceptions."""
    if error is None:
        return StatusCode.OK
    if isinstance(error, RpcError):
        return error.code
    return StatusCode.UNKNOWN


class RuntimeStatus(enum.IntEnum):
    """Readiness of a model runtime."""

    STARTING = 0
    READY = 1
    FAILING = 2


@dataclass
class LoadModelRequest:
    model_id: str = ""
    model_path: str = ""
    model_type: str = ""
    model_key: str = ""


@dataclass
class LoadModelResponse:
    size_in_bytes: int = 0
    max_concurrency: int = 0


@dataclass
class UnloadModelRequest:
    model_id: str = ""


@dataclass
class UnloadModelResponse:
    pass


@dataclass
class PredictModelSizeRequest:
    model_id: str = ""
    model_path: str = ""
    model_type: str = ""
    model_key: str = ""


@dataclass
class PredictModelSizeResponse:
    size_in_bytes: int = 0


@dataclass
class ModelSizeRequest:
    model_id: str = ""


@dataclass
class ModelSizeResponse:
    size_in_bytes: int = 0


@dataclass
class RuntimeStatusRequest:
    pass


@dataclass
class RuntimeStatusResponse:
    status: RuntimeStatus = RuntimeStatus.STARTING
    capacity_in_bytes: int = 0
    max_loading_concurrency: int = 0
    model_loading_timeout_ms: int = 0
    default_model_size_in_bytes: int = 0
    runtime_version: str = ""
    limit_model_concurrency: bool = False