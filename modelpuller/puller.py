"""Pull model files from storage into the local model directory."""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from modelpuller.config import ConfigError, PullerConfiguration, secure_join
from modelpuller.dotpath import DotpathError, apply_parameter_overrides
from modelpuller.messages import LoadModelRequest, RpcError, status_code_of

logger = logging.getLogger(__name__)

PARAMETER_KEY_TYPE = "type"
DEFAULT_STORAGE_KEY = "default"

_DEFAULT_MODEL_FILENAME = "_model"
_DEFAULT_SCHEMA_FILENAME = "_schema.json"


class PullerError(Exception):
    """Raised when a model cannot be pulled or its local files managed."""


def _sorted_keys(value: Any) -> Any:
    """Return ``value`` with the keys of every nested dict in sorted order."""
    if isinstance(value, dict):
        return {key: _sorted_keys(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [_sorted_keys(item) for item in value]
    return value


def _optional_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string, got {value!r}")
    return value


@dataclass
class ModelKeyInfo:
    """The JSON document carried in the model key of a load request."""

    model_type: Any = None
    bucket: str = ""
    disk_size_bytes: int = 0
    schema_path: str | None = None
    storage_key: str | None = None
    storage_params: dict[str, str] | None = None

    @classmethod
    def from_json(cls, text: str) -> ModelKeyInfo:
        """Parse a model key; raises ValueError on malformed JSON or field types."""
        data = json.loads(text)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("model key must be a JSON object")

        bucket = _optional_str(data, "bucket") or ""

        disk_size = data.get("disk_size_bytes")
        if disk_size is None:
            disk_size = 0
        elif isinstance(disk_size, bool) or not isinstance(disk_size, int):
            raise ValueError(
                f"field 'disk_size_bytes' must be an integer, got {disk_size!r}"
            )

        params = data.get("storage_params")
        if params is not None:
            if not isinstance(params, dict) or not all(
                isinstance(value, str) for value in params.values()
            ):
                raise ValueError(
                    "field 'storage_params' must be an object of string values"
                )
            params = dict(params)

        return cls(
            model_type=data.get("model_type"),
            bucket=bucket,
            disk_size_bytes=disk_size,
            schema_path=_optional_str(data, "schema_path"),
            storage_key=_optional_str(data, "storage_key"),
            storage_params=params,
        )

    def to_json(self) -> str:
        """Serialise compactly, leaving out empty optional fields."""
        document: dict[str, Any] = {}
        if self.model_type is not None:
            document["model_type"] = _sorted_keys(self.model_type)
        if self.bucket:
            document["bucket"] = self.bucket
        document["disk_size_bytes"] = self.disk_size_bytes
        if self.schema_path is not None:
            document["schema_path"] = self.schema_path
        if self.storage_key is not None:
            document["storage_key"] = self.storage_key
        if self.storage_params:
            document["storage_params"] = _sorted_keys(self.storage_params)
        text = json.dumps(document, separators=(",", ":"), ensure_ascii=False)
        # HTML-sensitive characters only occur inside strings, so escape them there.
        for char, escaped in (
            ("&", "\\u0026"),
            ("<", "\\u003c"),
            (">", "\\u003e"),
            ("\u2028", "\\u2028"),
            ("\u2029", "\\u2029"),
        ):
            text = text.replace(char, escaped)
        return text


@dataclass
class Target:
    """One remote path to fetch and the local name to store it under."""

    remote_path: str
    local_path: str


@dataclass
class PullCommand:
    """Everything a pull manager needs to fetch a model."""

    storage_type: str
    storage_config: dict[str, Any]
    directory: str
    targets: list[Target] = field(default_factory=list)


@runtime_checkable
class PullManager(Protocol):
    """Something that fetches the targets of a pull command into its directory."""

    def pull(self, command: PullCommand) -> None:
        """Fetch every target of ``command``; raise on failure."""


def _base(path: str) -> str:
    """Last element of ``path``; ``.`` for an empty path, the separator for only separators."""
    if not path:
        return "."
    stripped = path.rstrip(os.sep)
    if not stripped:
        return os.sep
    return stripped.rsplit(os.sep, 1)[-1]


class Puller:
    """Fetches models from storage and manages their local copies."""

    def __init__(self, config: PullerConfiguration, pull_manager: PullManager) -> None:
        self.config = config
        self.pull_manager = pull_manager
        logger.info("Initializing Puller (dir=%s)", config.root_model_dir)

    def _storage_config_for(self, model_key: ModelKeyInfo) -> dict[str, Any]:
        if model_key.storage_key is None:
            storage_type = (model_key.storage_params or {}).get(PARAMETER_KEY_TYPE, "")
            key = (
                f"{DEFAULT_STORAGE_KEY}_{storage_type}"
                if storage_type
                else DEFAULT_STORAGE_KEY
            )
            try:
                return self.config.get_storage_configuration(key)
            except (ConfigError, OSError):
                # fall back to the request parameters alone
                return {}
        try:
            return self.config.get_storage_configuration(model_key.storage_key)
        except (ConfigError, OSError) as exc:
            raise PullerError(
                f"Did not find storage config for key {model_key.storage_key}: {exc}"
            ) from exc

    def process_load_model_request(self, request: LoadModelRequest) -> LoadModelRequest:
        """Pull the model of ``request`` and rewrite the request to point at local files.

        The request is modified in place and returned: its model path becomes
        the local path, the schema path in its key becomes local, the model's
        disk size is added to the key, and storage parameters are removed.
        """
        try:
            model_key = ModelKeyInfo.from_json(request.model_key)
        except ValueError as exc:
            raise PullerError(
                "Invalid modelKey in LoadModelRequest. "
                f"Error processing JSON '{request.model_key}': {exc}"
            ) from exc

        storage_config = self._storage_config_for(model_key)

        if model_key.bucket and storage_config.get("bucket") is not None:
            logger.warning(
                'use of ModelKey["bucket"] is deprecated, '
                'use ModelKey["storage_params"]["bucket"] instead'
            )
            storage_config["bucket"] = model_key.bucket

        try:
            apply_parameter_overrides(storage_config, model_key.storage_params)
        except DotpathError as exc:
            raise PullerError(
                "Unable to merge storage parameters from the storage config and "
                f"the Predictor Storage field: {exc}"
            ) from exc

        storage_type = storage_config.get(PARAMETER_KEY_TYPE)
        if not isinstance(storage_type, str):
            raise PullerError("Predictor Storage field missing")

        model_filename = _base(request.model_path)
        if model_filename in (".", os.sep):
            model_filename = _DEFAULT_MODEL_FILENAME

        targets = [Target(remote_path=request.model_path, local_path=model_filename)]

        schema_filename = ""
        if model_key.schema_path is not None:
            schema_filename = _base(model_key.schema_path)
            if schema_filename == model_filename:
                schema_filename = _DEFAULT_SCHEMA_FILENAME
            targets.append(
                Target(remote_path=model_key.schema_path, local_path=schema_filename)
            )

        try:
            model_dir = secure_join(self.config.root_model_dir, request.model_id)
        except ConfigError as exc:
            raise PullerError(
                f"Error joining paths '{self.config.root_model_dir}' and "
                f"'{request.model_id}': {exc}"
            ) from exc

        command = PullCommand(
            storage_type=storage_type,
            storage_config=storage_config,
            directory=model_dir,
            targets=targets,
        )
        try:
            self.pull_manager.pull(command)
        except Exception as exc:
            raise RpcError(
                status_code_of(exc),
                f"Failed to pull model from storage due to error: {exc}",
            ) from exc

        # A plain join: pulled storage may be a symlink pointing outside model_dir.
        model_full_path = os.path.normpath(os.path.join(model_dir, model_filename))
        request.model_path = model_full_path

        if model_key.schema_path is not None:
            try:
                model_key.schema_path = secure_join(model_dir, schema_filename)
            except ConfigError as exc:
                raise PullerError(
                    f"Error joining paths '{model_dir}' and '{schema_filename}': {exc}"
                ) from exc

        try:
            size = self.model_disk_size(model_full_path)
        except PullerError:
            logger.exception(
                "Model disk size will not be included in the LoadModelRequest "
                "(model_key=%r)",
                model_key,
            )
        else:
            logger.info(
                "Calculated disk size (modelFullPath=%s, disk_size=%d)",
                model_full_path,
                size,
            )
            model_key.disk_size_bytes = size

        model_key.storage_key = None
        model_key.storage_params = None
        model_key.bucket = ""

        request.model_key = model_key.to_json()
        return request

    def model_disk_size(self, model_path: str) -> int:
        """Total size of the files under ``model_path``, following symlinks."""
        try:
            return self._disk_size(model_path)
        except OSError as exc:
            raise PullerError(f"Error computing model's disk size: {exc}") from exc

    def _disk_size(self, path: str) -> int:
        info = os.lstat(path)
        if stat.S_ISLNK(info.st_mode):
            try:
                target = os.readlink(path)
            except OSError:
                logger.exception("Failed to resolve symlink path (path=%s)", path)
                return 0
            return self._disk_size(os.path.join(os.path.dirname(path), target))
        if stat.S_ISDIR(info.st_mode):
            return sum(
                self._disk_size(os.path.join(path, name))
                for name in sorted(os.listdir(path))
            )
        return info.st_size

    def cleanup_model(self, model_id: str) -> None:
        """Delete the local files of ``model_id``; a missing model is not an error."""
        path = secure_join(self.config.root_model_dir, model_id)
        try:
            if os.path.islink(path) or (
                os.path.lexists(path) and not os.path.isdir(path)
            ):
                os.remove(path)
            elif os.path.isdir(path):
                shutil.rmtree(path)
        except OSError as exc:
            logger.error(
                "Model unload failed to delete files from the local filesystem "
                "(local_dir=%s)",
                path,
            )
            raise PullerError(
                f"Failed to delete model from local filesystem: {exc}"
            ) from exc

    def clear_local_model_storage(self, exclude: str) -> None:
        """Delete every entry of the model directory except the one named ``exclude``."""
        root = self.config.root_model_dir
        for name in sorted(os.listdir(root)):
            if name == exclude:
                continue
            path = os.path.join(root, name)
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)

    def list_models(self) -> list[str]:
        """Names of the entries in the model directory, sorted."""
        return sorted(os.listdir(self.config.root_model_dir))