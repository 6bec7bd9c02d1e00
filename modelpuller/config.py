"""Configuration for the puller and the puller server, read from the environment."""

from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_MAX_SYMLINKS = 255


class ConfigError(Exception):
    """Raised when configuration cannot be read or is invalid."""


def get_env_string(name: str, default: str) -> str:
    """Return the environment variable ``name``, or ``default`` when it is unset."""
    return os.environ.get(name, default)


def get_env_int(name: str, default: int) -> int:
    """Return the environment variable ``name`` as an integer, or ``default`` when unset."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigError(
            f"Environment variable {name} must be an integer, got {raw!r}"
        ) from exc


def secure_join(root: str, unsafe_path: str) -> str:
    """Join ``unsafe_path`` onto ``root`` so that the result never leaves ``root``.

    ``..`` components and symlinks are resolved as though ``root`` were the
    filesystem root, so absolute symlink targets land inside ``root`` too.
    """
    root = os.path.normpath(root)
    resolved = ""
    remaining = unsafe_path
    links = 0

    while remaining:
        if links > _MAX_SYMLINKS:
            raise ConfigError(
                f"secure join {root!r} and {unsafe_path!r}: too many symlinks"
            )
        part, _, remaining = remaining.partition(os.sep)
        if part in ("", "."):
            continue
        if part == "..":
            resolved = os.path.dirname(resolved)
            continue

        candidate = os.path.join(resolved, part) if resolved else part
        full = os.path.join(root, candidate)
        try:
            info = os.lstat(full)
        except (FileNotFoundError, NotADirectoryError):
            resolved = candidate
            continue

        if not stat.S_ISLNK(info.st_mode):
            resolved = candidate
            continue

        links += 1
        target = os.readlink(full)
        if os.path.isabs(target):
            resolved = ""
        remaining = f"{target}{os.sep}{remaining}" if remaining else target

    if not resolved:
        return root
    return os.path.normpath(os.path.join(root, resolved))


@dataclass
class PullerConfiguration:
    """Where models are stored locally and where storage secrets are mounted."""

    root_model_dir: str = "/models"
    storage_configuration_dir: str = "/storage-config"

    @classmethod
    def from_env(cls) -> PullerConfiguration:
        """Build a configuration from ROOT_MODEL_DIR and STORAGE_CONFIG_DIR."""
        return cls(
            root_model_dir=get_env_string("ROOT_MODEL_DIR", "/models"),
            storage_configuration_dir=get_env_string(
                "STORAGE_CONFIG_DIR", "/storage-config"
            ),
        )

    def get_storage_configuration(self, storage_key: str) -> dict[str, Any]:
        """Read the JSON storage configuration stored under ``storage_key``."""
        config_path = secure_join(self.storage_configuration_dir, storage_key)

        logger.debug("Reading storage credentials")

        if not os.path.exists(config_path):
            raise ConfigError(f"Storage secretKey not found: {storage_key}")

        try:
            with open(config_path, "rb") as handle:
                raw = handle.read()
        except OSError as exc:
            raise ConfigError(
                f"Could not read storage configuration from {config_path}: {exc}"
            ) from exc

        try:
            storage_config = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ConfigError(
                f"Could not parse storage configuration json from {config_path}: {exc}"
            ) from exc
        if not isinstance(storage_config, dict):
            raise ConfigError(
                f"Could not parse storage configuration json from {config_path}: "
                "expected a JSON object"
            )

        if storage_config.get("type") == "s3" and "default_bucket" in storage_config:
            if "bucket" in storage_config:
                logger.info(
                    "Both bucket and default_bucket params were provided in S3 "
                    "storage config, ignoring default_bucket (bucket=%r, default_bucket=%r)",
                    storage_config["bucket"],
                    storage_config["default_bucket"],
                )
            else:
                storage_config["bucket"] = storage_config["default_bucket"]

        return storage_config


@dataclass
class PullerServerConfiguration:
    """Port of the puller server and the endpoint of the model server behind it."""

    port: int = 8084
    model_server_endpoint: str = "port:8085"

    @classmethod
    def from_env(cls) -> PullerServerConfiguration:
        """Build a configuration from PORT and MODEL_SERVER_ENDPOINT."""
        return cls(
            port=get_env_int("PORT", 8084),
            model_server_endpoint=get_env_string("MODEL_SERVER_ENDPOINT", "port:8085"),
        )