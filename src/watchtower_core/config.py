"""Environment-driven configuration for the watchtower CLI and API."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from watchtower_core.verify_evidence import (
    DEFAULT_MAX_ARTIFACT_BYTES,
    DEFAULT_MAX_MANIFEST_BYTES,
    VerifyOptions,
)

DEFAULT_DB_PATH = ".state/watchtower.duckdb"
DEFAULT_SNAPSHOT_LIMIT = 10
LOG_LEVELS = ("debug", "info", "warning", "error")


class ConfigError(ValueError):
    """Invalid configuration value."""


@dataclass(frozen=True, slots=True)
class WatchtowerConfig:
    db_path: Path = Path(DEFAULT_DB_PATH)
    api_key: str = ""
    max_manifest_bytes: int = DEFAULT_MAX_MANIFEST_BYTES
    max_artifact_bytes: int = DEFAULT_MAX_ARTIFACT_BYTES
    snapshot_limit: int = DEFAULT_SNAPSHOT_LIMIT
    log_level: str = "info"

    def verify_options(self) -> VerifyOptions:
        return VerifyOptions(
            max_manifest_bytes=self.max_manifest_bytes,
            max_artifact_bytes=self.max_artifact_bytes,
        )


def _positive_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = str(env.get(key, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be > 0, got {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> WatchtowerConfig:
    """Build configuration from *env* (defaults to ``os.environ``)."""
    env = os.environ if env is None else env

    log_level = str(env.get("LOG_LEVEL", "") or "info").strip().lower()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {list(LOG_LEVELS)}, got {log_level!r}")

    db_path = str(env.get("WATCHTOWER_DB_PATH", "") or DEFAULT_DB_PATH).strip()
    return WatchtowerConfig(
        db_path=Path(db_path),
        api_key=str(env.get("WATCHTOWER_API_KEY", "")).strip(),
        max_manifest_bytes=_positive_int(
            env, "WATCHTOWER_MAX_MANIFEST_BYTES", DEFAULT_MAX_MANIFEST_BYTES,
        ),
        max_artifact_bytes=_positive_int(
            env, "WATCHTOWER_MAX_ARTIFACT_BYTES", DEFAULT_MAX_ARTIFACT_BYTES,
        ),
        snapshot_limit=_positive_int(env, "WATCHTOWER_SNAPSHOT_LIMIT", DEFAULT_SNAPSHOT_LIMIT),
        log_level=log_level,
    )
