"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag, or SEGMENTS_CONFIG_PATH
2. ./segments.yaml (working directory)
3. ~/.segments/config.yaml (user home)
4. <platform config dir>/config.yaml

Environment variables override YAML: SEGMENTS_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from src.services.batch_engine import EngineSettings
from src.services.platform_client import DEFAULT_BASE_URL, DEFAULT_REVISION
from src.utils.paths import get_config_dir

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

ENV_PREFIX = "SEGMENTS_"
CONFIG_PATH_ENV = "SEGMENTS_CONFIG_PATH"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class EngineConfig(BaseModel):
    """Pacing, retry and sweep settings for execution passes."""

    batch_size: int = Field(4, ge=1)
    intra_batch_delay_seconds: float = Field(0.5, ge=0)
    inter_batch_delay_seconds: float = Field(3.0, ge=0)
    steady_retry_seconds: int = Field(120, ge=1)
    max_call_attempts: int = Field(3, ge=1)
    backoff_base_seconds: float = Field(2.0, ge=0)
    max_wait_hint_seconds: float = Field(60.0, ge=0)
    sweep_interval_seconds: int = Field(60, ge=0)
    sweep_max_jobs: int = Field(5, ge=1)


class PlatformConfig(BaseModel):
    """Marketing platform API settings."""

    base_url: str = DEFAULT_BASE_URL
    revision: str = DEFAULT_REVISION
    timeout_seconds: float = 30.0
    name_suffix: str = ""


class NotificationsConfig(BaseModel):
    """Where job notifications are delivered besides the log."""

    webhook_url: str | None = None
    milestone_every: int = Field(10, ge=1)


class DaemonConfig(BaseModel):
    """Configuration for the API server process."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"


class SegmentsConfig(BaseModel):
    """Top-level configuration for the segment engine."""

    engine: EngineConfig = EngineConfig()
    platform: PlatformConfig = PlatformConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    daemon: DaemonConfig = DaemonConfig()

    def engine_settings(self) -> EngineSettings:
        """Build the batch engine settings from this config."""
        return EngineSettings(
            batch_size=self.engine.batch_size,
            intra_batch_delay=self.engine.intra_batch_delay_seconds,
            inter_batch_delay=self.engine.inter_batch_delay_seconds,
            steady_retry_delay=timedelta(seconds=self.engine.steady_retry_seconds),
            max_call_attempts=self.engine.max_call_attempts,
            backoff_base=self.engine.backoff_base_seconds,
            max_wait_hint=self.engine.max_wait_hint_seconds,
            name_suffix=self.platform.name_suffix,
        )


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "segments.yaml",
        Path.cwd() / "segments.yml",
        Path.home() / ".segments" / "config.yaml",
        Path.home() / ".segments" / "config.yml",
        get_config_dir() / "config.yaml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply SEGMENTS_<SECTION>_<KEY> env var overrides to config data.

    For example, ``SEGMENTS_ENGINE_BATCH_SIZE`` maps to section
    ``engine``, field ``batch_size``. Variables matching no section
    (``SEGMENTS_DB_PATH``, ``SEGMENTS_CONFIG_PATH``) are ignored.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    known_sections = sorted(SegmentsConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            # Coerce to int or bool, else leave the string for pydantic
            try:
                data[matched_section][matched_field] = int(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    data[matched_section][matched_field] = value.lower() == "true"
                else:
                    data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> SegmentsConfig:
    """Load configuration from YAML file with env var resolution.

    Without a config file, defaults plus env overrides are returned.

    Args:
        config_path: Explicit path to config file. If None, uses
            SEGMENTS_CONFIG_PATH or searches standard locations.

    Returns:
        Parsed and validated SegmentsConfig.

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
    """
    config_path = config_path or os.environ.get(CONFIG_PATH_ENV) or None
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return SegmentsConfig(**data)
