"""
core/config.py
--------------
Loads, validates, and exposes the supervisor config from a YAML file.

Usage:
    from cvline.core.config import load_config, AppConfig
    cfg = load_config()            # loads config/default.yaml
    cfg = load_config("my.yaml")   # loads a custom file
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from cvline.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_CONFIG = _PROJECT_ROOT / "config" / "default.yaml"


# ---------------------------------------------------------------------------
# Pydantic sub-models
# ---------------------------------------------------------------------------

class DetectorConfig(BaseModel):
    binary: str = "/home/root/trik/rover-cv/rover-cv"
    args: str = ""
    """Space-separated argument string passed to the binary."""

    inbound_fifo: str = "/tmp/dsp-detector.out.fifo"
    """Detector -> supervisor (events and readings)."""

    outbound_fifo: str = "/tmp/dsp-detector.in.fifo"
    """Supervisor -> detector (commands)."""

    tolerance_factor: float = Field(1.0, gt=0)

    @field_validator("binary", "inbound_fifo", "outbound_fifo")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("path must not be empty")
        return v

    def argument_list(self) -> list[str]:
        return self.args.split()

    def binary_path(self) -> Path:
        return Path(self.binary)

    def inbound_path(self) -> Path:
        return Path(self.inbound_fifo)

    def outbound_path(self) -> Path:
        return Path(self.outbound_fifo)


class SupervisorConfig(BaseModel):
    read_buffer_size: int = Field(4000, gt=0)
    open_retry_interval_s: float = Field(0.1, gt=0)
    open_retry_limit: int = Field(50, ge=0)
    startup_probe_delay_s: float = Field(1.0, ge=0)
    """0 disables the probe; pipes then open only on the serving sentinel."""

    max_io_errors: int = Field(3, ge=1)
    terminate_timeout_s: float = Field(2.0, gt=0)
    exit_poll_interval_s: float = Field(0.1, gt=0)
    serving_sentinel: str = "Entering video thread loop"
    terminating_sentinel: str = "Terminating"

    @field_validator("serving_sentinel", "terminating_sentinel")
    @classmethod
    def sentinel_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("sentinel must not be empty")
        return v.strip()


class LoggingConfig(BaseModel):
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Root config model
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    detector: DetectorConfig = DetectorConfig()
    supervisor: SupervisorConfig = SupervisorConfig()
    logging: LoggingConfig = LoggingConfig()


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(path: str | Path | None = None) -> AppConfig:
    """Load and validate AppConfig from a YAML file.

    Args:
        path: Explicit path to a YAML file. Defaults to ``config/default.yaml``.

    Returns:
        Validated :class:`AppConfig` instance.

    Raises:
        ConfigError: If the file is missing or contains invalid values.
    """
    config_path = Path(path) if path else _DEFAULT_CONFIG

    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        raw: dict[str, Any] = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML parse error in {config_path}: {exc}") from exc

    try:
        cfg = AppConfig.model_validate(raw)
    except Exception as exc:
        raise ConfigError(f"Invalid configuration values: {exc}") from exc

    logger.info("Configuration loaded from %s", config_path)
    return cfg
