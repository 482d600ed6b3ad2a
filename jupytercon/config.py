from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from jupytercon.constants import DEFAULT_CACHE_PATH


class JupyterConSettings(BaseSettings):
    """Ambient defaults (timeouts, intervals, cache location) read from the environment."""

    # Heartbeat
    HEARTBEAT_INTERVAL: float = Field(default=5.0, gt=0)
    HEARTBEAT_ON_RUN: bool = True

    # Network timeouts (seconds)
    PROVISION_TIMEOUT: float = Field(default=600.0, gt=0)
    REQUEST_TIMEOUT: float = Field(default=30.0, gt=0)
    EXECUTE_TIMEOUT: float = Field(default=60.0, gt=0)

    # Durable session cache
    CACHE_PATH: Path = DEFAULT_CACHE_PATH

    LOG_LEVEL: Literal["debug", "info", "warning", "error", "critical"] = Field(
        default="info"
    )

    model_config = SettingsConfigDict(
        env_prefix="JUPYTERCON_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Instantiate a single settings object to be used across the package
settings = JupyterConSettings()
