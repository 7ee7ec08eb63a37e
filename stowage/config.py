"""Runtime configuration — env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
STOWAGE_* environment variables. Library components take explicit
arguments; this object only supplies defaults to
:meth:`stowage.core.resolver.ArtifactResolver.from_config` and scripts.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class StowageConfig(BaseSettings):
    """Settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export STOWAGE_DEPOT_PATH=/var/cache/stowage/artifacts
        export STOWAGE_DOWNLOAD_TIMEOUT_SECONDS=300
        export STOWAGE_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="STOWAGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"

    # Content store
    depot_path: Path = Path(".stowage/artifacts")
    lock_timeout_seconds: float = 600.0  # -1 waits forever

    # Downloads
    download_timeout_seconds: float = 60.0
    user_agent: str = "stowage/0.1 (+artifact installer)"
    max_download_bytes: int = 0  # 0 = unlimited


def configure_logging(cfg: StowageConfig | None = None) -> logging.Logger:
    """Attach a stderr handler to the ``stowage`` logger at the configured level.

    Intended for scripts; the library never configures logging itself.
    """
    cfg = cfg or config
    package_logger = logging.getLogger("stowage")
    package_logger.setLevel(cfg.log_level.upper())
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        package_logger.addHandler(handler)
    return package_logger


# Module-level singleton — import as `from stowage.config import config`
config = StowageConfig()
