"""
magistral_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration.  Core
    logic never reads files or environment variables; services receive the
    returned ``MagistralConfig`` through their constructor.

Architecture position:
    Configuration -- sits above ``magistral_kernel`` and below
    ``magistral_services`` / ``magistral_modules``.  The kernel MUST NEVER
    import from ``magistral_config``.

Failure modes:
    - ``FileNotFoundError`` -- configuration file missing.
    - ``ValueError`` -- inconsistent values.

Audit relevance:
    Every successful load emits a ``magistral_config_loaded`` log entry
    with the file path and SHA-256 checksum.
"""

from __future__ import annotations

import os
from pathlib import Path

from magistral_config.loader import load_config_file
from magistral_config.schema import (
    CycleSettings,
    DatabaseSettings,
    FolioSettings,
    MagistralConfig,
    UrgencySettings,
)
from magistral_kernel.logging_config import get_logger

_logger = get_logger("config")

CONFIG_ENV_VAR = "MAGISTRAL_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> MagistralConfig:
    """
    Load the active configuration.

    Resolution order: explicit ``path``, then ``$MAGISTRAL_CONFIG``, then
    the bundled ``sets/default.yaml``.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
    path = Path(path)

    config = load_config_file(path)

    _logger.info(
        "magistral_config_loaded",
        extra={
            "config_path": str(path),
            "config_name": config.name,
            "config_version": config.version,
            "checksum": config.checksum,
            "max_repreparations": config.cycles.max_repreparations,
        },
    )
    return config


__all__ = [
    "get_active_config",
    "MagistralConfig",
    "CycleSettings",
    "UrgencySettings",
    "FolioSettings",
    "DatabaseSettings",
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_PATH",
]
