"""
Configuration Loader (``magistral_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen
``magistral_config.schema`` dataclasses.  The runtime entrypoint is
``magistral_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Inconsistent values raise ``ValueError`` at load time; nothing is
  silently clamped.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from magistral_config.schema import (
    CycleSettings,
    DatabaseSettings,
    FolioSettings,
    MagistralConfig,
    UrgencySettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _non_negative_int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{section}.{key} must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"{section}.{key} must be >= 0, got {value}")
    return value


def parse_cycles(data: dict[str, Any]) -> CycleSettings:
    defaults = CycleSettings()
    max_rep = _non_negative_int(
        "cycles", "max_repreparations",
        data.get("max_repreparations", defaults.max_repreparations),
    )
    raw_multipliers = data.get("unit_multipliers", dict(defaults.unit_multipliers))
    if not isinstance(raw_multipliers, dict) or not raw_multipliers:
        raise ValueError("cycles.unit_multipliers must be a non-empty mapping")
    multipliers: dict[str, int] = {}
    for unit, factor in raw_multipliers.items():
        factor = _non_negative_int("cycles.unit_multipliers", str(unit), factor)
        if factor == 0:
            raise ValueError(f"cycles.unit_multipliers.{unit} must be > 0")
        multipliers[str(unit).strip().lower()] = factor
    return CycleSettings(
        max_repreparations=max_rep,
        unit_multipliers=MappingProxyType(multipliers),
    )


def parse_urgency(data: dict[str, Any]) -> UrgencySettings:
    defaults = UrgencySettings()
    early = _non_negative_int(
        "urgency", "early_before_days",
        data.get("early_before_days", defaults.early_before_days),
    )
    urgent = _non_negative_int(
        "urgency", "urgent_after_days",
        data.get("urgent_after_days", defaults.urgent_after_days),
    )
    if early > urgent:
        raise ValueError(
            f"urgency.early_before_days ({early}) must not exceed "
            f"urgency.urgent_after_days ({urgent})"
        )
    return UrgencySettings(
        early_before_days=early,
        urgent_after_days=urgent,
        urgent_message_prefix=str(
            data.get("urgent_message_prefix", defaults.urgent_message_prefix)
        ),
        urgent_priority_hours=_non_negative_int(
            "urgency", "urgent_priority_hours",
            data.get("urgent_priority_hours", defaults.urgent_priority_hours),
        ),
    )


def parse_folios(data: dict[str, Any]) -> FolioSettings:
    defaults = FolioSettings()
    dn = str(data.get("dispatch_note_prefix", defaults.dispatch_note_prefix)).strip()
    csl = str(data.get("controlled_ledger_prefix", defaults.controlled_ledger_prefix)).strip()
    if not dn or not csl:
        raise ValueError("folio prefixes must be non-empty")
    return FolioSettings(dispatch_note_prefix=dn, controlled_ledger_prefix=csl)


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    defaults = DatabaseSettings()
    url = str(data.get("url", defaults.url)).strip()
    if not url:
        raise ValueError("database.url must be non-empty")
    return DatabaseSettings(
        url=url,
        echo=bool(data.get("echo", defaults.echo)),
        pool_size=_non_negative_int("database", "pool_size", data.get("pool_size", defaults.pool_size)),
        max_overflow=_non_negative_int(
            "database", "max_overflow", data.get("max_overflow", defaults.max_overflow),
        ),
    )


def parse_config(data: dict[str, Any]) -> MagistralConfig:
    """
    Parse a raw YAML dict into a MagistralConfig.

    Missing sections fall back to their defaults; present sections are
    validated field by field.
    """
    if not isinstance(data, dict):
        raise ValueError("configuration root must be a mapping")
    return MagistralConfig(
        name=str(data.get("name", "default")),
        version=_non_negative_int("", "version", data.get("version", 1)),
        cycles=parse_cycles(data.get("cycles") or {}),
        urgency=parse_urgency(data.get("urgency") or {}),
        folios=parse_folios(data.get("folios") or {}),
        database=parse_database(data.get("database") or {}),
        checksum=compute_checksum(data),
    )


def load_config_file(path: Path) -> MagistralConfig:
    return parse_config(load_yaml_file(path))
