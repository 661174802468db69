"""
MagistralConfig schema.

Frozen dataclasses the YAML configuration is parsed into.  Defaults
mirror ``sets/default.yaml`` so that tests can build a config in code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping


def _default_multipliers() -> Mapping[str, int]:
    return MappingProxyType({"days": 1, "weeks": 7, "months": 30})


@dataclass(frozen=True)
class CycleSettings:
    """Re-preparation cycle limits."""

    max_repreparations: int = 4
    unit_multipliers: Mapping[str, int] = field(default_factory=_default_multipliers)

    @property
    def max_total_cycles(self) -> int:
        return self.max_repreparations + 1


@dataclass(frozen=True)
class UrgencySettings:
    """Days since last dispensation: < early_before_days is early,
    > urgent_after_days is urgent, in between is normal."""

    early_before_days: int = 23
    urgent_after_days: int = 26
    urgent_message_prefix: str = "[URGENT]"
    urgent_priority_hours: int = 48


@dataclass(frozen=True)
class FolioSettings:
    dispatch_note_prefix: str = "DN"
    controlled_ledger_prefix: str = "CSL-MG"


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///magistral.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 5


@dataclass(frozen=True)
class MagistralConfig:
    """Root configuration object handed to services via their constructor."""

    name: str = "default"
    version: int = 1
    cycles: CycleSettings = field(default_factory=CycleSettings)
    urgency: UrgencySettings = field(default_factory=UrgencySettings)
    folios: FolioSettings = field(default_factory=FolioSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    checksum: str = ""
