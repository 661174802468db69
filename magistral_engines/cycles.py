"""
Module: magistral_engines.cycles
Responsibility:
    Cycle Estimator.  Computes how many compounding cycles a chronic
    prescription may legally undergo within its document validity window,
    decides whether a re-preparation is currently permitted, and classifies
    the urgency of a new cycle request.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The caller supplies
    ``today``; no clock access here.

Invariants enforced:
    - 1 <= total cycles <= max_repreparations + 1.
    - Re-preparation is never allowed when dispensed_count >= total cycles
      or when today is past the due date.

Usage:
    from datetime import date
    from magistral_kernel.domain.values import Measure

    estimate_total_cycles(
        created_on=date(2024, 1, 1),
        due_date=date(2024, 7, 1),
        duration=Measure("30", "days"),
        policy=CyclePolicy(),
    )  # Returns 5 (6 estimated, capped at 4 + 1)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from magistral_kernel.domain.values import Measure
from magistral_engines.tracer import traced_engine

# Operator-entered unit spellings accepted for treatment duration
UNIT_ALIASES: Mapping[str, str] = MappingProxyType({
    "day": "days", "days": "days", "d": "days",
    "dia": "days", "dias": "days", "día": "days", "días": "days",
    "week": "weeks", "weeks": "weeks",
    "semana": "weeks", "semanas": "weeks",
    "month": "months", "months": "months",
    "mes": "months", "meses": "months",
})


class Urgency(str, Enum):
    EARLY = "early"
    NORMAL = "normal"
    URGENT = "urgent"


class RefusalReason(str, Enum):
    NOT_DISPENSED = "not_dispensed"
    DOCUMENT_EXPIRED = "document_expired"
    CYCLE_LIMIT_REACHED = "cycle_limit_reached"


def _default_multipliers() -> Mapping[str, int]:
    return MappingProxyType({"days": 1, "weeks": 7, "months": 30})


@dataclass(frozen=True)
class CyclePolicy:
    """
    Constants the estimator runs under.

    Guarantees:
        - max_repreparations >= 0.
        - early_before_days <= urgent_after_days.
    """

    max_repreparations: int = 4
    early_before_days: int = 23
    urgent_after_days: int = 26
    unit_multipliers: Mapping[str, int] = field(default_factory=_default_multipliers)

    def __post_init__(self) -> None:
        if self.max_repreparations < 0:
            raise ValueError("max_repreparations cannot be negative")
        if self.early_before_days > self.urgent_after_days:
            raise ValueError("early_before_days must not exceed urgent_after_days")

    @property
    def max_total_cycles(self) -> int:
        return self.max_repreparations + 1


@dataclass(frozen=True)
class RepreparationDecision:
    """Outcome of evaluating a re-preparation request."""

    allowed: bool
    reason: RefusalReason | None
    total_cycles: int
    dispensed_count: int
    expired: bool
    urgency: Urgency
    days_since_last_dispense: int | None

    @property
    def remaining_cycles(self) -> int:
        return max(0, self.total_cycles - self.dispensed_count)

    @property
    def next_cycle_number(self) -> int:
        return self.dispensed_count + 1


def cycle_length_days(duration: Measure | None, policy: CyclePolicy) -> Decimal | None:
    """Treatment duration in days, or None when unusable (non-numeric, <= 0, unknown unit)."""
    if duration is None:
        return None
    value = duration.numeric
    if value is None or value <= 0:
        return None
    unit = UNIT_ALIASES.get(duration.unit.strip().lower(), duration.unit.strip().lower())
    multiplier = policy.unit_multipliers.get(unit)
    if multiplier is None:
        return None
    return value * multiplier


@traced_engine("cycles", "1.0", fingerprint_fields=("created_on", "due_date", "duration"))
def estimate_total_cycles(
    *,
    created_on: date,
    due_date: date,
    duration: Measure | None,
    policy: CyclePolicy,
) -> int:
    """
    Total compounding cycles (first preparation included) the document allows.

    lifespan <= 0 gives 1; an unusable duration gives the ceiling; otherwise
    floor(lifespan / cycle length), at least 1, at most the ceiling.
    """
    lifespan_days = (due_date - created_on).days
    if lifespan_days <= 0:
        return 1

    cycle_days = cycle_length_days(duration, policy)
    if cycle_days is None:
        return policy.max_total_cycles

    estimated = math.floor(Decimal(lifespan_days) / cycle_days)
    return min(max(1, estimated), policy.max_total_cycles)


def is_document_expired(due_date: date, today: date) -> bool:
    """Expired once the calendar day after the due date begins."""
    return today > due_date


def classify_urgency(days_since_last_dispense: int | None, policy: CyclePolicy) -> Urgency:
    if days_since_last_dispense is None:
        return Urgency.NORMAL
    if days_since_last_dispense < policy.early_before_days:
        return Urgency.EARLY
    if days_since_last_dispense > policy.urgent_after_days:
        return Urgency.URGENT
    return Urgency.NORMAL


def evaluate_repreparation(
    *,
    is_dispensed: bool,
    created_on: date,
    due_date: date,
    duration: Measure | None,
    dispensed_count: int,
    last_dispensed_on: date | None,
    today: date,
    policy: CyclePolicy,
) -> RepreparationDecision:
    """
    Decide whether a new cycle may start.

    Refusal reasons are checked in order: not dispensed, document expired,
    cycle limit reached.  Urgency never affects ``allowed``.
    """
    total = estimate_total_cycles(
        created_on=created_on,
        due_date=due_date,
        duration=duration,
        policy=policy,
    )
    expired = is_document_expired(due_date, today)
    days_since = (today - last_dispensed_on).days if last_dispensed_on is not None else None
    urgency = classify_urgency(days_since, policy)

    reason: RefusalReason | None = None
    if not is_dispensed:
        reason = RefusalReason.NOT_DISPENSED
    elif expired:
        reason = RefusalReason.DOCUMENT_EXPIRED
    elif dispensed_count >= total:
        reason = RefusalReason.CYCLE_LIMIT_REACHED

    return RepreparationDecision(
        allowed=reason is None,
        reason=reason,
        total_cycles=total,
        dispensed_count=dispensed_count,
        expired=expired,
        urgency=urgency,
        days_since_last_dispense=days_since,
    )
