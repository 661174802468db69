"""
Dispatch Module Models (``magistral_modules.dispatch.models``).

Read-side value objects the DispatchService hands to the operator screen:
candidate lines grouped by receiving pharmacy, each either eligible (with
FEFO-ordered candidate lots) or blocked by a resource issue.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from uuid import UUID

from magistral_engines.fractionation import LineIssue, LotView
from magistral_engines.staging import LineKey, ValidationState


@dataclass(frozen=True)
class DispatchLine:
    """One fractionation item of a Validated, Skol-supplied prescription."""

    prescription_id: UUID
    inventory_item_id: UUID
    prescription_item_id: UUID
    recipe_item_name: str
    pharmacy_id: str
    required_packs: int | None
    available_packs: int
    candidate_lots: tuple[LotView, ...] = ()
    issue: LineIssue | None = None
    state: ValidationState | None = None

    @property
    def key(self) -> LineKey:
        return LineKey(self.prescription_id, self.inventory_item_id, self.prescription_item_id)

    @property
    def is_eligible(self) -> bool:
        return self.issue is None

    @property
    def suggested_lot(self) -> LotView | None:
        """Earliest-expiring candidate; presented first, never auto-selected."""
        return self.candidate_lots[0] if self.candidate_lots else None


@dataclass(frozen=True)
class PharmacyGroup:
    """Candidate lines destined for one external compounding pharmacy."""

    pharmacy_id: str
    lines: tuple[DispatchLine, ...]

    @property
    def eligible_lines(self) -> list[DispatchLine]:
        return [line for line in self.lines if line.is_eligible]

    @property
    def blocked_lines(self) -> list[DispatchLine]:
        return [line for line in self.lines if not line.is_eligible]


@dataclass(frozen=True)
class LotInput:
    """A new lot received into inventory."""

    lot_number: str
    quantity: int
    expiry_date: date | None = None
