"""
Module: magistral_engines.fractionation
Responsibility:
    Converts "total active ingredient needed for the compounded batch" into
    "number of source packs to withdraw", assesses a dispatch line against
    the available purchase-unit stock, and orders candidate lots
    First-Expired-First-Out.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Works on the frozen
    ``SourceStock`` / ``LotView`` snapshots built by the dispatch module.

Invariants enforced:
    - required packs = ceil((concentration x total quantity) /
      (dose value x items per base unit)), Decimal arithmetic only.
    - Resource problems never raise out of ``assess_line``; they are
      returned as a ``LineIssue`` annotation so other lines keep going.
    - FEFO ordering is deterministic: expiry ascending, lots without an
      expiry last, lot number as tie-breaker.  Re-running it on the same
      lots yields the same order.

Failure modes:
    - ``compute_required_packs`` raises InvalidFractionationValuesError
      for non-numeric or non-positive inputs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from magistral_kernel.domain.values import Measure, parse_decimal
from magistral_kernel.exceptions import (
    InsufficientStockError,
    InvalidFractionationValuesError,
    ResourceError,
    SourceNotFoundError,
)
from magistral_engines.tracer import traced_engine


@dataclass(frozen=True)
class LotView:
    """Snapshot of one inventory lot."""

    lot_number: str
    quantity: int
    expiry_date: date | None = None


@dataclass(frozen=True)
class SourceStock:
    """Snapshot of the source inventory item a fractionation line draws from."""

    inventory_item_id: UUID
    name: str
    quantity: int
    dose_value: Decimal | str | None
    items_per_base_unit: int | str | None
    barcode: str | None = None
    lots: tuple[LotView, ...] = ()


@dataclass(frozen=True)
class PackRequirement:
    required_content: Decimal
    content_per_pack: Decimal
    required_packs: int


@dataclass(frozen=True)
class LineIssue:
    """Blocking annotation attached to a dispatch line."""

    code: str
    message: str

    @classmethod
    def from_error(cls, error: ResourceError) -> LineIssue:
        return cls(code=error.code, message=str(error))


@dataclass(frozen=True)
class LineAssessment:
    required_packs: int | None
    available_packs: int
    candidate_lots: tuple[LotView, ...]
    issue: LineIssue | None = None

    @property
    def is_eligible(self) -> bool:
        return self.issue is None


@traced_engine(
    "fractionation", "1.0",
    fingerprint_fields=("concentration", "total_quantity", "dose_value", "items_per_base_unit"),
)
def compute_required_packs(
    *,
    concentration: Measure,
    total_quantity: Measure,
    dose_value: Decimal | str | None,
    items_per_base_unit: int | str | None,
    inventory_item_id: str = "",
) -> PackRequirement:
    """
    Packs of the source product needed to compound the batch.

    Example: 50 mg/unit x 100 units over 500 mg x 20 tablets per box
    gives ceil(5000 / 10000) = 1 box.
    """
    conc = concentration.numeric
    qty = total_quantity.numeric
    dose = parse_decimal(dose_value)
    per_pack = parse_decimal(items_per_base_unit)

    problems: list[str] = []
    if conc is None or conc <= 0:
        problems.append(f"concentration={concentration.value!r}")
    if qty is None or qty <= 0:
        problems.append(f"total quantity={total_quantity.value!r}")
    if dose is None or dose <= 0:
        problems.append(f"dose value={dose_value!r}")
    if per_pack is None or per_pack <= 0:
        problems.append(f"items per base unit={items_per_base_unit!r}")
    if problems:
        raise InvalidFractionationValuesError(inventory_item_id, ", ".join(problems))

    required_content = conc * qty
    content_per_pack = dose * per_pack
    return PackRequirement(
        required_content=required_content,
        content_per_pack=content_per_pack,
        required_packs=math.ceil(required_content / content_per_pack),
    )


def order_lots_fefo(lots: Iterable[LotView]) -> list[LotView]:
    """Lots with stock, earliest expiry first (no expiry last)."""
    available = [lot for lot in lots if lot.quantity > 0]
    return sorted(
        available,
        key=lambda lot: (
            lot.expiry_date is None,
            lot.expiry_date or date.max,
            lot.lot_number,
        ),
    )


def assess_line(
    *,
    source_item_id: UUID,
    source: SourceStock | None,
    concentration: Measure,
    total_quantity: Measure,
) -> LineAssessment:
    """
    Classify one fractionation line: eligible, or blocked with an issue.

    Checks run in order: source exists, stock > 0, values usable,
    required packs <= stock.
    """
    try:
        if source is None:
            raise SourceNotFoundError(str(source_item_id))

        if source.quantity <= 0:
            raise InsufficientStockError(str(source_item_id), 0, source.quantity)

        requirement = compute_required_packs(
            concentration=concentration,
            total_quantity=total_quantity,
            dose_value=source.dose_value,
            items_per_base_unit=source.items_per_base_unit,
            inventory_item_id=str(source_item_id),
        )
        if requirement.required_packs > source.quantity:
            raise InsufficientStockError(
                str(source_item_id), requirement.required_packs, source.quantity,
            )
    except ResourceError as exc:
        return LineAssessment(
            required_packs=None,
            available_packs=source.quantity if source is not None else 0,
            candidate_lots=(),
            issue=LineIssue.from_error(exc),
        )

    return LineAssessment(
        required_packs=requirement.required_packs,
        available_packs=source.quantity,
        candidate_lots=tuple(order_lots_fefo(source.lots)),
    )


def lot_can_cover(lots: Sequence[LotView], lot_number: str, quantity: int) -> bool:
    for lot in lots:
        if lot.lot_number == lot_number:
            return lot.quantity >= quantity
    return False
