"""
Module: magistral_engines.staging
Responsibility:
    Short-lived dispatch staging owned by the allocation engine: per
    prescription item line, the operator's lot choice,
    the scanned barcode and the tri-state validation outcome.  Nothing here
    is persisted; a staging area lives for one operator working session.

Architecture position:
    Engines -- pure, in-memory state.  No I/O, no clock.

Invariants enforced:
    - Only lines in state ``valid`` are returned by ``valid_lines``.
    - Changing the selected lot resets the line to ``pending`` and drops
      the previous scan.
    - The scan is compared character for character with the inventory
      item's barcode; the lot number is never used for matching.
    - ``clear`` removes exactly the lines it is given.

Failure modes:
    - MissingValidationInputError when validating without a lot or a scan.
    - LotNotAvailableError when the chosen lot is not among the candidates
      or cannot cover the required packs.
    - KeyError for a line that was never staged.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Iterator, NamedTuple
from uuid import UUID

from magistral_kernel.exceptions import LotNotAvailableError, MissingValidationInputError
from magistral_engines.fractionation import LotView, lot_can_cover

class LineKey(NamedTuple):
    """Identifies one staged line; two items may share a source item."""

    prescription_id: UUID
    inventory_item_id: UUID
    prescription_item_id: UUID


class ValidationState(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


def line_key_label(key: LineKey) -> str:
    return f"{key.prescription_id}-{key.prescription_item_id}"


@dataclass(frozen=True)
class StagedLine:
    """One prescription item being prepared for a dispatch note."""

    prescription_id: UUID
    inventory_item_id: UUID
    prescription_item_id: UUID
    pharmacy_id: str
    recipe_item_name: str
    required_packs: int
    candidate_lots: tuple[LotView, ...] = ()
    selected_lot: str | None = None
    scanned_barcode: str | None = None
    state: ValidationState = ValidationState.PENDING

    @property
    def key(self) -> LineKey:
        return LineKey(self.prescription_id, self.inventory_item_id, self.prescription_item_id)


class DispatchStaging:
    """In-memory staging area for one operator session."""

    def __init__(self) -> None:
        self._lines: dict[LineKey, StagedLine] = {}

    def __contains__(self, key: LineKey) -> bool:
        return key in self._lines

    def __iter__(self) -> Iterator[StagedLine]:
        return iter(list(self._lines.values()))

    def __len__(self) -> int:
        return len(self._lines)

    def get(self, key: LineKey) -> StagedLine:
        return self._lines[key]

    def stage(
        self,
        *,
        prescription_id: UUID,
        inventory_item_id: UUID,
        prescription_item_id: UUID,
        pharmacy_id: str,
        recipe_item_name: str,
        required_packs: int,
        candidate_lots: Iterable[LotView] = (),
    ) -> StagedLine:
        """
        Add a line, or refresh its candidates if it is already staged.

        An existing lot choice survives a refresh only if that lot is still
        a candidate; otherwise the line goes back to ``pending``.
        """
        key = LineKey(prescription_id, inventory_item_id, prescription_item_id)
        lots = tuple(candidate_lots)
        current = self._lines.get(key)
        if current is None:
            line = StagedLine(
                prescription_id=prescription_id,
                inventory_item_id=inventory_item_id,
                prescription_item_id=prescription_item_id,
                pharmacy_id=pharmacy_id,
                recipe_item_name=recipe_item_name,
                required_packs=required_packs,
                candidate_lots=lots,
            )
        else:
            line = replace(
                current,
                pharmacy_id=pharmacy_id,
                recipe_item_name=recipe_item_name,
                required_packs=required_packs,
                candidate_lots=lots,
            )
            if (
                line.selected_lot is not None
                and not lot_can_cover(lots, line.selected_lot, required_packs)
            ):
                line = replace(
                    line,
                    selected_lot=None,
                    scanned_barcode=None,
                    state=ValidationState.PENDING,
                )
        self._lines[key] = line
        return line

    def select_lot(self, key: LineKey, lot_number: str) -> StagedLine:
        line = replace(
            self._lines[key],
            selected_lot=lot_number.strip() or None,
            scanned_barcode=None,
            state=ValidationState.PENDING,
        )
        self._lines[key] = line
        return line

    def scan(self, key: LineKey, barcode_input: str) -> StagedLine:
        """Record the scanned/typed barcode; the line stays pending until validated."""
        line = replace(
            self._lines[key],
            scanned_barcode=barcode_input,
            state=ValidationState.PENDING,
        )
        self._lines[key] = line
        return line

    def validate(self, key: LineKey, item_barcode: str | None) -> StagedLine:
        """
        Compare the scan against the inventory item's barcode.

        match -> valid, mismatch (or item without barcode) -> invalid.
        """
        line = self._lines[key]
        label = line_key_label(key)
        if not line.selected_lot:
            raise MissingValidationInputError(label, "lot")
        if not line.scanned_barcode:
            raise MissingValidationInputError(label, "barcode")
        if not lot_can_cover(line.candidate_lots, line.selected_lot, line.required_packs):
            raise LotNotAvailableError(str(line.inventory_item_id), line.selected_lot)

        matches = item_barcode is not None and line.scanned_barcode == item_barcode
        line = replace(
            line,
            state=ValidationState.VALID if matches else ValidationState.INVALID,
        )
        self._lines[key] = line
        return line

    def valid_lines(self, pharmacy_id: str | None = None) -> list[StagedLine]:
        return [
            line for line in self._lines.values()
            if line.state == ValidationState.VALID
            and (pharmacy_id is None or line.pharmacy_id == pharmacy_id)
        ]

    def clear(self, keys: Iterable[LineKey]) -> None:
        for key in keys:
            self._lines.pop(key, None)

    def retain(self, keys: Iterable[LineKey]) -> None:
        """Drop staged lines that are no longer dispatch candidates."""
        keep = set(keys)
        for key in list(self._lines):
            if key not in keep:
                del self._lines[key]
