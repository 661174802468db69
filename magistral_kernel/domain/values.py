"""
Values -- Immutable domain value objects.

Responsibility:
    ``Measure`` pairs an operator-entered value with its unit (concentration,
    dosage, treatment duration, total quantity).  Values are kept exactly as
    entered; ``numeric`` parses them on demand so that a non-numeric entry is
    reported where it is consumed (fractionation, cycle estimation) instead of
    being rejected at intake.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation


def parse_decimal(raw: object) -> Decimal | None:
    """Parse ``raw`` as a finite Decimal; None if it is not a number."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        value = raw
    else:
        text = str(raw).strip().replace(",", ".")
        if not text:
            return None
        try:
            value = Decimal(text)
        except (InvalidOperation, ValueError):
            return None
    if not value.is_finite():
        return None
    return value


@dataclass(frozen=True, slots=True)
class Measure:
    """
    Value + unit as entered by staff.

    Guarantees:
        - Immutable and hashable.
        - unit is always a stripped string.
        - ``numeric`` is a finite Decimal or None.
    """

    value: str
    unit: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", "" if self.value is None else str(self.value).strip())
        object.__setattr__(self, "unit", (self.unit or "").strip())

    @classmethod
    def of(cls, value: Decimal | str | int, unit: str) -> Measure:
        return cls(value=str(value), unit=unit)

    @property
    def numeric(self) -> Decimal | None:
        return parse_decimal(self.value)

    @property
    def is_positive(self) -> bool:
        n = self.numeric
        return n is not None and n > 0

    def label(self) -> str:
        """Compact display form, e.g. ``50mg``."""
        return f"{self.value}{self.unit}"

    def __str__(self) -> str:
        return f"{self.value} {self.unit}".strip()
