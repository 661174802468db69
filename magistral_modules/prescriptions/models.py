"""
Prescription Module Models (``magistral_modules.prescriptions.models``).

Frozen value objects passed into and returned from PrescriptionService.
They carry no database identity; the ORM rows in
``magistral_kernel.models`` are the source of truth.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from uuid import UUID

from magistral_engines.cycles import RefusalReason, Urgency


@dataclass(frozen=True)
class PrescriptionItemInput:
    """One compounding line as entered by staff."""

    principal_active_ingredient: str
    concentration_value: str = ""
    concentration_unit: str = ""
    dosage_value: str = ""
    dosage_unit: str = ""
    frequency: str = ""
    duration_value: str = ""
    duration_unit: str = "days"
    total_quantity_value: str = ""
    total_quantity_unit: str = ""
    usage_instructions: str = ""
    requires_fractionation: bool = False
    is_refrigerated: bool = False
    source_inventory_item_id: UUID | None = None
    attention_flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class PrescriptionInput:
    """Registration data for a new prescription."""

    patient_id: str
    due_date: date
    supply_source: str
    items: tuple[PrescriptionItemInput, ...]
    doctor_id: str | None = None
    external_pharmacy_id: str | None = None
    prescription_folio: str | None = None
    is_controlled: bool = False
    controlled_folio: str | None = None
    controlled_type: str | None = None
    submitted_via_portal: bool = False


@dataclass(frozen=True)
class ReceptionData:
    """Compounded product reception: internal lot, expiry and checklist."""

    internal_lot: str
    expiry_date: date | None
    checklist: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class CycleSummary:
    """Re-preparation status of a prescription for display."""

    prescription_id: UUID
    dispensed_count: int
    total_cycles: int
    remaining_cycles: int
    expired: bool
    can_reprepare: bool
    refusal_reason: RefusalReason | None
    urgency: Urgency
    days_since_last_dispense: int | None


@dataclass(frozen=True)
class BatchSendOutcome:
    """Per-prescription result of a batch send to external pharmacies."""

    prescription_id: UUID
    success: bool
    error_code: str | None = None
    message: str = ""
