"""
Module: magistral_kernel.models.prescription
Responsibility: ORM persistence for prescriptions (recipes) and their
    ordered compounding items.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/values.py only.

Invariants enforced:
    - status equals the status of the last PrescriptionAuditEntry
      (maintained by PrescriptionService, checked by invariants.py).
    - Entering Dispensed sets dispensation_date.
    - Items keep their entry order (position).

Failure modes:
    - IntegrityError on duplicate (prescription_id, position).

Audit relevance:
    The row holds the current projection only; the authoritative history is
    the append-only audit trail in models/audit_trail.py.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from magistral_kernel.db.base import Base, TrackedBase, UUIDString
from magistral_kernel.domain.values import Measure


class PrescriptionStatus(str, Enum):
    """Lifecycle states of a prescription."""

    PENDING_REVIEW_PORTAL = "pending_review_portal"
    PENDING_VALIDATION = "pending_validation"
    VALIDATED = "validated"
    REJECTED = "rejected"
    SENT_TO_EXTERNAL = "sent_to_external"
    PREPARATION = "preparation"
    RECEIVED_AT_SKOL = "received_at_skol"
    READY_FOR_PICKUP = "ready_for_pickup"
    DISPENSED = "dispensed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    NOT_APPLICABLE = "n/a"


class SupplySource(str, Enum):
    """Where the raw materials for compounding come from."""

    SKOL_SUPPLIED = "skol_supplied"
    EXTERNAL_STOCK = "external_pharmacy_stock"


class SkolDispatchStatus(str, Enum):
    """Progress of Skol-supplied ingredients toward the compounding pharmacy."""

    PENDING_DISPATCH = "pending_dispatch"
    PARTIALLY_DISPATCHED = "partially_dispatched"
    DISPATCHED = "dispatched"


class Prescription(TrackedBase):
    """
    A compounding order for one or more custom-formulated items.

    Contract:
        ``status`` is only written by PrescriptionService / DispatchService
        together with an audit entry in the same flush.
    """

    __tablename__ = "prescriptions"

    __table_args__ = (
        Index("idx_prescription_status", "status"),
        Index("idx_prescription_pharmacy", "external_pharmacy_id"),
    )

    patient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    doctor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(16),
        default=PaymentStatus.NOT_APPLICABLE.value,
        nullable=False,
    )
    supply_source: Mapped[str] = mapped_column(String(32), nullable=False)
    skol_dispatch_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Receiving compounding pharmacy
    external_pharmacy_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    prescription_folio: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_controlled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    controlled_folio: Mapped[str | None] = mapped_column(String(64), nullable=True)
    controlled_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Prescription document expiry
    due_date: Mapped[date] = mapped_column(nullable=False)

    dispensation_date: Mapped[datetime | None] = mapped_column(nullable=True)
    internal_lot: Mapped[str | None] = mapped_column(String(64), nullable=True)
    internal_lot_expiry: Mapped[date | None] = mapped_column(nullable=True)
    compounding_date: Mapped[date | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_urgent_repreparation: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
    )

    items: Mapped[list[PrescriptionItem]] = relationship(
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="PrescriptionItem.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Prescription {self.id} status={self.status}>"

    @property
    def is_skol_supplied(self) -> bool:
        return self.supply_source == SupplySource.SKOL_SUPPLIED

    @property
    def requires_cold_chain(self) -> bool:
        return any(item.is_refrigerated for item in self.items)

    @property
    def fractionation_items(self) -> list[PrescriptionItem]:
        return [
            item for item in self.items
            if item.requires_fractionation and item.source_inventory_item_id is not None
        ]


class PrescriptionItem(Base):
    """One compounded medication line of a prescription."""

    __tablename__ = "prescription_items"

    __table_args__ = (
        UniqueConstraint("prescription_id", "position", name="uq_prescription_item_position"),
    )

    prescription_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("prescriptions.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    principal_active_ingredient: Mapped[str] = mapped_column(String(200), nullable=False)

    # Values are stored as entered; see domain.values.Measure
    concentration_value: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    concentration_unit: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    dosage_value: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    dosage_unit: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    frequency: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    duration_value: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    duration_unit: Mapped[str] = mapped_column(String(16), default="days", nullable=False)
    total_quantity_value: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    total_quantity_unit: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    usage_instructions: Mapped[str] = mapped_column(Text, default="", nullable=False)

    requires_fractionation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_refrigerated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Deliberately not a foreign key: a dangling reference is reported as
    # "source not found" on the dispatch line.
    source_inventory_item_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    attention_flags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    prescription: Mapped[Prescription] = relationship(back_populates="items")

    def __repr__(self) -> str:
        return f"<PrescriptionItem {self.principal_active_ingredient} #{self.position}>"

    @property
    def concentration(self) -> Measure:
        return Measure(self.concentration_value, self.concentration_unit)

    @property
    def dosage(self) -> Measure:
        return Measure(self.dosage_value, self.dosage_unit)

    @property
    def treatment_duration(self) -> Measure:
        return Measure(self.duration_value, self.duration_unit)

    @property
    def total_quantity(self) -> Measure:
        return Measure(self.total_quantity_value, self.total_quantity_unit)

    @property
    def medication_label(self) -> str:
        """``<ingredient> <concentration><unit>`` as written to the controlled ledger."""
        return f"{self.principal_active_ingredient} {self.concentration.label()}".strip()
