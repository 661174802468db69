"""
Module: magistral_kernel.models.controlled_ledger
Responsibility: ORM persistence for the controlled-substance dispensation
    book (one row per dispensed item of a controlled prescription).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listeners in db/immutability.py).
    - All rows of one dispensation share the same internal_folio.

Audit relevance:
    Regulatory record.  A prescription can only reach Dispensed if its
    ledger rows were flushed in the same transaction.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from magistral_kernel.db.base import Base, UUIDString


class ControlledLedgerEntry(Base):
    """One dispensed controlled medication."""

    __tablename__ = "controlled_ledger_entries"

    __table_args__ = (
        Index("idx_controlled_ledger_folio", "internal_folio"),
        Index("idx_controlled_ledger_prescription", "prescription_id"),
    )

    internal_folio: Mapped[str] = mapped_column(String(32), nullable=False)
    prescription_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("prescriptions.id"),
        nullable=False,
    )
    patient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    doctor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    medication_name: Mapped[str] = mapped_column(String(250), nullable=False)
    quantity_value: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity_unit: Mapped[str] = mapped_column(String(32), nullable=False)
    controlled_folio: Mapped[str | None] = mapped_column(String(64), nullable=True)
    controlled_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dispensed_at: Mapped[datetime] = mapped_column(nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)

    def __repr__(self) -> str:
        return f"<ControlledLedgerEntry {self.internal_folio} {self.medication_name}>"
