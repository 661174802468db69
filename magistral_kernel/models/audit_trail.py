"""
Module: magistral_kernel.models.audit_trail
Responsibility: ORM persistence for the per-prescription append-only
    status history.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listeners in db/immutability.py).
    - (prescription_id, seq) is UNIQUE; seq starts at 1 and grows by one per
      append.  A second writer racing for the same seq hits the constraint
      instead of overwriting history.

Audit relevance:
    This table IS the prescription audit trail.  ``dispensedCount`` for
    the cycle estimator is the number of rows with status = dispensed.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from magistral_kernel.db.base import Base, UUIDString


class PrescriptionAuditEntry(Base):
    """
    One immutable status event of a prescription.

    Guarantees:
        - Never updated or deleted once flushed.
        - actor_id is always present.
    """

    __tablename__ = "prescription_audit_entries"

    __table_args__ = (
        UniqueConstraint("prescription_id", "seq", name="uq_prescription_audit_seq"),
        Index("idx_audit_entry_status", "prescription_id", "status"),
    )

    prescription_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("prescriptions.id"),
        nullable=False,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    notes: Mapped[str] = mapped_column(Text, default="", nullable=False)

    def __repr__(self) -> str:
        return f"<PrescriptionAuditEntry {self.prescription_id}#{self.seq} {self.status}>"
