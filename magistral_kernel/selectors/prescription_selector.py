"""
Module: magistral_kernel.selectors.prescription_selector
Responsibility: Read access to prescriptions and their audit trails.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select

from magistral_kernel.exceptions import PrescriptionNotFoundError
from magistral_kernel.models.audit_trail import PrescriptionAuditEntry
from magistral_kernel.models.prescription import (
    Prescription,
    PrescriptionStatus,
    SkolDispatchStatus,
    SupplySource,
)
from magistral_kernel.selectors.base import BaseSelector


class PrescriptionSelector(BaseSelector):
    """Queries over prescriptions and prescription_audit_entries."""

    def find(self, prescription_id: UUID) -> Prescription | None:
        return self.session.get(Prescription, prescription_id)

    def get(self, prescription_id: UUID) -> Prescription:
        """Fetch by id or raise PrescriptionNotFoundError."""
        prescription = self.find(prescription_id)
        if prescription is None:
            raise PrescriptionNotFoundError(str(prescription_id))
        return prescription

    def get_for_update(self, prescription_id: UUID) -> Prescription:
        """Fetch by id with a row lock and a fresh read of the row."""
        prescription = self.session.execute(
            select(Prescription)
            .where(Prescription.id == prescription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if prescription is None:
            raise PrescriptionNotFoundError(str(prescription_id))
        return prescription

    def list_all(self, include_archived: bool = False) -> list[Prescription]:
        """All prescriptions, newest first; archived ones are hidden by default."""
        stmt = select(Prescription).order_by(Prescription.created_at.desc())
        if not include_archived:
            stmt = stmt.where(Prescription.status != PrescriptionStatus.ARCHIVED.value)
        return list(self.session.scalars(stmt))

    def list_by_status(self, status: PrescriptionStatus | str) -> list[Prescription]:
        value = getattr(status, "value", status)
        return list(
            self.session.scalars(
                select(Prescription)
                .where(Prescription.status == value)
                .order_by(Prescription.created_at)
            )
        )

    def list_dispatch_candidates(self) -> list[Prescription]:
        """Validated, Skol-supplied prescriptions not yet fully dispatched."""
        return list(
            self.session.scalars(
                select(Prescription)
                .where(Prescription.status == PrescriptionStatus.VALIDATED.value)
                .where(Prescription.supply_source == SupplySource.SKOL_SUPPLIED.value)
                .where(
                    (Prescription.skol_dispatch_status.is_(None))
                    | (Prescription.skol_dispatch_status != SkolDispatchStatus.DISPATCHED.value)
                )
                .order_by(Prescription.created_at)
            )
        )

    def audit_trail(self, prescription_id: UUID) -> list[PrescriptionAuditEntry]:
        """Audit entries in append order."""
        return list(
            self.session.scalars(
                select(PrescriptionAuditEntry)
                .where(PrescriptionAuditEntry.prescription_id == prescription_id)
                .order_by(PrescriptionAuditEntry.seq)
            )
        )

    def last_audit_entry(self, prescription_id: UUID) -> PrescriptionAuditEntry | None:
        return self.session.scalars(
            select(PrescriptionAuditEntry)
            .where(PrescriptionAuditEntry.prescription_id == prescription_id)
            .order_by(PrescriptionAuditEntry.seq.desc())
            .limit(1)
        ).first()

    def dispensed_count(self, prescription_id: UUID) -> int:
        """Number of audit entries with status Dispensed."""
        return self.session.execute(
            select(func.count())
            .select_from(PrescriptionAuditEntry)
            .where(PrescriptionAuditEntry.prescription_id == prescription_id)
            .where(PrescriptionAuditEntry.status == PrescriptionStatus.DISPENSED.value)
        ).scalar_one()
