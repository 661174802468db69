"""
AuditTrailService -- append-only writer for prescription status history.

Responsibility:
    The single code path that writes PrescriptionAuditEntry rows and moves
    ``Prescription.status`` along with them.  Modelled as an event log with
    an explicit append: the next position is read from the database at
    append time, never from a copy held by the caller.

Architecture position:
    Kernel > Services -- flushes inside the caller's transaction.

Invariants enforced:
    - The trail is never rewritten; each append inserts exactly one row.
    - ``Prescription.status`` is set to the appended status in the same
      flush, so status always equals the last entry's status.
    - Two writers racing for the same position cannot both succeed:
      UNIQUE(prescription_id, seq) rejects the loser with
      StaleAuditTrailError (the caller's transaction is rolled back by the
      module service; the operator retries).

Failure modes:
    - MissingActorError if actor_id is empty.
    - StaleAuditTrailError on a lost append race.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from magistral_kernel.exceptions import MissingActorError, StaleAuditTrailError
from magistral_kernel.logging_config import get_logger
from magistral_kernel.models.audit_trail import PrescriptionAuditEntry
from magistral_kernel.models.prescription import Prescription
from magistral_kernel.services.base import BaseService

logger = get_logger("services.audit_trail")


class AuditTrailService(BaseService):
    """Appends status events to a prescription's audit trail."""

    def latest_seq(self, prescription_id) -> int:
        """Highest seq persisted for the prescription, 0 when empty."""
        return self.session.execute(
            select(func.coalesce(func.max(PrescriptionAuditEntry.seq), 0))
            .where(PrescriptionAuditEntry.prescription_id == prescription_id)
        ).scalar_one()

    def append(
        self,
        prescription: Prescription,
        status: str,
        actor_id: str,
        notes: str,
        occurred_at: datetime,
    ) -> PrescriptionAuditEntry:
        """
        Append one entry and move ``prescription.status`` to ``status``.

        Postconditions:
            - A new row with seq = previous max + 1 is flushed.
            - prescription.status == status, updated_at == occurred_at,
              updated_by_id == actor_id.
        """
        if not actor_id:
            raise MissingActorError("audit_append")

        self.session.flush()
        seq = self.latest_seq(prescription.id) + 1
        entry = PrescriptionAuditEntry(
            prescription_id=prescription.id,
            seq=seq,
            status=str(getattr(status, "value", status)),
            occurred_at=occurred_at,
            actor_id=actor_id,
            notes=notes,
        )

        self.session.add(entry)
        try:
            self.session.flush()
        except IntegrityError as exc:
            logger.warning(
                "audit_append_conflict",
                extra={"prescription_id": str(prescription.id), "seq": seq},
            )
            raise StaleAuditTrailError(str(prescription.id), seq) from exc

        prescription.status = entry.status
        prescription.updated_at = occurred_at
        prescription.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "audit_entry_appended",
            extra={
                "prescription_id": str(prescription.id),
                "seq": seq,
                "status": entry.status,
                "actor_id": actor_id,
            },
        )
        return entry
