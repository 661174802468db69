"""
magistral_services.collaborators -- side-effecting collaborator contracts.

Responsibility:
    Declares the two outbound side effects the state machine depends on and
    ships their default implementations:

    * ``ControlledLedger`` -- append-to-controlled-ledger, which must
      complete before a controlled prescription's Dispensed transition is
      durable.  ``SqlControlledLedger`` writes the rows in the caller's
      transaction.
    * ``ExternalPharmacyNotifier`` -- outbound notification when a
      prescription is sent to an external compounding pharmacy.
      ``LoggingNotifier`` records the composed message as a structured log
      entry.

Architecture position:
    Services layer.  Implementations flush, never commit.

Failure modes:
    Any exception raised by a collaborator is wrapped by the module
    service into ControlledLedgerWriteError / NotificationError and the
    paired status change is rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy.orm import Session

from magistral_kernel.logging_config import get_logger
from magistral_kernel.models.controlled_ledger import ControlledLedgerEntry
from magistral_kernel.models.prescription import Prescription
from magistral_kernel.services.sequence_service import SequenceService

logger = get_logger("services.collaborators")


@dataclass(frozen=True)
class LedgerReceipt:
    internal_folio: str
    entry_count: int


@dataclass(frozen=True)
class PharmacyMessage:
    prescription_id: str
    pharmacy_id: str | None
    subject: str
    body: str
    urgent: bool


@runtime_checkable
class ControlledLedger(Protocol):
    def append_dispensation(
        self,
        prescription: Prescription,
        actor_id: str,
        dispensed_at: datetime,
    ) -> LedgerReceipt:
        ...


@runtime_checkable
class ExternalPharmacyNotifier(Protocol):
    def notify(self, message: PharmacyMessage) -> None:
        ...


class SqlControlledLedger:
    """
    Controlled-substance book stored in ``controlled_ledger_entries``.

    One row per prescription item, all sharing one internal folio
    ``<prefix>-<year>-<nnnn>``.
    """

    def __init__(self, session: Session, folio_prefix: str = "CSL-MG"):
        self._session = session
        self._sequences = SequenceService(session)
        self._folio_prefix = folio_prefix

    def append_dispensation(
        self,
        prescription: Prescription,
        actor_id: str,
        dispensed_at: datetime,
    ) -> LedgerReceipt:
        folio = self._sequences.next_folio(
            SequenceService.CONTROLLED_LEDGER, self._folio_prefix, dispensed_at.year,
        )
        for item in prescription.items:
            self._session.add(
                ControlledLedgerEntry(
                    internal_folio=folio,
                    prescription_id=prescription.id,
                    patient_id=prescription.patient_id,
                    doctor_id=prescription.doctor_id,
                    medication_name=item.medication_label,
                    quantity_value=item.total_quantity_value,
                    quantity_unit=item.total_quantity_unit,
                    controlled_folio=prescription.controlled_folio,
                    controlled_type=prescription.controlled_type,
                    dispensed_at=dispensed_at,
                    actor_id=actor_id,
                )
            )
        self._session.flush()
        logger.info(
            "controlled_ledger_written",
            extra={
                "prescription_id": str(prescription.id),
                "internal_folio": folio,
                "entry_count": len(prescription.items),
            },
        )
        return LedgerReceipt(internal_folio=folio, entry_count=len(prescription.items))


class LoggingNotifier:
    """Records outbound messages as structured log entries; keeps no state."""

    def notify(self, message: PharmacyMessage) -> None:
        logger.info(
            "external_pharmacy_notified",
            extra={
                "prescription_id": message.prescription_id,
                "pharmacy_id": message.pharmacy_id,
                "subject": message.subject,
                "urgent": message.urgent,
            },
        )


def compose_external_message(
    prescription: Prescription,
    urgent_prefix: str = "[URGENT]",
    priority_hours: int = 48,
) -> PharmacyMessage:
    """
    Message asking the external pharmacy to compound a prescription.

    Urgent re-preparations get ``urgent_prefix`` in the subject and a
    priority line in the body.
    """
    urgent = bool(prescription.is_urgent_repreparation)
    subject = f"New prescription to compound: {prescription.id}"
    lines = [f"Prescription {prescription.id} is ready to be compounded."]
    if urgent:
        subject = f"{urgent_prefix} {subject}"
        lines.append(
            f"Urgent re-preparation: the patient has run out of treatment. "
            f"Please process within {priority_hours} hours."
        )
    for item in prescription.items:
        lines.append(
            f"- {item.medication_label}, {item.total_quantity}".rstrip(", ")
        )
    return PharmacyMessage(
        prescription_id=str(prescription.id),
        pharmacy_id=prescription.external_pharmacy_id,
        subject=subject,
        body="\n".join(lines),
        urgent=urgent,
    )
