"""
Prescription State Machine (``magistral_modules.prescriptions.state_machine``).

Responsibility
--------------
Applies one transition of PRESCRIPTION_WORKFLOW to a loaded prescription:
resolve + guard through the WorkflowExecutor, then append the audit entry
(which moves ``status``) through AuditTrailService.

Architecture
------------
Layer: **Modules** -- flush-only.  Shared by PrescriptionService (one
prescription per transaction) and DispatchService (the reception cascade,
N prescriptions inside the note's transaction).  Neither commits here.

Invariants
----------
- Status never changes without an audit entry in the same flush.
- Only transitions declared in PRESCRIPTION_WORKFLOW fire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from magistral_kernel.domain.clock import Clock
from magistral_kernel.domain.workflow import Transition, resolve_transition
from magistral_kernel.exceptions import InvalidTransitionError, MissingActorError
from magistral_kernel.models.audit_trail import PrescriptionAuditEntry
from magistral_kernel.models.prescription import Prescription
from magistral_kernel.services.audit_trail_service import AuditTrailService
from magistral_services.workflow_executor import WorkflowExecutor
from magistral_modules.prescriptions.workflows import PRESCRIPTION_WORKFLOW

ENTITY_TYPE = "Prescription"


class _NoteValues(dict):
    """Missing template fields render as empty strings."""

    def __missing__(self, key: str) -> str:
        return ""


def render_note(transition: Transition, values: dict[str, Any] | None = None) -> str:
    return transition.note.format_map(_NoteValues(values or {}))


class PrescriptionStateMachine:
    """Flush-only executor of prescription transitions."""

    def __init__(
        self,
        session: Session,
        clock: Clock,
        workflow_executor: WorkflowExecutor | None = None,
    ):
        self._session = session
        self._clock = clock
        self._executor = workflow_executor or WorkflowExecutor()
        self._audit = AuditTrailService(session)

    @staticmethod
    def ensure_available(prescription: Prescription, action: str) -> Transition:
        """Raise InvalidTransitionError unless ``action`` exists from the current status."""
        resolved = resolve_transition(PRESCRIPTION_WORKFLOW, prescription.status, action)
        if not resolved.success:
            raise InvalidTransitionError(str(prescription.id), prescription.status, action)
        return resolved.transition

    def apply(
        self,
        prescription: Prescription,
        action: str,
        actor_id: str,
        context: dict[str, Any] | None = None,
        note_values: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> PrescriptionAuditEntry:
        """
        Fire ``action`` on ``prescription`` and append its audit entry.

        ``occurred_at`` defaults to the clock; callers that stamp other
        fields with the transition time pass the same instant here.
        """
        if not actor_id:
            raise MissingActorError(action)

        transition = self._executor.require_transition(
            workflow=PRESCRIPTION_WORKFLOW,
            entity_type=ENTITY_TYPE,
            entity_id=prescription.id,
            current_state=prescription.status,
            action=action,
            actor_id=actor_id,
            context=context,
        )
        return self._audit.append(
            prescription,
            status=transition.to_state,
            actor_id=actor_id,
            notes=render_note(transition, note_values),
            occurred_at=occurred_at or self._clock.now(),
        )

    def record_initial(
        self,
        prescription: Prescription,
        actor_id: str,
        notes: str,
        occurred_at: datetime | None = None,
    ) -> PrescriptionAuditEntry:
        """First audit entry, written together with the prescription row."""
        return self._audit.append(
            prescription,
            status=prescription.status,
            actor_id=actor_id,
            notes=notes,
            occurred_at=occurred_at or self._clock.now(),
        )
