"""
Prescription Workflow.

Fixed transition table of the prescription lifecycle.  Every transition
appends one audit entry; ``note`` is the audit note template.
"""

from magistral_kernel.domain.workflow import Guard, Transition, Workflow
from magistral_kernel.logging_config import get_logger
from magistral_kernel.models.prescription import PrescriptionStatus as S

logger = get_logger("modules.prescriptions.workflows")


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

EXTERNAL_SUPPLY_SOURCE = Guard(
    name="external_supply_source",
    description="Raw materials are held by the external compounding pharmacy",
)

RECEPTION_CHECKLIST_COMPLETE = Guard(
    name="reception_checklist_complete",
    description="Label, expiry/lot, appearance (and cold chain) confirmed",
)

ATTENTION_CLEARED = Guard(
    name="attention_cleared",
    description="No outstanding attention flags, or explicit operator override",
)

REPREPARATION_ALLOWED = Guard(
    name="repreparation_allowed",
    description="Document not expired and dispensed cycles below the estimate",
)

DOCUMENT_EXPIRED = Guard(
    name="document_expired",
    description="Prescription document is past its due date",
)

logger.info(
    "prescription_workflow_guards_defined",
    extra={
        "guards": [
            EXTERNAL_SUPPLY_SOURCE.name,
            RECEPTION_CHECKLIST_COMPLETE.name,
            ATTENTION_CLEARED.name,
            REPREPARATION_ALLOWED.name,
            DOCUMENT_EXPIRED.name,
        ],
    },
)


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------

COMPLETE_INTAKE = "complete_intake"
VALIDATE = "validate"
REJECT = "reject"
RESUBMIT = "resubmit"
SEND_TO_EXTERNAL = "send_to_external"
SUPPLIES_RECEIVED = "supplies_received"
RECEIVE_COMPOUNDED = "receive_compounded"
MARK_READY = "mark_ready"
DISPENSE = "dispense"
REPREPARE = "reprepare"
CANCEL = "cancel"
ARCHIVE = "archive"

_STATES = tuple(s.value for s in S)

TERMINAL_STATES = (S.ARCHIVED.value,)

# Cancelled and Archived are reachable from every other non-terminal state
CANCELLABLE_STATES = tuple(
    s.value for s in S if s not in (S.CANCELLED, S.DISPENSED, S.ARCHIVED)
)
FREELY_ARCHIVABLE_STATES = (S.REJECTED.value, S.CANCELLED.value, S.DISPENSED.value)


def _cancel_transitions() -> tuple[Transition, ...]:
    return tuple(
        Transition(state, S.CANCELLED.value, CANCEL, note="cancelled: {reason}")
        for state in CANCELLABLE_STATES
    )


def _archive_transitions() -> tuple[Transition, ...]:
    transitions = []
    for state in _STATES:
        if state in TERMINAL_STATES:
            continue
        guard = None if state in FREELY_ARCHIVABLE_STATES else DOCUMENT_EXPIRED
        transitions.append(
            Transition(state, S.ARCHIVED.value, ARCHIVE, guard=guard, note="archived")
        )
    return tuple(transitions)


PRESCRIPTION_WORKFLOW = Workflow(
    name="prescription",
    description="Compounded prescription fulfillment lifecycle",
    initial_state=S.PENDING_VALIDATION.value,
    states=_STATES,
    transitions=(
        Transition(
            S.PENDING_REVIEW_PORTAL.value, S.PENDING_VALIDATION.value, COMPLETE_INTAKE,
            note="item data entry completed, pending pharmacist validation",
        ),
        Transition(
            S.PENDING_VALIDATION.value, S.VALIDATED.value, VALIDATE,
            note="validated by pharmacist",
        ),
        Transition(
            S.PENDING_VALIDATION.value, S.REJECTED.value, REJECT,
            note="rejected: {reason}",
        ),
        Transition(
            S.REJECTED.value, S.PENDING_VALIDATION.value, RESUBMIT,
            note="corrected document resubmitted",
        ),
        Transition(
            S.VALIDATED.value, S.SENT_TO_EXTERNAL.value, SEND_TO_EXTERNAL,
            guard=EXTERNAL_SUPPLY_SOURCE,
            note="sent to external compounding pharmacy",
        ),
        Transition(
            S.VALIDATED.value, S.PREPARATION.value, SUPPLIES_RECEIVED,
            note="supplies received, folio {folio}, entering preparation",
        ),
        Transition(
            S.RECEIVED_AT_SKOL.value, S.PREPARATION.value, SUPPLIES_RECEIVED,
            note="supplies received, folio {folio}, entering preparation",
        ),
        Transition(
            S.SENT_TO_EXTERNAL.value, S.RECEIVED_AT_SKOL.value, RECEIVE_COMPOUNDED,
            guard=RECEPTION_CHECKLIST_COMPLETE,
            note="compounded product received{details}",
        ),
        Transition(
            S.PREPARATION.value, S.RECEIVED_AT_SKOL.value, RECEIVE_COMPOUNDED,
            guard=RECEPTION_CHECKLIST_COMPLETE,
            note="compounded product received{details}",
        ),
        Transition(
            S.RECEIVED_AT_SKOL.value, S.READY_FOR_PICKUP.value, MARK_READY,
            guard=ATTENTION_CLEARED,
            note="ready for pickup{details}",
        ),
        Transition(
            S.READY_FOR_PICKUP.value, S.DISPENSED.value, DISPENSE,
            note="dispensed to patient{details}",
        ),
        Transition(
            S.DISPENSED.value, S.PENDING_VALIDATION.value, REPREPARE,
            guard=REPREPARATION_ALLOWED,
            note="new re-preparation cycle started (cycle {cycle} of {total}){details}",
        ),
        *_cancel_transitions(),
        *_archive_transitions(),
    ),
    terminal_states=TERMINAL_STATES,
)

logger.info(
    "prescription_workflow_registered",
    extra={
        "workflow_name": PRESCRIPTION_WORKFLOW.name,
        "state_count": len(PRESCRIPTION_WORKFLOW.states),
        "transition_count": len(PRESCRIPTION_WORKFLOW.transitions),
    },
)
