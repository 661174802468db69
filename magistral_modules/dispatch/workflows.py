"""
Dispatch Note Workflow.

A note is created Active and received once; there is no way back.
"""

from magistral_kernel.domain.workflow import Guard, Transition, Workflow
from magistral_kernel.logging_config import get_logger
from magistral_kernel.models.dispatch import DispatchStatus

logger = get_logger("modules.dispatch.workflows")

RECEIVE = "receive"

ALL_LINES_CONFIRMED = Guard(
    name="reception_checklist_complete",
    description="Every line of the note physically confirmed",
)

DISPATCH_NOTE_WORKFLOW = Workflow(
    name="dispatch_note",
    description="Internal shipment of Skol-supplied raw materials",
    initial_state=DispatchStatus.ACTIVE.value,
    states=(DispatchStatus.ACTIVE.value, DispatchStatus.RECEIVED.value),
    transitions=(
        Transition(
            DispatchStatus.ACTIVE.value, DispatchStatus.RECEIVED.value, RECEIVE,
            guard=ALL_LINES_CONFIRMED,
        ),
    ),
    terminal_states=(DispatchStatus.RECEIVED.value,),
)

logger.info(
    "dispatch_workflow_registered",
    extra={
        "workflow_name": DISPATCH_NOTE_WORKFLOW.name,
        "transition_count": len(DISPATCH_NOTE_WORKFLOW.transitions),
    },
)
