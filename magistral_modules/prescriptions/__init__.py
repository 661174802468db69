"""Prescription lifecycle: workflow table, state machine and service."""

from magistral_modules.prescriptions.models import (
    BatchSendOutcome,
    CycleSummary,
    PrescriptionInput,
    PrescriptionItemInput,
    ReceptionData,
)
from magistral_modules.prescriptions.service import PrescriptionService
from magistral_modules.prescriptions.state_machine import PrescriptionStateMachine
from magistral_modules.prescriptions.workflows import PRESCRIPTION_WORKFLOW

__all__ = [
    "PrescriptionService",
    "PrescriptionStateMachine",
    "PRESCRIPTION_WORKFLOW",
    "PrescriptionInput",
    "PrescriptionItemInput",
    "ReceptionData",
    "CycleSummary",
    "BatchSendOutcome",
]
