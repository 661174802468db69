"""Service-layer coordinators: workflow execution and outbound collaborators."""

from magistral_services.collaborators import (
    ControlledLedger,
    ExternalPharmacyNotifier,
    LedgerReceipt,
    LoggingNotifier,
    PharmacyMessage,
    SqlControlledLedger,
    compose_external_message,
)
from magistral_services.workflow_executor import (
    GuardExecutor,
    WorkflowExecutor,
    default_guard_executor,
)

__all__ = [
    "ControlledLedger",
    "ExternalPharmacyNotifier",
    "LedgerReceipt",
    "LoggingNotifier",
    "PharmacyMessage",
    "SqlControlledLedger",
    "compose_external_message",
    "GuardExecutor",
    "WorkflowExecutor",
    "default_guard_executor",
]
