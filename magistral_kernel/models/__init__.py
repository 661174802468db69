"""Domain models for the magistral kernel."""

from magistral_kernel.models.audit_trail import PrescriptionAuditEntry
from magistral_kernel.models.controlled_ledger import ControlledLedgerEntry
from magistral_kernel.models.dispatch import DispatchItem, DispatchNote, DispatchStatus
from magistral_kernel.models.inventory import InventoryItem, InventoryLot
from magistral_kernel.models.prescription import (
    PaymentStatus,
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
    SkolDispatchStatus,
    SupplySource,
)

__all__ = [
    "Prescription",
    "PrescriptionItem",
    "PrescriptionStatus",
    "PaymentStatus",
    "SupplySource",
    "SkolDispatchStatus",
    "PrescriptionAuditEntry",
    "InventoryItem",
    "InventoryLot",
    "DispatchNote",
    "DispatchItem",
    "DispatchStatus",
    "ControlledLedgerEntry",
]
