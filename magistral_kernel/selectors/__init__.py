"""Read-only data access contracts."""

from magistral_kernel.selectors.dispatch_selector import DispatchNoteSelector
from magistral_kernel.selectors.inventory_selector import InventorySelector
from magistral_kernel.selectors.prescription_selector import PrescriptionSelector

__all__ = [
    "DispatchNoteSelector",
    "InventorySelector",
    "PrescriptionSelector",
]
