"""Dispatch of Skol-supplied raw materials: allocation, notes, reception."""

from magistral_modules.dispatch.models import DispatchLine, LotInput, PharmacyGroup
from magistral_modules.dispatch.service import DispatchService
from magistral_modules.dispatch.workflows import DISPATCH_NOTE_WORKFLOW

__all__ = [
    "DispatchService",
    "DISPATCH_NOTE_WORKFLOW",
    "DispatchLine",
    "PharmacyGroup",
    "LotInput",
]
