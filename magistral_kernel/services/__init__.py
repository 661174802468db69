"""Kernel services: flush-only writers used by the module services."""

from magistral_kernel.services.audit_trail_service import AuditTrailService
from magistral_kernel.services.sequence_service import SequenceService, format_folio

__all__ = ["AuditTrailService", "SequenceService", "format_folio"]
