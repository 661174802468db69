"""
ORM-Level Immutability Enforcement.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check our invariants:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

If a check fails, ImmutabilityViolationError is raised and the flush is
aborted.  The database is never modified.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                      | When Immutable
----------------------------|--------------------------------------------
PrescriptionAuditEntry      | ALWAYS (from creation)
ControlledLedgerEntry       | ALWAYS (from creation)
DispatchItem                | ALWAYS (from creation)
DispatchNote                | never deleted; frozen once status = received

The transition Active -> Received itself is allowed: the check looks at
the status the note had BEFORE the flush (attribute history).
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from magistral_kernel.exceptions import ImmutabilityViolationError
from magistral_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    extra = {
        "entity_type": entity_type,
        "entity_id": str(target.id),
        "operation": operation,
    }
    if field is not None:
        extra["field"] = field
    logger.error("immutability_violation_blocked", extra=extra)
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_audit_entry_update(mapper, connection, target):
    _block(
        "PrescriptionAuditEntry", target, "UPDATE",
        "Audit trail entries are append-only and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    _block(
        "PrescriptionAuditEntry", target, "DELETE",
        "Audit trail entries cannot be deleted",
    )


def _check_ledger_entry_update(mapper, connection, target):
    _block(
        "ControlledLedgerEntry", target, "UPDATE",
        "Controlled ledger entries are immutable",
    )


def _check_ledger_entry_delete(mapper, connection, target):
    _block(
        "ControlledLedgerEntry", target, "DELETE",
        "Controlled ledger entries cannot be deleted",
    )


def _check_dispatch_item_update(mapper, connection, target):
    _block(
        "DispatchItem", target, "UPDATE",
        "Dispatch note lines cannot be modified",
    )


def _check_dispatch_item_delete(mapper, connection, target):
    _block(
        "DispatchItem", target, "DELETE",
        "Dispatch note lines cannot be deleted",
    )


def _check_dispatch_note_update(mapper, connection, target):
    """
    Allow Active -> Received (and the reception fields that go with it);
    block every change once the note was already Received.
    """
    from magistral_kernel.models.dispatch import DispatchStatus

    status_history = get_history(target, "status")
    if status_history.deleted:
        was_received = status_history.deleted[0] == DispatchStatus.RECEIVED
    else:
        was_received = target.status == DispatchStatus.RECEIVED

    if not was_received:
        return

    for attr in inspect(target).attrs:
        if attr.history.has_changes():
            _block(
                "DispatchNote", target, "UPDATE",
                f"Cannot modify field '{attr.key}' on a received dispatch note",
                field=attr.key,
            )


def _check_dispatch_note_delete(mapper, connection, target):
    _block(
        "DispatchNote", target, "DELETE",
        "Dispatch notes cannot be deleted",
    )


def _listeners():
    from magistral_kernel.models.audit_trail import PrescriptionAuditEntry
    from magistral_kernel.models.controlled_ledger import ControlledLedgerEntry
    from magistral_kernel.models.dispatch import DispatchItem, DispatchNote

    return (
        (PrescriptionAuditEntry, "before_update", _check_audit_entry_update),
        (PrescriptionAuditEntry, "before_delete", _check_audit_entry_delete),
        (ControlledLedgerEntry, "before_update", _check_ledger_entry_update),
        (ControlledLedgerEntry, "before_delete", _check_ledger_entry_delete),
        (DispatchItem, "before_update", _check_dispatch_item_update),
        (DispatchItem, "before_delete", _check_dispatch_item_delete),
        (DispatchNote, "before_update", _check_dispatch_note_update),
        (DispatchNote, "before_delete", _check_dispatch_note_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent.  Call after models are imported, before any flush.
    """
    for target, event_name, fn in _listeners():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to bypass the rules.
    """
    for target, event_name, fn in _listeners():
        if event.contains(target, event_name, fn):
            event.remove(target, event_name, fn)
