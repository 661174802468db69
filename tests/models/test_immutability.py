"""
Append-only persistence tests.

Verifies:
- PrescriptionAuditEntry can never be updated or deleted
- ControlledLedgerEntry can never be updated or deleted
- DispatchItem can never be updated or deleted
- DispatchNote may go Active -> Received once, then is frozen; never deleted
- Listeners can be removed and re-registered
"""

from contextlib import contextmanager

import pytest
from sqlalchemy import select

from magistral_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from magistral_kernel.exceptions import ImmutabilityViolationError
from magistral_kernel.models.controlled_ledger import ControlledLedgerEntry
from magistral_modules.prescriptions.models import ReceptionData
from tests.conftest import PHARMACIST_ID, PHARMACY_ID, TEST_ACTOR_ID, build_item_input


@contextmanager
def disabled_immutability():
    """Temporarily remove the ORM listeners to simulate tampering."""
    unregister_immutability_listeners()
    try:
        yield
    finally:
        register_immutability_listeners()


class TestAuditEntryImmutability:

    def test_update_blocked(self, session, prescription_service, make_prescription):
        prescription = make_prescription()
        entry = prescription_service.audit_trail(prescription.id)[0]

        entry.notes = "rewritten history"
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "PrescriptionAuditEntry"
        session.rollback()

    def test_delete_blocked(self, session, prescription_service, make_prescription):
        prescription = make_prescription()
        entry = prescription_service.audit_trail(prescription.id)[0]

        session.delete(entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_violation_is_logged(self, session, prescription_service, make_prescription, captured_logs):
        prescription = make_prescription()
        entry = prescription_service.audit_trail(prescription.id)[0]
        entry.status = "dispensed"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

        record = [r for r in captured_logs() if r["message"] == "immutability_violation_blocked"][-1]
        assert record["operation"] == "UPDATE"
        assert record["entity_type"] == "PrescriptionAuditEntry"

    def test_listeners_can_be_bypassed_explicitly(self, session, prescription_service, make_prescription):
        prescription = make_prescription()
        entry = prescription_service.audit_trail(prescription.id)[0]

        with disabled_immutability():
            entry.notes = "corrected by migration"
            session.flush()
        session.rollback()

        entry.notes = "after re-registration"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()


class TestControlledLedgerImmutability:

    @pytest.fixture
    def ledger_entry(self, session, prescription_service, make_prescription):
        prescription = make_prescription(validated=True, is_controlled=True, controlled_folio="RCH-9")
        prescription_service.send_to_external(prescription.id, PHARMACIST_ID)
        prescription_service.receive_compounded(
            prescription.id,
            TEST_ACTOR_ID,
            ReceptionData(
                "MG-1",
                prescription.due_date,
                {"label": True, "expiry_lot": True, "appearance": True},
            ),
        )
        prescription_service.mark_ready(prescription.id, TEST_ACTOR_ID)
        prescription_service.dispense(prescription.id, TEST_ACTOR_ID)
        return session.scalars(select(ControlledLedgerEntry)).one()

    def test_update_blocked(self, session, ledger_entry):
        ledger_entry.quantity_value = "1"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_delete_blocked(self, session, ledger_entry):
        session.delete(ledger_entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()


class TestDispatchNoteImmutability:

    @pytest.fixture
    def active_note(self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription):
        source = make_inventory_item()
        prescription = make_skol_prescription(
            source,
            items=(
                build_item_input(requires_fractionation=True, source_inventory_item_id=source.id),
            ),
        )
        line = dispatch_service.list_candidates(staging)[0].lines[0]
        staging.select_lot(line.key, "L-001")
        staging.scan(line.key, source.barcode)
        dispatch_service.validate_line(staging, line.key)
        note = dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)
        assert note.items[0].recipe_id == prescription.id
        return note

    def _receive(self, dispatch_service, note):
        checklist = {item.checklist_key: True for item in note.items}
        return dispatch_service.receive_dispatch_note(note.id, checklist, "Reception", TEST_ACTOR_ID)

    def test_active_note_may_be_received(self, dispatch_service, active_note):
        received = self._receive(dispatch_service, active_note)
        assert received.status == "received"

    def test_received_note_is_frozen(self, session, dispatch_service, active_note):
        received = self._receive(dispatch_service, active_note)

        received.received_by_name = "someone else"
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert "received_by_name" in str(exc_info.value)
        session.rollback()

    def test_received_note_cannot_go_back_to_active(self, session, dispatch_service, active_note):
        received = self._receive(dispatch_service, active_note)

        received.status = "active"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_note_delete_blocked(self, session, active_note):
        session.delete(active_note)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_dispatch_item_update_blocked(self, session, active_note):
        active_note.items[0].quantity = 99
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()
