"""
Kernel invariant tests.

Covers:
- status_trail_violations on consistent and inconsistent pairs
- Audit entries get consecutive positions from 1
- A duplicate position is rejected with StaleAuditTrailError
- Inventory counters cannot go negative
"""

import pytest
from sqlalchemy.exc import IntegrityError

from magistral_kernel.exceptions import MissingActorError, StaleAuditTrailError
from magistral_kernel.invariants import ALL_KERNEL_INVARIANTS, KernelInvariant, status_trail_violations
from magistral_kernel.models.audit_trail import PrescriptionAuditEntry
from magistral_kernel.services.audit_trail_service import AuditTrailService
from tests.conftest import PHARMACIST_ID, START_TIME, TEST_ACTOR_ID


class TestStatusTrailViolations:

    def test_consistent(self):
        assert status_trail_violations("validated", ["pending_validation", "validated"]) == []

    def test_empty_trail(self):
        assert status_trail_violations("validated", []) == ["audit trail is empty"]

    def test_status_differs_from_last_entry(self):
        violations = status_trail_violations("dispensed", ["pending_validation", "validated"])
        assert len(violations) == 1
        assert "'validated'" in violations[0]

    def test_declared_invariants(self):
        assert KernelInvariant.STATUS_MATCHES_TRAIL in ALL_KERNEL_INVARIANTS
        assert len(ALL_KERNEL_INVARIANTS) == len(KernelInvariant)


class TestAuditTrailAppend:

    def test_positions_are_consecutive(self, prescription_service, make_prescription):
        prescription = make_prescription()
        prescription_service.reject(prescription.id, PHARMACIST_ID, "unreadable")
        prescription_service.resubmit(prescription.id, TEST_ACTOR_ID)
        prescription_service.validate(prescription.id, PHARMACIST_ID)

        trail = prescription_service.audit_trail(prescription.id)
        assert [e.seq for e in trail] == [1, 2, 3, 4]

    def test_append_moves_status(self, session, make_prescription):
        prescription = make_prescription()
        service = AuditTrailService(session)

        entry = service.append(prescription, "validated", PHARMACIST_ID, "manual", START_TIME)

        assert entry.seq == 2
        assert prescription.status == "validated"
        assert prescription.updated_by_id == PHARMACIST_ID
        session.rollback()

    def test_append_requires_actor(self, session, make_prescription):
        prescription = make_prescription()
        with pytest.raises(MissingActorError):
            AuditTrailService(session).append(prescription, "validated", "", "x", START_TIME)

    def test_duplicate_position_rejected(self, session, make_prescription, monkeypatch):
        prescription = make_prescription()
        monkeypatch.setattr(AuditTrailService, "latest_seq", lambda self, prescription_id: 0)

        with pytest.raises(StaleAuditTrailError) as exc_info:
            AuditTrailService(session).append(prescription, "validated", PHARMACIST_ID, "x", START_TIME)
        assert exc_info.value.seq == 1
        session.rollback()

    def test_unique_constraint_enforced_by_database(self, session, make_prescription):
        prescription = make_prescription()
        session.add(
            PrescriptionAuditEntry(
                prescription_id=prescription.id,
                seq=1,
                status="validated",
                occurred_at=START_TIME,
                actor_id=TEST_ACTOR_ID,
                notes="duplicate",
            )
        )
        with pytest.raises(IntegrityError):
            session.flush()
        session.rollback()


class TestStockCounters:

    def test_negative_quantity_rejected(self, session, make_inventory_item):
        item = make_inventory_item()
        item.quantity = -1
        with pytest.raises(IntegrityError):
            session.flush()
        session.rollback()
