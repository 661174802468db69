"""
Tests for DispatchService.

Covers:
- Candidate lines grouped by pharmacy, blocked lines and their issues
- Lines on an Active note are not offered again
- Note generation: folio, stock and lot withdrawal, dispatch status,
  staging cleared only for included lines
- Two items drawing on one source product dispatch as separate lines
- Reception cascade: all referenced prescriptions reach Preparation,
  or nothing changes
- Inventory upkeep: lots and low stock
"""

from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from magistral_engines.staging import LineKey, ValidationState
from magistral_kernel.exceptions import (
    DispatchNoteAlreadyReceivedError,
    DuplicateLotError,
    InsufficientStockError,
    InvalidTransitionError,
    InventoryItemNotFoundError,
    MissingActorError,
    MissingReceptionDataError,
    NoValidatedItemsError,
    ReceptionChecklistIncompleteError,
)
from magistral_kernel.models.dispatch import DispatchNote, DispatchStatus
from magistral_kernel.models.inventory import InventoryItem
from magistral_kernel.models.prescription import (
    PrescriptionStatus as S,
    SkolDispatchStatus,
)
from magistral_modules.dispatch.models import LotInput
from magistral_modules.prescriptions.models import ReceptionData
from tests.conftest import PHARMACIST_ID, PHARMACY_ID, TEST_ACTOR_ID, build_item_input

RECEIVER = "Pharmacy Norte reception"


def _fractionated(source, ingredient="Metformina", **overrides):
    return build_item_input(
        principal_active_ingredient=ingredient,
        requires_fractionation=True,
        source_inventory_item_id=source.id,
        **overrides,
    )


def _key(prescription, source):
    item = next(
        item for item in prescription.fractionation_items
        if item.source_inventory_item_id == source.id
    )
    return LineKey(prescription.id, source.id, item.id)


def _validate_lines(session, dispatch_service, staging, pharmacy_id=PHARMACY_ID, only=None):
    """Stage candidates, pick the suggested lot and scan the item's barcode."""
    validated = []
    for group in dispatch_service.list_candidates(staging):
        if group.pharmacy_id != pharmacy_id:
            continue
        for line in group.eligible_lines:
            if only is not None and line.key not in only:
                continue
            barcode = session.get(InventoryItem, line.inventory_item_id).barcode
            staging.select_lot(line.key, line.suggested_lot.lot_number)
            staging.scan(line.key, barcode)
            validated.append(dispatch_service.validate_line(staging, line.key))
    return validated


def _full_checklist(note):
    return {item.checklist_key: True for item in note.items}


def _note_count(session):
    return session.scalar(select(func.count()).select_from(DispatchNote))


class TestCandidates:

    def test_lines_grouped_by_pharmacy(self, dispatch_service, make_inventory_item, make_skol_prescription):
        source = make_inventory_item()
        north = make_skol_prescription(source)
        south = make_skol_prescription(source, pharmacy_id="pharmacy-sur")

        groups = dispatch_service.list_candidates()

        assert [g.pharmacy_id for g in groups] == ["pharmacy-norte", "pharmacy-sur"]
        assert groups[0].lines[0].prescription_id == north.id
        assert groups[1].lines[0].prescription_id == south.id
        line = groups[0].lines[0]
        assert line.is_eligible
        assert line.required_packs == 1
        assert line.suggested_lot.lot_number == "L-001"

    def test_only_validated_skol_supplied_prescriptions(
        self, dispatch_service, make_inventory_item, make_skol_prescription, make_prescription,
    ):
        source = make_inventory_item()
        make_prescription(validated=True)
        make_skol_prescription(source)

        groups = dispatch_service.list_candidates()
        assert sum(len(g.lines) for g in groups) == 1

    def test_zero_stock_line_is_blocked(
        self, dispatch_service, make_inventory_item, make_skol_prescription, captured_logs,
    ):
        source = make_inventory_item(lots=(("L-001", 0, date(2025, 6, 30)),))
        make_skol_prescription(source)

        group = dispatch_service.list_candidates()[0]
        assert group.eligible_lines == []
        assert group.blocked_lines[0].issue.message == "Insufficient stock (0)"
        assert any(r["message"] == "dispatch_line_blocked" for r in captured_logs())

    def test_missing_source_is_blocked(self, dispatch_service, make_inventory_item, make_skol_prescription):
        source = make_inventory_item()
        make_skol_prescription(
            source,
            items=(build_item_input(requires_fractionation=True, source_inventory_item_id=uuid4()),),
        )
        line = dispatch_service.list_candidates()[0].lines[0]
        assert line.issue.code == "SOURCE_NOT_FOUND"

    def test_invalid_fractionation_values_are_blocked(
        self, dispatch_service, make_inventory_item, make_skol_prescription,
    ):
        source = make_inventory_item(items_per_base_unit=None)
        make_skol_prescription(source)
        line = dispatch_service.list_candidates()[0].lines[0]
        assert line.issue.code == "INVALID_FRACTIONATION_VALUES"

    def test_blocked_line_is_not_staged(self, dispatch_service, staging, make_inventory_item, make_skol_prescription):
        source = make_inventory_item(lots=(("L-001", 0, None),))
        make_skol_prescription(source)
        dispatch_service.list_candidates(staging)
        assert len(staging) == 0

    def test_prescription_without_pharmacy_is_skipped(
        self, dispatch_service, make_inventory_item, make_skol_prescription, captured_logs,
    ):
        source = make_inventory_item()
        make_skol_prescription(source, pharmacy_id=None)

        assert dispatch_service.list_candidates() == []
        assert any(
            r["message"] == "dispatch_candidate_without_pharmacy" for r in captured_logs()
        )

    def test_line_on_active_note_not_offered_again(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        first = make_inventory_item()
        second = make_inventory_item(name="Minoxidil 10mg x30", barcode="7800009998887")
        prescription = make_skol_prescription(
            first,
            items=(_fractionated(first), _fractionated(second, "Minoxidil")),
        )
        only = {_key(prescription, first)}
        _validate_lines(session, dispatch_service, staging, only=only)
        dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)

        lines = dispatch_service.list_candidates()[0].lines
        assert [line.recipe_item_name for line in lines] == ["Minoxidil"]


class TestValidateLine:

    def test_wrong_barcode_is_invalid(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        source = make_inventory_item()
        make_skol_prescription(source)
        line = dispatch_service.list_candidates(staging)[0].lines[0]
        staging.select_lot(line.key, "L-001")
        staging.scan(line.key, "0000000000000")

        assert dispatch_service.validate_line(staging, line.key).state == ValidationState.INVALID

    def test_relisting_keeps_valid_line(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        source = make_inventory_item()
        make_skol_prescription(source)
        _validate_lines(session, dispatch_service, staging)

        line = dispatch_service.list_candidates(staging)[0].lines[0]
        assert line.state == ValidationState.VALID


class TestGenerateDispatchNote:

    def test_nothing_validated(self, dispatch_service, staging, make_inventory_item, make_skol_prescription):
        source = make_inventory_item()
        make_skol_prescription(source)
        dispatch_service.list_candidates(staging)

        with pytest.raises(NoValidatedItemsError):
            dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)

    def test_nothing_validated_writes_nothing(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        source = make_inventory_item()
        make_skol_prescription(source)
        dispatch_service.list_candidates(staging)
        with pytest.raises(NoValidatedItemsError):
            dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)

        assert _note_count(session) == 0
        assert session.get(InventoryItem, source.id).quantity == 10

    def test_requires_actor(self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription):
        source = make_inventory_item()
        make_skol_prescription(source)
        _validate_lines(session, dispatch_service, staging)
        with pytest.raises(MissingActorError):
            dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, "")

    def test_generates_active_note_and_withdraws_stock(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription, clock,
    ):
        source = make_inventory_item()
        prescription = make_skol_prescription(source)
        _validate_lines(session, dispatch_service, staging)

        note = dispatch_service.generate_dispatch_note(
            PHARMACY_ID, staging, TEST_ACTOR_ID, dispatcher_name="Ana",
        )

        assert note.folio == "DN-2024-0001"
        assert note.status == DispatchStatus.ACTIVE
        assert note.external_pharmacy_id == PHARMACY_ID
        assert note.created_at == clock.now()
        assert note.dispatcher_name == "Ana"
        assert len(note.items) == 1
        item = note.items[0]
        assert item.recipe_id == prescription.id
        assert item.recipe_item_name == "Metformina"
        assert item.lot_number == "L-001"
        assert item.quantity == 1

        stock = session.get(InventoryItem, source.id)
        assert stock.quantity == 9
        assert stock.find_lot("L-001").quantity == 9
        assert prescription.skol_dispatch_status == SkolDispatchStatus.DISPATCHED
        assert prescription.status == S.VALIDATED
        assert len(staging) == 0

    def test_folios_are_consecutive(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        source = make_inventory_item()
        make_skol_prescription(source)
        _validate_lines(session, dispatch_service, staging)
        first = dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)

        make_skol_prescription(source)
        _validate_lines(session, dispatch_service, staging)
        second = dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)

        assert (first.folio, second.folio) == ("DN-2024-0001", "DN-2024-0002")

    def test_partial_dispatch_keeps_other_lines_staged(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        first = make_inventory_item()
        second = make_inventory_item(name="Minoxidil 10mg x30", barcode="7800009998887")
        prescription = make_skol_prescription(
            first,
            items=(_fractionated(first), _fractionated(second, "Minoxidil")),
        )
        _validate_lines(session, dispatch_service, staging, only={_key(prescription, first)})

        dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)

        assert prescription.skol_dispatch_status == SkolDispatchStatus.PARTIALLY_DISPATCHED
        assert _key(prescription, first) not in staging
        assert staging.get(_key(prescription, second)).state == ValidationState.PENDING

    def test_two_items_sharing_one_source(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        source = make_inventory_item()
        prescription = make_skol_prescription(
            source,
            items=(
                _fractionated(source),
                _fractionated(source, "Metformina retard", concentration_value="250"),
            ),
        )

        validated = _validate_lines(session, dispatch_service, staging)
        assert len(validated) == 2
        assert len({line.prescription_item_id for line in validated}) == 2

        note = dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)

        assert sorted((i.recipe_item_name, i.quantity) for i in note.items) == [
            ("Metformina", 1),
            ("Metformina retard", 3),
        ]
        assert len(set(_full_checklist(note))) == 2
        assert session.get(InventoryItem, source.id).quantity == 6
        assert prescription.skol_dispatch_status == SkolDispatchStatus.DISPATCHED
        assert len(staging) == 0
        assert dispatch_service.list_candidates() == []

    def test_only_lines_for_the_pharmacy(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        source = make_inventory_item()
        make_skol_prescription(source)
        south = make_skol_prescription(source, pharmacy_id="pharmacy-sur")
        _validate_lines(session, dispatch_service, staging)
        _validate_lines(session, dispatch_service, staging, pharmacy_id="pharmacy-sur")

        note = dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)

        assert len(note.items) == 1
        assert staging.get(_key(south, source)).state == ValidationState.VALID

    def test_stock_taken_since_validation(
        self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription,
    ):
        source = make_inventory_item()
        make_skol_prescription(source)
        _validate_lines(session, dispatch_service, staging)

        source.quantity = 0
        source.find_lot("L-001").quantity = 0
        session.commit()

        with pytest.raises(InsufficientStockError):
            dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)
        assert _note_count(session) == 0
        assert len(staging.valid_lines()) == 1

    def test_cancelled_prescription_is_dropped(
        self, session, dispatch_service, prescription_service, staging,
        make_inventory_item, make_skol_prescription, captured_logs,
    ):
        source = make_inventory_item()
        prescription = make_skol_prescription(source)
        _validate_lines(session, dispatch_service, staging)
        prescription_service.cancel(prescription.id, TEST_ACTOR_ID, "patient withdrew")

        with pytest.raises(NoValidatedItemsError):
            dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)
        dropped = [r for r in captured_logs() if r["message"] == "dispatch_line_dropped"]
        assert dropped[-1]["reason"] == "prescription_not_dispatchable"
        assert session.get(InventoryItem, source.id).quantity == 10


class TestReceiveDispatchNote:

    @pytest.fixture
    def two_prescription_note(self, session, dispatch_service, staging, make_inventory_item, make_skol_prescription):
        """Three lines over two prescriptions on one note."""
        metformin = make_inventory_item()
        minoxidil = make_inventory_item(name="Minoxidil 10mg x30", barcode="7800009998887")
        first = make_skol_prescription(
            metformin,
            items=(_fractionated(metformin), _fractionated(minoxidil, "Minoxidil")),
        )
        second = make_skol_prescription(metformin)
        _validate_lines(session, dispatch_service, staging)
        note = dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)
        assert len(note.items) == 3
        return note, first, second

    def test_cascade_moves_every_prescription_to_preparation(
        self, dispatch_service, prescription_service, two_prescription_note, clock,
    ):
        note, first, second = two_prescription_note
        clock.advance_days(2)

        received = dispatch_service.receive_dispatch_note(
            note.id, _full_checklist(note), RECEIVER, TEST_ACTOR_ID,
        )

        assert received.status == DispatchStatus.RECEIVED
        assert received.received_by_name == RECEIVER
        assert received.received_by_id == TEST_ACTOR_ID
        assert received.completed_at == clock.now()
        for prescription in (first, second):
            assert prescription_service.get(prescription.id).status == S.PREPARATION
            entry = prescription_service.audit_trail(prescription.id)[-1]
            assert entry.notes == "supplies received, folio DN-2024-0001, entering preparation"
            assert entry.actor_id == TEST_ACTOR_ID
        assert dispatch_service.list_active_notes() == []
        assert [n.id for n in dispatch_service.list_history()] == [note.id]

    def test_failure_mid_cascade_rolls_everything_back(
        self, dispatch_service, prescription_service, two_prescription_note,
    ):
        note, first, second = two_prescription_note
        prescription_service.cancel(second.id, TEST_ACTOR_ID, "patient withdrew")

        with pytest.raises(InvalidTransitionError):
            dispatch_service.receive_dispatch_note(
                note.id, _full_checklist(note), RECEIVER, TEST_ACTOR_ID,
            )

        assert dispatch_service.get_note(note.id).status == DispatchStatus.ACTIVE
        assert dispatch_service.get_note(note.id).received_by_name is None
        assert prescription_service.get(first.id).status == S.VALIDATED
        assert prescription_service.audit_trail(first.id)[-1].status == S.VALIDATED

    def test_incomplete_checklist(self, dispatch_service, prescription_service, two_prescription_note):
        note, first, _ = two_prescription_note
        checklist = _full_checklist(note)
        unchecked = note.items[1].checklist_key
        checklist[unchecked] = False

        with pytest.raises(ReceptionChecklistIncompleteError) as exc_info:
            dispatch_service.receive_dispatch_note(note.id, checklist, RECEIVER, TEST_ACTOR_ID)
        assert exc_info.value.missing == [unchecked]
        assert dispatch_service.get_note(note.id).is_active
        assert prescription_service.get(first.id).status == S.VALIDATED

    def test_receiver_name_required(self, dispatch_service, two_prescription_note):
        note, _, _ = two_prescription_note
        with pytest.raises(MissingReceptionDataError) as exc_info:
            dispatch_service.receive_dispatch_note(note.id, _full_checklist(note), "  ", TEST_ACTOR_ID)
        assert exc_info.value.field == "received_by_name"

    def test_received_exactly_once(self, dispatch_service, two_prescription_note):
        note, _, _ = two_prescription_note
        dispatch_service.receive_dispatch_note(note.id, _full_checklist(note), RECEIVER, TEST_ACTOR_ID)

        with pytest.raises(DispatchNoteAlreadyReceivedError):
            dispatch_service.receive_dispatch_note(
                note.id, _full_checklist(note), RECEIVER, TEST_ACTOR_ID,
            )

    def test_logs_reception(self, dispatch_service, two_prescription_note, captured_logs):
        note, _, _ = two_prescription_note
        dispatch_service.receive_dispatch_note(note.id, _full_checklist(note), RECEIVER, TEST_ACTOR_ID)

        record = [r for r in captured_logs() if r["message"] == "dispatch_note_received"][-1]
        assert record["folio"] == "DN-2024-0001"
        assert record["prescription_count"] == 2


class TestSkolSuppliedCycle:

    def test_repreparation_makes_lines_dispatchable_again(
        self, session, dispatch_service, prescription_service, staging,
        make_inventory_item, make_skol_prescription, clock,
    ):
        source = make_inventory_item()
        prescription = make_skol_prescription(source)
        _validate_lines(session, dispatch_service, staging)
        note = dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)
        dispatch_service.receive_dispatch_note(note.id, _full_checklist(note), RECEIVER, TEST_ACTOR_ID)

        prescription_service.receive_compounded(
            prescription.id,
            TEST_ACTOR_ID,
            ReceptionData(
                internal_lot="MG-2401",
                expiry_date=date(2024, 4, 1),
                checklist={"label": True, "expiry_lot": True, "appearance": True},
            ),
        )
        prescription_service.mark_ready(prescription.id, TEST_ACTOR_ID)
        prescription_service.dispense(prescription.id, TEST_ACTOR_ID)

        clock.advance_days(25)
        prescription_service.reprepare(prescription.id, PHARMACIST_ID)
        assert prescription.skol_dispatch_status == SkolDispatchStatus.PENDING_DISPATCH
        prescription_service.validate(prescription.id, PHARMACIST_ID)

        _validate_lines(session, dispatch_service, staging)
        second = dispatch_service.generate_dispatch_note(PHARMACY_ID, staging, TEST_ACTOR_ID)
        assert second.folio == "DN-2024-0002"
        assert prescription.skol_dispatch_status == SkolDispatchStatus.DISPATCHED
        assert session.get(InventoryItem, source.id).quantity == 8


class TestInventory:

    def test_add_lot_increases_quantity(self, session, dispatch_service, make_inventory_item):
        item = make_inventory_item()
        lot = dispatch_service.add_lot(item.id, LotInput("L-002", 5, date(2026, 1, 31)), TEST_ACTOR_ID)

        assert lot.lot_number == "L-002"
        refreshed = session.get(InventoryItem, item.id)
        assert refreshed.quantity == 15
        assert {l.lot_number for l in refreshed.lots} == {"L-001", "L-002"}

    def test_duplicate_lot_number_ignores_case(self, dispatch_service, make_inventory_item):
        item = make_inventory_item()
        with pytest.raises(DuplicateLotError):
            dispatch_service.add_lot(item.id, LotInput("l-001", 5), TEST_ACTOR_ID)

    def test_lot_number_required(self, dispatch_service, make_inventory_item):
        item = make_inventory_item()
        with pytest.raises(MissingReceptionDataError):
            dispatch_service.add_lot(item.id, LotInput(" ", 5), TEST_ACTOR_ID)

    def test_quantity_must_be_positive(self, dispatch_service, make_inventory_item):
        item = make_inventory_item()
        with pytest.raises(ValueError):
            dispatch_service.add_lot(item.id, LotInput("L-009", 0), TEST_ACTOR_ID)

    def test_unknown_item(self, dispatch_service, db_engine):
        with pytest.raises(InventoryItemNotFoundError):
            dispatch_service.add_lot(uuid4(), LotInput("L-009", 1), TEST_ACTOR_ID)

    def test_low_stock(self, dispatch_service, make_inventory_item):
        low = make_inventory_item(name="Biotina 10mg x30", lots=(("B-1", 2, None),))
        make_inventory_item()
        assert [item.id for item in dispatch_service.list_low_stock()] == [low.id]
