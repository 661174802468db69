"""
Dispatch Module Service (``magistral_modules.dispatch.service``).

Responsibility
--------------
Moves Skol-supplied raw materials to the external compounding pharmacies:

- ``list_candidates``: builds the dispatch candidate lines (fractionation
  items of Validated, Skol-supplied prescriptions not already on an Active
  note), annotates resource problems per line and groups them by pharmacy.
- ``validate_line``: compares the operator's scan with the inventory
  item's barcode through the in-memory staging area.
- ``generate_dispatch_note``: turns the ``valid`` staged lines of one
  pharmacy into an Active note, withdrawing the packs from stock.
- ``receive_dispatch_note``: the reception cascade.  The note becomes
  Received and every referenced prescription moves to Preparation, in one
  transaction.
- Inventory upkeep: ``add_lot``, ``list_low_stock``.

Architecture
------------
Layer: **Modules**.  Pure calculations come from ``magistral_engines``
(fractionation, staging, checklists); persistence goes through the kernel
selectors and services; prescription status changes go through the shared
PrescriptionStateMachine so that every one of them has its audit entry.

Invariants
----------
- Stock (item and lot, both in purchase units) is decremented when the
  note is generated, under row locks, after re-reading the rows.  Two
  generations for the same source item can never withdraw more than the
  stock held.
- A note is Received together with all of its prescriptions reaching
  Preparation, or not at all.
- Staging is cleared only for the lines included in the committed note.

Failure Modes
-------------
- NoValidatedItemsError: no ``valid`` line left for the pharmacy.
- InsufficientStockError / LotNotAvailableError / SourceNotFoundError /
  InvalidFractionationValuesError: stock changed since the line was
  validated; nothing is written.
- DispatchNoteAlreadyReceivedError, ReceptionChecklistIncompleteError,
  MissingReceptionDataError on reception.
- Any failure while cascading rolls back the note and every prescription.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Callable, Mapping, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from magistral_config.schema import MagistralConfig
from magistral_engines.checklists import missing_checks
from magistral_engines.fractionation import (
    LotView,
    SourceStock,
    assess_line,
    compute_required_packs,
)
from magistral_engines.staging import DispatchStaging, LineKey, StagedLine
from magistral_kernel.domain.clock import Clock, SystemClock
from magistral_kernel.exceptions import (
    DispatchNoteAlreadyReceivedError,
    DispatchNoteNotActiveError,
    DuplicateLotError,
    InsufficientStockError,
    InventoryItemNotFoundError,
    LotNotAvailableError,
    MissingActorError,
    MissingReceptionDataError,
    NoValidatedItemsError,
    ReceptionChecklistIncompleteError,
    SourceNotFoundError,
)
from magistral_kernel.logging_config import LogContext, get_logger
from magistral_kernel.models.dispatch import DispatchItem, DispatchNote, DispatchStatus
from magistral_kernel.models.inventory import InventoryItem, InventoryLot
from magistral_kernel.models.prescription import (
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
    SkolDispatchStatus,
)
from magistral_kernel.selectors.dispatch_selector import DispatchNoteSelector
from magistral_kernel.selectors.inventory_selector import InventorySelector
from magistral_kernel.selectors.prescription_selector import PrescriptionSelector
from magistral_kernel.services.sequence_service import SequenceService
from magistral_services.workflow_executor import WorkflowExecutor
from magistral_modules.dispatch.models import DispatchLine, LotInput, PharmacyGroup
from magistral_modules.dispatch.workflows import DISPATCH_NOTE_WORKFLOW, RECEIVE
from magistral_modules.prescriptions import workflows as prescription_wf
from magistral_modules.prescriptions.state_machine import PrescriptionStateMachine

logger = get_logger("modules.dispatch.service")

T = TypeVar("T")

ENTITY_TYPE = "DispatchNote"


def _snapshot(item: InventoryItem) -> SourceStock:
    return SourceStock(
        inventory_item_id=item.id,
        name=item.name,
        quantity=item.quantity,
        dose_value=item.dose_value,
        items_per_base_unit=item.items_per_base_unit,
        barcode=item.barcode,
        lots=tuple(
            LotView(lot.lot_number, lot.quantity, lot.expiry_date) for lot in item.lots
        ),
    )


def _line_item(prescription: Prescription, line: StagedLine) -> PrescriptionItem | None:
    for item in prescription.fractionation_items:
        if item.id == line.prescription_item_id:
            return item if item.source_inventory_item_id == line.inventory_item_id else None
    return None


class DispatchService:
    """
    Dispatch allocation, note generation and reception.

    Contract
    --------
    ``generate_dispatch_note``, ``receive_dispatch_note`` and ``add_lot``
    each own their transaction: commit on success, rollback and re-raise on
    any failure.  The listing and validation methods never write.
    """

    def __init__(
        self,
        session: Session,
        config: MagistralConfig | None = None,
        clock: Clock | None = None,
        workflow_executor: WorkflowExecutor | None = None,
    ):
        self._session = session
        self._config = config or MagistralConfig()
        self._clock = clock or SystemClock()
        self._executor = workflow_executor or WorkflowExecutor()
        self._prescriptions = PrescriptionSelector(session)
        self._inventory = InventorySelector(session)
        self._notes = DispatchNoteSelector(session)
        self._sequences = SequenceService(session)
        self._machine = PrescriptionStateMachine(session, self._clock, self._executor)

    def _run(
        self,
        operation: str,
        actor_id: str,
        fn: Callable[[], T],
        dispatch_note_id: UUID | None = None,
    ) -> T:
        if not actor_id:
            raise MissingActorError(operation)
        with LogContext.bind(actor_id=actor_id, dispatch_note_id=dispatch_note_id):
            try:
                result = fn()
                self._session.commit()
            except Exception as exc:
                self._session.rollback()
                logger.warning(
                    "dispatch_operation_rolled_back",
                    extra={
                        "operation": operation,
                        "error_code": getattr(exc, "code", type(exc).__name__),
                    },
                    exc_info=True,
                )
                raise
            return result

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def list_candidates(self, staging: DispatchStaging | None = None) -> list[PharmacyGroup]:
        """
        Candidate lines grouped by pharmacy id.

        Blocked lines are returned with their issue rather than dropped.
        When ``staging`` is given, eligible lines are staged (keeping any
        lot choice still coverable) and lines that are no longer candidates
        are dropped from it.
        """
        in_flight = self._notes.active_line_keys()
        prescriptions = self._prescriptions.list_dispatch_candidates()
        sources = self._inventory.find_many(
            item.source_inventory_item_id
            for prescription in prescriptions
            for item in prescription.fractionation_items
        )

        grouped: dict[str, list[DispatchLine]] = defaultdict(list)
        staged_keys: list[LineKey] = []
        for prescription in prescriptions:
            pharmacy_id = prescription.external_pharmacy_id
            if not pharmacy_id:
                logger.warning(
                    "dispatch_candidate_without_pharmacy",
                    extra={"prescription_id": str(prescription.id)},
                )
                continue

            for item in prescription.fractionation_items:
                name = item.principal_active_ingredient
                if (prescription.id, item.id) in in_flight:
                    continue

                source_id = item.source_inventory_item_id
                source = sources.get(source_id)
                assessment = assess_line(
                    source_item_id=source_id,
                    source=_snapshot(source) if source is not None else None,
                    concentration=item.concentration,
                    total_quantity=item.total_quantity,
                )
                state = None
                if assessment.issue is not None:
                    logger.warning(
                        "dispatch_line_blocked",
                        extra={
                            "prescription_id": str(prescription.id),
                            "inventory_item_id": str(source_id),
                            "issue_code": assessment.issue.code,
                            "issue": assessment.issue.message,
                        },
                    )
                elif staging is not None:
                    staged = staging.stage(
                        prescription_id=prescription.id,
                        inventory_item_id=source_id,
                        prescription_item_id=item.id,
                        pharmacy_id=pharmacy_id,
                        recipe_item_name=name,
                        required_packs=assessment.required_packs,
                        candidate_lots=assessment.candidate_lots,
                    )
                    staged_keys.append(staged.key)
                    state = staged.state

                grouped[pharmacy_id].append(
                    DispatchLine(
                        prescription_id=prescription.id,
                        inventory_item_id=source_id,
                        prescription_item_id=item.id,
                        recipe_item_name=name,
                        pharmacy_id=pharmacy_id,
                        required_packs=assessment.required_packs,
                        available_packs=assessment.available_packs,
                        candidate_lots=assessment.candidate_lots,
                        issue=assessment.issue,
                        state=state,
                    )
                )

        if staging is not None:
            staging.retain(staged_keys)

        return [
            PharmacyGroup(pharmacy_id=pharmacy_id, lines=tuple(lines))
            for pharmacy_id, lines in sorted(grouped.items())
        ]

    def validate_line(self, staging: DispatchStaging, key: LineKey) -> StagedLine:
        """Check the staged scan against the inventory item's barcode."""
        item = self._inventory.find(key.inventory_item_id)
        line = staging.validate(key, item.barcode if item is not None else None)
        logger.info(
            "dispatch_line_validated",
            extra={
                "prescription_id": str(key.prescription_id),
                "prescription_item_id": str(key.prescription_item_id),
                "inventory_item_id": str(key.inventory_item_id),
                "state": line.state.value,
            },
        )
        return line

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _still_dispatchable(
        self,
        line: StagedLine,
        pharmacy_id: str,
        in_flight: set[tuple[UUID, UUID]],
    ) -> tuple[Prescription, PrescriptionItem] | None:
        prescription = self._prescriptions.find(line.prescription_id)
        item = _line_item(prescription, line) if prescription else None
        reason = None
        if prescription is None or item is None:
            reason = "prescription_item_missing"
        elif prescription.status != PrescriptionStatus.VALIDATED or not prescription.is_skol_supplied:
            reason = "prescription_not_dispatchable"
        elif prescription.external_pharmacy_id != pharmacy_id:
            reason = "pharmacy_changed"
        elif (prescription.id, item.id) in in_flight:
            reason = "already_in_flight"
        if reason is not None:
            logger.warning(
                "dispatch_line_dropped",
                extra={
                    "prescription_id": str(line.prescription_id),
                    "prescription_item_id": str(line.prescription_item_id),
                    "inventory_item_id": str(line.inventory_item_id),
                    "reason": reason,
                },
            )
            return None
        return prescription, item

    def generate_dispatch_note(
        self,
        pharmacy_id: str,
        staging: DispatchStaging,
        actor_id: str,
        dispatcher_name: str | None = None,
    ) -> DispatchNote:
        """
        Create an Active dispatch note from the pharmacy's ``valid`` lines.

        Required packs are recomputed against the locked, freshly read
        inventory rows and withdrawn from both the item and the chosen lot.
        """
        included: list[StagedLine] = []

        def op() -> DispatchNote:
            valid = staging.valid_lines(pharmacy_id)
            if not valid:
                raise NoValidatedItemsError(pharmacy_id)

            in_flight = self._notes.active_line_keys()
            lines: list[tuple[StagedLine, Prescription, PrescriptionItem]] = []
            for line in valid:
                resolved = self._still_dispatchable(line, pharmacy_id, in_flight)
                if resolved is not None:
                    lines.append((line, *resolved))
            if not lines:
                raise NoValidatedItemsError(pharmacy_id)

            locked = self._inventory.lock_for_update(line.inventory_item_id for line, _, _ in lines)
            now = self._clock.now()
            withdrawals: list[tuple[StagedLine, PrescriptionItem, int]] = []
            for line, prescription, item in lines:
                source = locked.get(line.inventory_item_id)
                if source is None:
                    raise SourceNotFoundError(str(line.inventory_item_id))
                required = compute_required_packs(
                    concentration=item.concentration,
                    total_quantity=item.total_quantity,
                    dose_value=source.dose_value,
                    items_per_base_unit=source.items_per_base_unit,
                    inventory_item_id=str(source.id),
                ).required_packs
                if required > source.quantity:
                    raise InsufficientStockError(str(source.id), required, source.quantity)
                lot = source.find_lot(line.selected_lot)
                if lot is None or lot.quantity < required:
                    raise LotNotAvailableError(str(source.id), line.selected_lot)

                source.quantity -= required
                source.updated_at = now
                source.updated_by_id = actor_id
                lot.quantity -= required
                withdrawals.append((line, item, required))
                logger.info(
                    "stock_decremented",
                    extra={
                        "inventory_item_id": str(source.id),
                        "lot_number": lot.lot_number,
                        "quantity": required,
                        "remaining_item_quantity": source.quantity,
                        "remaining_lot_quantity": lot.quantity,
                    },
                )
            self._session.flush()

            folio = self._sequences.next_folio(
                SequenceService.DISPATCH_NOTE,
                self._config.folios.dispatch_note_prefix,
                now.year,
            )
            note = DispatchNote(
                folio=folio,
                external_pharmacy_id=pharmacy_id,
                status=DispatchStatus.ACTIVE.value,
                created_at=now,
                dispatcher_id=actor_id,
                dispatcher_name=dispatcher_name,
            )
            self._session.add(note)
            self._session.flush()
            for position, (line, item, required) in enumerate(withdrawals):
                self._session.add(
                    DispatchItem(
                        dispatch_note_id=note.id,
                        position=position,
                        recipe_id=line.prescription_id,
                        prescription_item_id=item.id,
                        inventory_item_id=line.inventory_item_id,
                        recipe_item_name=item.principal_active_ingredient,
                        lot_number=line.selected_lot,
                        quantity=required,
                    )
                )
            self._session.flush()
            self._session.refresh(note, attribute_names=["items"])

            touched = {prescription.id: prescription for _, prescription, _ in lines}
            for prescription in touched.values():
                self._update_dispatch_status(prescription, actor_id, now)

            included.extend(line for line, _, _ in withdrawals)
            logger.info(
                "dispatch_note_generated",
                extra={
                    "dispatch_note_id": str(note.id),
                    "folio": note.folio,
                    "pharmacy_id": pharmacy_id,
                    "line_count": len(withdrawals),
                    "prescription_count": len(touched),
                },
            )
            return note

        note = self._run("generate_dispatch_note", actor_id, op)
        staging.clear(line.key for line in included)
        return note

    def _update_dispatch_status(
        self,
        prescription: Prescription,
        actor_id: str,
        now: datetime,
    ) -> None:
        dispatched = {item_id for _, item_id in self._notes.dispatched_line_keys(prescription.id)}
        required = {item.id for item in prescription.fractionation_items}
        if required <= dispatched:
            status = SkolDispatchStatus.DISPATCHED
        else:
            status = SkolDispatchStatus.PARTIALLY_DISPATCHED
        prescription.skol_dispatch_status = status.value
        prescription.updated_at = now
        prescription.updated_by_id = actor_id

    # ------------------------------------------------------------------
    # Reception cascade
    # ------------------------------------------------------------------

    def receive_dispatch_note(
        self,
        note_id: UUID,
        checklist: Mapping[str, object],
        received_by_name: str,
        actor_id: str,
    ) -> DispatchNote:
        """
        Confirm physical reception of every line of an Active note.

        The note becomes Received and each distinct prescription on it moves
        to Preparation with the note folio in its audit note.  Either all of
        it commits or none of it does.
        """

        def op() -> DispatchNote:
            note = self._notes.get_for_update(note_id)
            if note.status == DispatchStatus.RECEIVED:
                raise DispatchNoteAlreadyReceivedError(str(note.id))
            if not note.is_active:
                raise DispatchNoteNotActiveError(str(note.id), note.status)

            receiver = (received_by_name or "").strip()
            if not receiver:
                raise MissingReceptionDataError("received_by_name")
            missing = missing_checks((item.checklist_key for item in note.items), checklist)
            if missing:
                raise ReceptionChecklistIncompleteError(missing)

            transition = self._executor.require_transition(
                workflow=DISPATCH_NOTE_WORKFLOW,
                entity_type=ENTITY_TYPE,
                entity_id=note.id,
                current_state=note.status,
                action=RECEIVE,
                actor_id=actor_id,
                context={"missing_checks": missing},
            )
            note.status = transition.to_state
            note.completed_at = self._clock.now()
            note.received_by_name = receiver
            note.received_by_id = actor_id
            self._session.flush()

            recipe_ids = note.recipe_ids
            for recipe_id in recipe_ids:
                prescription = self._prescriptions.get_for_update(recipe_id)
                self._machine.apply(
                    prescription,
                    prescription_wf.SUPPLIES_RECEIVED,
                    actor_id,
                    note_values={"folio": note.folio},
                )
            logger.info(
                "dispatch_note_received",
                extra={
                    "dispatch_note_id": str(note.id),
                    "folio": note.folio,
                    "received_by_name": receiver,
                    "prescription_count": len(recipe_ids),
                },
            )
            return note

        return self._run("receive_dispatch_note", actor_id, op, note_id)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def list_active_notes(self) -> list[DispatchNote]:
        return self._notes.list_active()

    def list_history(self) -> list[DispatchNote]:
        return self._notes.list_history()

    def get_note(self, note_id: UUID) -> DispatchNote:
        return self._notes.get(note_id)

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def add_lot(self, inventory_item_id: UUID, data: LotInput, actor_id: str) -> InventoryLot:
        """Register a received lot; the item's quantity grows by the lot quantity."""

        def op() -> InventoryLot:
            item = self._inventory.lock_for_update([inventory_item_id]).get(inventory_item_id)
            if item is None:
                raise InventoryItemNotFoundError(str(inventory_item_id))
            lot_number = (data.lot_number or "").strip()
            if not lot_number:
                raise MissingReceptionDataError("lot_number")
            if data.quantity <= 0:
                raise ValueError(f"Lot quantity must be positive, got {data.quantity}")
            if any(lot.lot_number.casefold() == lot_number.casefold() for lot in item.lots):
                raise DuplicateLotError(str(item.id), lot_number)

            lot = InventoryLot(
                lot_number=lot_number,
                quantity=data.quantity,
                expiry_date=data.expiry_date,
            )
            item.lots.append(lot)
            item.quantity += data.quantity
            item.updated_at = self._clock.now()
            item.updated_by_id = actor_id
            self._session.flush()
            logger.info(
                "inventory_lot_added",
                extra={
                    "inventory_item_id": str(item.id),
                    "lot_number": lot_number,
                    "quantity": data.quantity,
                    "item_quantity": item.quantity,
                },
            )
            return lot

        return self._run("add_lot", actor_id, op)

    def list_low_stock(self) -> list[InventoryItem]:
        return self._inventory.list_low_stock()
