"""
Prescription Module Service (``magistral_modules.prescriptions.service``).

Responsibility
--------------
Operator actions on a prescription: registration, intake, validation,
rejection, sending to an external pharmacy, reception of the compounded
product, payment registration, ready-for-pickup, dispensation,
re-preparation, cancellation and archiving.  Composes the pure engines
(cycle estimator, checklists) with the flush-only PrescriptionStateMachine
and the outbound collaborators.

Architecture
------------
Layer: **Modules** -- stateful orchestration wrapper.

1. Loads the prescription with a fresh, locked read.
2. Checks the action exists for the current status, then validates
   operator input (reason, checklist, folio, attention override) and
   re-preparation eligibility.
3. Runs side effects that must precede the status write (controlled
   ledger) and applies the transition.
4. Runs side effects that must succeed for the write to stand
   (external notification), then commits.

Invariants
----------
- Each public mutating method owns its transaction boundary: commit on
  success, rollback on any failure, then re-raise.
- Every mutating action requires a non-empty actor id.
- Entering Dispensed sets ``dispensation_date`` to the transition time;
  for controlled prescriptions the ledger rows are flushed first and a
  ledger failure rolls back the whole action.
- Re-preparation never succeeds past the due date or once all estimated
  cycles were dispensed.

Failure Modes
-------------
- ValidationError subclasses for missing operator input.
- InvalidTransitionError / GuardFailedError for illegal transitions.
- DocumentExpiredError / CycleLimitReachedError for refused re-preparation.
- ControlledLedgerWriteError / NotificationError when a collaborator fails.
- StaleAuditTrailError when another operator appended first.

Usage::

    service = PrescriptionService(session, config, clock)
    prescription = service.register(data, actor_id="staff-1")
    service.validate(prescription.id, actor_id="qf-1")
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from magistral_config.bridges import cycle_policy_from_config
from magistral_config.schema import MagistralConfig
from magistral_engines.checklists import compounded_checks, missing_checks
from magistral_engines.cycles import (
    RefusalReason,
    RepreparationDecision,
    Urgency,
    evaluate_repreparation,
    is_document_expired,
)
from magistral_kernel.domain.clock import Clock, SystemClock
from magistral_kernel.exceptions import (
    AttentionOverrideRequiredError,
    ControlledLedgerWriteError,
    CycleLimitReachedError,
    DocumentExpiredError,
    InvalidTransitionError,
    MagistralError,
    MissingActorError,
    MissingFolioError,
    MissingReasonError,
    MissingReceptionDataError,
    NotificationError,
    PaymentNotPendingError,
    ReceptionChecklistIncompleteError,
)
from magistral_kernel.logging_config import LogContext, get_logger
from magistral_kernel.models.audit_trail import PrescriptionAuditEntry
from magistral_kernel.models.prescription import (
    PaymentStatus,
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
    SkolDispatchStatus,
    SupplySource,
)
from magistral_kernel.selectors.prescription_selector import PrescriptionSelector
from magistral_services.collaborators import (
    ControlledLedger,
    ExternalPharmacyNotifier,
    LoggingNotifier,
    SqlControlledLedger,
    compose_external_message,
)
from magistral_services.workflow_executor import WorkflowExecutor
from magistral_modules.prescriptions import workflows as wf
from magistral_modules.prescriptions.models import (
    BatchSendOutcome,
    CycleSummary,
    PrescriptionInput,
    ReceptionData,
)
from magistral_modules.prescriptions.state_machine import PrescriptionStateMachine

logger = get_logger("modules.prescriptions.service")

T = TypeVar("T")


class PrescriptionService:
    """
    Orchestrates the prescription lifecycle.

    Contract
    --------
    Every public mutating method takes the prescription id and the acting
    operator's id, and either commits exactly one transition (plus its
    side effects) or leaves the database untouched.

    Non-goals
    ---------
    - Does NOT move prescriptions to Preparation; that happens only in the
      dispatch note reception cascade (DispatchService).
    - Does NOT render labels or messages for patients.
    """

    def __init__(
        self,
        session: Session,
        config: MagistralConfig | None = None,
        clock: Clock | None = None,
        controlled_ledger: ControlledLedger | None = None,
        notifier: ExternalPharmacyNotifier | None = None,
        workflow_executor: WorkflowExecutor | None = None,
    ):
        self._session = session
        self._config = config or MagistralConfig()
        self._clock = clock or SystemClock()
        self._policy = cycle_policy_from_config(self._config)
        self._selector = PrescriptionSelector(session)
        self._machine = PrescriptionStateMachine(session, self._clock, workflow_executor)
        self._ledger = controlled_ledger or SqlControlledLedger(
            session, self._config.folios.controlled_ledger_prefix,
        )
        self._notifier = notifier or LoggingNotifier()

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    def _run(
        self,
        operation: str,
        actor_id: str,
        fn: Callable[[], T],
        prescription_id: UUID | None = None,
    ) -> T:
        if not actor_id:
            raise MissingActorError(operation)
        with LogContext.bind(actor_id=actor_id, prescription_id=prescription_id):
            try:
                result = fn()
                self._session.commit()
            except Exception as exc:
                self._session.rollback()
                logger.warning(
                    "prescription_operation_rolled_back",
                    extra={
                        "operation": operation,
                        "error_code": getattr(exc, "code", type(exc).__name__),
                    },
                    exc_info=True,
                )
                raise
            logger.info("prescription_operation_committed", extra={"operation": operation})
            return result

    def _load(self, prescription_id: UUID) -> Prescription:
        return self._selector.get_for_update(prescription_id)

    # ------------------------------------------------------------------
    # Registration and intake
    # ------------------------------------------------------------------

    def register(self, data: PrescriptionInput, actor_id: str) -> Prescription:
        """
        Create a prescription with its first audit entry.

        Portal submissions start in PendingReviewPortal, staff-entered
        prescriptions in PendingValidation.
        """
        if data.supply_source not in {s.value for s in SupplySource}:
            raise ValueError(f"Unknown supply source: {data.supply_source!r}")
        if not data.items:
            raise ValueError("A prescription needs at least one item")

        def op() -> Prescription:
            now = self._clock.now()
            if data.submitted_via_portal:
                status = PrescriptionStatus.PENDING_REVIEW_PORTAL
                notes = "document submitted via patient portal, pending review"
            else:
                status = PrescriptionStatus.PENDING_VALIDATION
                notes = "registered by staff, pending pharmacist validation"

            prescription = Prescription(
                patient_id=data.patient_id,
                doctor_id=data.doctor_id,
                status=status.value,
                payment_status=PaymentStatus.NOT_APPLICABLE.value,
                supply_source=data.supply_source,
                external_pharmacy_id=data.external_pharmacy_id,
                prescription_folio=data.prescription_folio,
                is_controlled=data.is_controlled,
                controlled_folio=data.controlled_folio,
                controlled_type=data.controlled_type,
                due_date=data.due_date,
                is_urgent_repreparation=False,
                created_at=now,
                updated_at=now,
                created_by_id=actor_id,
                items=[
                    PrescriptionItem(
                        position=position,
                        principal_active_ingredient=item.principal_active_ingredient,
                        concentration_value=item.concentration_value,
                        concentration_unit=item.concentration_unit,
                        dosage_value=item.dosage_value,
                        dosage_unit=item.dosage_unit,
                        frequency=item.frequency,
                        duration_value=item.duration_value,
                        duration_unit=item.duration_unit,
                        total_quantity_value=item.total_quantity_value,
                        total_quantity_unit=item.total_quantity_unit,
                        usage_instructions=item.usage_instructions,
                        requires_fractionation=item.requires_fractionation,
                        is_refrigerated=item.is_refrigerated,
                        source_inventory_item_id=item.source_inventory_item_id,
                        attention_flags=list(item.attention_flags),
                    )
                    for position, item in enumerate(data.items)
                ],
            )
            self._session.add(prescription)
            self._machine.record_initial(prescription, actor_id, notes, occurred_at=now)
            logger.info(
                "prescription_registered",
                extra={
                    "prescription_id": str(prescription.id),
                    "status": prescription.status,
                    "supply_source": prescription.supply_source,
                    "item_count": len(prescription.items),
                },
            )
            return prescription

        return self._run("register", actor_id, op)

    def complete_intake(self, prescription_id: UUID, actor_id: str) -> Prescription:
        """PendingReviewPortal -> PendingValidation once staff entered the items."""

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.apply(prescription, wf.COMPLETE_INTAKE, actor_id)
            return prescription

        return self._run(wf.COMPLETE_INTAKE, actor_id, op, prescription_id)

    # ------------------------------------------------------------------
    # Pharmacist review
    # ------------------------------------------------------------------

    def validate(self, prescription_id: UUID, actor_id: str) -> Prescription:
        """
        PendingValidation -> Validated.

        Skol-supplied prescriptions become dispatch candidates
        (dispatch status PendingDispatch); no further status change here.
        """

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.apply(prescription, wf.VALIDATE, actor_id)
            if prescription.is_skol_supplied:
                prescription.skol_dispatch_status = SkolDispatchStatus.PENDING_DISPATCH.value
            return prescription

        return self._run(wf.VALIDATE, actor_id, op, prescription_id)

    def reject(self, prescription_id: UUID, actor_id: str, reason: str) -> Prescription:
        """PendingValidation -> Rejected; the reason is stored and audited."""

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.ensure_available(prescription, wf.REJECT)
            text = (reason or "").strip()
            if not text:
                raise MissingReasonError(wf.REJECT)
            self._machine.apply(prescription, wf.REJECT, actor_id, note_values={"reason": text})
            prescription.rejection_reason = text
            return prescription

        return self._run(wf.REJECT, actor_id, op, prescription_id)

    def resubmit(self, prescription_id: UUID, actor_id: str) -> Prescription:
        """Rejected -> PendingValidation with a corrected document."""

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.apply(prescription, wf.RESUBMIT, actor_id)
            prescription.rejection_reason = None
            return prescription

        return self._run(wf.RESUBMIT, actor_id, op, prescription_id)

    # ------------------------------------------------------------------
    # External compounding
    # ------------------------------------------------------------------

    def send_to_external(self, prescription_id: UUID, actor_id: str) -> Prescription:
        """
        Validated -> SentToExternal for external-pharmacy-stock prescriptions.

        The notification is sent before commit; if it fails the transition
        is rolled back and NotificationError is raised.
        """

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.apply(
                prescription,
                wf.SEND_TO_EXTERNAL,
                actor_id,
                context={"supply_source": prescription.supply_source},
            )
            message = compose_external_message(
                prescription,
                urgent_prefix=self._config.urgency.urgent_message_prefix,
                priority_hours=self._config.urgency.urgent_priority_hours,
            )
            try:
                self._notifier.notify(message)
            except Exception as exc:
                raise NotificationError(str(prescription.id), str(exc)) from exc
            return prescription

        return self._run(wf.SEND_TO_EXTERNAL, actor_id, op, prescription_id)

    def send_batch_to_external(
        self,
        prescription_ids: Iterable[UUID],
        actor_id: str,
    ) -> list[BatchSendOutcome]:
        """
        Send several prescriptions; each one is its own transaction.

        One failure does not undo the others; every id gets an outcome.
        """
        if not actor_id:
            raise MissingActorError("send_batch_to_external")
        outcomes: list[BatchSendOutcome] = []
        for prescription_id in prescription_ids:
            try:
                self.send_to_external(prescription_id, actor_id)
            except MagistralError as exc:
                outcomes.append(
                    BatchSendOutcome(
                        prescription_id=prescription_id,
                        success=False,
                        error_code=exc.code,
                        message=str(exc),
                    )
                )
            else:
                outcomes.append(BatchSendOutcome(prescription_id=prescription_id, success=True))
        logger.info(
            "batch_send_completed",
            extra={
                "requested": len(outcomes),
                "sent": sum(1 for o in outcomes if o.success),
            },
        )
        return outcomes

    def receive_compounded(
        self,
        prescription_id: UUID,
        actor_id: str,
        reception: ReceptionData,
    ) -> Prescription:
        """
        SentToExternal / Preparation -> ReceivedAtSkol.

        Requires the internal lot, its expiry date and every checklist item
        (cold chain too when any item is refrigerated).
        """

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.ensure_available(prescription, wf.RECEIVE_COMPOUNDED)

            lot = (reception.internal_lot or "").strip()
            if not lot:
                raise MissingReceptionDataError("internal_lot")
            if reception.expiry_date is None:
                raise MissingReceptionDataError("expiry_date")
            cold_chain = prescription.requires_cold_chain
            missing = missing_checks(compounded_checks(cold_chain), reception.checklist)
            if missing:
                raise ReceptionChecklistIncompleteError(missing)

            details = f", lot {lot}, expiry {reception.expiry_date.isoformat()}"
            if cold_chain:
                details += ", cold chain verified"
            self._machine.apply(
                prescription,
                wf.RECEIVE_COMPOUNDED,
                actor_id,
                context={"missing_checks": missing},
                note_values={"details": details},
            )
            prescription.internal_lot = lot
            prescription.internal_lot_expiry = reception.expiry_date
            prescription.compounding_date = self._clock.today()
            prescription.payment_status = PaymentStatus.PENDING.value
            return prescription

        return self._run(wf.RECEIVE_COMPOUNDED, actor_id, op, prescription_id)

    def register_payment(self, prescription_ids: Iterable[UUID], actor_id: str) -> list[Prescription]:
        """
        Mark the compounded products of one pharmacy settlement as paid.

        All prescriptions are updated in one transaction; if any of them is
        not awaiting payment nothing is written.  Rows are locked in id order.
        """
        ids = list(dict.fromkeys(prescription_ids))

        def op() -> list[Prescription]:
            loaded = {pid: self._load(pid) for pid in sorted(ids, key=str)}
            now = self._clock.now()
            for prescription in loaded.values():
                if prescription.payment_status != PaymentStatus.PENDING:
                    raise PaymentNotPendingError(str(prescription.id), prescription.payment_status)
                prescription.payment_status = PaymentStatus.PAID.value
                prescription.updated_at = now
                prescription.updated_by_id = actor_id
            self._session.flush()
            logger.info("payment_registered", extra={"prescription_count": len(loaded)})
            return [loaded[pid] for pid in ids]

        return self._run("register_payment", actor_id, op)

    # ------------------------------------------------------------------
    # Pickup and dispensation
    # ------------------------------------------------------------------

    def mark_ready(
        self,
        prescription_id: UUID,
        actor_id: str,
        override_attention: bool = False,
    ) -> Prescription:
        """ReceivedAtSkol -> ReadyForPickup; outstanding attention flags need an override."""

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.ensure_available(prescription, wf.MARK_READY)
            flags = sorted({flag for item in prescription.items for flag in item.attention_flags})
            if flags and not override_attention:
                raise AttentionOverrideRequiredError(str(prescription.id), flags)

            details = f", attention flags overridden: {', '.join(flags)}" if flags else ""
            self._machine.apply(
                prescription,
                wf.MARK_READY,
                actor_id,
                context={"attention_flags": flags, "override_attention": override_attention},
                note_values={"details": details},
            )
            return prescription

        return self._run(wf.MARK_READY, actor_id, op, prescription_id)

    def dispense(self, prescription_id: UUID, actor_id: str) -> Prescription:
        """
        ReadyForPickup -> Dispensed.

        Controlled prescriptions write their ledger rows first; any ledger
        failure aborts the dispensation.
        """

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.ensure_available(prescription, wf.DISPENSE)
            now = self._clock.now()

            details = ""
            if prescription.is_controlled:
                try:
                    receipt = self._ledger.append_dispensation(prescription, actor_id, now)
                except Exception as exc:
                    raise ControlledLedgerWriteError(str(prescription.id), str(exc)) from exc
                details = f", controlled ledger folio {receipt.internal_folio}"

            entry = self._machine.apply(
                prescription,
                wf.DISPENSE,
                actor_id,
                note_values={"details": details},
                occurred_at=now,
            )
            prescription.dispensation_date = entry.occurred_at
            return prescription

        return self._run(wf.DISPENSE, actor_id, op, prescription_id)

    # ------------------------------------------------------------------
    # Re-preparation
    # ------------------------------------------------------------------

    def _decide(self, prescription: Prescription) -> RepreparationDecision:
        last_dispensed = self._last_dispensed_entry(prescription.id)
        first_item = prescription.items[0] if prescription.items else None
        return evaluate_repreparation(
            is_dispensed=prescription.status == PrescriptionStatus.DISPENSED,
            created_on=prescription.created_at.date(),
            due_date=prescription.due_date,
            duration=first_item.treatment_duration if first_item is not None else None,
            dispensed_count=self._selector.dispensed_count(prescription.id),
            last_dispensed_on=last_dispensed.occurred_at.date() if last_dispensed else None,
            today=self._clock.today(),
            policy=self._policy,
        )

    def _last_dispensed_entry(self, prescription_id: UUID) -> PrescriptionAuditEntry | None:
        for entry in reversed(self._selector.audit_trail(prescription_id)):
            if entry.status == PrescriptionStatus.DISPENSED:
                return entry
        return None

    def evaluate_repreparation(self, prescription_id: UUID) -> RepreparationDecision:
        """Read-only eligibility check for a new cycle."""
        return self._decide(self._selector.get(prescription_id))

    def cycle_summary(self, prescription_id: UUID) -> CycleSummary:
        decision = self.evaluate_repreparation(prescription_id)
        return CycleSummary(
            prescription_id=prescription_id,
            dispensed_count=decision.dispensed_count,
            total_cycles=decision.total_cycles,
            remaining_cycles=decision.remaining_cycles,
            expired=decision.expired,
            can_reprepare=decision.allowed,
            refusal_reason=decision.reason,
            urgency=decision.urgency,
            days_since_last_dispense=decision.days_since_last_dispense,
        )

    def reprepare(
        self,
        prescription_id: UUID,
        actor_id: str,
        new_controlled_folio: str | None = None,
    ) -> Prescription:
        """
        Dispensed -> PendingValidation for a new cycle of a chronic treatment.

        Early requests proceed with a warning; urgent ones set
        ``is_urgent_repreparation``.
        """

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.ensure_available(prescription, wf.REPREPARE)

            decision = self._decide(prescription)
            if decision.reason == RefusalReason.DOCUMENT_EXPIRED:
                raise DocumentExpiredError(str(prescription.id), prescription.due_date.isoformat())
            if decision.reason == RefusalReason.CYCLE_LIMIT_REACHED:
                raise CycleLimitReachedError(
                    str(prescription.id), decision.dispensed_count, decision.total_cycles,
                )
            if decision.reason is not None:
                raise InvalidTransitionError(str(prescription.id), prescription.status, wf.REPREPARE)

            folio = (new_controlled_folio or "").strip()
            if prescription.is_controlled and not folio:
                raise MissingFolioError(str(prescription.id))

            details = ""
            if decision.urgency == Urgency.URGENT:
                details = f", urgent ({decision.days_since_last_dispense} days since last dispensation)"
            elif decision.urgency == Urgency.EARLY:
                details = f", early request ({decision.days_since_last_dispense} days since last dispensation)"
                logger.warning(
                    "repreparation_requested_early",
                    extra={
                        "prescription_id": str(prescription.id),
                        "days_since_last_dispense": decision.days_since_last_dispense,
                    },
                )

            self._machine.apply(
                prescription,
                wf.REPREPARE,
                actor_id,
                context={"repreparation_allowed": decision.allowed},
                note_values={
                    "cycle": decision.next_cycle_number,
                    "total": decision.total_cycles,
                    "details": details,
                },
            )
            prescription.is_urgent_repreparation = decision.urgency == Urgency.URGENT
            prescription.payment_status = PaymentStatus.NOT_APPLICABLE.value
            prescription.dispensation_date = None
            prescription.internal_lot = None
            prescription.internal_lot_expiry = None
            prescription.compounding_date = None
            prescription.rejection_reason = None
            if prescription.is_skol_supplied:
                prescription.skol_dispatch_status = SkolDispatchStatus.PENDING_DISPATCH.value
            if prescription.is_controlled:
                prescription.controlled_folio = folio
            logger.info(
                "repreparation_started",
                extra={
                    "prescription_id": str(prescription.id),
                    "cycle": decision.next_cycle_number,
                    "total_cycles": decision.total_cycles,
                    "urgency": decision.urgency.value,
                },
            )
            return prescription

        return self._run(wf.REPREPARE, actor_id, op, prescription_id)

    # ------------------------------------------------------------------
    # Cancellation and archiving
    # ------------------------------------------------------------------

    def cancel(self, prescription_id: UUID, actor_id: str, reason: str) -> Prescription:
        """Any non-terminal state -> Cancelled; irreversible, reason required."""

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            self._machine.ensure_available(prescription, wf.CANCEL)
            text = (reason or "").strip()
            if not text:
                raise MissingReasonError(wf.CANCEL)
            self._machine.apply(prescription, wf.CANCEL, actor_id, note_values={"reason": text})
            return prescription

        return self._run(wf.CANCEL, actor_id, op, prescription_id)

    def archive(self, prescription_id: UUID, actor_id: str) -> Prescription:
        """
        Rejected / Cancelled / Dispensed -> Archived at any time; any other
        state only once the document is past its due date.
        """

        def op() -> Prescription:
            prescription = self._load(prescription_id)
            context: dict[str, Any] = {
                "document_expired": is_document_expired(prescription.due_date, self._clock.today()),
            }
            self._machine.apply(prescription, wf.ARCHIVE, actor_id, context=context)
            return prescription

        return self._run(wf.ARCHIVE, actor_id, op, prescription_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, prescription_id: UUID) -> Prescription:
        return self._selector.get(prescription_id)

    def audit_trail(self, prescription_id: UUID) -> list[PrescriptionAuditEntry]:
        self._selector.get(prescription_id)
        return self._selector.audit_trail(prescription_id)
