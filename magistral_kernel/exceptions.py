"""
Typed Exception Hierarchy for the Magistral Kernel.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from MagistralError:

    MagistralError (base)
    |
    +-- ValidationError                    (operator-correctable, nothing written)
    |   +-- MissingActorError
    |   +-- MissingReasonError
    |   +-- MissingFolioError
    |   +-- MissingReceptionDataError
    |   +-- ReceptionChecklistIncompleteError
    |   +-- AttentionOverrideRequiredError
    |   +-- MissingValidationInputError
    |   +-- LotNotAvailableError
    |   +-- DuplicateLotError
    |   +-- PaymentNotPendingError
    |
    +-- TransitionError
    |   +-- InvalidTransitionError
    |   +-- GuardFailedError
    |
    +-- EligibilityError                   (re-preparation refused)
    |   +-- DocumentExpiredError
    |   +-- CycleLimitReachedError
    |
    +-- ResourceError                      (per-line, blocking annotation)
    |   +-- SourceNotFoundError
    |   +-- InsufficientStockError
    |   +-- InvalidFractionationValuesError
    |
    +-- NotFoundError
    |   +-- PrescriptionNotFoundError
    |   +-- InventoryItemNotFoundError
    |   +-- DispatchNoteNotFoundError
    |
    +-- DispatchError
    |   +-- NoValidatedItemsError
    |   +-- DispatchNoteNotActiveError
    |       +-- DispatchNoteAlreadyReceivedError
    |
    +-- TransactionError                   (paired status change NOT committed)
    |   +-- ControlledLedgerWriteError
    |   +-- NotificationError
    |
    +-- ConcurrencyError
    |   +-- StaleAuditTrailError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Validation      | MISSING_ACTOR                 | Mutating action without actor id
                | MISSING_REASON                | Reject / cancel without reason text
                | MISSING_FOLIO                 | Controlled re-preparation w/o folio
                | MISSING_RECEPTION_DATA        | Receiver name / internal lot missing
                | RECEPTION_CHECKLIST_INCOMPLETE| A checklist item is not confirmed
                | ATTENTION_OVERRIDE_REQUIRED   | Items flagged, no explicit override
                | MISSING_VALIDATION_INPUT      | Lot or barcode not provided
                | LOT_NOT_AVAILABLE             | Lot unknown or exhausted
                | DUPLICATE_LOT                 | Lot number already on the item
                | PAYMENT_NOT_PENDING           | Payment registered twice or early
----------------|-------------------------------|---------------------------------------
Transition      | INVALID_TRANSITION            | No transition for state/action
                | GUARD_FAILED                  | Transition guard not satisfied
----------------|-------------------------------|---------------------------------------
Eligibility     | DOCUMENT_EXPIRED              | Prescription past its due date
                | CYCLE_LIMIT_REACHED           | dispensedCount >= totalCycles
----------------|-------------------------------|---------------------------------------
Resource        | SOURCE_NOT_FOUND              | sourceInventoryItemId unresolved
                | INSUFFICIENT_STOCK            | Required packs exceed stock
                | INVALID_FRACTIONATION_VALUES  | Non-numeric / non-positive inputs
----------------|-------------------------------|---------------------------------------
Dispatch        | NO_VALIDATED_ITEMS            | No `valid` line for the pharmacy
                | DISPATCH_NOTE_NOT_ACTIVE      | Reception of a non-Active note
                | DISPATCH_NOTE_ALREADY_RECEIVED| Second reception of the same note
----------------|-------------------------------|---------------------------------------
Transaction     | CONTROLLED_LEDGER_WRITE_FAILED| Ledger append failed, no dispense
                | NOTIFICATION_FAILED           | Outbound notification failed
----------------|-------------------------------|---------------------------------------
Concurrency     | STALE_AUDIT_TRAIL             | Concurrent append on same position
----------------|-------------------------------|---------------------------------------
Immutability    | IMMUTABILITY_VIOLATION        | UPDATE/DELETE of an immutable record

===============================================================================
HANDLING PATTERNS
===============================================================================

Catch at the operator action boundary and report ``code`` plus the
structured attributes:

    try:
        service.reprepare(prescription_id, actor=actor)
    except EligibilityError as e:
        show_operator(e.code, str(e))

Resource errors raised while listing dispatch candidates never escape the
listing; they are attached to the affected line as an annotation.
"""


class MagistralError(Exception):
    """
    Base exception for all magistral errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "MAGISTRAL_ERROR"


# Validation errors


class ValidationError(MagistralError):
    """Base exception for operator-correctable input errors."""

    code: str = "VALIDATION_ERROR"


class MissingActorError(ValidationError):
    """A mutating action was attempted without an authenticated actor."""

    code: str = "MISSING_ACTOR"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"An authenticated actor is required for '{action}'")


class MissingReasonError(ValidationError):
    """A reason string is required and was empty."""

    code: str = "MISSING_REASON"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"A non-empty reason is required for '{action}'")


class MissingFolioError(ValidationError):
    """Controlled prescriptions require a new folio for re-preparation."""

    code: str = "MISSING_FOLIO"

    def __init__(self, prescription_id: str):
        self.prescription_id = prescription_id
        super().__init__(
            f"A new controlled folio is required to re-prepare {prescription_id}"
        )


class MissingReceptionDataError(ValidationError):
    """Reception data (receiver name, internal lot, expiry) is missing."""

    code: str = "MISSING_RECEPTION_DATA"

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Reception requires a value for '{field}'")


class ReceptionChecklistIncompleteError(ValidationError):
    """Not every reception checklist item is confirmed."""

    code: str = "RECEPTION_CHECKLIST_INCOMPLETE"

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            f"Reception checklist incomplete: {', '.join(missing)}"
        )


class AttentionOverrideRequiredError(ValidationError):
    """Items carry attention flags and the operator did not override."""

    code: str = "ATTENTION_OVERRIDE_REQUIRED"

    def __init__(self, prescription_id: str, flags: list[str]):
        self.prescription_id = prescription_id
        self.flags = flags
        super().__init__(
            f"Prescription {prescription_id} has outstanding attention flags "
            f"({', '.join(flags)}); explicit confirmation required"
        )


class MissingValidationInputError(ValidationError):
    """Lot selection or barcode scan missing for a dispatch line."""

    code: str = "MISSING_VALIDATION_INPUT"

    def __init__(self, line_key: str, field: str):
        self.line_key = line_key
        self.field = field
        super().__init__(
            f"Select a lot and scan the product barcode (missing {field} "
            f"for line {line_key})"
        )


class LotNotAvailableError(ValidationError):
    """Selected lot does not exist or has no remaining quantity."""

    code: str = "LOT_NOT_AVAILABLE"

    def __init__(self, inventory_item_id: str, lot_number: str):
        self.inventory_item_id = inventory_item_id
        self.lot_number = lot_number
        super().__init__(
            f"Lot {lot_number} is not available for item {inventory_item_id}"
        )


class DuplicateLotError(ValidationError):
    """Lot number already exists on the inventory item."""

    code: str = "DUPLICATE_LOT"

    def __init__(self, inventory_item_id: str, lot_number: str):
        self.inventory_item_id = inventory_item_id
        self.lot_number = lot_number
        super().__init__(
            f"Lot {lot_number} already exists for item {inventory_item_id}"
        )


class PaymentNotPendingError(ValidationError):
    """Payment can only be registered for prescriptions awaiting it."""

    code: str = "PAYMENT_NOT_PENDING"

    def __init__(self, prescription_id: str, payment_status: str):
        self.prescription_id = prescription_id
        self.payment_status = payment_status
        super().__init__(
            f"Prescription {prescription_id} has payment status '{payment_status}', "
            f"expected 'pending'"
        )


# Transition errors


class TransitionError(MagistralError):
    """Base exception for state machine transition failures."""

    code: str = "TRANSITION_ERROR"


class InvalidTransitionError(TransitionError):
    """No transition exists for the current state and action."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_id: str, current_state: str, action: str):
        self.entity_id = entity_id
        self.current_state = current_state
        self.action = action
        super().__init__(
            f"No transition from '{current_state}' via action '{action}' "
            f"for {entity_id}"
        )


class GuardFailedError(TransitionError):
    """The transition exists but its guard is not satisfied."""

    code: str = "GUARD_FAILED"

    def __init__(self, entity_id: str, action: str, guard_name: str):
        self.entity_id = entity_id
        self.action = action
        self.guard_name = guard_name
        super().__init__(
            f"Guard '{guard_name}' not satisfied for '{action}' on {entity_id}"
        )


# Eligibility errors


class EligibilityError(MagistralError):
    """Base exception for re-preparation eligibility refusals."""

    code: str = "ELIGIBILITY_ERROR"


class DocumentExpiredError(EligibilityError):
    """The prescription document is past its due date."""

    code: str = "DOCUMENT_EXPIRED"

    def __init__(self, prescription_id: str, due_date: str):
        self.prescription_id = prescription_id
        self.due_date = due_date
        super().__init__(
            f"Document expired: prescription {prescription_id} was due {due_date}"
        )


class CycleLimitReachedError(EligibilityError):
    """All estimated cycles have already been dispensed."""

    code: str = "CYCLE_LIMIT_REACHED"

    def __init__(self, prescription_id: str, dispensed_count: int, total_cycles: int):
        self.prescription_id = prescription_id
        self.dispensed_count = dispensed_count
        self.total_cycles = total_cycles
        super().__init__(
            f"Cycle limit reached: {dispensed_count} of {total_cycles} "
            f"estimated cycles dispensed for {prescription_id}"
        )


# Resource errors


class ResourceError(MagistralError):
    """Base exception for inventory resource problems on a dispatch line."""

    code: str = "RESOURCE_ERROR"


class SourceNotFoundError(ResourceError):
    """The source inventory item referenced by a prescription item is missing."""

    code: str = "SOURCE_NOT_FOUND"

    def __init__(self, inventory_item_id: str):
        self.inventory_item_id = inventory_item_id
        super().__init__(
            f"Source not found: inventory item {inventory_item_id} does not exist"
        )


class InsufficientStockError(ResourceError):
    """Required packs exceed the available purchase-unit stock."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, inventory_item_id: str, required: int, available: int):
        self.inventory_item_id = inventory_item_id
        self.required = required
        self.available = available
        if available <= 0 and required <= 0:
            message = f"Insufficient stock ({available})"
        else:
            message = (
                f"Insufficient stock, required {required}, available {available}"
            )
        super().__init__(message)


class InvalidFractionationValuesError(ResourceError):
    """Concentration, quantity or per-pack content is unusable."""

    code: str = "INVALID_FRACTIONATION_VALUES"

    def __init__(self, inventory_item_id: str, detail: str):
        self.inventory_item_id = inventory_item_id
        self.detail = detail
        super().__init__(f"Invalid values for fractionation: {detail}")


# Not found errors


class NotFoundError(MagistralError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class PrescriptionNotFoundError(NotFoundError):
    code: str = "PRESCRIPTION_NOT_FOUND"

    def __init__(self, prescription_id: str):
        self.prescription_id = prescription_id
        super().__init__(f"Prescription not found: {prescription_id}")


class InventoryItemNotFoundError(NotFoundError):
    code: str = "INVENTORY_ITEM_NOT_FOUND"

    def __init__(self, inventory_item_id: str):
        self.inventory_item_id = inventory_item_id
        super().__init__(f"Inventory item not found: {inventory_item_id}")


class DispatchNoteNotFoundError(NotFoundError):
    code: str = "DISPATCH_NOTE_NOT_FOUND"

    def __init__(self, dispatch_note_id: str):
        self.dispatch_note_id = dispatch_note_id
        super().__init__(f"Dispatch note not found: {dispatch_note_id}")


# Dispatch errors


class DispatchError(MagistralError):
    """Base exception for dispatch note generation and reception."""

    code: str = "DISPATCH_ERROR"


class NoValidatedItemsError(DispatchError):
    """No line in state `valid` exists for the target pharmacy."""

    code: str = "NO_VALIDATED_ITEMS"

    def __init__(self, pharmacy_id: str):
        self.pharmacy_id = pharmacy_id
        super().__init__(
            f"No validated items to generate a dispatch note for pharmacy {pharmacy_id}"
        )


class DispatchNoteNotActiveError(DispatchError):
    """Reception attempted on a note that is no longer Active."""

    code: str = "DISPATCH_NOTE_NOT_ACTIVE"

    def __init__(self, dispatch_note_id: str, status: str):
        self.dispatch_note_id = dispatch_note_id
        self.status = status
        super().__init__(
            f"Dispatch note {dispatch_note_id} is {status}, expected Active"
        )


class DispatchNoteAlreadyReceivedError(DispatchNoteNotActiveError):
    """The note was already received; reception happens exactly once."""

    code: str = "DISPATCH_NOTE_ALREADY_RECEIVED"

    def __init__(self, dispatch_note_id: str):
        super().__init__(dispatch_note_id, "received")


# Transaction errors


class TransactionError(MagistralError):
    """Base exception for side effects whose failure aborts a transition."""

    code: str = "TRANSACTION_ERROR"


class ControlledLedgerWriteError(TransactionError):
    """The controlled-substance ledger append failed; dispensation not committed."""

    code: str = "CONTROLLED_LEDGER_WRITE_FAILED"

    def __init__(self, prescription_id: str, detail: str):
        self.prescription_id = prescription_id
        self.detail = detail
        super().__init__(
            f"Controlled ledger write failed for {prescription_id}: {detail}"
        )


class NotificationError(TransactionError):
    """The outbound notification to the external pharmacy failed."""

    code: str = "NOTIFICATION_FAILED"

    def __init__(self, prescription_id: str, detail: str):
        self.prescription_id = prescription_id
        self.detail = detail
        super().__init__(
            f"Notification to external pharmacy failed for {prescription_id}: {detail}"
        )


# Concurrency errors


class ConcurrencyError(MagistralError):
    """Base exception for concurrent-operator conflicts."""

    code: str = "CONCURRENCY_ERROR"


class StaleAuditTrailError(ConcurrencyError):
    """Another operator appended to the same audit trail position first."""

    code: str = "STALE_AUDIT_TRAIL"

    def __init__(self, prescription_id: str, seq: int):
        self.prescription_id = prescription_id
        self.seq = seq
        super().__init__(
            f"Audit trail of {prescription_id} changed concurrently "
            f"(position {seq} already taken); reload and retry"
        )


# Immutability errors


class ImmutabilityError(MagistralError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted UPDATE or DELETE of an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
