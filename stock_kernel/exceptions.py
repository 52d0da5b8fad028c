"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A warehouse operator deciding what to do next needs to know *which* product
ran short, *which* status blocked an approval, *which* reversal already
exists.  Callers must be able to branch on the failure kind without parsing
message strings, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - RIGHT way:
    try:
        posting_engine.post(movement_id, actor_id)
    except InsufficientStockError as e:
        notify(f"{e.item_label} short by {e.shortfall} at {e.location_id}")

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockKernelError (base)
    |
    +-- ValidationError
    |   +-- AuthorizationError
    |
    +-- MovementNotFoundError
    +-- StateConflictError
    +-- InsufficientStockError
    +-- DuplicateOperationError
    +-- SequenceNotConfiguredError
    +-- InfrastructureError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                      | When Raised
--------------------------|-----------------------------------------------------
VALIDATION_FAILED         | Missing fields, empty lines, bad qty, unknown entity
UNAUTHORIZED              | No actor supplied to a mutating entry point
MOVEMENT_NOT_FOUND        | Movement id does not exist
STATE_CONFLICT            | Transition not allowed from the current status
INSUFFICIENT_STOCK        | Decrement would drive a balance negative
DUPLICATE_OPERATION       | Reversal requested while an active one exists
SEQUENCE_NOT_CONFIGURED   | No doc_sequences row for the requested doc type
INFRASTRUCTURE_ERROR      | Timeout / connection loss; safe to retry

===============================================================================
HANDLING PATTERNS
===============================================================================

Kernel services raise.  The operation boundary
(``stock_services.movement_actions.MovementActions``) catches
``StockKernelError`` and converts it into a structured ``ActionResult``;
batch runs localize every one of these kinds to the failing id.
"""

from decimal import Decimal


class StockKernelError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "STOCK_KERNEL_ERROR"
    retryable: bool = False


class ValidationError(StockKernelError):
    """Input failed validation; never retried."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class AuthorizationError(ValidationError):
    """A mutating entry point was called without a valid actor."""

    code: str = "UNAUTHORIZED"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Not authenticated: an actor is required to {operation}")


class MovementNotFoundError(StockKernelError):
    """Movement document with given ID was not found."""

    code: str = "MOVEMENT_NOT_FOUND"

    def __init__(self, movement_id: str):
        self.movement_id = movement_id
        super().__init__(f"Movement not found: {movement_id}")


class StateConflictError(StockKernelError):
    """
    Transition attempted from an invalid current status.

    Examples: approving a DRAFT, posting an already POSTED document,
    editing a SUBMITTED document.
    """

    code: str = "STATE_CONFLICT"

    def __init__(
        self,
        doc_number: str,
        current_status: str,
        action: str,
        detail: str | None = None,
    ):
        self.doc_number = doc_number
        self.current_status = current_status
        self.action = action
        message = f"Cannot {action} movement {doc_number} in status {current_status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InsufficientStockError(StockKernelError):
    """
    A decrement would drive a stock or lot balance below zero.

    Aborts the whole posting; no line of the document is applied.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        item_label: str,
        location_id: str,
        available: Decimal,
        requested: Decimal,
    ):
        self.item_label = item_label
        self.location_id = location_id
        self.available = available
        self.requested = requested
        self.shortfall = requested - available
        super().__init__(
            f"Insufficient stock for {item_label} at location {location_id}: "
            f"available {available}, requested {requested}, short {self.shortfall}"
        )


class DuplicateOperationError(StockKernelError):
    """A reversal was requested for a document that already has an active one."""

    code: str = "DUPLICATE_OPERATION"

    def __init__(self, doc_number: str, existing_doc_number: str, existing_id: str):
        self.doc_number = doc_number
        self.existing_doc_number = existing_doc_number
        self.existing_id = existing_id
        super().__init__(
            f"Movement {doc_number} already has an active reversal "
            f"{existing_doc_number}"
        )


class SequenceNotConfiguredError(StockKernelError):
    """No counter row exists for the requested document type."""

    code: str = "SEQUENCE_NOT_CONFIGURED"

    def __init__(self, doc_type: str):
        self.doc_type = doc_type
        super().__init__(f"No document sequence configured for doc type {doc_type}")


class InfrastructureError(StockKernelError):
    """
    Transaction timeout, lock timeout, or connection loss.

    The transaction guarantees no partial effect was committed, so the
    caller may retry the whole operation.
    """

    code: str = "INFRASTRUCTURE_ERROR"
    retryable: bool = True

    def __init__(self, operation: str, cause: str):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed due to a database error; please retry")
