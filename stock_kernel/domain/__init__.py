"""
Pure domain layer.

Enums, the movement state machine, posting and reversal rules, DTOs and
collaborator ports.  Nothing here touches the database or the system clock
(SystemClock aside).
"""

from stock_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from stock_kernel.domain.dtos import (
    BalanceKey,
    BatchItemResult,
    BatchResult,
    CountedQuantity,
    IssueWithRemaining,
    LineInput,
    LotBalanceView,
    MovementInput,
    MovementLineView,
    MovementFilter,
    MovementUpdate,
    MovementView,
    Page,
    PostingResult,
    ProductMovementEntry,
    ReturnableLine,
    ReturnLineRequest,
    StockBalanceView,
)
from stock_kernel.domain.movement import (
    EDITABLE_STATUSES,
    INACTIVE_STATUSES,
    MOVEMENT_WORKFLOW,
    REVERSE_TYPES,
    BalanceDelta,
    DocStatus,
    DocumentLink,
    LinkKind,
    MovementType,
)
from stock_kernel.domain.ports import (
    Actor,
    AuditRecord,
    AuditSink,
    CatalogReader,
    LoggingAuditSink,
    LoggingNotificationSink,
    MovementNotification,
    NotificationSink,
    StaticCatalog,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "BalanceKey",
    "BatchItemResult",
    "BatchResult",
    "CountedQuantity",
    "IssueWithRemaining",
    "LineInput",
    "LotBalanceView",
    "MovementInput",
    "MovementLineView",
    "MovementFilter",
    "MovementUpdate",
    "MovementView",
    "Page",
    "PostingResult",
    "ProductMovementEntry",
    "ReturnableLine",
    "ReturnLineRequest",
    "StockBalanceView",
    "EDITABLE_STATUSES",
    "INACTIVE_STATUSES",
    "MOVEMENT_WORKFLOW",
    "REVERSE_TYPES",
    "BalanceDelta",
    "DocStatus",
    "DocumentLink",
    "LinkKind",
    "MovementType",
    "Actor",
    "AuditRecord",
    "AuditSink",
    "CatalogReader",
    "LoggingAuditSink",
    "LoggingNotificationSink",
    "MovementNotification",
    "NotificationSink",
    "StaticCatalog",
]
