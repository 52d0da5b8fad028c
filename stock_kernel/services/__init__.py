"""Services for the stock kernel (write side)."""

from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.batch_runner import BatchAction, BatchRunner
from stock_kernel.services.count_adjustment import CountAdjustmentService
from stock_kernel.services.movement_service import MovementService
from stock_kernel.services.posting_engine import PostingEngine
from stock_kernel.services.return_service import ReturnService
from stock_kernel.services.reversal_service import ReversalService
from stock_kernel.services.sequence_service import SequenceService

__all__ = [
    "BalanceStore",
    "BatchAction",
    "BatchRunner",
    "CountAdjustmentService",
    "MovementService",
    "PostingEngine",
    "ReturnService",
    "ReversalService",
    "SequenceService",
]
