"""ORM models for the stock kernel."""

from stock_kernel.models.balance import Lot, LotBalance, StockBalance
from stock_kernel.models.movement import LotMovementLine, MovementDocument, MovementLine
from stock_kernel.models.sequence import DocSequence

__all__ = [
    "DocSequence",
    "Lot",
    "LotBalance",
    "LotMovementLine",
    "MovementDocument",
    "MovementLine",
    "StockBalance",
]
