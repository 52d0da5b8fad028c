"""Read-only selectors for the stock kernel."""

from stock_kernel.selectors.balance_selector import BalanceSelector
from stock_kernel.selectors.base import BaseSelector
from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.selectors.return_selector import ReturnSelector

__all__ = [
    "BalanceSelector",
    "BaseSelector",
    "MovementSelector",
    "ReturnSelector",
]
