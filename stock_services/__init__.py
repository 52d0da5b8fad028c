"""
stock_services -- operation boundary over the stock kernel.

``MovementActions`` owns sessions and transactions, converts kernel
exceptions into ``ActionResult`` values, and emits audit records and
notifications after commit.
"""

from stock_services.movement_actions import ActionResult, MovementActions

__all__ = ["ActionResult", "MovementActions"]
