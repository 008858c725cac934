"""Per-user order sizing from allocation capital and the bot's lot rule."""

from __future__ import annotations

import logging
from typing import Optional

from autotrader.models import Bot, SizingMethod, UserBotAllocation

logger = logging.getLogger(__name__)


def round_to_lot(quantity: float, lot_size: int) -> int:
    """Round down to a whole number of lots."""
    if lot_size <= 1:
        return max(int(quantity), 0)
    return max(int(quantity // lot_size) * lot_size, 0)


def compute_quantity(
    allocation: UserBotAllocation,
    bot: Bot,
    price: Optional[float],
) -> int:
    """Order quantity in units for one user's allocation.

    FIXED_QUANTITY uses `allocation.quantity` as a lot count when the bot
    trades in lots larger than one, else as units. RISK_PERCENTAGE risks
    `risk_percentage` of the allocated capital per trade at `price`.

    Returns 0 when the allocation cannot afford a single lot; the caller
    records that as a failed execution.
    """
    lot = bot.lot_size

    if allocation.position_sizing_method == SizingMethod.RISK_PERCENTAGE:
        if not price or price <= 0:
            logger.warning(
                "sizing_no_price",
                extra={"allocation_id": allocation.allocation_id, "bot_id": bot.bot_id},
            )
            return 0
        budget = allocation.allocated_amount * allocation.risk_percentage / 100.0
        return round_to_lot(budget / price, lot)

    units = allocation.quantity or 1
    return units * lot if lot > 1 else units
