"""Job: end-of-day P&L snapshot.

Runs once after market close and writes one DailyPnLSnapshot per user:
realized P&L from exits dated today, unrealized P&L from positions still
open, a per-bot breakdown, and the charges on orders filled today (net P&L
is the gross total less those charges). A snapshot that already exists for the
user and date is left untouched.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Optional

from autotrader.market_hours import MARKET_TZ, market_now
from autotrader.models import DailyPnLSnapshot, ExecutionStatus, Position
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)


def _local_date(ts: datetime) -> date:
    return ts.astimezone(MARKET_TZ).date()


def build_snapshot(
    user_id: str,
    positions: list[Position],
    day: date,
    fees: float = 0.0,
) -> DailyPnLSnapshot:
    """Aggregate one user's positions into the snapshot for `day`.

    `fees` is the sum of charges on the user's fills dated `day`.
    """
    realized = 0.0
    unrealized = 0.0
    by_bot: dict[str, float] = defaultdict(float)
    open_count = 0
    closed_count = 0

    for pos in positions:
        day_realized = sum(
            ex.pnl
            for ex in pos.exit_executions
            if _local_date(ex.time) == day
        )
        realized += day_realized
        by_bot[pos.bot_id] += day_realized

        if pos.is_open:
            open_count += 1
            unrealized += pos.unrealized_pnl
            by_bot[pos.bot_id] += pos.unrealized_pnl
        elif pos.closed_at is not None and _local_date(pos.closed_at) == day:
            closed_count += 1

    return DailyPnLSnapshot(
        user_id=user_id,
        date=day,
        realized_pnl=round(realized, 2),
        unrealized_pnl=round(unrealized, 2),
        total_pnl=round(realized + unrealized, 2),
        fees=round(fees, 2),
        net_pnl=round(realized + unrealized - fees, 2),
        bot_pnl={k: round(v, 2) for k, v in by_bot.items()},
        open_positions=open_count,
        closed_positions=closed_count,
    )


async def _fees_on(store: TradeStore, user_id: str, day: date) -> float:
    fills = await store.list_executions(user_id=user_id, status=ExecutionStatus.EXECUTED, limit=100_000)
    return sum(
        ex.fees or 0.0
        for ex in fills
        if ex.executed_at is not None and _local_date(ex.executed_at) == day
    )


async def run_daily_pnl(store: TradeStore, day: Optional[date] = None) -> int:
    """Write today's snapshots. Returns the number of new rows."""
    day = day or market_now().date()
    by_user: dict[str, list[Position]] = defaultdict(list)
    for pos in await store.list_positions():
        if pos.is_open or (pos.closed_at is not None and _local_date(pos.closed_at) == day):
            by_user[pos.user_id].append(pos)

    written = 0
    for user_id, positions in by_user.items():
        fees = await _fees_on(store, user_id, day)
        snapshot = build_snapshot(user_id, positions, day, fees=fees)
        if await store.insert_daily_snapshot(snapshot):
            written += 1
        else:
            logger.info("daily_pnl_exists", extra={"user_id": user_id, "date": day.isoformat()})

    logger.info("daily_pnl_complete", extra={"date": day.isoformat(), "users": len(by_user), "written": written})
    return written
