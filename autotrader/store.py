"""Persistence for signals, the execution ledger and positions.

Two backends share one interface:
- InMemoryTradeStore: process-local dicts, used for tests and paper runs
- ClickHouseTradeStore: ReplacingMergeTree tables read with FINAL

Every read returns a copy. Callers mutate the copy and write it back, and
position writes carry an expected version so a stale copy is rejected
instead of silently overwriting a newer state.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from datetime import date, datetime
from typing import Any, Optional, TypeVar

import clickhouse_connect
from clickhouse_connect.driver.client import Client
from pydantic import BaseModel

from autotrader.config import (
    CLICKHOUSE_DATABASE,
    CLICKHOUSE_HOST,
    CLICKHOUSE_PASSWORD,
    CLICKHOUSE_PORT,
    CLICKHOUSE_SECURE,
    CLICKHOUSE_USER,
    STORE_BACKEND,
    WRITER_BASE_BACKOFF,
    WRITER_MAX_RETRIES,
)
from autotrader.errors import ConcurrentModificationError, InvalidTransitionError
from autotrader.models import (
    Bot,
    BrokerCredentials,
    DailyPnLSnapshot,
    ExecutionStatus,
    Position,
    PositionStatus,
    TradeExecution,
    TradeType,
    UserBotAllocation,
    WebhookSignal,
    utcnow,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

GLOBAL_SCOPE = "__global__"


def _check_ledger_write(stored: TradeExecution, incoming: TradeExecution) -> None:
    # A terminal row may only be rewritten with its own status (pnl/fees updates)
    if stored.is_terminal and incoming.status != stored.status:
        raise InvalidTransitionError(
            f"{stored.execution_id}: already {stored.status.value}, "
            f"cannot become {incoming.status.value}"
        )


class TradeStore(abc.ABC):
    """Interface shared by the storage backends."""

    def __init__(self) -> None:
        self._claim_lock = asyncio.Lock()

    # -- signals ---------------------------------------------------------

    @abc.abstractmethod
    async def insert_signal(self, signal: WebhookSignal) -> None: ...

    @abc.abstractmethod
    async def update_signal(self, signal: WebhookSignal) -> None: ...

    @abc.abstractmethod
    async def get_signal(self, signal_id: str) -> Optional[WebhookSignal]: ...

    # -- bots and allocations (read-mostly) -----------------------------

    @abc.abstractmethod
    async def upsert_bot(self, bot: Bot) -> None: ...

    @abc.abstractmethod
    async def get_bot(self, bot_id: str) -> Optional[Bot]: ...

    @abc.abstractmethod
    async def upsert_allocation(self, allocation: UserBotAllocation) -> None: ...

    @abc.abstractmethod
    async def list_allocations(self, bot_id: str, active_only: bool = True) -> list[UserBotAllocation]: ...

    # -- execution ledger ------------------------------------------------

    @abc.abstractmethod
    async def insert_execution(self, execution: TradeExecution) -> None: ...

    @abc.abstractmethod
    async def update_execution(self, execution: TradeExecution) -> None:
        """Overwrite a ledger row; terminal rows cannot change status."""

    @abc.abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[TradeExecution]: ...

    @abc.abstractmethod
    async def find_execution(self, signal_id: str, user_id: str) -> Optional[TradeExecution]:
        """The ledger row for one (signal, user), if any."""

    @abc.abstractmethod
    async def list_executions(
        self,
        *,
        signal_id: Optional[str] = None,
        user_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 500,
    ) -> list[TradeExecution]: ...

    @abc.abstractmethod
    async def count_user_trades_since(self, user_id: str, bot_id: str, since: datetime) -> int:
        """Entries submitted or filled for (user, bot) at or after `since`."""

    # -- positions -------------------------------------------------------

    @abc.abstractmethod
    async def insert_position(self, position: Position) -> None: ...

    @abc.abstractmethod
    async def get_position(self, position_id: str) -> Optional[Position]: ...

    @abc.abstractmethod
    async def update_position(self, position: Position, expected_version: int) -> Position:
        """Write `position` if the stored version still equals `expected_version`.

        Returns the stored copy with its version incremented.

        Raises:
            ConcurrentModificationError: the stored row moved on.
        """

    @abc.abstractmethod
    async def list_positions(
        self,
        *,
        user_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        open_only: bool = False,
    ) -> list[Position]: ...

    async def find_open_position(
        self, user_id: str, bot_id: str, symbol: str, exchange: str,
    ) -> Optional[Position]:
        for pos in await self.list_positions(user_id=user_id, bot_id=bot_id, open_only=True):
            if pos.slot_symbol == symbol and pos.exchange == exchange:
                return pos
        return None

    async def list_square_off_candidates(self) -> list[Position]:
        """Open intraday positions with an exit time that nobody has claimed."""
        return [
            p for p in await self.list_positions(open_only=True)
            if p.is_intraday and p.scheduled_exit_time and not p.auto_square_off_scheduled
        ]

    async def claim_square_off(self, position_id: str) -> Optional[Position]:
        """Atomically set the square-off flag. None if someone else holds it."""
        async with self._claim_lock:
            pos = await self.get_position(position_id)
            if pos is None or not pos.is_open or pos.auto_square_off_scheduled:
                return None
            pos.auto_square_off_scheduled = True
            pos.square_off_attempts += 1
            try:
                return await self.update_position(pos, expected_version=pos.version)
            except ConcurrentModificationError:
                logger.info("square_off_claim_conflict", extra={"position_id": position_id})
                return None

    async def release_square_off(self, position_id: str) -> None:
        """Clear the square-off flag so a later poll can retry."""
        async with self._claim_lock:
            pos = await self.get_position(position_id)
            if pos is None or not pos.is_open or not pos.auto_square_off_scheduled:
                return
            pos.auto_square_off_scheduled = False
            await self.update_position(pos, expected_version=pos.version)

    # -- emergency stop state -------------------------------------------

    @abc.abstractmethod
    async def save_stop_state(self, global_stop: bool, stopped_bots: set[str]) -> None: ...

    @abc.abstractmethod
    async def load_stop_state(self) -> tuple[bool, set[str]]: ...

    # -- daily P&L -------------------------------------------------------

    @abc.abstractmethod
    async def get_daily_snapshot(self, user_id: str, day: date) -> Optional[DailyPnLSnapshot]: ...

    @abc.abstractmethod
    async def _write_daily_snapshot(self, snapshot: DailyPnLSnapshot) -> None: ...

    async def insert_daily_snapshot(self, snapshot: DailyPnLSnapshot) -> bool:
        """Write once per (user, date). Returns False if a row already exists."""
        if await self.get_daily_snapshot(snapshot.user_id, snapshot.date) is not None:
            return False
        await self._write_daily_snapshot(snapshot)
        return True

    # -- broker credentials ---------------------------------------------

    @abc.abstractmethod
    async def upsert_credentials(self, credentials: BrokerCredentials) -> None: ...

    @abc.abstractmethod
    async def get_credentials(self, user_id: str) -> Optional[BrokerCredentials]: ...

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryTradeStore(TradeStore):
    """Dict-backed store with the same copy and version semantics as ClickHouse."""

    def __init__(self) -> None:
        super().__init__()
        self.signals: dict[str, WebhookSignal] = {}
        self.bots: dict[str, Bot] = {}
        self.allocations: dict[str, UserBotAllocation] = {}
        self.executions: dict[str, TradeExecution] = {}
        self.positions: dict[str, Position] = {}
        self.snapshots: dict[tuple[str, date], DailyPnLSnapshot] = {}
        self.credentials: dict[str, BrokerCredentials] = {}
        self._global_stop = False
        self._stopped_bots: set[str] = set()

    @staticmethod
    def _copy(model: M) -> M:
        return model.model_copy(deep=True)

    async def insert_signal(self, signal: WebhookSignal) -> None:
        self.signals[signal.signal_id] = self._copy(signal)

    async def update_signal(self, signal: WebhookSignal) -> None:
        self.signals[signal.signal_id] = self._copy(signal)

    async def get_signal(self, signal_id: str) -> Optional[WebhookSignal]:
        sig = self.signals.get(signal_id)
        return self._copy(sig) if sig else None

    async def upsert_bot(self, bot: Bot) -> None:
        self.bots[bot.bot_id] = self._copy(bot)

    async def get_bot(self, bot_id: str) -> Optional[Bot]:
        bot = self.bots.get(bot_id)
        return self._copy(bot) if bot else None

    async def upsert_allocation(self, allocation: UserBotAllocation) -> None:
        self.allocations[allocation.allocation_id] = self._copy(allocation)

    async def list_allocations(self, bot_id: str, active_only: bool = True) -> list[UserBotAllocation]:
        return [
            self._copy(a) for a in self.allocations.values()
            if a.bot_id == bot_id and (a.is_active or not active_only)
        ]

    async def insert_execution(self, execution: TradeExecution) -> None:
        self.executions[execution.execution_id] = self._copy(execution)

    async def update_execution(self, execution: TradeExecution) -> None:
        stored = self.executions.get(execution.execution_id)
        if stored is not None:
            _check_ledger_write(stored, execution)
        self.executions[execution.execution_id] = self._copy(execution)

    async def get_execution(self, execution_id: str) -> Optional[TradeExecution]:
        ex = self.executions.get(execution_id)
        return self._copy(ex) if ex else None

    async def find_execution(self, signal_id: str, user_id: str) -> Optional[TradeExecution]:
        for ex in self.executions.values():
            if ex.signal_id == signal_id and ex.user_id == user_id:
                return self._copy(ex)
        return None

    async def list_executions(
        self,
        *,
        signal_id: Optional[str] = None,
        user_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 500,
    ) -> list[TradeExecution]:
        out = [
            ex for ex in self.executions.values()
            if (signal_id is None or ex.signal_id == signal_id)
            and (user_id is None or ex.user_id == user_id)
            and (bot_id is None or ex.bot_id == bot_id)
            and (status is None or ex.status == status)
        ]
        out.sort(key=lambda ex: ex.created_at, reverse=True)
        return [self._copy(ex) for ex in out[:limit]]

    async def count_user_trades_since(self, user_id: str, bot_id: str, since: datetime) -> int:
        return sum(
            1 for ex in self.executions.values()
            if ex.user_id == user_id
            and ex.bot_id == bot_id
            and ex.trade_type == TradeType.ENTRY
            and ex.status in (ExecutionStatus.SUBMITTED, ExecutionStatus.EXECUTED)
            and ex.created_at >= since
        )

    async def insert_position(self, position: Position) -> None:
        self.positions[position.position_id] = self._copy(position)

    async def get_position(self, position_id: str) -> Optional[Position]:
        pos = self.positions.get(position_id)
        return self._copy(pos) if pos else None

    async def update_position(self, position: Position, expected_version: int) -> Position:
        stored = self.positions.get(position.position_id)
        if stored is None:
            raise ConcurrentModificationError(f"{position.position_id}: not found")
        if stored.version != expected_version:
            raise ConcurrentModificationError(
                f"{position.position_id}: expected version {expected_version}, found {stored.version}"
            )
        saved = self._copy(position)
        saved.version = expected_version + 1
        saved.updated_at = utcnow()
        self.positions[position.position_id] = saved
        return self._copy(saved)

    async def list_positions(
        self,
        *,
        user_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        open_only: bool = False,
    ) -> list[Position]:
        return [
            self._copy(p) for p in self.positions.values()
            if (user_id is None or p.user_id == user_id)
            and (bot_id is None or p.bot_id == bot_id)
            and (not open_only or p.status != PositionStatus.CLOSED)
        ]

    async def save_stop_state(self, global_stop: bool, stopped_bots: set[str]) -> None:
        self._global_stop = global_stop
        self._stopped_bots = set(stopped_bots)

    async def load_stop_state(self) -> tuple[bool, set[str]]:
        return self._global_stop, set(self._stopped_bots)

    async def get_daily_snapshot(self, user_id: str, day: date) -> Optional[DailyPnLSnapshot]:
        snap = self.snapshots.get((user_id, day))
        return self._copy(snap) if snap else None

    async def _write_daily_snapshot(self, snapshot: DailyPnLSnapshot) -> None:
        self.snapshots[(snapshot.user_id, snapshot.date)] = self._copy(snapshot)

    async def upsert_credentials(self, credentials: BrokerCredentials) -> None:
        self.credentials[credentials.user_id] = self._copy(credentials)

    async def get_credentials(self, user_id: str) -> Optional[BrokerCredentials]:
        creds = self.credentials.get(user_id)
        return self._copy(creds) if creds else None


# ---------------------------------------------------------------------------
# ClickHouse backend
# ---------------------------------------------------------------------------

# Each table keeps its filter keys as columns and the full record as JSON
TABLE_COLUMNS: dict[str, list[str]] = {
    "signals": ["signal_id", "bot_id", "processed", "created_at", "data", "version"],
    "bots": ["bot_id", "is_active", "data", "version"],
    "allocations": ["allocation_id", "bot_id", "user_id", "is_active", "data", "version"],
    "executions": [
        "execution_id", "signal_id", "user_id", "bot_id",
        "status", "trade_type", "created_at", "data", "version",
    ],
    "positions": [
        "position_id", "user_id", "bot_id", "symbol", "exchange", "status",
        "is_intraday", "auto_square_off_scheduled", "created_at", "data", "version",
    ],
    "emergency_stops": ["scope", "active", "updated_at", "version"],
    "daily_pnl_snapshots": ["user_id", "date", "data", "created_at"],
    "broker_credentials": ["user_id", "data", "version"],
}


def _row_version() -> int:
    return time.time_ns()


class ClickHouseTradeStore(TradeStore):
    """ClickHouse-backed store.

    Writes go straight to the table with retry and reconnect (no buffering:
    the ledger must be readable immediately after a transition). Reads use
    FINAL so only the latest version of each row is seen. Version checks
    for positions run under a process-wide lock since this engine is the
    only writer.
    """

    def __init__(self) -> None:
        super().__init__()
        self._client: Client | None = None
        self._write_lock = asyncio.Lock()

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = clickhouse_connect.get_client(
                host=CLICKHOUSE_HOST,
                port=CLICKHOUSE_PORT,
                username=CLICKHOUSE_USER,
                password=CLICKHOUSE_PASSWORD,
                database=CLICKHOUSE_DATABASE,
                secure=CLICKHOUSE_SECURE,
                compress="lz4",
                connect_timeout=30,
                send_receive_timeout=300,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _insert_with_retry(self, table: str, rows: list[list[Any]]) -> None:
        columns = TABLE_COLUMNS[table]
        backoff = WRITER_BASE_BACKOFF

        for attempt in range(1, WRITER_MAX_RETRIES + 1):
            try:
                client = self._get_client()
                await asyncio.to_thread(
                    client.insert, table, rows, column_names=columns,
                )
                return
            except Exception:
                logger.warning(
                    "insert_retry",
                    extra={
                        "table": table,
                        "attempt": attempt,
                        "backoff": backoff,
                        "rows": len(rows),
                    },
                    exc_info=True,
                )
                if attempt == WRITER_MAX_RETRIES:
                    logger.error(
                        "insert_failed",
                        extra={"table": table, "rows": len(rows)},
                    )
                    raise
                await asyncio.sleep(backoff)
                backoff *= 2
                # Reconnect on next attempt
                self._client = None

    async def _select(
        self,
        model: type[M],
        sql: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> list[M]:
        client = self._get_client()
        result = await asyncio.to_thread(client.query, sql, parameters=parameters or {})
        return [model.model_validate_json(row[0]) for row in result.result_rows]

    async def _select_one(
        self,
        model: type[M],
        sql: str,
        parameters: dict[str, Any],
    ) -> Optional[M]:
        rows = await self._select(model, sql, parameters)
        return rows[0] if rows else None

    @staticmethod
    def _where(filters: dict[str, tuple[str, Any]]) -> tuple[str, dict[str, Any]]:
        clauses, params = [], {}
        for column, (ch_type, value) in filters.items():
            if value is None:
                continue
            clauses.append(f"{column} = {{{column}:{ch_type}}}")
            params[column] = value
        where = " AND ".join(clauses) if clauses else "1"
        return where, params

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    async def _write_signal(self, signal: WebhookSignal) -> None:
        await self._insert_with_retry("signals", [[
            signal.signal_id, signal.bot_id, int(signal.processed),
            signal.created_at, signal.model_dump_json(), _row_version(),
        ]])

    async def insert_signal(self, signal: WebhookSignal) -> None:
        await self._write_signal(signal)

    async def update_signal(self, signal: WebhookSignal) -> None:
        await self._write_signal(signal)

    async def get_signal(self, signal_id: str) -> Optional[WebhookSignal]:
        return await self._select_one(
            WebhookSignal,
            "SELECT data FROM signals FINAL WHERE signal_id = {sid:String}",
            {"sid": signal_id},
        )

    # ------------------------------------------------------------------
    # Bots and allocations
    # ------------------------------------------------------------------

    async def upsert_bot(self, bot: Bot) -> None:
        await self._insert_with_retry("bots", [[
            bot.bot_id, int(bot.is_active), bot.model_dump_json(), _row_version(),
        ]])

    async def get_bot(self, bot_id: str) -> Optional[Bot]:
        return await self._select_one(
            Bot, "SELECT data FROM bots FINAL WHERE bot_id = {bid:String}", {"bid": bot_id},
        )

    async def upsert_allocation(self, allocation: UserBotAllocation) -> None:
        await self._insert_with_retry("allocations", [[
            allocation.allocation_id, allocation.bot_id, allocation.user_id,
            int(allocation.is_active), allocation.model_dump_json(), _row_version(),
        ]])

    async def list_allocations(self, bot_id: str, active_only: bool = True) -> list[UserBotAllocation]:
        sql = "SELECT data FROM allocations FINAL WHERE bot_id = {bid:String}"
        if active_only:
            sql += " AND is_active = 1"
        return await self._select(UserBotAllocation, sql, {"bid": bot_id})

    # ------------------------------------------------------------------
    # Execution ledger
    # ------------------------------------------------------------------

    async def _write_execution(self, ex: TradeExecution) -> None:
        await self._insert_with_retry("executions", [[
            ex.execution_id, ex.signal_id or "", ex.user_id, ex.bot_id,
            ex.status.value, ex.trade_type.value, ex.created_at,
            ex.model_dump_json(), _row_version(),
        ]])

    async def insert_execution(self, execution: TradeExecution) -> None:
        await self._write_execution(execution)

    async def update_execution(self, execution: TradeExecution) -> None:
        async with self._write_lock:
            stored = await self.get_execution(execution.execution_id)
            if stored is not None:
                _check_ledger_write(stored, execution)
            await self._write_execution(execution)

    async def get_execution(self, execution_id: str) -> Optional[TradeExecution]:
        return await self._select_one(
            TradeExecution,
            "SELECT data FROM executions FINAL WHERE execution_id = {eid:String}",
            {"eid": execution_id},
        )

    async def find_execution(self, signal_id: str, user_id: str) -> Optional[TradeExecution]:
        return await self._select_one(
            TradeExecution,
            """
            SELECT data FROM executions FINAL
            WHERE signal_id = {sid:String} AND user_id = {uid:String}
            ORDER BY created_at
            LIMIT 1
            """,
            {"sid": signal_id, "uid": user_id},
        )

    async def list_executions(
        self,
        *,
        signal_id: Optional[str] = None,
        user_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 500,
    ) -> list[TradeExecution]:
        where, params = self._where({
            "signal_id": ("String", signal_id),
            "user_id": ("String", user_id),
            "bot_id": ("String", bot_id),
            "status": ("String", status.value if status else None),
        })
        params["lim"] = limit
        return await self._select(
            TradeExecution,
            f"SELECT data FROM executions FINAL WHERE {where} "
            "ORDER BY created_at DESC LIMIT {lim:UInt32}",
            params,
        )

    async def count_user_trades_since(self, user_id: str, bot_id: str, since: datetime) -> int:
        client = self._get_client()
        result = await asyncio.to_thread(
            client.query,
            """
            SELECT count() FROM executions FINAL
            WHERE user_id = {uid:String}
              AND bot_id = {bid:String}
              AND trade_type = 'ENTRY'
              AND status IN ('SUBMITTED', 'EXECUTED')
              AND created_at >= {since:DateTime64(3)}
            """,
            parameters={"uid": user_id, "bid": bot_id, "since": since},
        )
        return int(result.result_rows[0][0]) if result.result_rows else 0

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def _write_position(self, pos: Position) -> None:
        await self._insert_with_retry("positions", [[
            pos.position_id, pos.user_id, pos.bot_id, pos.symbol, pos.exchange,
            pos.status.value, int(pos.is_intraday), int(pos.auto_square_off_scheduled),
            pos.created_at, pos.model_dump_json(), pos.version,
        ]])

    async def insert_position(self, position: Position) -> None:
        await self._write_position(position)

    async def get_position(self, position_id: str) -> Optional[Position]:
        return await self._select_one(
            Position,
            "SELECT data FROM positions FINAL WHERE position_id = {pid:String}",
            {"pid": position_id},
        )

    async def update_position(self, position: Position, expected_version: int) -> Position:
        async with self._write_lock:
            stored = await self.get_position(position.position_id)
            if stored is None:
                raise ConcurrentModificationError(f"{position.position_id}: not found")
            if stored.version != expected_version:
                raise ConcurrentModificationError(
                    f"{position.position_id}: expected version {expected_version}, "
                    f"found {stored.version}"
                )
            saved = position.model_copy(deep=True)
            saved.version = expected_version + 1
            saved.updated_at = utcnow()
            await self._write_position(saved)
            return saved.model_copy(deep=True)

    async def list_positions(
        self,
        *,
        user_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        open_only: bool = False,
    ) -> list[Position]:
        where, params = self._where({
            "user_id": ("String", user_id),
            "bot_id": ("String", bot_id),
        })
        if open_only:
            where += " AND status != 'CLOSED'"
        return await self._select(
            Position,
            f"SELECT data FROM positions FINAL WHERE {where} ORDER BY created_at",
            params,
        )

    async def list_square_off_candidates(self) -> list[Position]:
        rows = await self._select(
            Position,
            """
            SELECT data FROM positions FINAL
            WHERE status != 'CLOSED'
              AND is_intraday = 1
              AND auto_square_off_scheduled = 0
            """,
        )
        return [p for p in rows if p.scheduled_exit_time]

    # ------------------------------------------------------------------
    # Emergency stop state
    # ------------------------------------------------------------------

    async def save_stop_state(self, global_stop: bool, stopped_bots: set[str]) -> None:
        _, previous = await self.load_stop_state()
        now = utcnow()
        version = _row_version()
        rows = [[GLOBAL_SCOPE, int(global_stop), now, version]]
        rows.extend([bot_id, 1, now, version] for bot_id in stopped_bots)
        rows.extend([bot_id, 0, now, version] for bot_id in previous - stopped_bots)
        await self._insert_with_retry("emergency_stops", rows)

    async def load_stop_state(self) -> tuple[bool, set[str]]:
        client = self._get_client()
        result = await asyncio.to_thread(
            client.query, "SELECT scope, active FROM emergency_stops FINAL",
        )
        global_stop = False
        bots: set[str] = set()
        for scope, active in result.result_rows:
            if scope == GLOBAL_SCOPE:
                global_stop = bool(active)
            elif active:
                bots.add(scope)
        return global_stop, bots

    # ------------------------------------------------------------------
    # Daily P&L
    # ------------------------------------------------------------------

    async def get_daily_snapshot(self, user_id: str, day: date) -> Optional[DailyPnLSnapshot]:
        return await self._select_one(
            DailyPnLSnapshot,
            """
            SELECT data FROM daily_pnl_snapshots FINAL
            WHERE user_id = {uid:String} AND date = {day:Date}
            """,
            {"uid": user_id, "day": day},
        )

    async def _write_daily_snapshot(self, snapshot: DailyPnLSnapshot) -> None:
        await self._insert_with_retry("daily_pnl_snapshots", [[
            snapshot.user_id, snapshot.date, snapshot.model_dump_json(), snapshot.created_at,
        ]])

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def upsert_credentials(self, credentials: BrokerCredentials) -> None:
        await self._insert_with_retry("broker_credentials", [[
            credentials.user_id, credentials.model_dump_json(), _row_version(),
        ]])

    async def get_credentials(self, user_id: str) -> Optional[BrokerCredentials]:
        return await self._select_one(
            BrokerCredentials,
            "SELECT data FROM broker_credentials FINAL WHERE user_id = {uid:String}",
            {"uid": user_id},
        )

    def run_migration(self, sql: str) -> None:
        """Execute raw SQL (for schema migration)."""
        client = self._get_client()
        for statement in sql.split(";"):
            statement = statement.strip()
            if statement:
                client.command(statement)
        logger.info("migration_complete")


def create_store(backend: str = STORE_BACKEND) -> TradeStore:
    if backend == "memory":
        return InMemoryTradeStore()
    if backend == "clickhouse":
        return ClickHouseTradeStore()
    raise ValueError(f"unknown store backend: {backend}")
