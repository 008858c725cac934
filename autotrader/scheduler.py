"""APScheduler-based job scheduler and process lifecycle for the autotrader."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from autotrader.api.kite_client import KiteGateway
from autotrader.config import (
    DAILY_PNL_TIME,
    EXECUTION_DRY_RUN,
    HTTP_HOST,
    HTTP_PORT,
    ORDER_MONITOR_INTERVAL,
    RECONCILIATION_INTERVAL,
    SQUARE_OFF_POLL_INTERVAL,
    STORE_BACKEND,
)
from autotrader.execution.emergency_stop import EmergencyStopController
from autotrader.execution.gateway import BrokerGateway, PaperGateway
from autotrader.execution.orchestrator import TradeOrchestrator
from autotrader.execution.position_manager import PositionLifecycleManager
from autotrader.execution.reconciliation import ReconciliationValidator
from autotrader.intake import SignalIntake
from autotrader.jobs.daily_pnl import run_daily_pnl
from autotrader.jobs.order_monitor import run_order_monitor
from autotrader.jobs.reconciliation_sweep import run_reconciliation_sweep
from autotrader.jobs.square_off import AutoSquareOffScheduler
from autotrader.market_hours import MARKET_TZ, parse_hhmm
from autotrader.server import create_app
from autotrader.store import TradeStore, create_store

logger = logging.getLogger(__name__)


def build_gateway(store: TradeStore, dry_run: bool = EXECUTION_DRY_RUN) -> BrokerGateway:
    if dry_run:
        return PaperGateway()
    return KiteGateway(credentials=store.get_credentials)


class AutotraderScheduler:
    """Wires the execution core, registers jobs and serves HTTP until shutdown."""

    def __init__(
        self,
        store: Optional[TradeStore] = None,
        gateway: Optional[BrokerGateway] = None,
        dry_run: bool = EXECUTION_DRY_RUN,
    ) -> None:
        self.dry_run = dry_run
        self.store = store or create_store()
        self.gateway = gateway or build_gateway(self.store, dry_run)

        self.stop = EmergencyStopController(self.store, self.gateway)
        self.square_off = AutoSquareOffScheduler(self.store, self.stop)
        self.positions = PositionLifecycleManager(self.store, scheduler=self.square_off)
        self.orchestrator = TradeOrchestrator(self.store, self.gateway, self.positions, self.stop)
        self.validator = ReconciliationValidator(self.store, self.gateway, self.positions)
        self.square_off.orchestrator = self.orchestrator
        self.square_off.validator = self.validator
        self.intake = SignalIntake(self.store, self.orchestrator)

        self._scheduler = AsyncIOScheduler(timezone=MARKET_TZ)
        self._shutdown_event = asyncio.Event()
        self._http_runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Restore state, register jobs, serve HTTP and block until shutdown."""
        await self.stop.load()

        self._scheduler.add_job(
            self._job_square_off,
            "interval",
            seconds=SQUARE_OFF_POLL_INTERVAL,
            id="square_off",
            name="Auto Square-Off",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._job_order_monitor,
            "interval",
            seconds=ORDER_MONITOR_INTERVAL,
            id="order_monitor",
            name="Order Monitor",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._job_reconciliation,
            "interval",
            seconds=RECONCILIATION_INTERVAL,
            id="reconciliation",
            name="Reconciliation Sweep",
            max_instances=1,
            coalesce=True,
        )
        pnl_at = parse_hhmm(DAILY_PNL_TIME)
        self._scheduler.add_job(
            self._job_daily_pnl,
            "cron",
            day_of_week="mon-fri",
            hour=pnl_at.hour,
            minute=pnl_at.minute,
            id="daily_pnl",
            name="Daily P&L Snapshot",
        )

        self._scheduler.start()
        logger.info(
            "scheduler_started",
            extra={"mode": "DRY_RUN" if self.dry_run else "LIVE", "store": STORE_BACKEND},
        )

        await self._start_http_server()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        await self._shutdown_event.wait()
        await self._stop()

    async def _stop(self) -> None:
        logger.info("scheduler_stopping")
        self._scheduler.shutdown(wait=False)

        if self._http_runner:
            await self._http_runner.cleanup()

        await self.intake.drain()
        await self.gateway.close()
        await self.store.close()
        logger.info("scheduler_stopped")

    def _signal_handler(self) -> None:
        logger.info("shutdown_signal_received")
        self._shutdown_event.set()

    def status(self) -> dict:
        return {
            "mode": "DRY_RUN" if self.dry_run else "LIVE",
            "store": type(self.store).__name__,
            "scheduler_running": self._scheduler.running,
            "emergency_stop": self.stop.status(),
            "jobs": [job.id for job in self._scheduler.get_jobs()],
        }

    # ------------------------------------------------------------------
    # Job wrappers (catch exceptions so scheduler keeps running)
    # ------------------------------------------------------------------

    async def _job_square_off(self) -> None:
        try:
            await self.square_off.run_tick()
        except Exception:
            logger.error("square_off_error", exc_info=True)

    async def _job_order_monitor(self) -> None:
        try:
            await run_order_monitor(self.store, self.gateway, self.orchestrator, self.square_off)
        except Exception:
            logger.error("order_monitor_error", exc_info=True)

    async def _job_reconciliation(self) -> None:
        try:
            await run_reconciliation_sweep(self.store, self.validator)
        except Exception:
            logger.error("reconciliation_error", exc_info=True)

    async def _job_daily_pnl(self) -> None:
        try:
            await run_daily_pnl(self.store)
        except Exception:
            logger.error("daily_pnl_error", exc_info=True)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _start_http_server(self) -> None:
        app = create_app(self)
        self._http_runner = web.AppRunner(app)
        await self._http_runner.setup()
        site = web.TCPSite(self._http_runner, HTTP_HOST, HTTP_PORT)
        await site.start()
        logger.info("http_server_started", extra={"port": HTTP_PORT})
