"""
Automatic weekly payout scheduler

Sleeps until the ledger's next_payout_at, runs one payout, repeats. The
ledger owns next_payout_at and recomputes it after every attempt, so the
loop never keeps its own notion of time. Ticks run as separate shielded
tasks: stop() cancels the wait, never an issued transfer.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Set

from common.error_handling import BusinessLogicError, GatewayFailure
from common.tracing import treasury_tracer
from treasury_service.cadence import utcnow
from treasury_service.domain import PayoutResult
from treasury_service.ledger import Ledger
from treasury_service.notifications import PayoutNotifier

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class SchedulerStatus:
    running: bool
    schedule_description: str
    timezone: str
    next_payout_at: Optional[datetime]
    last_payout_at: Optional[datetime]
    pending_balance: Decimal
    bank_account_configured: bool
    payout_in_progress: bool

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "schedule_description": self.schedule_description,
            "timezone": self.timezone,
            "next_payout_at": self.next_payout_at.isoformat() if self.next_payout_at else None,
            "last_payout_at": self.last_payout_at.isoformat() if self.last_payout_at else None,
            "pending_balance": str(self.pending_balance),
            "bank_account_configured": self.bank_account_configured,
            "payout_in_progress": self.payout_in_progress,
        }

class PayoutScheduler:
    def __init__(self, ledger: Ledger, notifier: Optional[PayoutNotifier] = None,
                 clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self.ledger = ledger
        self.notifier = notifier or PayoutNotifier()
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Begin the weekly loop on the running event loop. Returns False if already running."""
        if self.running:
            logger.warning("Payout scheduler is already running")
            return False
        loop = asyncio.get_running_loop()
        next_payout = self.ledger.reschedule()
        self._task = loop.create_task(self._run(), name="payout-scheduler")
        logger.info("Payout scheduler started", extra={
            "schedule": self.ledger.cadence.describe(),
            "timezone": self.ledger.cadence.timezone,
            "next_scheduled_payout": next_payout.isoformat(),
        })
        return True

    def stop(self) -> bool:
        """Cancel the timer. An in-flight payout keeps running. Returns False if not running."""
        if not self.running:
            return False
        self._task.cancel()
        self._task = None
        logger.info("Payout scheduler stopped")
        return True

    async def _run(self):
        while True:
            delay = (self.ledger.next_payout_at - self._clock()).total_seconds()
            await self._sleep(max(delay, 0.0))
            if self.ledger.next_payout_at > self._clock():
                # woke early (clock drift or a manual payout moved the date)
                continue
            tick = asyncio.ensure_future(self.execute_weekly_payout())
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            await asyncio.shield(tick)

    async def execute_weekly_payout(self) -> Optional[PayoutResult]:
        """One scheduled tick. Never raises: failures are logged, alerted and left for the next tick."""
        logger.info("Scheduled payout triggered")
        with treasury_tracer.start_span("payout.scheduled_tick") as span:
            try:
                result = await self.ledger.process_payout()
            except GatewayFailure as e:
                span.set_error(e)
                await self.notifier.payout_failed(e.payout, e)
                return None
            except BusinessLogicError as e:
                logger.warning(f"Scheduled payout not attempted: {e.message}")
                return None
            except Exception as e:
                span.set_error(e)
                logger.exception("Unexpected error during scheduled payout")
                await self.notifier.payout_failed(None, e)
                return None

            span.add_tag("payout.status", result.status)
            await self._notify(result)
            return result

    async def manual_trigger(self, amount=None) -> PayoutResult:
        """Operator-initiated payout outside the cadence. Errors propagate to the caller."""
        logger.info("Manual payout trigger initiated", extra={
            "requested_amount": str(amount) if amount is not None else "full pending balance",
        })
        tick = asyncio.ensure_future(self.ledger.process_payout(amount))
        try:
            result = await asyncio.shield(tick)
        except GatewayFailure as e:
            await self.notifier.payout_failed(e.payout, e)
            raise
        await self._notify(result)
        return result

    async def _notify(self, result: PayoutResult):
        if result.skipped:
            await self.notifier.payout_skipped(result)
        else:
            await self.notifier.payout_completed(result.payout)

    def get_status(self) -> SchedulerStatus:
        snapshot = self.ledger.snapshot()
        return SchedulerStatus(
            running=self.running,
            schedule_description=self.ledger.cadence.describe(),
            timezone=self.ledger.cadence.timezone,
            next_payout_at=snapshot.next_payout_at,
            last_payout_at=snapshot.last_payout_at,
            pending_balance=snapshot.pending_balance,
            bank_account_configured=snapshot.bank_account["configured"],
            payout_in_progress=snapshot.payout_in_progress,
        )
