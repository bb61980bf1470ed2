"""
Tests for the weekly payout scheduler, driven by a fake clock and a stepping sleep
"""
import asyncio
import unittest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from common.error_handling import GatewayFailure, InsufficientBalance
from treasury_service.domain import PayoutStatus
from treasury_service.notifications import PayoutNotifier
from treasury_service.scheduler import PayoutScheduler

from tests.helpers import FIRST_FRIDAY, START, FakeClock, FakeGateway, make_ledger

WEEK = timedelta(days=7).total_seconds()

class SteppingSleep:
    """Advances the fake clock instead of waiting; blocks forever after `steps` sleeps."""

    def __init__(self, clock, steps):
        self.clock = clock
        self.steps = steps
        self.delays = []
        self.exhausted = asyncio.Event()

    async def __call__(self, delay):
        if len(self.delays) >= self.steps:
            self.exhausted.set()
            await asyncio.Event().wait()
        self.delays.append(delay)
        self.clock.advance(seconds=delay)
        await asyncio.sleep(0)

class RecordingNotifier(PayoutNotifier):
    def __init__(self):
        self.events = []

    async def payout_completed(self, payout):
        self.events.append(("completed", payout.id))

    async def payout_failed(self, payout, error):
        self.events.append(("failed", payout.id if payout else None))

    async def payout_skipped(self, result):
        self.events.append(("skipped", result.reason))

class SchedulerTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.gateway = FakeGateway()
        self.ledger = make_ledger(clock=self.clock, gateway=self.gateway)
        self.notifier = RecordingNotifier()

    def make_scheduler(self, steps):
        self.sleep = SteppingSleep(self.clock, steps)
        return PayoutScheduler(self.ledger, self.notifier, clock=self.clock, sleep=self.sleep)

class TestSchedulerLoop(SchedulerTestCase):

    async def test_runs_one_payout_per_week(self):
        """First tick pays the balance, the next finds nothing and skips"""
        self.ledger.record_revenue("txn-1", "100", "12.50")
        scheduler = self.make_scheduler(steps=2)

        self.assertTrue(scheduler.start())
        await asyncio.wait_for(self.sleep.exhausted.wait(), timeout=5)

        self.assertEqual(self.sleep.delays, [(FIRST_FRIDAY - START).total_seconds(), WEEK])
        self.assertEqual([e[0] for e in self.notifier.events], ["completed", "skipped"])
        self.assertEqual(self.ledger.pending_balance, Decimal("0.00"))
        self.assertEqual(self.ledger.next_payout_at, FIRST_FRIDAY + timedelta(days=14))
        self.assertGreater(self.ledger.next_payout_at, self.clock.now)
        self.assertTrue(scheduler.running)
        scheduler.stop()

    async def test_failed_tick_does_not_stop_the_loop(self):
        self.gateway.fail_with = ConnectionError("bank down")
        self.ledger.record_revenue("txn-1", "100", "12.50")
        scheduler = self.make_scheduler(steps=2)

        scheduler.start()
        await asyncio.wait_for(self.sleep.exhausted.wait(), timeout=5)

        self.assertEqual([e[0] for e in self.notifier.events], ["failed", "failed"])
        self.assertEqual([p.status for p in self.ledger.get_payout_history()],
                         [PayoutStatus.FAILED, PayoutStatus.FAILED])
        self.assertEqual(self.ledger.pending_balance, Decimal("12.50"))
        self.assertTrue(scheduler.running)
        scheduler.stop()

    async def test_start_and_stop_are_idempotent(self):
        scheduler = self.make_scheduler(steps=0)
        self.assertTrue(scheduler.start())
        self.assertFalse(scheduler.start())
        self.assertTrue(scheduler.running)
        self.assertTrue(scheduler.stop())
        self.assertFalse(scheduler.stop())
        self.assertFalse(scheduler.running)

    async def test_start_moves_missed_payout_forward(self):
        """Weeks missed while stopped coalesce: no catch-up tick, next payout is in the future"""
        scheduler = self.make_scheduler(steps=0)
        self.clock.now = FIRST_FRIDAY + timedelta(days=13)
        scheduler.start()
        self.assertEqual(self.ledger.next_payout_at, FIRST_FRIDAY + timedelta(days=14))
        scheduler.stop()

    async def test_stop_lets_in_flight_payout_finish(self):
        self.ledger.record_revenue("txn-1", "100", "12.50")
        release = self.gateway.hold()
        scheduler = self.make_scheduler(steps=1)

        scheduler.start()
        await asyncio.wait_for(self.gateway.started.wait(), timeout=5)
        scheduler.stop()
        release.set()
        while self.ledger.payout_in_progress:
            await asyncio.sleep(0)

        history = self.ledger.get_payout_history()
        self.assertEqual(history[0].status, PayoutStatus.COMPLETED)
        self.assertEqual(self.notifier.events, [("completed", history[0].id)])
        self.assertFalse(scheduler.running)

    async def test_tick_racing_manual_payout_waits_a_week(self):
        """A tick that finds a manual payout in flight pays nothing and sleeps until next week"""
        self.ledger.record_revenue("txn-1", "100", "12.50")
        release = self.gateway.hold()
        scheduler = self.make_scheduler(steps=1)
        manual = asyncio.ensure_future(scheduler.manual_trigger())
        await asyncio.wait_for(self.gateway.started.wait(), timeout=5)

        scheduler.start()
        await asyncio.wait_for(self.sleep.exhausted.wait(), timeout=5)

        self.assertEqual(self.sleep.delays, [(FIRST_FRIDAY - START).total_seconds()])
        self.assertEqual(self.ledger.next_payout_at, FIRST_FRIDAY + timedelta(days=7))
        self.assertTrue(self.ledger.payout_in_progress)
        self.assertEqual(self.notifier.events, [])

        release.set()
        result = await manual
        self.assertEqual(len(self.gateway.requests), 1)
        self.assertEqual([p.id for p in self.ledger.get_payout_history()], [result.payout.id])
        self.assertEqual(self.ledger.pending_balance, Decimal("0.00"))
        self.assertEqual(self.notifier.events, [("completed", result.payout.id)])
        self.assertTrue(scheduler.running)
        scheduler.stop()

    async def test_unexpected_error_is_contained(self):
        scheduler = self.make_scheduler(steps=0)
        with patch.object(self.ledger, "process_payout", side_effect=RuntimeError("boom")):
            result = await scheduler.execute_weekly_payout()
        self.assertIsNone(result)
        self.assertEqual(self.notifier.events, [("failed", None)])

class TestManualTrigger(SchedulerTestCase):

    async def test_manual_payout(self):
        self.ledger.record_revenue("txn-1", "100", "12.50")
        scheduler = self.make_scheduler(steps=0)
        result = await scheduler.manual_trigger(Decimal("2.50"))
        self.assertEqual(result.payout.amount, Decimal("2.50"))
        self.assertEqual(self.ledger.pending_balance, Decimal("10.00"))
        self.assertEqual(self.notifier.events, [("completed", result.payout.id)])

    async def test_manual_failure_alerts_and_raises(self):
        self.gateway.fail_with = ConnectionError("bank down")
        self.ledger.record_revenue("txn-1", "100", "12.50")
        scheduler = self.make_scheduler(steps=0)
        with self.assertRaises(GatewayFailure) as ctx:
            await scheduler.manual_trigger()
        self.assertEqual(self.notifier.events, [("failed", ctx.exception.payout.id)])

    async def test_rejected_amount_is_not_alerted(self):
        scheduler = self.make_scheduler(steps=0)
        with self.assertRaises(InsufficientBalance):
            await scheduler.manual_trigger(Decimal("50"))
        self.assertEqual(self.notifier.events, [])

class TestSchedulerStatus(SchedulerTestCase):

    async def test_status(self):
        self.ledger.record_revenue("txn-1", "100", "12.50")
        scheduler = self.make_scheduler(steps=0)
        status = scheduler.get_status().to_dict()
        self.assertFalse(status["running"])
        self.assertEqual(status["schedule_description"], "Every Friday at 08:00")
        self.assertEqual(status["timezone"], "America/New_York")
        self.assertEqual(datetime.fromisoformat(status["next_payout_at"]), FIRST_FRIDAY)
        self.assertIsNone(status["last_payout_at"])
        self.assertEqual(status["pending_balance"], "12.50")
        self.assertTrue(status["bank_account_configured"])
        self.assertFalse(status["payout_in_progress"])

        scheduler.start()
        self.assertTrue(scheduler.get_status().running)
        scheduler.stop()

if __name__ == "__main__":
    unittest.main()
