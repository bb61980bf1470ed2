"""
API tests for the treasury admin surface
"""
import unittest
from unittest.mock import AsyncMock, Mock

from fastapi.testclient import TestClient

from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from common.error_handling import PayoutAlreadyInProgress
from treasury_service.bank_accounts import BankAccountRegistry
from treasury_service.gateway import TransferOutcomeUnknown
from treasury_service.main import create_app
from treasury_service.notifications import PayoutNotifier

from tests.helpers import FakeClock, FakeGateway, make_ledger

BANK_DETAILS = {
    "account_holder": "BeatMarket LLC",
    "bank_name": "First Test Bank",
    "account_number": "000123456789",
    "routing_number": "021000021",
}

class TreasuryApiTestCase(unittest.TestCase):

    def setUp(self):
        self.gateway = FakeGateway()
        self.ledger = make_ledger(clock=FakeClock(), gateway=self.gateway, registry=BankAccountRegistry())
        self.app = create_app(ledger=self.ledger, notifier=PayoutNotifier(), autostart=False,
                              consume_events=False)
        self.client = TestClient(self.app)

    def record(self, transaction_id="txn-1", gross="100", **extra):
        return self.client.post("/treasury/revenue",
                                json={"transaction_id": transaction_id, "gross_amount": gross, **extra})

class TestRevenueAndSnapshot(TreasuryApiTestCase):

    def test_empty_snapshot(self):
        response = self.client.get("/treasury/snapshot")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["pending_balance"], "0.00")
        self.assertFalse(body["bank_account"]["configured"])
        self.assertIsNotNone(body["next_payout_at"])
        self.assertIn("X-Trace-ID", response.headers)

    def test_record_revenue(self):
        response = self.record(commission="12.50", user_id="producer-1")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertFalse(body["duplicate"])
        self.assertEqual(body["entry"]["commission"], "12.50")
        self.assertEqual(body["treasury"]["pending_balance"], "12.50")

        again = self.record(commission="12.50").json()
        self.assertTrue(again["duplicate"])
        self.assertEqual(self.client.get("/treasury/snapshot").json()["total_revenue"], "100.00")

    def test_invalid_revenue(self):
        response = self.record(gross="0")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_AMOUNT")
        self.assertFalse(response.json()["success"])

        response = self.client.post("/treasury/revenue", json={"gross_amount": "10"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

class TestBankAccount(TreasuryApiTestCase):

    def test_update_redacts_numbers(self):
        response = self.client.post("/treasury/bank-account", json=BANK_DETAILS)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["bank_account"]["account_last4"], "6789")
        self.assertNotIn("000123456789", response.text)
        self.assertNotIn("021000021", self.client.get("/treasury/snapshot").text)

    def test_missing_numbers(self):
        response = self.client.post("/treasury/bank-account", json={"bank_name": "First Test Bank"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "MISSING_BANK_DETAILS")

class TestManualPayout(TreasuryApiTestCase):

    def test_skipped_without_account(self):
        self.record(commission="12.50")
        response = self.client.post("/treasury/payouts/manual-trigger")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["skipped"])
        self.assertEqual(body["reason"], "bank account not configured")
        self.assertEqual(body["treasury"]["pending_balance"], "12.50")

    def test_completed_payout_and_history(self):
        self.record(commission="12.50")
        self.client.post("/treasury/bank-account", json=BANK_DETAILS)

        response = self.client.post("/treasury/payouts/manual-trigger", json={})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["payout"]["amount"], "12.50")
        self.assertEqual(body["payout"]["bank_account_last4"], "6789")
        self.assertEqual(body["treasury"]["pending_balance"], "0.00")
        self.assertEqual(body["treasury"]["total_payouts"], "12.50")

        history = self.client.get("/treasury/payouts/history", params={"limit": 5}).json()
        self.assertEqual(history["count"], 1)
        self.assertEqual(history["payouts"][0]["status"], "completed")

    def test_forced_amount_above_balance(self):
        self.record(commission="20")
        self.client.post("/treasury/bank-account", json=BANK_DETAILS)
        response = self.client.post("/treasury/payouts/manual-trigger", json={"amount": "50"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INSUFFICIENT_BALANCE")
        self.assertEqual(self.client.get("/treasury/snapshot").json()["pending_balance"], "20.00")

    def test_gateway_failure(self):
        self.gateway.fail_with = ConnectionError("bank down")
        self.record(commission="12.50")
        self.client.post("/treasury/bank-account", json=BANK_DETAILS)

        response = self.client.post("/treasury/payouts/manual-trigger")

        self.assertEqual(response.status_code, 502)
        error = response.json()["error"]
        self.assertEqual(error["code"], "GATEWAY_FAILURE")
        self.assertEqual(error["context"]["payout"]["status"], "failed")
        self.assertEqual(self.client.get("/treasury/snapshot").json()["pending_balance"], "12.50")

    def test_open_circuit_is_unavailable(self):
        breaker = CircuitBreaker("bank-gateway", CircuitBreakerConfig(failure_threshold=1, reset_timeout=3600,
                                                                     success_threshold=1, timeout=None))
        ledger = make_ledger(clock=FakeClock(), gateway=self.gateway, breaker=breaker)
        client = TestClient(create_app(ledger=ledger, notifier=PayoutNotifier(), autostart=False,
                                       consume_events=False))
        client.post("/treasury/revenue", json={"transaction_id": "txn-1", "gross_amount": "100"})
        self.gateway.fail_with = ConnectionError("bank down")
        self.assertEqual(client.post("/treasury/payouts/manual-trigger").status_code, 502)

        response = client.post("/treasury/payouts/manual-trigger")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"]["code"], "CIRCUIT_BREAKER_OPEN")
        self.assertEqual(response.json()["error"]["context"]["payout"]["status"], "failed")

    def test_unanswered_transfer(self):
        self.gateway.fail_with = TransferOutcomeUnknown("read timed out")
        self.record(commission="12.50")
        self.client.post("/treasury/bank-account", json=BANK_DETAILS)

        response = self.client.post("/treasury/payouts/manual-trigger")

        self.assertEqual(response.status_code, 504)
        error = response.json()["error"]
        self.assertEqual(error["code"], "TRANSFER_OUTCOME_UNKNOWN")
        self.assertEqual(error["context"]["payout"]["status"], "processing")
        snapshot = self.client.get("/treasury/snapshot").json()
        self.assertEqual(snapshot["pending_balance"], "12.50")
        self.assertTrue(snapshot["payout_in_progress"])

    def test_payout_in_progress_conflict(self):
        scheduler = Mock()
        scheduler.manual_trigger = AsyncMock(side_effect=PayoutAlreadyInProgress("payout_busy"))
        client = TestClient(create_app(ledger=self.ledger, scheduler=scheduler, autostart=False,
                                       consume_events=False))
        response = client.post("/treasury/payouts/manual-trigger")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["context"]["payout_id"], "payout_busy")

class TestSchedulerEndpoints(TreasuryApiTestCase):

    def test_start_status_stop(self):
        with TestClient(self.app) as client:
            status = client.get("/treasury/scheduler/status").json()
            self.assertFalse(status["running"])
            self.assertEqual(status["schedule_description"], "Every Friday at 08:00")

            started = client.post("/treasury/scheduler/start").json()
            self.assertTrue(started["started"])
            self.assertTrue(started["status"]["running"])
            self.assertFalse(client.post("/treasury/scheduler/start").json()["started"])
            self.assertTrue(client.get("/health").json()["scheduler_running"])

            stopped = client.post("/treasury/scheduler/stop").json()
            self.assertTrue(stopped["stopped"])
            self.assertFalse(stopped["status"]["running"])

class TestPlans(TreasuryApiTestCase):

    def test_quote(self):
        response = self.client.get("/treasury/plans/monthly/quote")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["base_price"], "30.00")
        self.assertEqual(body["duration_days"], 30)

    def test_unknown_plan(self):
        response = self.client.get("/treasury/plans/lifetime/quote")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "UNKNOWN_PLAN")

    def test_health(self):
        self.assertTrue(self.client.get("/health").json()["ok"])

if __name__ == "__main__":
    unittest.main()
