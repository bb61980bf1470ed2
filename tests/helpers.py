"""
Shared fakes for the treasury tests
"""
import asyncio
from datetime import datetime, timedelta, timezone

from treasury_service.bank_accounts import BankAccount, BankAccountRegistry
from treasury_service.cadence import WeeklyCadence
from treasury_service.gateway import TransferReceipt
from treasury_service.ledger import Ledger
from treasury_service.storage import InMemoryLedgerStore

# Wednesday; the next Friday 08:00 New York is 2026-10-16 12:00 UTC (EDT)
START = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
FIRST_FRIDAY = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)

CADENCE = WeeklyCadence(weekday=4, hour=8, minute=0, timezone="America/New_York")

class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now

class FakeGateway:
    """Async gateway double: succeeds by default, can fail, decline, or block until released."""

    def __init__(self, fail_with: Exception = None, decline: bool = False):
        self.fail_with = fail_with
        self.decline = decline
        self.requests = []
        self.started = asyncio.Event()
        self.release = None

    def hold(self):
        """Make the next transfer wait until release.set()"""
        self.release = asyncio.Event()
        return self.release

    async def transfer(self, request):
        self.requests.append(request)
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        if self.fail_with is not None:
            raise self.fail_with
        if self.decline:
            return TransferReceipt(success=False, message="account closed")
        return TransferReceipt(success=True, reference=f"ref-{len(self.requests)}")

def configured_registry() -> BankAccountRegistry:
    return BankAccountRegistry(BankAccount(
        account_holder="BeatMarket LLC",
        bank_name="First Test Bank",
        account_number="000123456789",
        routing_number="021000021",
    ))

def make_ledger(clock=None, gateway=None, store=None, registry=None, **kwargs) -> Ledger:
    return Ledger(
        registry=registry or configured_registry(),
        gateway=gateway or FakeGateway(),
        store=store or InMemoryLedgerStore(),
        cadence=CADENCE,
        clock=clock or FakeClock(),
        currency="USD",
        payout_method="ACH",
        arrival_days=3,
        **kwargs,
    )

class FakeProducer:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.messages = []
        self.flushes = 0

    def produce(self, topic, value):
        if self.failures:
            self.failures -= 1
            raise BufferError("local queue full")
        self.messages.append((topic, value))

    def flush(self):
        self.flushes += 1

class FakeMessage:
    def __init__(self, value: bytes, error=None):
        self._value = value
        self._error = error

    def value(self):
        return self._value

    def error(self):
        return self._error

class FakeConsumer:
    """Replays queued messages, then sets stop_event so consume() returns."""

    def __init__(self, messages, stop_event):
        self.messages = list(messages)
        self.stop_event = stop_event
        self.committed = []
        self.closed = False

    def poll(self, timeout):
        if not self.messages:
            self.stop_event.set()
            return None
        return self.messages.pop(0)

    def commit(self, message=None, asynchronous=True):
        self.committed.append(message)

    def close(self):
        self.closed = True
