"""
Treasury ledger: the single source of truth for platform commission.

Every read-modify-write of LedgerState happens under one lock, so revenue can
be recorded from webhook handlers, the Kafka consumer thread and the event
loop at the same time. A payout claims the balance under that lock, calls the
bank gateway with the lock released, then settles under the lock again by
subtracting exactly the claimed amount. Revenue recorded while a transfer is
in flight therefore stays in the pending balance.

Only one payout may be in flight. A second caller gets PayoutAlreadyInProgress
instead of waiting, so a scheduled tick racing a manual trigger can never pay
the same balance twice. The rejected caller still moves next_payout_at past
now, so a losing scheduled tick waits for the next week.

A transfer the bank never answered stays processing with its balance claimed.
The next unforced payout resends that same record, so the bank sees the same
idempotency key, instead of opening a new one.

Store writes happen under the lock. With a blocking store (SQL) the async
payout path runs its locked sections in a worker thread, so a commit made by
the Kafka consumer thread never stalls the event loop.
"""
import asyncio
import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

from common.circuit_breaker import BANK_GATEWAY_CB_CONFIG, CircuitBreaker, CircuitBreakerException
from common.error_handling import (
    BusinessLogicError,
    ErrorCodes,
    GatewayFailure,
    InsufficientBalance,
    InvalidAmount,
    PayoutAlreadyInProgress,
    ServiceError,
)
from common.settings import settings
from common.tracing import treasury_tracer
from treasury_service.bank_accounts import BankAccountRegistry
from treasury_service.cadence import WeeklyCadence, utcnow
from treasury_service.commission import from_cents, to_cents
from treasury_service.domain import (
    SKIP_ACCOUNT_NOT_CONFIGURED,
    SKIP_NO_BALANCE,
    LedgerState,
    PayoutRecord,
    PayoutResult,
    PayoutStatus,
    RevenueEntry,
    RevenueRecordResult,
    RevenueType,
    TreasurySnapshot,
)
from treasury_service.gateway import BankTransferGateway, TransferOutcomeUnknown, TransferReceipt, TransferRequest
from treasury_service.storage import InMemoryLedgerStore, LedgerStore

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "transfer interrupted before the gateway confirmed it; reconcile with the bank"

class Ledger:
    def __init__(
        self,
        registry: BankAccountRegistry,
        gateway: BankTransferGateway,
        store: Optional[LedgerStore] = None,
        cadence: Optional[WeeklyCadence] = None,
        clock: Callable[[], datetime] = utcnow,
        breaker: Optional[CircuitBreaker] = None,
        currency: Optional[str] = None,
        payout_method: Optional[str] = None,
        arrival_days: Optional[int] = None,
    ):
        self._lock = threading.Lock()
        self._registry = registry
        self._gateway = gateway
        self._store = store or InMemoryLedgerStore()
        self._cadence = cadence or WeeklyCadence.from_settings()
        self._clock = clock
        self._breaker = breaker or CircuitBreaker("bank-gateway", BANK_GATEWAY_CB_CONFIG)
        self._currency = currency or settings.currency
        self._method = payout_method or settings.payout_method
        self._arrival_days = settings.payout_arrival_days if arrival_days is None else arrival_days
        self._in_flight: Optional[PayoutRecord] = None
        self._unconfirmed: Optional[Tuple[PayoutRecord, TransferRequest]] = None

        stored = self._store.load()
        self._state = stored.state or LedgerState()
        if not self._state.is_balanced():
            raise ServiceError(
                ErrorCodes.LEDGER_INCONSISTENT,
                f"stored ledger is unbalanced: pending={self._state.pending_balance_cents} "
                f"commissions={self._state.total_commissions_cents} payouts={self._state.total_payouts_cents}",
            )
        self._entries: List[RevenueEntry] = list(stored.entries)
        self._by_transaction = {e.transaction_id: e for e in self._entries}
        self._payouts: List[PayoutRecord] = list(stored.payouts)
        self._recover_interrupted_payouts()

        if self._state.next_payout_at is None or self._state.next_payout_at <= self._clock():
            self._state = replace(self._state, next_payout_at=self._cadence.next_after(self._clock()))
            self._store.save(self._state)

        logger.info("Treasury ledger initialized", extra={
            "pending_balance": str(from_cents(self._state.pending_balance_cents)),
            "next_payout_at": self._state.next_payout_at.isoformat(),
            "bank_account_configured": self._registry.configured,
        })

    def _recover_interrupted_payouts(self):
        for record in self._payouts:
            if record.status is PayoutStatus.PROCESSING:
                record.fail(self._clock(), INTERRUPTED_REASON)
                self._store.update_payout_record(record)
                logger.error(f"Payout {record.id} for {record.amount} was interrupted by a restart; "
                             f"marked failed, balance left pending")

    @property
    def cadence(self) -> WeeklyCadence:
        return self._cadence

    @property
    def registry(self) -> BankAccountRegistry:
        return self._registry

    @property
    def pending_balance(self):
        with self._lock:
            return from_cents(self._state.pending_balance_cents)

    @property
    def next_payout_at(self) -> datetime:
        with self._lock:
            return self._state.next_payout_at

    @property
    def payout_in_progress(self) -> bool:
        with self._lock:
            return self._in_flight is not None or self._unconfirmed is not None

    # Revenue

    def record_revenue(self, transaction_id: str, gross_amount, commission,
                       type=RevenueType.SALE, user_id: Optional[str] = None,
                       timestamp: Optional[datetime] = None) -> RevenueRecordResult:
        """Credit one finalized payment. A repeated transaction_id is a no-op."""
        if not transaction_id:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "transaction_id is required",
                                     field="transaction_id")
        gross_cents = to_cents(gross_amount, "gross_amount")
        commission_cents = to_cents(commission, "commission")
        if gross_cents <= 0:
            raise InvalidAmount("gross_amount must be positive", field="gross_amount",
                                context={"gross_amount": str(gross_amount)})
        if commission_cents < 0 or commission_cents > gross_cents:
            raise InvalidAmount("commission must be between 0 and the gross amount", field="commission",
                                context={"gross_amount": str(gross_amount), "commission": str(commission)})
        try:
            revenue_type = RevenueType(type)
        except ValueError:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, f"unknown revenue type: {type}", field="type")

        with self._lock:
            existing = self._by_transaction.get(transaction_id)
            if existing is not None:
                logger.warning(f"Duplicate revenue event ignored: {transaction_id}")
                return RevenueRecordResult(entry=existing, duplicate=True, snapshot=self._snapshot_locked())

            entry = RevenueEntry(
                id=str(uuid.uuid4()),
                transaction_id=transaction_id,
                gross_cents=gross_cents,
                commission_cents=commission_cents,
                type=revenue_type,
                source_user_id=user_id,
                timestamp=timestamp or self._clock(),
            )
            state = self._state.credit(gross_cents, commission_cents)
            with self._store.transaction():
                self._store.append_entry(entry)
                self._store.save(state)

            self._entries.append(entry)
            self._by_transaction[transaction_id] = entry
            self._state = state
            snapshot = self._snapshot_locked()

        logger.info("Revenue recorded", extra={
            "transaction_id": transaction_id,
            "gross_amount": str(entry.gross_amount),
            "commission": str(entry.commission),
            "pending_balance": str(snapshot.pending_balance),
        })
        return RevenueRecordResult(entry=entry, duplicate=False, snapshot=snapshot)

    def revenue_entries(self) -> List[RevenueEntry]:
        with self._lock:
            return list(self._entries)

    # Payouts

    async def process_payout(self, forced_amount=None) -> PayoutResult:
        """Drain the pending balance (or `forced_amount` of it) to the business account.

        Returns a completed or skipped PayoutResult. Raises InvalidAmount or
        InsufficientBalance for a bad forced amount, PayoutAlreadyInProgress when
        another payout is in flight or unconfirmed, and GatewayFailure when the
        transfer fails or goes unanswered; in every failure case the pending
        balance is left untouched. next_payout_at is moved past now on every path.
        """
        claim = await self._offload(self._claim, forced_amount)
        if isinstance(claim, PayoutResult):
            return claim
        record, request = claim

        logger.info(f"Payout {record.id} processing: {record.amount} {self._currency} to ****{record.bank_account_last4}")
        try:
            receipt = await self._transfer(request)
        except asyncio.CancelledError:
            self._fail(record, INTERRUPTED_REASON)
            raise
        except TransferOutcomeUnknown as exc:
            raise await self._offload(self._hold_unconfirmed, record, request, exc)
        except CircuitBreakerException as exc:
            raise await self._offload(self._fail, record, str(exc), exc, ErrorCodes.CIRCUIT_BREAKER_OPEN)
        except Exception as exc:
            raise await self._offload(self._fail, record, str(exc) or type(exc).__name__, exc)
        return await self._offload(self._settle, record, receipt)

    async def _offload(self, func, *args):
        if self._store.blocking:
            return await asyncio.to_thread(func, *args)
        return func(*args)

    def _claim(self, forced_amount) -> Union[PayoutResult, Tuple[PayoutRecord, TransferRequest]]:
        with self._lock:
            try:
                forced_cents = None
                if forced_amount is not None:
                    forced_cents = to_cents(forced_amount, "amount")
                    if forced_cents <= 0:
                        raise InvalidAmount("payout amount must be positive", context={"amount": str(forced_amount)})
                if self._in_flight is not None:
                    raise PayoutAlreadyInProgress(self._in_flight.id)
                if self._unconfirmed is not None:
                    record, request = self._unconfirmed
                    if forced_cents is not None:
                        raise PayoutAlreadyInProgress(record.id)
                    self._unconfirmed = None
                    self._in_flight = record
                    logger.warning(f"Resending unconfirmed payout {record.id} with its original idempotency key")
                    return record, request
                pending = self._state.pending_balance_cents
                if forced_cents is not None and forced_cents > pending:
                    raise InsufficientBalance(from_cents(forced_cents), from_cents(pending))
            except BusinessLogicError:
                self._advance_schedule_locked()
                raise

            if pending <= 0:
                return self._skip_locked(SKIP_NO_BALANCE)
            account = self._registry.get()
            if not account.configured:
                return self._skip_locked(SKIP_ACCOUNT_NOT_CONFIGURED)

            record = PayoutRecord(
                id=f"payout_{uuid.uuid4().hex}",
                amount_cents=forced_cents or pending,
                triggered_at=self._clock(),
                method=self._method,
                bank_account_last4=account.last4,
            )
            self._store.append_payout_record(record)
            self._payouts.append(record)
            self._in_flight = record

        request = TransferRequest(payout_id=record.id, amount=record.amount, currency=self._currency,
                                  method=self._method, account=account)
        return record, request

    async def _transfer(self, request: TransferRequest) -> TransferReceipt:
        with treasury_tracer.start_span("payout.transfer") as span:
            span.add_tag("payout.id", request.payout_id)
            span.add_tag("payout.amount", str(request.amount))
            receipt = await self._breaker.call(self._gateway.transfer, request)
            if not receipt.success:
                raise GatewayFailure(receipt.message or "bank transfer was declined")
            span.add_tag("transfer.reference", receipt.reference)
            return receipt

    def _settle(self, record: PayoutRecord, receipt: TransferReceipt) -> PayoutResult:
        with self._lock:
            now = self._clock()
            arrival = receipt.estimated_arrival or now + timedelta(days=self._arrival_days)
            record.complete(now, arrival, receipt.reference)
            self._state = replace(self._state.debit(record.amount_cents, now),
                                  next_payout_at=self._cadence.next_after(now))
            self._in_flight = None
            self._persist_payout(record)
            snapshot = self._snapshot_locked()

        logger.info(f"Payout {record.id} completed: {record.amount} {self._currency}", extra={
            "estimated_arrival": arrival.isoformat(),
            "next_payout_at": snapshot.next_payout_at.isoformat(),
        })
        return PayoutResult(status=PayoutStatus.COMPLETED.value, snapshot=snapshot, payout=record)

    def _fail(self, record: PayoutRecord, reason: str, error: Optional[Exception] = None,
              code: str = ErrorCodes.GATEWAY_FAILURE) -> GatewayFailure:
        with self._lock:
            now = self._clock()
            record.fail(now, reason)
            self._state = replace(self._state, next_payout_at=self._cadence.next_after(now))
            self._in_flight = None
            self._persist_payout(record)

        logger.error(f"Payout {record.id} failed, {record.amount} left pending: {reason}")
        return GatewayFailure(f"Bank transfer failed for payout {record.id}: {reason}",
                              payout=record, original_error=error, code=code)

    def _hold_unconfirmed(self, record: PayoutRecord, request: TransferRequest,
                          error: Exception) -> GatewayFailure:
        # record stays processing and the balance stays claimed until the resend is answered
        with self._lock:
            self._in_flight = None
            self._unconfirmed = (record, request)
            self._advance_schedule_locked()

        logger.error(f"Payout {record.id} outcome unknown, {record.amount} held for resend: {error}")
        return GatewayFailure(f"Bank transfer outcome unknown for payout {record.id}: {error}",
                              payout=record, original_error=error, code=ErrorCodes.TRANSFER_OUTCOME_UNKNOWN)

    def _persist_payout(self, record: PayoutRecord):
        with self._store.transaction():
            self._store.update_payout_record(record)
            self._store.save(self._state)

    def _advance_schedule_locked(self):
        self._state = replace(self._state, next_payout_at=self._cadence.next_after(self._clock()))
        self._store.save(self._state)

    def _skip_locked(self, reason: str) -> PayoutResult:
        self._advance_schedule_locked()
        logger.info(f"Payout skipped: {reason}", extra={
            "pending_balance": str(from_cents(self._state.pending_balance_cents)),
        })
        return PayoutResult(status="skipped", snapshot=self._snapshot_locked(), reason=reason)

    def reschedule(self) -> datetime:
        """Move next_payout_at to the first cadence instant after now."""
        with self._lock:
            self._advance_schedule_locked()
            return self._state.next_payout_at

    # Reporting

    def snapshot(self) -> TreasurySnapshot:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> TreasurySnapshot:
        state = self._state
        return TreasurySnapshot(
            total_revenue=from_cents(state.total_revenue_cents),
            total_commissions=from_cents(state.total_commissions_cents),
            total_payouts=from_cents(state.total_payouts_cents),
            pending_balance=from_cents(state.pending_balance_cents),
            last_payout_at=state.last_payout_at,
            next_payout_at=state.next_payout_at,
            payout_in_progress=self._in_flight is not None or self._unconfirmed is not None,
            bank_account=self._registry.summary(),
        )

    def get_payout_history(self, limit: int = 20) -> List[PayoutRecord]:
        """Most recent payout records, newest first."""
        if limit <= 0:
            return []
        with self._lock:
            return [replace(p) for p in reversed(self._payouts[-limit:])]
