"""
Ledger persistence

The ledger only sees the LedgerStore interface. Writes that belong together
(a revenue entry and the state it produced, a payout settlement and its
record) are issued inside store.transaction() so a SQL store commits them
atomically. The in-memory store is the default for a single process.
"""
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import ContextManager, Dict, List, Optional, Protocol

from sqlalchemy import select

from treasury_service.db import get_engine, get_session_factory
from treasury_service.domain import LedgerState, PayoutRecord, PayoutStatus, RevenueEntry, RevenueType
from treasury_service.models import Base, PayoutRecordRow, RevenueEntryRow, TreasuryStateRow

STATE_ROW_ID = 1

@dataclass
class StoredLedger:
    state: Optional[LedgerState] = None
    entries: List[RevenueEntry] = field(default_factory=list)
    payouts: List[PayoutRecord] = field(default_factory=list)

class LedgerStore(Protocol):
    # True when writes do I/O; the ledger then runs its locked sections off the event loop
    blocking: bool

    def load(self) -> StoredLedger: ...
    def transaction(self) -> ContextManager: ...
    def save(self, state: LedgerState) -> None: ...
    def append_entry(self, entry: RevenueEntry) -> None: ...
    def append_payout_record(self, record: PayoutRecord) -> None: ...
    def update_payout_record(self, record: PayoutRecord) -> None: ...

class InMemoryLedgerStore:
    blocking = False

    def __init__(self):
        self._state: Optional[LedgerState] = None
        self._entries: List[RevenueEntry] = []
        self._payouts: Dict[str, PayoutRecord] = {}

    def load(self) -> StoredLedger:
        return StoredLedger(
            state=self._state,
            entries=list(self._entries),
            payouts=[replace(p) for p in self._payouts.values()],
        )

    @contextmanager
    def transaction(self):
        yield

    def save(self, state: LedgerState) -> None:
        self._state = state

    def append_entry(self, entry: RevenueEntry) -> None:
        self._entries.append(entry)

    def append_payout_record(self, record: PayoutRecord) -> None:
        self._payouts[record.id] = replace(record)

    def update_payout_record(self, record: PayoutRecord) -> None:
        self._payouts[record.id] = replace(record)

def _to_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)

class SqlLedgerStore:
    """SQLAlchemy-backed store: one state row plus append-only entry and payout tables."""

    blocking = True

    def __init__(self, engine, create_schema: bool = True):
        if create_schema:
            Base.metadata.create_all(bind=engine)
        self._sessions = get_session_factory(engine)
        self._local = threading.local()

    @contextmanager
    def transaction(self):
        if getattr(self._local, "session", None) is not None:
            yield
            return
        with self._sessions() as session:
            self._local.session = session
            try:
                yield
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                self._local.session = None

    @contextmanager
    def _session(self):
        active = getattr(self._local, "session", None)
        if active is not None:
            yield active
            return
        with self._sessions() as session:
            yield session
            session.commit()

    def load(self) -> StoredLedger:
        with self._session() as db:
            state_row = db.get(TreasuryStateRow, STATE_ROW_ID)
            entry_rows = db.execute(select(RevenueEntryRow)).scalars().all()
            payout_rows = db.execute(
                select(PayoutRecordRow).order_by(PayoutRecordRow.triggered_at)
            ).scalars().all()

            state = None
            if state_row is not None:
                state = LedgerState(
                    total_revenue_cents=state_row.total_revenue_cents,
                    total_commissions_cents=state_row.total_commissions_cents,
                    total_payouts_cents=state_row.total_payouts_cents,
                    pending_balance_cents=state_row.pending_balance_cents,
                    last_payout_at=_to_utc(state_row.last_payout_at),
                    next_payout_at=_to_utc(state_row.next_payout_at),
                )
            entries = [
                RevenueEntry(
                    id=row.id,
                    transaction_id=row.transaction_id,
                    gross_cents=row.gross_cents,
                    commission_cents=row.commission_cents,
                    type=RevenueType(row.type),
                    source_user_id=row.source_user_id,
                    timestamp=_to_utc(row.timestamp),
                    status=row.status,
                )
                for row in sorted(entry_rows, key=lambda r: _to_utc(r.timestamp))
            ]
            payouts = [
                PayoutRecord(
                    id=row.id,
                    amount_cents=row.amount_cents,
                    triggered_at=_to_utc(row.triggered_at),
                    method=row.method,
                    bank_account_last4=row.bank_account_last4,
                    status=PayoutStatus(row.status),
                    estimated_arrival=_to_utc(row.estimated_arrival),
                    completed_at=_to_utc(row.completed_at),
                    failure_reason=row.failure_reason,
                    transfer_reference=row.transfer_reference,
                )
                for row in payout_rows
            ]
        return StoredLedger(state=state, entries=entries, payouts=payouts)

    def save(self, state: LedgerState) -> None:
        with self._session() as db:
            row = db.get(TreasuryStateRow, STATE_ROW_ID)
            if row is None:
                row = TreasuryStateRow(id=STATE_ROW_ID)
                db.add(row)
            row.total_revenue_cents = state.total_revenue_cents
            row.total_commissions_cents = state.total_commissions_cents
            row.total_payouts_cents = state.total_payouts_cents
            row.pending_balance_cents = state.pending_balance_cents
            row.last_payout_at = _to_utc(state.last_payout_at)
            row.next_payout_at = _to_utc(state.next_payout_at)
            db.flush()

    def append_entry(self, entry: RevenueEntry) -> None:
        with self._session() as db:
            db.add(RevenueEntryRow(
                id=entry.id,
                transaction_id=entry.transaction_id,
                gross_cents=entry.gross_cents,
                commission_cents=entry.commission_cents,
                type=entry.type.value,
                source_user_id=entry.source_user_id,
                timestamp=_to_utc(entry.timestamp),
                status=entry.status,
            ))
            db.flush()

    def append_payout_record(self, record: PayoutRecord) -> None:
        with self._session() as db:
            row = PayoutRecordRow(id=record.id)
            self._copy_payout(row, record)
            db.add(row)
            db.flush()

    def update_payout_record(self, record: PayoutRecord) -> None:
        with self._session() as db:
            row = db.get(PayoutRecordRow, record.id)
            if row is None:
                raise KeyError(f"unknown payout record {record.id}")
            self._copy_payout(row, record)
            db.flush()

    @staticmethod
    def _copy_payout(row: PayoutRecordRow, record: PayoutRecord) -> None:
        row.amount_cents = record.amount_cents
        row.triggered_at = _to_utc(record.triggered_at)
        row.status = record.status.value
        row.method = record.method
        row.bank_account_last4 = record.bank_account_last4
        row.estimated_arrival = _to_utc(record.estimated_arrival)
        row.completed_at = _to_utc(record.completed_at)
        row.failure_reason = record.failure_reason[:500] if record.failure_reason else None
        row.transfer_reference = record.transfer_reference

def store_from_settings(storage_backend: str, engine=None) -> LedgerStore:
    if storage_backend == "sql":
        return SqlLedgerStore(engine or get_engine())
    return InMemoryLedgerStore()
