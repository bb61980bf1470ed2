"""Treasury value types. Amounts are integer cents; Decimal views are exposed as properties."""
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from treasury_service.commission import from_cents

def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None

class RevenueType(str, Enum):
    SALE = "sale"
    SUBSCRIPTION = "subscription"
    OTHER = "other"

class PayoutStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

@dataclass(frozen=True)
class RevenueEntry:
    id: str
    transaction_id: str
    gross_cents: int
    commission_cents: int
    type: RevenueType
    source_user_id: Optional[str]
    timestamp: datetime
    status: str = "collected"

    @property
    def gross_amount(self) -> Decimal:
        return from_cents(self.gross_cents)

    @property
    def commission(self) -> Decimal:
        return from_cents(self.commission_cents)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "gross_amount": str(self.gross_amount),
            "commission": str(self.commission),
            "type": self.type.value,
            "source_user_id": self.source_user_id,
            "timestamp": _iso(self.timestamp),
            "status": self.status,
        }

@dataclass(frozen=True)
class LedgerState:
    total_revenue_cents: int = 0
    total_commissions_cents: int = 0
    total_payouts_cents: int = 0
    pending_balance_cents: int = 0
    last_payout_at: Optional[datetime] = None
    next_payout_at: Optional[datetime] = None

    def is_balanced(self) -> bool:
        return self.pending_balance_cents == self.total_commissions_cents - self.total_payouts_cents

    def credit(self, gross_cents: int, commission_cents: int) -> "LedgerState":
        return replace(
            self,
            total_revenue_cents=self.total_revenue_cents + gross_cents,
            total_commissions_cents=self.total_commissions_cents + commission_cents,
            pending_balance_cents=self.pending_balance_cents + commission_cents,
        )

    def debit(self, amount_cents: int, paid_at: datetime) -> "LedgerState":
        return replace(
            self,
            total_payouts_cents=self.total_payouts_cents + amount_cents,
            pending_balance_cents=self.pending_balance_cents - amount_cents,
            last_payout_at=paid_at,
        )

@dataclass
class PayoutRecord:
    """One payout attempt. Status moves processing -> completed | failed exactly once."""
    id: str
    amount_cents: int
    triggered_at: datetime
    method: str
    bank_account_last4: str
    status: PayoutStatus = PayoutStatus.PROCESSING
    estimated_arrival: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    transfer_reference: Optional[str] = None

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)

    @property
    def is_terminal(self) -> bool:
        return self.status is not PayoutStatus.PROCESSING

    def complete(self, at: datetime, estimated_arrival: Optional[datetime], reference: Optional[str]):
        self._ensure_processing()
        self.status = PayoutStatus.COMPLETED
        self.completed_at = at
        self.estimated_arrival = estimated_arrival
        self.transfer_reference = reference

    def fail(self, at: datetime, reason: str):
        self._ensure_processing()
        self.status = PayoutStatus.FAILED
        self.completed_at = at
        self.failure_reason = reason

    def _ensure_processing(self):
        if self.is_terminal:
            raise ValueError(f"payout {self.id} is already {self.status.value}")

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "triggered_at": _iso(self.triggered_at),
            "status": self.status.value,
            "method": self.method,
            "bank_account_last4": self.bank_account_last4,
            "estimated_arrival": _iso(self.estimated_arrival),
            "completed_at": _iso(self.completed_at),
            "failure_reason": self.failure_reason,
            "transfer_reference": self.transfer_reference,
        }

@dataclass(frozen=True)
class TreasurySnapshot:
    total_revenue: Decimal
    total_commissions: Decimal
    total_payouts: Decimal
    pending_balance: Decimal
    last_payout_at: Optional[datetime]
    next_payout_at: Optional[datetime]
    payout_in_progress: bool
    bank_account: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "total_revenue": str(self.total_revenue),
            "total_commissions": str(self.total_commissions),
            "total_payouts": str(self.total_payouts),
            "pending_balance": str(self.pending_balance),
            "last_payout_at": _iso(self.last_payout_at),
            "next_payout_at": _iso(self.next_payout_at),
            "payout_in_progress": self.payout_in_progress,
            "bank_account": dict(self.bank_account),
        }

@dataclass(frozen=True)
class RevenueRecordResult:
    entry: RevenueEntry
    duplicate: bool
    snapshot: TreasurySnapshot

SKIP_NO_BALANCE = "no pending balance"
SKIP_ACCOUNT_NOT_CONFIGURED = "bank account not configured"

@dataclass(frozen=True)
class PayoutResult:
    """Outcome of a payout attempt that did not raise: completed, or skipped with a reason."""
    status: str
    snapshot: TreasurySnapshot
    payout: Optional[PayoutRecord] = None
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "skipped": self.skipped,
            "reason": self.reason,
            "payout": self.payout.to_dict() if self.payout else None,
            "treasury": self.snapshot.to_dict(),
        }
