from sqlalchemy import Column, Integer, String, BigInteger, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class TreasuryStateRow(Base):
    __tablename__ = "treasury_state"
    id = Column(Integer, primary_key=True)  # single row, id=1
    total_revenue_cents = Column(BigInteger, nullable=False, default=0)
    total_commissions_cents = Column(BigInteger, nullable=False, default=0)
    total_payouts_cents = Column(BigInteger, nullable=False, default=0)
    pending_balance_cents = Column(BigInteger, nullable=False, default=0)
    last_payout_at = Column(DateTime(timezone=True))
    next_payout_at = Column(DateTime(timezone=True))

class RevenueEntryRow(Base):
    __tablename__ = "revenue_entries"
    id = Column(String(64), primary_key=True)
    transaction_id = Column(String(128), nullable=False, unique=True, index=True)
    gross_cents = Column(BigInteger, nullable=False)
    commission_cents = Column(BigInteger, nullable=False)
    type = Column(String(16), nullable=False)  # sale|subscription|other
    source_user_id = Column(String(64))
    timestamp = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="collected")

class PayoutRecordRow(Base):
    __tablename__ = "payout_records"
    id = Column(String(64), primary_key=True)
    amount_cents = Column(BigInteger, nullable=False)
    triggered_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(16), nullable=False)  # processing|completed|failed
    method = Column(String(16), nullable=False)
    bank_account_last4 = Column(String(8))
    estimated_arrival = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    failure_reason = Column(String(500))
    transfer_reference = Column(String(128))
