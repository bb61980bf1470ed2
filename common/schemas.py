from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Literal, Optional

class RevenueEvent(BaseModel):
    """Finalized payment or subscription charge reported by the payment collaborators"""
    transaction_id: str = Field(min_length=1)
    gross_amount: Decimal
    commission: Optional[Decimal] = None
    type: Literal["sale", "subscription", "other"] = "sale"
    user_id: Optional[str] = None
    timestamp: Optional[datetime] = None

class BankAccountUpdate(BaseModel):
    account_holder: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    routing_number: Optional[str] = None
    account_type: Optional[str] = None

class ManualPayoutRequest(BaseModel):
    amount: Optional[Decimal] = None

class PayoutEvent(BaseModel):
    type: Literal["PayoutCompleted", "PayoutFailed", "PayoutSkipped"]
    payout_id: Optional[str] = None
    amount: str
    currency: str
    bank_account_last4: Optional[str] = None
    estimated_arrival: Optional[datetime] = None
    reason: Optional[str] = None
