"""
Business bank account registry

Holds the payout destination. Full account and routing numbers are only
handed to the ledger/gateway via get(); every external read goes through
summary(), which redacts to the last four digits.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from common.error_handling import MissingBankDetails
from common.settings import settings

logger = logging.getLogger(__name__)

PLACEHOLDER_NUMBERS = {"", "xxxx-xxxx-xxxx", "xxxxxxxxx"}

@dataclass(frozen=True)
class BankAccount:
    account_holder: str = "Pending Setup"
    bank_name: str = "Pending Setup"
    account_number: str = field(default="", repr=False)
    routing_number: str = field(default="", repr=False)
    account_type: str = "checking"
    updated_at: Optional[datetime] = None

    @property
    def configured(self) -> bool:
        return (self.account_number not in PLACEHOLDER_NUMBERS
                and self.routing_number not in PLACEHOLDER_NUMBERS)

    @property
    def last4(self) -> str:
        return self.account_number[-4:] if self.configured else "Not Set"

    def summary(self) -> Dict:
        return {
            "configured": self.configured,
            "account_holder": self.account_holder,
            "bank_name": self.bank_name,
            "account_type": self.account_type,
            "account_last4": self.last4,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

class BankAccountRegistry:
    def __init__(self, account: Optional[BankAccount] = None):
        self._lock = threading.Lock()
        self._account = account or BankAccount()

    @classmethod
    def from_settings(cls) -> "BankAccountRegistry":
        """Seed from BUSINESS_* environment settings; placeholders stay unconfigured."""
        account = BankAccount(
            account_holder=settings.business_account_holder,
            bank_name=settings.business_bank_name,
            account_number=settings.business_account_number.strip(),
            routing_number=settings.business_routing_number.strip(),
            account_type=settings.business_account_type,
        )
        logger.info("Bank account registry initialized", extra={"configured": account.configured})
        return cls(account)

    @property
    def configured(self) -> bool:
        return self.get().configured

    def get(self) -> BankAccount:
        with self._lock:
            return self._account

    def summary(self) -> Dict:
        return self.get().summary()

    def update(self, account_number: Optional[str], routing_number: Optional[str],
               account_holder: Optional[str] = None, bank_name: Optional[str] = None,
               account_type: Optional[str] = None) -> Dict:
        """Replace the stored account wholesale. Raises MissingBankDetails when numbers are absent."""
        account_number = (account_number or "").strip()
        routing_number = (routing_number or "").strip()
        if account_number in PLACEHOLDER_NUMBERS or routing_number in PLACEHOLDER_NUMBERS:
            raise MissingBankDetails()

        account = BankAccount(
            account_holder=account_holder or "Business Account",
            bank_name=bank_name or "Unknown Bank",
            account_number=account_number,
            routing_number=routing_number,
            account_type=account_type or "checking",
            updated_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._account = account

        logger.info(f"Business bank account updated: {account.bank_name} ****{account.last4}")
        return account.summary()
