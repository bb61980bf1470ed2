"""
Bank transfer gateway contract and implementations

The ledger never talks to a payment rail directly. It hands a TransferRequest
to whatever implements BankTransferGateway and expects a TransferReceipt back,
or an exception. A receipt with success=False is treated the same as a raise.
TransferOutcomeUnknown is the exception: the bank may already have moved the
money, so the ledger keeps the balance claimed and resends the same payout id.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

import requests

from common.settings import settings
from common.tracing import get_trace_headers
from treasury_service.bank_accounts import BankAccount

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class TransferRequest:
    payout_id: str
    amount: Decimal
    currency: str
    method: str
    account: BankAccount

@dataclass(frozen=True)
class TransferReceipt:
    success: bool
    estimated_arrival: Optional[datetime] = None
    reference: Optional[str] = None
    message: Optional[str] = None

class TransferOutcomeUnknown(Exception):
    """The request may have reached the bank but no answer came back"""

@runtime_checkable
class BankTransferGateway(Protocol):
    """Moves money to the business account. `transfer` may be sync or async."""

    def transfer(self, request: TransferRequest) -> TransferReceipt:
        ...

class SimulatedBankTransferGateway:
    """Stand-in rail: waits `delay_seconds` and reports arrival `arrival_days` later."""

    def __init__(self, delay_seconds: float = 1.0, arrival_days: int = 3):
        self.delay_seconds = delay_seconds
        self.arrival_days = arrival_days

    async def transfer(self, request: TransferRequest) -> TransferReceipt:
        await asyncio.sleep(self.delay_seconds)
        logger.info(f"Bank transfer simulated: {request.payout_id} {request.amount} {request.currency} via {request.method}")
        return TransferReceipt(
            success=True,
            estimated_arrival=datetime.now(timezone.utc) + timedelta(days=self.arrival_days),
            reference=f"sim_{uuid.uuid4().hex[:12]}",
        )

class HttpBankTransferGateway:
    """Payout rail reached over HTTP. The payout id is sent as the idempotency key."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def transfer(self, request: TransferRequest) -> TransferReceipt:
        headers = {"Idempotency-Key": request.payout_id, **get_trace_headers()}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "reference": request.payout_id,
            "amount": str(request.amount),
            "currency": request.currency,
            "method": request.method,
            "destination": {
                "account_holder": request.account.account_holder,
                "bank_name": request.account.bank_name,
                "account_number": request.account.account_number,
                "routing_number": request.account.routing_number,
                "account_type": request.account.account_type,
            },
        }
        try:
            response = self.session.post(f"{self.base_url}/transfers", json=payload,
                                         headers=headers, timeout=self.timeout)
        except requests.ConnectTimeout:
            # never connected, nothing was sent
            raise
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.error(f"No answer from bank for {request.payout_id}: {e}")
            raise TransferOutcomeUnknown(f"no answer from bank for {request.payout_id}: {e}") from e
        response.raise_for_status()
        body = response.json()

        arrival = body.get("estimated_arrival")
        return TransferReceipt(
            success=body.get("status") in ("accepted", "completed"),
            estimated_arrival=datetime.fromisoformat(arrival) if arrival else None,
            reference=body.get("transfer_id"),
            message=body.get("message"),
        )

def gateway_from_settings() -> BankTransferGateway:
    if settings.bank_gateway == "http":
        return HttpBankTransferGateway(settings.bank_gateway_url, settings.bank_gateway_api_key,
                                       settings.bank_gateway_timeout_seconds)
    return SimulatedBankTransferGateway(settings.simulated_transfer_delay_seconds,
                                        settings.payout_arrival_days)
