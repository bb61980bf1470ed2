"""Payout notifications and failure alerts."""
import logging
from typing import Optional

from common.kafka import TOPIC_PAYOUT_EVENTS
from common.retry import KAFKA_RETRY_CONFIG, RetryConfig, retry_async
from common.schemas import PayoutEvent
from common.settings import settings
from treasury_service.domain import PayoutRecord, PayoutResult

logger = logging.getLogger(__name__)

class PayoutNotifier:
    """Default hook: log only. Subclasses add delivery channels."""

    async def payout_completed(self, payout: PayoutRecord) -> None:
        logger.info(f"Payout notification: {payout.id} completed", extra={
            "amount": str(payout.amount),
            "estimated_arrival": payout.estimated_arrival.isoformat() if payout.estimated_arrival else None,
        })

    async def payout_failed(self, payout: Optional[PayoutRecord], error: Exception) -> None:
        logger.error(f"PAYOUT FAILURE ALERT: {error}", extra={
            "payout_id": payout.id if payout else None,
            "amount": str(payout.amount) if payout else None,
        })

    async def payout_skipped(self, result: PayoutResult) -> None:
        logger.info(f"Payout skipped: {result.reason}", extra={
            "pending_balance": str(result.snapshot.pending_balance),
        })

class KafkaPayoutNotifier(PayoutNotifier):
    """Also publishes PayoutCompleted / PayoutFailed / PayoutSkipped events."""

    def __init__(self, producer=None, topic: str = TOPIC_PAYOUT_EVENTS,
                 retry_config: RetryConfig = KAFKA_RETRY_CONFIG, currency: Optional[str] = None):
        if producer is None:
            from common.kafka import get_producer
            producer = get_producer()
        self.producer = producer
        self.topic = topic
        self.retry_config = retry_config
        self.currency = currency or settings.currency

    def _produce(self, event: PayoutEvent):
        self.producer.produce(self.topic, value=event.model_dump_json().encode("utf-8"))
        self.producer.flush()

    async def _publish(self, event: PayoutEvent):
        try:
            await retry_async(self._produce, self.retry_config, event)
            logger.info(f"Sent {event.type} event for {event.payout_id}")
        except Exception as e:
            # payout outcome is already persisted by the ledger
            logger.error(f"Failed to send {event.type} event: {e}")

    async def payout_completed(self, payout: PayoutRecord) -> None:
        await super().payout_completed(payout)
        await self._publish(PayoutEvent(
            type="PayoutCompleted",
            payout_id=payout.id,
            amount=str(payout.amount),
            currency=self.currency,
            bank_account_last4=payout.bank_account_last4,
            estimated_arrival=payout.estimated_arrival,
        ))

    async def payout_failed(self, payout: Optional[PayoutRecord], error: Exception) -> None:
        await super().payout_failed(payout, error)
        await self._publish(PayoutEvent(
            type="PayoutFailed",
            payout_id=payout.id if payout else None,
            amount=str(payout.amount) if payout else "0.00",
            currency=self.currency,
            bank_account_last4=payout.bank_account_last4 if payout else None,
            reason=str(error),
        ))

    async def payout_skipped(self, result: PayoutResult) -> None:
        await super().payout_skipped(result)
        await self._publish(PayoutEvent(
            type="PayoutSkipped",
            amount=str(result.snapshot.pending_balance),
            currency=self.currency,
            reason=result.reason,
        ))
