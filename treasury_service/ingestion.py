"""
Revenue ingestion

Payment-confirmation events arrive either through POST /treasury/revenue or
the payment_events Kafka topic. Both paths end in Ledger.record_revenue;
duplicate transaction ids are absorbed there.
"""
import json
import logging
import threading
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from common.error_handling import BusinessLogicError
from common.schemas import RevenueEvent
from common.settings import settings
from treasury_service.commission import calculate_commission
from treasury_service.domain import RevenueRecordResult
from treasury_service.ledger import Ledger

logger = logging.getLogger(__name__)

# event name -> revenue type recorded for it
REVENUE_EVENT_TYPES = {
    "PaymentCommitted": "sale",
    "SubscriptionInvoicePaid": "subscription",
}

class RevenueIngestor:
    def __init__(self, ledger: Ledger, rate: Optional[Decimal] = None):
        self.ledger = ledger
        self.rate = settings.commission_rate if rate is None else rate

    def ingest(self, event: RevenueEvent) -> RevenueRecordResult:
        commission = event.commission
        if commission is None:
            commission = calculate_commission(event.gross_amount, self.rate).platform_commission
        return self.ledger.record_revenue(
            transaction_id=event.transaction_id,
            gross_amount=event.gross_amount,
            commission=commission,
            type=event.type,
            user_id=event.user_id,
            timestamp=event.timestamp,
        )

    def handle_message(self, payload: bytes) -> Optional[RevenueRecordResult]:
        """Decode one payment_events message. Returns None for events that carry no revenue."""
        evt = json.loads(payload)
        if not isinstance(evt, dict):
            raise ValueError("event payload must be a JSON object")
        event_name = evt.pop("event", None)
        if event_name not in REVENUE_EVENT_TYPES:
            logger.debug(f"Skipping event type: {event_name}")
            return None
        evt.setdefault("type", REVENUE_EVENT_TYPES[event_name])
        return self.ingest(RevenueEvent.model_validate(evt))

def consume(ingestor: RevenueIngestor, consumer, stop_event: threading.Event, poll_timeout: float = 1.0):
    """Poll payment_events until stop_event is set. A message is committed once handled or rejected."""
    logger.info("Starting Kafka consumer for revenue events...")
    try:
        while not stop_event.is_set():
            msg = consumer.poll(poll_timeout)
            if not msg or msg.error():
                continue
            try:
                result = ingestor.handle_message(msg.value())
                if result is not None and not result.duplicate:
                    logger.info(f"Ingested revenue event {result.entry.transaction_id}")
            except (ValueError, ValidationError, BusinessLogicError) as e:
                # malformed or rejected event: retrying cannot fix it
                logger.error(f"Rejected revenue event: {e}", extra={"payload": msg.value()})
            except Exception:
                logger.exception("Error processing revenue event; leaving it uncommitted")
                continue
            consumer.commit(message=msg, asynchronous=False)
    finally:
        consumer.close()
        logger.info("Revenue consumer stopped")

def start_consumer_thread(ingestor: RevenueIngestor, stop_event: threading.Event) -> threading.Thread:
    from common.kafka import TOPIC_PAYMENT_EVENTS, get_consumer

    consumer = get_consumer(settings.kafka_consumer_group, [TOPIC_PAYMENT_EVENTS])
    thread = threading.Thread(target=consume, args=(ingestor, consumer, stop_event),
                              name="revenue-consumer", daemon=True)
    thread.start()
    return thread
