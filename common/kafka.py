from functools import lru_cache
from confluent_kafka import Producer, Consumer
from common.settings import settings

@lru_cache(maxsize=1)
def get_producer() -> Producer:
    return Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})

def get_consumer(group_id: str, topics: list[str]):
    c = Consumer({
        "bootstrap.servers": settings.kafka_bootstrap,
        "group.id": group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    })
    c.subscribe(topics)
    return c

TOPIC_PAYMENT_EVENTS = "payment_events"
TOPIC_PAYOUT_EVENTS  = "payout_events"
