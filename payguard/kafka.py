import logging
from confluent_kafka import Producer

from .events import SecurityEventSink

logger = logging.getLogger(__name__)

TOPIC_SECURITY_EVENTS = "security_events"

def make_producer(bootstrap: str) -> Producer:
    return Producer({"bootstrap.servers": bootstrap, "enable.idempotence": True})

class KafkaEventSink(SecurityEventSink):
    """Writes through to the durable sink and publishes every event for downstream fraud tooling"""

    def __init__(self, inner: SecurityEventSink, producer, topic: str = TOPIC_SECURITY_EVENTS):
        self.inner = inner
        self.producer = producer
        self.topic = topic

    def append(self, event):
        self.inner.append(event)
        try:
            key = (event.user_id or event.ip or "").encode("utf-8")
            self.producer.produce(self.topic, key=key, value=event.model_dump_json().encode("utf-8"))
            self.producer.poll(0)
        except Exception as e:
            # the durable write already happened
            logger.warning(f"Failed to publish {event.event_type} to {self.topic}: {e}")

    def flush(self, timeout: float = 5.0):
        return self.producer.flush(timeout)

    def query_recent(self, user_id, within_seconds, now=None):
        return self.inner.query_recent(user_id, within_seconds, now)

    def record_attempt(self, attempt, status, risk_score=0):
        self.inner.record_attempt(attempt, status, risk_score)

    def update_attempt_status(self, attempt_id, status):
        return self.inner.update_attempt_status(attempt_id, status)

    def enqueue_review(self, item):
        self.inner.enqueue_review(item)

    def pending_reviews(self, limit=100):
        return self.inner.pending_reviews(limit)

    def ping(self):
        return self.inner.ping()
