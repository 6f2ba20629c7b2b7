import os
import redis
from .events import Event


class PubSubClient:
    """Publishes lobby and match status events to Redis channels."""

    def __init__(self, redis_url: str = None, redis_client: redis.Redis = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        self.redis = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    def publish(self, channel: str, event: Event):
        self.redis.publish(channel, event.to_json())

    def publish_entity_event(self, kind: str, entity_id: str, event: Event):
        channel = f"{kind}:{entity_id}:events"
        self.publish(channel, event)

        self.redis.publish("global:announcements", event.to_json())

    def get_recent_events(self, kind: str, entity_id: str, count: int = 50) -> list:
        key = f"{kind}:{entity_id}:event_log"
        events_json = self.redis.lrange(key, 0, count - 1)
        return [Event.from_json(e) for e in events_json]

    def log_event(self, kind: str, entity_id: str, event: Event):
        key = f"{kind}:{entity_id}:event_log"
        self.redis.lpush(key, event.to_json())
        self.redis.ltrim(key, 0, 999)
