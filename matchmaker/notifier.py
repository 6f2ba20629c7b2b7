import logging

import requests
import redis

from shared.events import status_changed_event
from shared.pubsub import PubSubClient
from .errors import NotificationDeliveryError

logger = logging.getLogger(__name__)


class Notifier:
    """
    Tells the integrating client about lobby and match status changes.

    Each change is POSTed to ``{callback_url}?status={status}`` with the full
    entity snapshot, and published on Redis when a pub/sub client is set.
    Delivery is best effort: failures are logged and never raised.
    """

    def __init__(self, timeout: float = 10, pubsub: PubSubClient = None):
        self.timeout = timeout
        self.pubsub = pubsub

    def notify(self, kind: str, entity):
        snapshot = entity.to_dict()
        entity_id = snapshot[f"{kind}_id"]
        status = entity.status

        if entity.callback_url:
            try:
                self.deliver(entity.callback_url, status, snapshot)
            except NotificationDeliveryError as e:
                if e.connection_refused:
                    logger.warning(f"Callback for {kind} {entity_id} refused: {e}")
                else:
                    logger.error(f"Callback for {kind} {entity_id} failed: {e}")

        if self.pubsub:
            event = status_changed_event(kind, entity_id, status, snapshot)
            try:
                self.pubsub.publish_entity_event(kind, entity_id, event)
                self.pubsub.log_event(kind, entity_id, event)
            except redis.RedisError as e:
                logger.error(f"Failed to publish {kind} {entity_id} event: {e}")

    def deliver(self, url: str, status: str, payload: dict):
        try:
            response = requests.post(
                url,
                params={'status': status},
                json=payload,
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.ConnectionError as e:
            raise NotificationDeliveryError(str(e), connection_refused=True)
        except requests.exceptions.RequestException as e:
            raise NotificationDeliveryError(str(e))
