"""
backend/booking_engine/services/events.py

Event emitter: pushes events to Redis queues for external consumers
(calendar reconciliation, client notifications, operator alerts).

Two queues:
- events:p2p: instant delivery (booking notifications to specific users)
- events:broadcast: operator-facing alerts (capacity review)
"""

import json
import time
import logging

from redis.exceptions import RedisError

from ..redis_client import redis_client

logger = logging.getLogger(__name__)

P2P_QUEUE = "events:p2p"
BROADCAST_QUEUE = "events:broadcast"


def _push(queue: str, event_type: str, payload: dict) -> bool:
    event = {
        "type": event_type,
        **payload,
        "ts": int(time.time()),
    }
    try:
        redis_client.rpush(queue, json.dumps(event, default=str))
    except RedisError as e:
        # Notifications are best effort; the booking itself is already committed
        logger.error(f"Failed to emit event {event_type}: {e}")
        return False
    logger.info(f"Event emitted: {event_type} → {queue}")
    return True


def emit_event(event_type: str, payload: dict) -> bool:
    """
    Emit a p2p event (instant delivery).

    Pushed to Redis list `events:p2p` for the consumer loop.
    """
    return _push(P2P_QUEUE, event_type, payload)


def emit_broadcast(event_type: str, payload: dict) -> bool:
    """
    Emit a broadcast event.

    Pushed to Redis list `events:broadcast` for the consumer loop.
    """
    return _push(BROADCAST_QUEUE, event_type, payload)
