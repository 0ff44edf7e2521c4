"""
Broadcast Channel

Fire-and-forget notifications published over the primary broker connection.
Subscribers (the realtime API layer) listen on ``broadcast:<channel>``.

Every publish is best-effort: a missing or unhealthy broker drops the message
with a warning.
"""

import time
from typing import Any

import orjson

from engagement_backbone.config.constants import BROADCAST_CHANNEL_PREFIX
from engagement_backbone.core.exceptions import BrokerError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient

logger = get_logger(__name__)


class Broadcaster:
    """Publishes JSON events on broker pub/sub channels."""

    def __init__(self, broker: BrokerClient | None):
        self._broker = broker

    @staticmethod
    def channel_name(channel: str) -> str:
        return f"{BROADCAST_CHANNEL_PREFIX}:{channel}"

    async def publish(self, channel: str, event: str, payload: dict[str, Any] | None = None) -> bool:
        """
        Publish one event.

        STAGE-BC.1: Broadcast

        Returns:
            True when the broker accepted the message
        """
        if self._broker is None or not self._broker.is_ready:
            logger.debug("Broadcast skipped, broker not ready", stage="BC.1", channel=channel, event_name=event)
            return False

        message = orjson.dumps(
            {"event": event, "payload": payload or {}, "timestamp": int(time.time() * 1000)}
        ).decode("utf-8")
        try:
            await self._broker.commands.publish(self.channel_name(channel), message)
            return True
        except BrokerError as e:
            logger.warning(
                "Broadcast failed",
                stage="BC.1",
                channel=channel,
                event_name=event,
                error=str(e),
            )
            return False
