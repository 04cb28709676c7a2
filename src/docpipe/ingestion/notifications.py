"""
Event dispatch boundary between the stage pipeline and the notification channel.
"""

import logging
from typing import AsyncIterator, Dict

from .collaborators import NotificationChannel
from .models import StageEvent

logger = logging.getLogger(__name__)


class EventDispatcher:
    """
    Publishes ``StageEvent`` values to their owner's topic.

    Delivery is at-most-once: a failed publish is logged and counted, never
    raised, so notification problems cannot affect processing.
    """

    def __init__(self, channel: NotificationChannel):
        self.channel = channel
        self.stats: Dict[str, int] = {"published": 0, "failed": 0}

    async def dispatch(self, event: StageEvent) -> bool:
        try:
            await self.channel.publish(event.topic, event.to_dict())
        except Exception as e:
            self.stats["failed"] += 1
            logger.error(
                f"Failed to publish {event.status.value}/{event.stage.value} "
                f"for item {event.item_id} to topic {event.topic}: {e}"
            )
            return False

        self.stats["published"] += 1
        logger.debug(f"Published {event.status.value}/{event.stage.value} for item {event.item_id}")
        return True

    async def drain(self, events: AsyncIterator[StageEvent]) -> None:
        """Dispatch every event from ``events``; exceptions from the source propagate."""
        async for event in events:
            await self.dispatch(event)
