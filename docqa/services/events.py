"""Analytics events. Publishing is best-effort: a failing publisher is logged, never raised."""

from typing import Any, Dict, Protocol

import structlog

logger = structlog.get_logger(__name__)


class EventPublisher(Protocol):
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None: ...


class LogEventPublisher:
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info("event_published", event_type=event_type, **payload)


async def publish_safely(publisher: EventPublisher, event_type: str, **payload: Any) -> None:
    try:
        await publisher.publish(event_type, payload)
    except Exception as e:
        logger.warning("event_publish_failed", event_type=event_type, error=str(e))
