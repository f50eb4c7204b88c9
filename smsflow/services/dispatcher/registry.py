"""Topic -> handler registry, validated once at startup."""

from typing import Any, Awaitable, Callable, Iterable

from pydantic import BaseModel

from smsflow.common.errors import UnknownTopicError
from smsflow.services.ingestor.service import normalize_topic


class EventContext(BaseModel):
    event_id: str
    shop_id: str
    topic: str
    payload: dict[str, Any]


TopicHandler = Callable[[EventContext], Awaitable[None]]


class TopicRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, TopicHandler] = {}

    def register(self, topic: str, handler: TopicHandler) -> None:
        topic = normalize_topic(topic)
        if topic in self._handlers:
            raise ValueError(f"handler already registered for topic {topic}")
        self._handlers[topic] = handler

    @property
    def topics(self) -> list[str]:
        return sorted(self._handlers)

    def handler_for(self, topic: str) -> TopicHandler:
        handler = self._handlers.get(normalize_topic(topic))
        if handler is None:
            raise UnknownTopicError(f"no handler registered for topic {topic}")
        return handler

    def validate(self, topics: Iterable[str]) -> None:
        """Fail loudly if any subscribed topic has no handler."""

        missing = sorted({normalize_topic(topic) for topic in topics} - set(self._handlers))
        if missing:
            raise UnknownTopicError(f"no handler registered for topics: {', '.join(missing)}")
