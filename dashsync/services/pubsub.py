"""
In-process publish/subscribe topics.

Handlers are called in the order they subscribed. A failing handler is logged and
does not stop delivery to the others.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Generic, List, TypeVar, Union

from .logging_service import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

Handler = Callable[[T], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by Topic.subscribe(); call unsubscribe() to stop delivery."""

    def __init__(self, topic: 'Topic[Any]', handler: Callable):
        self._topic = topic
        self._handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._topic._remove(self._handler)
            self.active = False


class Topic(Generic[T]):
    """A named stream of messages of one type."""

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Handler] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: Handler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove(self, handler: Handler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    async def publish(self, message: T) -> int:
        """Deliver a message to every current subscriber.

        Returns:
            Number of handlers that accepted the message without raising.
        """
        delivered = 0
        for handler in list(self._handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Subscriber failed",
                    topic=self.name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )
        return delivered
