"""In-process change notification for conversation store mutations."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[], Awaitable[None] | None]


@dataclass(frozen=True)
class Subscription:
    """Token returned by ChangeNotifier.subscribe()."""

    id: int


class ChangeNotifier:
    """
    Coarse-grained publish/subscribe for committed store mutations.

    Handlers take no arguments and are invoked in registration order once per
    committed mutation. A handler may be a plain function or a coroutine
    function; coroutines are scheduled as tasks and not awaited, so a slow
    observer never holds up the mutator or the other observers.

    Nothing is queued across restarts. Observers should re-query the store
    after subscribing.
    """

    def __init__(self) -> None:
        self._handlers: dict[int, ChangeHandler] = {}
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: ChangeHandler) -> Subscription:
        if not callable(handler):
            raise TypeError("Change handler must be callable")
        token = Subscription(next(self._ids))
        self._handlers[token.id] = handler
        return token

    def unsubscribe(self, token: Subscription) -> None:
        self._handlers.pop(token.id, None)

    def notify(self) -> None:
        """Deliver one change event to every current subscriber."""
        # Snapshot so (un)subscribing from inside a handler applies to the next cycle.
        for token_id, handler in list(self._handlers.items()):
            try:
                result = handler()
            except Exception:
                logger.exception(
                    "Change handler failed",
                    extra={"subscription_id": token_id},
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(token_id, result)

    async def drain(self) -> None:
        """Wait for handler tasks scheduled by earlier notifications."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, token_id: int, awaitable: Awaitable[None]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error(
                    "Async change handler failed",
                    exc_info=error,
                    extra={"subscription_id": token_id},
                )

        task.add_done_callback(_done)
