"""Pushes notification envelopes onto the Redis notification queue.

The queue is a Redis list used point-to-point: the engine ``LPUSH``es one
JSON document per reminder and each consumer ``BRPOP``s from the other end.
There is no acknowledgement back to the engine.

Each push runs as one server-side script that first sets a per-reminder
marker with ``SET NX``. A retry after a lost reply finds the marker and
pushes nothing, so a reminder reaches the queue at most once.
"""

from __future__ import annotations

import asyncio
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from app.services.exceptions import PublishError
from app.types.dispatch_contract import NotificationEnvelope

_LOGGER = logging.getLogger(__name__)

# KEYS[1] queue, KEYS[2] marker; ARGV[1] message, ARGV[2] marker ttl (seconds)
PUSH_ONCE = """
if redis.call('SET', KEYS[2], '1', 'NX', 'EX', ARGV[2]) then
    return redis.call('LPUSH', KEYS[1], ARGV[1])
end
return 0
"""


def connect(url: str, timeout: float = 5.0) -> redis.Redis:
    return redis.from_url(
        url,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )


class Publisher:
    def __init__(
        self,
        client,
        queue: str = "notifications",
        *,
        timeout: float = 5.0,
        retries: int = 3,
        dedupe_ttl: int = 86400,
    ):
        self.client = client
        self.queue = queue
        self.timeout = timeout
        self.retries = max(1, retries)
        self.dedupe_ttl = max(1, int(dedupe_ttl))

    def marker_key(self, reminder_id: int) -> str:
        return f"{self.queue}:published:{reminder_id}"

    async def publish(self, envelope: NotificationEnvelope) -> bool:
        """Push *envelope* as one message. Raises ``PublishError`` on failure.

        Returns False when the reminder had already been pushed, which is
        what a retry sees after the first attempt's reply was lost.
        """
        message = envelope.to_json()
        marker = self.marker_key(envelope.reminder.id)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_random_exponential(multiplier=0.1, max=1),
            retry=retry_if_exception_type((RedisError, OSError, asyncio.TimeoutError)),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    pushed = await asyncio.wait_for(
                        self.client.eval(PUSH_ONCE, 2, self.queue, marker, message, self.dedupe_ttl),
                        timeout=self.timeout,
                    )
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            raise PublishError(
                f"reminder {envelope.reminder.id}: queue {self.queue!r} unreachable: {cause}"
            ) from cause
        if not pushed:
            _LOGGER.info("Reminder %s was already on %r", envelope.reminder.id, self.queue)
            return False
        _LOGGER.info(
            "Published reminder %s with %d notification(s)",
            envelope.reminder.id,
            len(envelope.notifications),
        )
        return True

    async def close(self) -> None:
        await self.client.aclose()
