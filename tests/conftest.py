import asyncio
import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from app.services.claim_store import ClaimStore
from app.services.dispatcher import DispatchEngine
from app.services.publisher import Publisher
from app.services.renderer import ChannelRenderer
from app.services.status_recorder import StatusRecorder
from db import Database

QUEUE = "notifications"


class FakeQueue:
    """In-memory stand-in for the Redis list behind the notification queue.

    ``eval`` mimics the publisher's push-once script. ``failures`` refuse the
    connection before anything is stored; ``lost_replies`` store the message
    and then time out, as when Redis applied the command but the reply never
    arrived.
    """

    def __init__(self, failures: int = 0, lost_replies: int = 0):
        self.items: dict[str, list] = {}
        self.markers: set[str] = set()
        self.failures = failures
        self.lost_replies = lost_replies
        self.attempts = 0
        self.closed = False

    async def eval(self, script, numkeys, *keys_and_args):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise RedisConnectionError("connection refused")
        queue, marker = keys_and_args[:numkeys]
        message = keys_and_args[numkeys]
        pushed = 0
        if marker not in self.markers:
            self.markers.add(marker)
            self.items.setdefault(queue, []).insert(0, message)
            pushed = len(self.items[queue])
        if self.lost_replies:
            self.lost_replies -= 1
            raise asyncio.TimeoutError()
        return pushed

    async def aclose(self):
        self.closed = True

    def drain(self, key=QUEUE) -> list[dict]:
        """Pop every message in consumer (BRPOP) order."""
        pending = self.items.pop(key, [])
        return [json.loads(raw) for raw in reversed(pending)]


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'reminders.db'}"


@pytest_asyncio.fixture
async def database(db_url):
    database = Database(db_url, timeout=5)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def queue():
    return FakeQueue()


def build_engine(database, queue, **kwargs) -> DispatchEngine:
    claim_ttl = kwargs.pop("claim_ttl", 60)
    return DispatchEngine(
        ClaimStore(database, claim_ttl=claim_ttl, batch_size=100),
        ChannelRenderer(database, sender="Abigail", default_timezone="America/Los_Angeles"),
        StatusRecorder(database),
        Publisher(queue, QUEUE, timeout=1, retries=2),
        **kwargs,
    )


@pytest.fixture
def engine(database, queue):
    return build_engine(database, queue)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def add_user_with_subscription(database, index: int, **user_kwargs):
    user = await database.create_user(f"user{index}@example.com", f"User{index}", **user_kwargs)
    sub = await database.create_subscription(
        user.id,
        f"subscription_user_{index}",
        f"https://endpoint/user/{index}",
        "some_base_64",
        "some_base_64",
    )
    return user, sub
