import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from followup_bot.core.bot import EngagementBot
from followup_bot.core.config import Settings
from followup_bot.core.models import ConnectionState
from followup_bot.database.kv_store import InMemoryStore
from followup_bot.humanizer.timing import SendJitter

# 12:00 in São Paulo, inside the default 09-22 window
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)

ALICE = "5511999990001@s.whatsapp.net"
BRUNO = "5511999990002@s.whatsapp.net"
CARLA = "5511999990003@s.whatsapp.net"


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeChannel:
    """Records sends; ``results`` scripts the ack of successive sends."""

    def __init__(self):
        self.state = ConnectionState.CONNECTED
        self.sent: list[tuple[str, str]] = []
        self.results: list[bool] = []
        self.delay = 0.0
        self.error: Exception | None = None
        self.listeners = None

    async def send(self, handle: str, text: str) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        ok = self.results.pop(0) if self.results else True
        if ok:
            self.sent.append((handle, text))
        return ok

    def connection_state(self) -> ConnectionState:
        return self.state

    def add_listener(self, on_message, on_connection) -> None:
        self.listeners = (on_message, on_connection)

    def texts_to(self, handle: str) -> list[str]:
        return [text for h, text in self.sent if h == handle]


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def bot(channel, store, clock):
    instance = EngagementBot(
        channel=channel,
        store=store,
        settings=Settings(),
        clock=clock,
        sleep=no_sleep,
        jitter=SendJitter(min_ms=0, max_ms=0),
    )
    instance.load()
    return instance


def drain(bot: EngagementBot):
    return asyncio.run(bot.run_queue())
