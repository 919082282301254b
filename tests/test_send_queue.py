import asyncio
from datetime import datetime, timezone

import pytest

from followup_bot.core.events import EventType
from followup_bot.core.models import ConnectionState, IntentKind, SendIntent

from conftest import ALICE, BRUNO, CARLA, NOW, drain


def follow_up(handle: str, key: str = "step0", text: str = "oi") -> SendIntent:
    return SendIntent(handle=handle, text=text, kind=IntentKind.FOLLOW_UP, meta={"key": key})


def test_sends_in_order_and_commits(bot, channel):
    bot.queue.enqueue(follow_up(ALICE, text="a"))
    bot.queue.enqueue(follow_up(BRUNO, text="b"))

    report = drain(bot)

    assert report.sent == 2
    assert channel.sent == [(ALICE, "a"), (BRUNO, "b")]
    assert bot.queue.size == 0
    assert bot.counters.snapshot(ALICE, NOW).per_minute == 2
    assert len(bot.events.of_type(EventType.AUTO_SENT)) == 2


def test_duplicate_intent_not_queued(bot):
    assert bot.queue.enqueue(follow_up(ALICE))
    assert not bot.queue.enqueue(follow_up(ALICE))
    assert bot.queue.size == 1


def test_global_denial_stops_cycle_and_keeps_head(bot, channel):
    bot.update_config({"limits": {"perMinute": 1}})
    bot.queue.enqueue(follow_up(ALICE))
    bot.queue.enqueue(follow_up(BRUNO))
    bot.queue.enqueue(follow_up(CARLA))

    report = drain(bot)

    assert report.sent == 1
    assert report.stopped_reason == "limit_minute"
    assert [i.handle for i in bot.queue.pending()] == [BRUNO, CARLA]


def test_contact_denial_moves_to_tail_and_continues(bot, channel):
    bot.update_config({"limits": {"perContactPerDay": 1}})
    bot.counters.increment(ALICE, NOW)
    bot.queue.enqueue(follow_up(ALICE))
    bot.queue.enqueue(follow_up(BRUNO))

    report = drain(bot)

    assert report.deferred == 1
    assert report.stopped_reason is None
    assert channel.sent == [(BRUNO, "oi")]
    assert [i.handle for i in bot.queue.pending()] == [ALICE]


def test_disconnected_channel_sends_nothing(bot, channel):
    channel.state = ConnectionState.DISCONNECTED
    bot.queue.enqueue(follow_up(ALICE))

    report = drain(bot)

    assert report.stopped_reason == "disconnected"
    assert channel.sent == []
    assert bot.queue.size == 1


def test_outside_window_sends_nothing(bot, channel, clock):
    clock.now = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
    bot.queue.enqueue(follow_up(ALICE))

    report = drain(bot)

    assert report.stopped_reason == "outside_window"
    assert channel.sent == []


def test_failed_send_retried_once_then_dropped(bot, channel):
    channel.results = [False, False]
    bot.queue.enqueue(follow_up(ALICE))

    first = drain(bot)
    assert first.failed == 1
    assert bot.queue.size == 1
    assert bot.counters.snapshot(ALICE, NOW).per_minute == 0

    second = drain(bot)
    assert second.dropped == 1
    assert bot.queue.size == 0
    dropped = bot.events.of_type(EventType.SEND_DROPPED)
    assert len(dropped) == 1
    assert "failed after 2 attempts" in dropped[0]["payload"]["reason"]
    assert bot.get_status().last_error is not None


def test_retry_succeeds_on_next_cycle(bot, channel):
    channel.results = [False, True]
    bot.queue.enqueue(follow_up(ALICE))

    drain(bot)
    report = drain(bot)

    assert report.sent == 1
    assert channel.texts_to(ALICE) == ["oi"]


def test_timeout_counts_as_failure(bot, channel):
    bot.update_config({"timing": {"sendTimeoutSeconds": 0.01}})
    channel.delay = 0.5
    bot.queue.enqueue(follow_up(ALICE))

    report = drain(bot)

    assert report.failed == 1
    assert "timeout" in bot.queue.last_error
    assert bot.counters.snapshot(ALICE, NOW).per_minute == 0


def test_channel_exception_counts_as_failure(bot, channel):
    channel.error = ConnectionError("socket closed")
    bot.queue.enqueue(follow_up(ALICE))

    report = drain(bot)

    assert report.failed == 1
    assert "socket closed" in bot.queue.last_error


def test_blocked_contact_never_queued(bot):
    bot.block(ALICE)
    assert not bot.queue.enqueue(follow_up(ALICE))
    assert not bot.queue.has_pending(ALICE)


def test_block_strips_queued_intents(bot):
    bot.queue.enqueue(follow_up(ALICE))
    bot.queue.enqueue(follow_up(BRUNO))

    bot.block(ALICE)

    assert [i.handle for i in bot.queue.pending()] == [BRUNO]


def test_block_during_jitter_drops_in_flight_intent(bot, channel):
    async def sleep_then_block(seconds):
        bot.block(ALICE)

    bot.queue.sleep = sleep_then_block
    bot.queue.enqueue(follow_up(ALICE))

    report = drain(bot)

    assert report.sent == 0
    assert report.dropped == 1
    assert channel.sent == []


def test_pause_strips_automatic_but_not_manual(bot):
    bot.queue.enqueue(follow_up(ALICE))
    bot.queue.enqueue(SendIntent(handle=ALICE, text="manual", kind=IntentKind.MANUAL))

    bot.pause(ALICE)

    kinds = [i.kind for i in bot.queue.pending()]
    assert kinds == ["manual"]


def test_size_counts_in_flight(bot):
    sizes = []

    async def observe(seconds):
        sizes.append(bot.queue.size)

    bot.queue.sleep = observe
    bot.queue.enqueue(follow_up(ALICE))
    bot.queue.enqueue(follow_up(BRUNO))

    drain(bot)

    assert sizes == [2, 1]


def test_snapshot_and_restore_automatic_only(bot):
    bot.queue.enqueue(follow_up(ALICE))
    bot.queue.enqueue(SendIntent(handle=BRUNO, text="manual", kind=IntentKind.MANUAL))

    snapshot = bot.queue.snapshot()
    assert len(snapshot) == 1
    assert snapshot[0]["kind"] == "follow_up"

    bot.queue.remove(ALICE)
    restored = bot.queue.restore(snapshot + [{"bogus": True}])
    assert [i.handle for i in restored] == [ALICE]


def test_manual_send_reports_denial(bot, clock):
    clock.now = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
    outcome = asyncio.run(bot.send_immediate(ALICE, "oi"))
    assert not outcome.ok
    assert outcome.error == "outside_window"


def test_connection_state_read_from_channel(bot, channel):
    bot.queue.enqueue(follow_up(ALICE))
    channel.state = ConnectionState.DISCONNECTED

    assert drain(bot).stopped_reason == "disconnected"
    assert not bot.get_status().connected

    channel.state = ConnectionState.CONNECTED

    assert drain(bot).sent == 1
    assert bot.get_status().connected
    assert [e["payload"]["state"] for e in bot.events.of_type(EventType.CONNECTION)] == [
        "disconnected", "connected",
    ]


def test_error_mid_cycle_requeues_intent(bot, channel, monkeypatch):
    def broken_check(handle, now):
        raise RuntimeError("gate unavailable")

    bot.queue.enqueue(follow_up(ALICE))
    bot.queue.enqueue(follow_up(BRUNO))
    monkeypatch.setattr(bot.gate, "check", broken_check)

    with pytest.raises(RuntimeError):
        drain(bot)

    assert [i.handle for i in bot.queue.pending()] == [ALICE, BRUNO]
    assert "gate unavailable" in bot.queue.last_error
    assert not bot.queue.draining

    monkeypatch.undo()
    assert drain(bot).sent == 2
    assert channel.sent == [(ALICE, "oi"), (BRUNO, "oi")]


def test_cancelled_during_jitter_keeps_intent(bot, channel):
    async def cancelled(seconds):
        raise asyncio.CancelledError()

    bot.queue.sleep = cancelled
    bot.queue.enqueue(follow_up(ALICE))

    with pytest.raises(asyncio.CancelledError):
        drain(bot)

    assert [i.handle for i in bot.queue.pending()] == [ALICE]
    assert channel.sent == []


def test_delivered_intent_not_resent_after_callback_error(bot, channel, monkeypatch):
    def broken_on_sent(intent, now):
        raise RuntimeError("bookkeeping failed")

    monkeypatch.setattr(bot.followup, "on_sent", broken_on_sent)
    bot.queue.enqueue(follow_up(ALICE))

    with pytest.raises(RuntimeError):
        drain(bot)

    assert channel.sent == [(ALICE, "oi")]
    assert bot.queue.size == 0
