from datetime import datetime, timedelta, timezone

from followup_bot.core.models import BotConfig, LimitsConfig, WindowConfig
from followup_bot.messaging.rate_limits import RateLimitCounters, contact_day_key, minute_key
from followup_bot.messaging.send_gate import DenialReason, SendGate
from followup_bot.temporal.window import is_within_window

from conftest import ALICE, BRUNO, NOW


def make_gate(config: BotConfig, connected: bool = True):
    counters = RateLimitCounters()
    return SendGate(counters, lambda: config, lambda: connected), counters


def test_counters_increment_all_scopes():
    counters = RateLimitCounters()
    counters.increment(ALICE, NOW)
    counters.increment(ALICE, NOW)
    counters.increment(BRUNO, NOW)

    snap = counters.snapshot(ALICE, NOW)
    assert snap.per_minute == 3
    assert snap.per_hour == 3
    assert snap.per_day == 3
    assert snap.per_contact_per_day == 2
    assert counters.by_contact_day[contact_day_key(NOW, BRUNO)] == 1


def test_counters_reset_with_new_bucket():
    counters = RateLimitCounters()
    counters.increment(ALICE, NOW)

    later = NOW + timedelta(minutes=1)
    snap = counters.snapshot(ALICE, later)
    assert snap.per_minute == 0
    assert snap.per_hour == 1


def test_prune_drops_stale_buckets():
    counters = RateLimitCounters()
    counters.increment(ALICE, NOW - timedelta(days=3))
    counters.increment(ALICE, NOW)

    removed = counters.prune(NOW)

    assert removed == 4
    assert list(counters.by_minute) == [minute_key(NOW)]
    assert len(counters.by_contact_day) == 1


def test_snapshot_does_not_mutate():
    counters = RateLimitCounters()
    counters.snapshot(ALICE, NOW)
    assert counters.by_minute == {}
    assert counters.by_contact_day == {}


def test_gate_allows_inside_window():
    gate, _ = make_gate(BotConfig())
    decision = gate.check(ALICE, NOW)
    assert decision.allowed
    assert decision.reason is None


def test_gate_denies_when_disconnected():
    gate, _ = make_gate(BotConfig(), connected=False)
    decision = gate.check(ALICE, NOW)
    assert not decision.allowed
    assert decision.reason == DenialReason.DISCONNECTED
    assert decision.reason.is_global


def test_gate_denies_outside_window():
    gate, _ = make_gate(BotConfig())
    late_night = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)  # 23:00 local
    assert gate.check(ALICE, late_night).reason == DenialReason.OUTSIDE_WINDOW


def test_window_end_hour_is_exclusive():
    window = WindowConfig(start_hour=9, end_hour=22)
    assert is_within_window(window, datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))  # 09:00
    assert is_within_window(window, datetime(2026, 3, 11, 0, 59, tzinfo=timezone.utc))  # 21:59
    assert not is_within_window(window, datetime(2026, 3, 11, 1, 0, tzinfo=timezone.utc))  # 22:00


def test_window_wraps_past_midnight():
    window = WindowConfig(start_hour=20, end_hour=6)
    assert is_within_window(window, datetime(2026, 3, 11, 2, 0, tzinfo=timezone.utc))  # 23:00
    assert not is_within_window(window, NOW)  # 12:00


def test_gate_global_limits_in_order():
    config = BotConfig(limits=LimitsConfig(per_minute=2, per_hour=3, per_day=4, per_contact_per_day=10))
    gate, counters = make_gate(config)

    counters.increment(ALICE, NOW)
    counters.increment(BRUNO, NOW)
    assert gate.check(ALICE, NOW).reason == DenialReason.LIMIT_MINUTE

    next_minute = NOW + timedelta(minutes=1)
    counters.increment(ALICE, next_minute)
    assert gate.check(ALICE, next_minute + timedelta(minutes=1)).reason == DenialReason.LIMIT_HOUR

    next_hour = NOW + timedelta(hours=1)
    counters.increment(ALICE, next_hour)
    assert gate.check(ALICE, next_hour + timedelta(hours=1)).reason == DenialReason.LIMIT_DAY


def test_gate_contact_limit_is_not_global():
    config = BotConfig(limits=LimitsConfig(per_contact_per_day=1))
    gate, counters = make_gate(config)
    counters.increment(ALICE, NOW)

    later = NOW + timedelta(minutes=5)
    decision = gate.check(ALICE, later)
    assert decision.reason == DenialReason.LIMIT_CONTACT_DAY
    assert not decision.reason.is_global
    assert gate.check(BRUNO, later).allowed


def test_commit_never_exceeds_ceiling():
    config = BotConfig(limits=LimitsConfig(per_minute=3))
    gate, counters = make_gate(config)
    for i in range(10):
        if gate.check(f"55119999900{i:02d}@s.whatsapp.net", NOW).allowed:
            gate.commit(f"55119999900{i:02d}@s.whatsapp.net", NOW)
    assert counters.snapshot(ALICE, NOW).per_minute == 3
