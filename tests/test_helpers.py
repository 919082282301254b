import asyncio

import pytest

from followup_bot.core.config import load_settings
from followup_bot.core.events import EventLog, EventType
from followup_bot.core.models import CommandsConfig, MessagesConfig
from followup_bot.humanizer.timing import JitterMode, SendJitter, calculate_send_delay
from followup_bot.messaging.handles import (
    handle_to_phone_key,
    is_direct_handle,
    normalize_phone,
    phone_key_to_handle,
    resolve_handle,
)
from followup_bot.messaging.inbound import SellerCommand, match_command, parse_vehicle_info
from followup_bot.messaging.templates import apply_template
from followup_bot.scheduling.polling_daemon import PeriodicRunner

from conftest import ALICE


# =============================================================================
# HANDLES / TEMPLATES / INBOUND
# =============================================================================

def test_phone_normalization():
    assert normalize_phone("(11) 99999-0001") == "5511999990001"
    assert normalize_phone("+55 11 99999-0001") == "5511999990001"
    assert normalize_phone("abc") == ""


def test_handle_conversion():
    assert phone_key_to_handle("11999990001") == ALICE
    assert handle_to_phone_key(ALICE) == "5511999990001"
    assert resolve_handle(ALICE) == ALICE
    assert is_direct_handle(ALICE)
    assert not is_direct_handle("123@g.us")
    with pytest.raises(ValueError):
        phone_key_to_handle("---")


def test_apply_template():
    assert apply_template("{{DATA}} às {{hora}}", {"data": "10/03", "HORA": "09:00"}) == "10/03 às 09:00"
    assert apply_template("Olá {{NOME}}", None) == "Olá "


def test_parse_vehicle_info():
    info = parse_vehicle_info("HB20 - 2021")
    assert info.year == 2021
    assert info.model == "HB20"
    assert parse_vehicle_info("").year is None


def test_match_command_exact_only():
    commands = CommandsConfig()
    assert match_command("stop", commands) == SellerCommand.STOP
    assert match_command("please stop", commands) is None
    assert match_command("STOP", CommandsConfig(stop="")) is None


def test_messages_text_for():
    messages = MessagesConfig(steps=["a", "b"], extra="x")
    assert messages.text_for("step1") == "b"
    assert messages.text_for("step5") == ""
    assert messages.text_for("agenda2").startswith("Olá!")
    assert messages.text_for("extra") == "x"
    assert messages.text_for("unknown") == ""


# =============================================================================
# TIMING
# =============================================================================

@pytest.mark.parametrize("mode", list(JitterMode))
def test_send_delay_within_bounds(mode):
    for _ in range(200):
        assert 1.2 <= calculate_send_delay(1.2, 2.8, mode) <= 2.8


def test_send_delay_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        calculate_send_delay(3, 1)


def test_jitter_configure():
    jitter = SendJitter(min_ms=1200, max_ms=2800)
    jitter.configure(0, 0)
    assert jitter.get_delay() == 0
    with pytest.raises(ValueError):
        jitter.configure(500, 100)


# =============================================================================
# SETTINGS / EVENTS / RUNNER
# =============================================================================

def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("BOT_ID", "v2")
    monkeypatch.setenv("TICK_INTERVAL_SECONDS", "10")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = load_settings(str(tmp_path / "missing.env"))

    assert settings.bot_dir == tmp_path / "v2"
    assert settings.tick_interval_seconds == 10
    assert settings.log_level == "DEBUG"


def test_settings_reject_bad_bot_id(monkeypatch, tmp_path):
    monkeypatch.setenv("BOT_ID", "../etc")
    with pytest.raises(ValueError):
        load_settings(str(tmp_path / "missing.env"))


def test_event_log_writes_jsonl_and_notifies(tmp_path):
    path = tmp_path / "events.jsonl"
    log = EventLog(path)
    seen = []
    unsubscribe = log.subscribe(seen.append)

    log.emit(EventType.BLOCKED, handle=ALICE, reason="spam")
    unsubscribe()
    log.emit(EventType.PAUSED, handle=ALICE)

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert '"type": "blocked"' in lines[0]
    assert [e["type"] for e in seen] == ["blocked"]


def test_event_listener_failure_does_not_propagate():
    log = EventLog()

    def broken(event):
        raise RuntimeError("boom")

    log.subscribe(broken)
    log.emit(EventType.INBOUND, handle=ALICE)
    assert len(log.recent) == 1


def test_periodic_runner_runs_and_stops():
    calls = []

    async def callback():
        calls.append(1)

    async def scenario():
        runner = PeriodicRunner("test", callback, interval_seconds=0.01)
        await runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()
        return runner

    runner = asyncio.run(scenario())

    assert calls
    assert not runner.is_running
    assert runner.health_check()["cycles"] == len(calls)


def test_periodic_runner_backoff_is_capped():
    async def failing():
        raise RuntimeError("down")

    errors = []
    runner = PeriodicRunner("test", failing, interval_seconds=5, on_error=errors.append)
    for _ in range(10):
        asyncio.run(runner.run_cycle())

    assert len(errors) == 10
    assert runner.next_delay() == 300
    assert runner.health_check()["consecutive_errors"] == 10
