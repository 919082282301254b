import asyncio
from datetime import timedelta

from followup_bot.core.models import ContactStage, InboundMessage

from conftest import ALICE, BRUNO, NOW, drain


def seed(bot, handle=ALICE, text="oi, quero uma cotação"):
    asyncio.run(bot.handle_inbound(InboundMessage(handle=handle, text=text, timestamp=bot.clock())))
    return bot.contacts.get(handle)


def test_first_send_advances_step_and_delays_24h(bot, channel, clock):
    """Delays [0, 24h, 48h, 72h]: after step0, next is 24h later."""
    record = seed(bot)
    assert record.next_eligible_at == NOW

    report = bot.tick.run_once(clock())
    assert report.follow_up == 1
    drain(bot)

    assert channel.texts_to(ALICE) == [bot.config.messages.steps[0]]
    assert record.step_index == 1
    assert record.next_eligible_at == NOW + timedelta(hours=24)
    assert record.stage == ContactStage.NEGOTIATING.value
    assert record.dedupe["step0"] == NOW
    assert record.last_outbound_at == NOW

    clock.advance(hours=1)
    assert bot.tick.run_once(clock()).follow_up == 0


def test_walks_all_steps_with_delay_table(bot, channel, clock):
    record = seed(bot)
    expected_gaps = [24, 48, 72]
    for step in range(4):
        bot.tick.run_once(clock())
        drain(bot)
        assert record.step_index == step + 1
        if step < 3:
            assert record.next_eligible_at == clock() + timedelta(hours=expected_gaps[step])
            clock.now = record.next_eligible_at

    assert channel.texts_to(ALICE) == bot.config.messages.steps
    clock.advance(days=5)
    assert bot.tick.run_once(clock()).follow_up == 0


def test_fallback_delay_beyond_table(bot, clock):
    bot.update_config({"timing": {"stepDelaysHours": [0, 2], "fallbackDelayHours": 6}})
    record = seed(bot)
    record.step_index = 2
    bot.tick.run_once(clock())
    drain(bot)
    assert record.step_index == 3
    assert record.next_eligible_at == NOW + timedelta(hours=6)


def test_stage_moves_to_negotiating_only_from_new(bot, clock):
    record = seed(bot)
    record.stage = ContactStage.QUOTED.value
    bot.tick.run_once(clock())
    drain(bot)
    assert record.stage == ContactStage.QUOTED.value


def test_two_ticks_enqueue_once(bot, clock):
    seed(bot, ALICE)
    seed(bot, BRUNO)

    first = bot.tick.run_once(clock())
    second = bot.tick.run_once(clock())

    assert first.follow_up == 2
    assert second.follow_up == 0
    assert bot.queue.size == 2


def test_dedup_window_blocks_resend(bot, clock):
    record = seed(bot)
    record.dedupe["step0"] = NOW - timedelta(minutes=5)
    assert bot.tick.run_once(clock()).follow_up == 0

    clock.advance(minutes=6)
    assert bot.tick.run_once(clock()).follow_up == 1


def test_empty_step_text_is_skipped_without_advancing(bot, channel, clock):
    bot.update_messages({"steps": ["", "second"]})
    record = seed(bot)

    assert bot.tick.run_once(clock()).follow_up == 0
    drain(bot)

    assert record.step_index == 0
    assert channel.sent == []


def test_min_year_rule_excludes_old_vehicle(bot, clock):
    record = seed(bot, text="Gol 2019")
    assert record.detected_year == 2019
    assert record.detected_model == "Gol"

    assert bot.tick.run_once(clock()).follow_up == 0
    assert bot.get_contact(ALICE)["detectedYear"] == 2019


def test_min_year_rule_can_be_disabled(bot, clock):
    bot.update_config({"rules": {"minYearFollowUp": None}})
    seed(bot, text="Gol 2019")
    assert bot.tick.run_once(clock()).follow_up == 1


def test_paused_and_manual_off_contacts_skipped_until_expiry(bot, clock):
    seed(bot, ALICE)
    seed(bot, BRUNO)
    bot.pause(ALICE, hours=1)
    bot.manual_off(BRUNO, hours=2)

    assert bot.tick.run_once(clock()).follow_up == 0

    clock.advance(hours=1, minutes=1)
    assert bot.tick.run_once(clock()).follow_up == 1

    clock.advance(hours=1)
    assert bot.tick.run_once(clock()).follow_up == 1


def test_client_gets_post_sale_loop(bot, channel, clock):
    record = seed(bot)
    bot.mark_as_client(ALICE)
    assert record.next_eligible_at == NOW + timedelta(days=30)
    assert bot.tick.run_once(clock()).follow_up == 0

    clock.now = record.next_eligible_at
    bot.tick.run_once(clock())
    drain(bot)

    assert channel.texts_to(ALICE) == [bot.config.messages.post_sale]
    assert record.step_index == 0
    assert record.next_eligible_at == clock() + timedelta(days=30)


def test_client_loop_disabled(bot, clock):
    seed(bot)
    bot.update_config({"rules": {"clientLoopEnabled": False}})
    record = bot.mark_as_client(ALICE)
    clock.now = record.next_eligible_at
    assert bot.tick.run_once(clock()).follow_up == 0


def test_extra_message_sent_once_after_steps(bot, channel, clock):
    bot.update_messages({"steps": ["one"], "extra": "last call"})
    record = seed(bot)

    bot.tick.run_once(clock())
    drain(bot)
    clock.now = record.next_eligible_at
    bot.tick.run_once(clock())
    drain(bot)

    assert channel.texts_to(ALICE) == ["one", "last call"]
    assert record.step_index == 2
    assert record.next_eligible_at is None


def test_scheduled_appointment_and_lost_excluded(bot, clock):
    seed(bot, ALICE)
    seed(bot, BRUNO)
    bot.contacts.get(ALICE).stage = ContactStage.SCHEDULED_APPOINTMENT.value
    bot.contacts.get(BRUNO).stage = ContactStage.LOST.value

    assert bot.tick.run_once(clock()).follow_up == 0


def test_disabled_bot_enqueues_nothing(bot, clock):
    seed(bot)
    bot.set_enabled(False)
    report = bot.tick.run_once(clock())
    assert report.skipped
    assert bot.queue.size == 0
