from datetime import timedelta

import pytest

from followup_bot.core.models import ContactRecord, ContactStage
from followup_bot.database.kv_store import InMemoryStore, JsonFileStore, StoreError
from followup_bot.registry.contact_store import ContactStore

from conftest import ALICE, BRUNO, NOW


def test_json_store_missing_key_returns_default(tmp_path):
    store = JsonFileStore(tmp_path / "v1")
    assert store.load("contacts", {}) == {}
    assert (tmp_path / "v1").is_dir()


def test_json_store_save_and_load(tmp_path):
    store = JsonFileStore(tmp_path)
    store.save("counters", {"byDay": {"2026-03-10": 3}})
    assert store.load("counters", {}) == {"byDay": {"2026-03-10": 3}}
    assert not list(tmp_path.glob("*.tmp"))


def test_json_store_empty_file_is_default(tmp_path):
    (tmp_path / "agendas.json").write_text("  ", encoding="utf-8")
    assert JsonFileStore(tmp_path).load("agendas", []) == []


def test_json_store_corrupt_file_raises(tmp_path):
    (tmp_path / "contacts.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreError):
        JsonFileStore(tmp_path).load("contacts", {})


@pytest.mark.parametrize("key", ["", "../etc", ".hidden", "a/b"])
def test_json_store_rejects_bad_keys(tmp_path, key):
    with pytest.raises(ValueError):
        JsonFileStore(tmp_path).load(key, None)


def test_memory_store_isolates_values():
    store = InMemoryStore()
    value = {"a": [1]}
    store.save("k", value)
    value["a"].append(2)
    loaded = store.load("k", None)
    loaded["a"].append(3)
    assert store.load("k", None) == {"a": [1]}
    assert store.save_count == 1


def test_contact_store_lazy_create():
    contacts = ContactStore(InMemoryStore())
    assert contacts.get(ALICE) is None

    record = contacts.get_or_create(ALICE, NOW)

    assert record.phone_key == "5511999990001"
    assert record.stage == ContactStage.NEW.value
    assert record.created_at == NOW
    assert contacts.get_or_create(ALICE, NOW) is record


def test_contact_store_round_trip_uses_camel_case():
    store = InMemoryStore()
    contacts = ContactStore(store)
    record = contacts.get_or_create(ALICE, NOW)
    record.step_index = 2
    record.next_eligible_at = NOW
    contacts.save()

    raw = store.load("contacts", {})[ALICE]
    assert raw["stepIndex"] == 2
    assert "nextEligibleAt" in raw

    reloaded = ContactStore(store)
    assert reloaded.load() == 1
    assert reloaded.get(ALICE).next_eligible_at == NOW


def test_contact_store_skips_invalid_records():
    store = InMemoryStore({
        "contacts": {
            ALICE: {"stepIndex": 1},
            BRUNO: {"stepIndex": -5},
        }
    })
    contacts = ContactStore(store)
    assert contacts.load() == 1
    assert contacts.get(BRUNO) is None


def test_blocked_registry_applies_to_new_records():
    store = InMemoryStore({"blocked": {"5511999990001": {"reason": "spam", "handle": ALICE}}})
    contacts = ContactStore(store)
    contacts.load()

    assert contacts.is_blocked(ALICE)
    record = contacts.get_or_create(ALICE, NOW)
    assert record.blocked
    assert record.blocked_reason == "spam"


def test_count_by_stage_includes_every_stage():
    contacts = ContactStore(InMemoryStore())
    contacts.get_or_create(ALICE, NOW)
    counts = contacts.count_by_stage()
    assert counts["new"] == 1
    assert set(counts) == {stage.value for stage in ContactStage}


def test_record_on_hold_while_paused_or_manual_off():
    record = ContactRecord(handle=ALICE)
    assert not record.is_on_hold(NOW)

    record.manual_off_until = NOW + timedelta(hours=1)
    assert record.is_on_hold(NOW)
    assert not record.is_on_hold(NOW + timedelta(hours=1))
