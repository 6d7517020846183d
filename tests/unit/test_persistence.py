from __future__ import annotations

import json

import pytest

from state.codec import encode
from state.keyed_store import ABSENT, MemoryStore, WriteResult
from state.keys import legacy_storage_key, storage_key
from state.models import FieldKind
from state.persistence import PagePersistence


DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_page(store, clock, scheduler):
    pages = []

    def _make(name="quiz", defaults=None, **kwargs):
        kwargs.setdefault("store", store)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("scheduler", scheduler)
        kwargs.setdefault("save_on_exit", False)
        p = PagePersistence(name, defaults if defaults is not None else {"step": 1}, **kwargs)
        pages.append(p)
        return p

    yield _make
    for p in pages:
        p.close()


def _seed(store, page, data, ts):
    store.write(storage_key(page), encode(page, data, ts).model_dump())


def test_no_prior_entry_yields_defaults(make_page, store):
    page = make_page(defaults={"step": 1, "title": ""})
    assert page.state == {"step": 1, "title": ""}
    assert page.storage_key == "grasp-quiz-state"
    assert store.read(page.storage_key) is ABSENT


def test_update_state_persists_envelope(make_page, store, clock):
    page = make_page()
    assert page.update_state({"step": 2})
    assert store.read("grasp-quiz-state") == {
        "data": {"step": 2},
        "timestamp": clock.t,
        "page": "quiz",
    }

    fresh = make_page()
    assert fresh.get_state("step") == 2


def test_set_state_persists_single_field(make_page, store):
    page = make_page(defaults={"step": 1, "title": "x"})
    page.set_state("title", "Midterm")
    assert store.read(page.storage_key)["data"] == {"step": 1, "title": "Midterm"}


def test_get_state_has_no_side_effects(make_page, store):
    page = make_page()
    assert page.get_state("step") == 1
    assert page.get_state("missing") is None
    assert page.get_state("missing", 7) == 7
    assert store.keys() == []


def test_saved_state_merges_over_new_defaults(make_page):
    page = make_page(defaults={"step": 1})
    page.update_state({"step": 3})
    page.save_state()

    again = make_page(defaults={"step": 1, "newField": "default"})
    assert again.state == {"step": 3, "newField": "default"}


def test_save_twice_keeps_data(make_page, store, clock):
    page = make_page()
    page.update_state({"step": 4})
    first = store.read(page.storage_key)
    clock.advance(5_000)
    page.save_state()
    second = store.read(page.storage_key)
    assert second["data"] == first["data"]
    assert second["timestamp"] == first["timestamp"] + 5_000


def test_stale_entry_is_purged_on_load(make_page, store, clock):
    _seed(store, "quiz", {"step": 9}, clock.t - 8 * DAY_MS)
    page = make_page()
    assert page.state == {"step": 1}
    assert store.read(page.storage_key) is ABSENT


def test_corrupt_entry_is_purged_on_load(make_page, store):
    store._set_text(storage_key("quiz"), "{not json")
    page = make_page()
    assert page.state == {"step": 1}
    assert store.read_text(storage_key("quiz")) is None


def test_selected_ids_rehydrate_as_set(make_page, store, clock):
    store.write(
        storage_key("bank"),
        {"data": {"selectedIds": [1, 2, 3]}, "timestamp": clock.t, "page": "bank"},
    )
    page = make_page("bank", defaults={"selectedIds": set()})
    assert page.get_state("selectedIds") == {1, 2, 3}


def test_sets_round_trip_through_save(make_page):
    page = make_page("bank", defaults={"selectedIds": set()})
    page.set_state("selectedIds", {4, 5})
    assert make_page("bank", defaults={"selectedIds": set()}).get_state("selectedIds") == {4, 5}


def test_explicit_schema_overrides_name_heuristic(make_page):
    page = make_page("bank", defaults={"picked": set()}, schema={"picked": FieldKind.SET})
    page.set_state("picked", {1})
    page.set_state("cache", [["a", 1]])
    again = make_page("bank", defaults={"picked": set()}, schema={"picked": FieldKind.SET})
    assert again.get_state("picked") == {1}
    assert again.get_state("cache") == [["a", 1]]


def test_clear_state_resets_and_removes(make_page, store):
    page = make_page(defaults={"step": 1, "items": []})
    page.update_state({"step": 5})
    page.state["items"].append("x")
    page.clear_state()
    assert page.state == {"step": 1, "items": []}
    assert store.read(page.storage_key) is ABSENT
    assert page.default_state == {"step": 1, "items": []}


def test_autosave_every_interval_without_mutation(make_page, store, scheduler, clock):
    page = make_page()
    assert store.read(page.storage_key) is ABSENT

    scheduler.advance(30.0)
    first = store.read(page.storage_key)
    assert first["data"] == {"step": 1}

    clock.advance(30_000)
    scheduler.advance(30.0)
    assert store.read(page.storage_key)["timestamp"] == first["timestamp"] + 30_000


def test_close_cancels_autosave(make_page, store, scheduler):
    page = make_page()
    page.close()
    scheduler.advance(120.0)
    assert store.read(page.storage_key) is ABSENT


def test_autosave_can_be_disabled(make_page, scheduler):
    make_page(autosave_interval=None)
    assert scheduler.pending == 0


def test_context_manager_saves_on_exit(store, clock, scheduler):
    with PagePersistence("quiz", {"step": 1}, store=store, clock=clock, scheduler=scheduler, save_on_exit=False) as page:
        page.state["step"] = 3
    assert store.read("grasp-quiz-state")["data"] == {"step": 3}
    assert scheduler.pending == 0


class _QuotaStore(MemoryStore):
    """Fails the first `failures` writes with a full medium."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.log = []

    def write(self, key, value):
        if self.failures > 0 and key == storage_key("quiz"):
            self.failures -= 1
            self.log.append(("write", key, WriteResult.QUOTA_EXCEEDED))
            return WriteResult.QUOTA_EXCEEDED
        result = super().write(key, value)
        self.log.append(("write", key, result))
        return result

    def remove(self, key):
        self.log.append(("remove", key))
        super().remove(key)


def test_quota_failure_evicts_stale_then_retries_once(clock, scheduler):
    store = _QuotaStore(failures=1)
    _seed(store, "dashboard", {"x": 1}, clock.t - 8 * DAY_MS)
    _seed(store, "settings", {"y": 2}, clock.t)
    store.log.clear()

    page = PagePersistence("quiz", {"step": 1}, store=store, clock=clock, scheduler=scheduler, save_on_exit=False)
    assert page.update_state({"step": 2})

    ops = [entry[:2] for entry in store.log]
    assert ops == [
        ("write", "grasp-quiz-state"),
        ("remove", "grasp-dashboard-state"),
        ("write", "grasp-quiz-state"),
    ]
    assert store.read("grasp-settings-state") is not ABSENT
    assert store.read("grasp-quiz-state")["data"] == {"step": 2}
    page.close()


def test_quota_failure_twice_is_swallowed(clock, scheduler, caplog):
    store = _QuotaStore(failures=2)
    page = PagePersistence("quiz", {"step": 1}, store=store, clock=clock, scheduler=scheduler, save_on_exit=False)
    assert page.save_state() is False
    assert len([e for e in store.log if e[0] == "write"]) == 2
    assert "Retry failed" in caplog.text
    assert page.state == {"step": 1}
    page.close()


def test_unserializable_state_does_not_raise(make_page):
    page = make_page()
    assert page.set_state("handle", object()) is False


def test_legacy_key_is_migrated(make_page, store, clock):
    store._set_text(legacy_storage_key("quiz"), json.dumps({"step": 6, "timestamp": clock.t}))
    page = make_page()
    assert page.state == {"step": 6}
    assert store.read_text("quizState") is None
    assert store.read("grasp-quiz-state")["data"] == {"step": 6}


def test_registers_with_aggregator(store, clock, scheduler):
    from state.aggregator import AppStateAggregator

    agg = AppStateAggregator(store, clock=clock, scheduler=scheduler)
    page = PagePersistence(
        "questionBank", {"step": 1}, store=store, clock=clock, scheduler=scheduler,
        aggregator=agg, save_on_exit=False,
    )
    assert page.storage_key == "grasp-question-bank-state"
    assert agg.registered_pages() == ["questionBank"]
    page.close()
    assert agg.registered_pages() == []
