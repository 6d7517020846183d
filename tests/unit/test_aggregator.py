from __future__ import annotations

from typing import Any, Dict, Optional

import pytest

from state import aggregator as aggregator_mod
from state.aggregator import AppStateAggregator
from state.codec import encode
from state.keyed_store import ABSENT, MemoryStore, WriteResult
from state.keys import PAGE_KEYS
from state.persistence import PagePersistence


DAY_MS = 24 * 60 * 60 * 1000


class _Provider:
    def __init__(self, snapshot: Optional[Dict[str, Any]]) -> None:
        self.snapshot = snapshot
        self.calls = 0

    def get_snapshot(self):
        self.calls += 1
        return self.snapshot


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def agg(store, clock, scheduler):
    a = AppStateAggregator(store, clock=clock, scheduler=scheduler)
    yield a
    a.stop()


def _seed(store, key, page, data, ts):
    store.write(key, encode(page, data, ts).model_dump())


def test_registry_keys_follow_grasp_format():
    assert PAGE_KEYS["dashboard"] == "grasp-dashboard-state"
    assert PAGE_KEYS["questionGeneration"] == "grasp-question-generation-state"
    assert PAGE_KEYS["courseMaterials"] == "grasp-course-materials-state"
    assert PAGE_KEYS["onboarding"] == "grasp-onboarding-state"
    assert len(PAGE_KEYS) == 8


def test_key_for_unknown_page_is_derived(agg):
    assert agg.key_for("quizSummary") == "grasp-quiz-summary-state"


def test_save_all_states_saves_registered_and_skips_missing(agg, store, clock):
    agg.register("dashboard", _Provider({"tab": "courses"}))
    agg.register("settings", _Provider(None))

    assert agg.save_all_states() == 1
    assert store.read("grasp-dashboard-state") == {
        "data": {"tab": "courses"},
        "timestamp": clock.t,
        "page": "dashboard",
    }
    assert store.read("grasp-settings-state") is ABSENT


def test_failing_provider_is_skipped(agg, store):
    class Broken:
        def get_snapshot(self):
            raise RuntimeError("page gone")

    agg.register("dashboard", Broken())
    agg.register("settings", _Provider({"theme": "dark"}))
    assert agg.save_all_states() == 1
    assert store.read("grasp-settings-state")["data"] == {"theme": "dark"}


def test_unregister_only_matching_provider(agg):
    first, second = _Provider({}), _Provider({})
    agg.register("dashboard", first)
    agg.register("dashboard", second)
    agg.unregister("dashboard", first)
    assert agg.registered_pages() == ["dashboard"]
    agg.unregister("dashboard")
    assert agg.registered_pages() == []


def test_timer_saves_every_thirty_seconds(agg, scheduler):
    p = _Provider({"a": 1})
    agg.register("dashboard", p)
    agg.start()
    scheduler.advance(29.5)
    assert p.calls == 0
    scheduler.advance(0.5)
    assert p.calls == 1
    scheduler.advance(60.0)
    assert p.calls == 3
    agg.stop()
    scheduler.advance(60.0)
    assert p.calls == 3


def test_visibility_and_unload_trigger_save(agg):
    p = _Provider({"a": 1})
    agg.register("dashboard", p)
    agg.on_visibility_change(hidden=False)
    assert p.calls == 0
    agg.on_visibility_change(hidden=True)
    agg.on_before_unload()
    assert p.calls == 2


def test_change_and_input_are_debounced_independently(agg, scheduler):
    p = _Provider({"a": 1})
    agg.register("dashboard", p)

    agg.on_change()
    scheduler.advance(0.5)
    agg.on_change()  # restarts the 1 s window
    agg.on_input()
    scheduler.advance(0.75)
    assert p.calls == 0
    scheduler.advance(0.25)
    assert p.calls == 1  # change fired at 1.5 s
    scheduler.advance(0.75)
    assert p.calls == 1
    scheduler.advance(0.25)
    assert p.calls == 2  # input fired at 2.5 s


def test_page_loaded_saves_after_delay(agg, scheduler):
    p = _Provider({"a": 1})
    agg.register("dashboard", p)
    agg.on_page_loaded()
    scheduler.advance(1.5)
    assert p.calls == 0
    scheduler.advance(0.5)
    assert p.calls == 1


def test_clear_old_states(agg, store, clock):
    _seed(store, "grasp-dashboard-state", "dashboard", {"x": 1}, clock.t - 8 * DAY_MS)
    _seed(store, "grasp-settings-state", "settings", {"x": 1}, clock.t - 1 * DAY_MS)
    _seed(store, "grasp-quiz-summary-state", "quizSummary", {"x": 1}, clock.t - 30 * DAY_MS)
    store._set_text("grasp-onboarding-state", "{corrupt")
    store._set_text("unrelated", "{not ours")

    removed = agg.clear_old_states()

    assert sorted(removed) == [
        "grasp-dashboard-state",
        "grasp-onboarding-state",
        "grasp-quiz-summary-state",
    ]
    assert store.read("grasp-settings-state") is not ABSENT
    assert store.read_text("unrelated") == "{not ours"


def test_load_state_discards_stale(agg, store, clock):
    _seed(store, "grasp-dashboard-state", "dashboard", {"x": 1}, clock.t - 8 * DAY_MS)
    assert agg.load_state("dashboard", {"x": 0}) == {"x": 0}
    assert store.read("grasp-dashboard-state") is ABSENT


def test_restore_state_invokes_callback(agg):
    agg.save_state("settings", {"theme": "dark"})
    seen = []
    assert agg.restore_state("settings", seen.append) == {"theme": "dark"}
    assert seen == [{"theme": "dark"}]


def test_export_and_import_bypass_freshness(agg, store, clock):
    agg.save_state("dashboard", {"tab": "x"})
    agg.save_state("questionBank", {"selectedIds": {1, 2}})
    exported = agg.export_states()
    assert set(exported) == {"dashboard", "questionBank"}
    assert exported["questionBank"]["data"] == {"selectedIds": [1, 2]}

    old = encode("settings", {"theme": "dark"}, clock.t - 60 * DAY_MS).model_dump()
    target = MemoryStore()
    other = AppStateAggregator(target, clock=clock)
    assert other.import_states({**exported, "settings": old}) == 3
    assert target.read("grasp-settings-state") == old
    assert target.read("grasp-dashboard-state") == exported["dashboard"]


def test_import_skips_entries_without_a_page_name(agg, store, clock):
    rec = encode("dashboard", {"tab": "x"}, clock.t).model_dump()
    assert agg.import_states({"dashboard": rec, " ": rec, "settings": rec}) == 2
    assert store.read("grasp-dashboard-state") == rec
    assert store.read("grasp-settings-state") == rec


def test_clear_old_states_leaves_unrelated_state_suffixed_keys(agg, store, clock):
    store._set_text("formState", '{"draft": "hello"}')
    store._set_text("dashboardState", '{"tab": "old"}')
    agg.register("quiz", _Provider({"step": 1}))
    store._set_text("quizState", '{"step": 2}')

    removed = agg.clear_old_states()

    assert sorted(removed) == ["dashboardState", "quizState"]
    assert store.read_text("formState") == '{"draft": "hello"}'


def test_quota_failure_clears_old_states_then_retries(clock, scheduler):
    class OnceFull(MemoryStore):
        def __init__(self):
            super().__init__()
            self.full = True
            self.removed = []

        def write(self, key, value):
            if self.full and key == "grasp-settings-state":
                self.full = False
                return WriteResult.QUOTA_EXCEEDED
            return super().write(key, value)

        def remove(self, key):
            self.removed.append(key)
            super().remove(key)

    store = OnceFull()
    _seed(store, "grasp-dashboard-state", "dashboard", {"x": 1}, clock.t - 8 * DAY_MS)
    agg = AppStateAggregator(store, clock=clock, scheduler=scheduler)

    assert agg.save_state("settings", {"theme": "dark"})
    assert store.removed == ["grasp-dashboard-state"]
    assert store.read("grasp-settings-state")["data"] == {"theme": "dark"}


def test_facade_quota_eviction_goes_through_aggregator(clock, scheduler):
    class FullOnce(MemoryStore):
        full = False

        def write(self, key, value):
            if self.full:
                self.full = False
                return WriteResult.QUOTA_EXCEEDED
            return super().write(key, value)

    store = FullOnce()
    agg = AppStateAggregator(store, clock=clock, scheduler=scheduler)
    calls = []
    agg.clear_old_states = lambda: calls.append(1) or []  # type: ignore[method-assign]

    page = PagePersistence(
        "dashboard", {"x": 0}, store=store, clock=clock, scheduler=scheduler,
        aggregator=agg, save_on_exit=False,
    )
    store.full = True
    assert page.update_state({"x": 1})
    assert calls == [1]
    assert store.read("grasp-dashboard-state")["data"] == {"x": 1}
    page.close()


def test_facades_registered_with_aggregator_are_saved_together(store, clock, scheduler, agg):
    bank = PagePersistence(
        "questionBank", {"selectedIds": set()}, store=store, clock=clock,
        scheduler=scheduler, autosave_interval=None, aggregator=agg, save_on_exit=False,
    )
    review = PagePersistence(
        "questionReview", {"index": 0}, store=store, clock=clock,
        scheduler=scheduler, autosave_interval=None, aggregator=agg, save_on_exit=False,
    )
    bank.state["selectedIds"].add(7)
    review.state["index"] = 3

    agg.on_before_unload()

    assert store.read("grasp-question-bank-state")["data"] == {"selectedIds": [7]}
    assert store.read("grasp-question-review-state")["data"] == {"index": 3}
    bank.close()
    review.close()


def test_default_aggregator_is_a_singleton(monkeypatch):
    monkeypatch.setenv("GRASP_STATE_BACKEND", "memory")
    monkeypatch.setattr(aggregator_mod, "_default", None)
    first = aggregator_mod.default_aggregator()
    try:
        assert aggregator_mod.default_aggregator() is first
        assert isinstance(first.store, MemoryStore)
    finally:
        first.stop()
