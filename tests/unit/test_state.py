"""Tests for the on-disk progress state."""

import json

import pytest

from attendance_etl.core.errors import FatalJobError
from attendance_etl.core.state import STATE_VERSION, ItemOutcome, ProgressState, StateStore


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(str(tmp_path), "resync")


class TestProgressState:
    def test_record_counts(self):
        st = ProgressState(job="resync")
        st.record("a", ItemOutcome.SUCCEEDED)
        st.record("b", ItemOutcome.FAILED, "boom")
        st.record("c", ItemOutcome.SKIPPED)

        assert (st.succeeded, st.failed, st.skipped) == (1, 1, 1)
        assert st.failures == {"b": "boom"}
        assert st.done_ids() == {"a", "c"}

    def test_rerun_replaces_outcome(self):
        st = ProgressState(job="resync")
        st.record("b", ItemOutcome.FAILED, "boom")
        st.record("b", ItemOutcome.SUCCEEDED)

        assert (st.succeeded, st.failed) == (1, 0)
        assert st.failures == {}
        assert st.done_ids() == {"b"}


class TestStateStore:
    def test_missing_file(self, store):
        assert store.load() is None

    def test_save_and_load(self, store):
        st = ProgressState(job="resync", total_items=3)
        st.record("a", ItemOutcome.SUCCEEDED)

        store.save(st)
        loaded = store.load()

        assert store.path.name == ".resync-state.json"
        assert loaded.processed == {"a": ItemOutcome.SUCCEEDED}
        assert loaded.total_items == 3
        assert list(store.path.parent.glob("*.tmp")) == []

    def test_unknown_fields_are_ignored(self, store):
        store.path.write_text(json.dumps({"version": 1, "job": "resync", "shiny_new_field": [1, 2]}))

        assert store.load().job == "resync"

    def test_newer_version_is_refused(self, store):
        store.path.write_text(json.dumps({"version": STATE_VERSION + 1, "job": "resync"}))

        with pytest.raises(FatalJobError):
            store.load()

    def test_corrupt_file_is_fatal(self, store):
        store.path.write_text("{not json")

        with pytest.raises(FatalJobError) as exc:
            store.load()
        assert "--reset" in str(exc.value)

    def test_clear(self, store):
        store.save(ProgressState(job="resync"))

        assert store.clear() is True
        assert store.clear() is False
        assert not store.path.exists()
