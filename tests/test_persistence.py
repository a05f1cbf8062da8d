"""
Session persistence adapter tests.
"""
import logging

import pytest

from council_vote.ballot.persistence import (
    LEAVE_WARNING, MemoryStore, SessionPersistence,
)
from council_vote.schemas import BallotSnapshot


class BrokenStore(MemoryStore):
    def get(self, key):
        raise OSError("storage unavailable")


@pytest.fixture
def persistence():
    return SessionPersistence(MemoryStore(), "tab-1")


def test_restore_without_snapshot_returns_none(persistence):
    assert persistence.restore() is None
    assert not persistence.has_started()


def test_save_overwrites_previous_snapshot(persistence):
    persistence.save(BallotSnapshot(selections={"p0": "A"}, locked={"p0": True}))
    persistence.save(BallotSnapshot(selections={}, locked={"p0": False}))
    persistence.save(BallotSnapshot(selections={}, locked={"p0": False}))

    assert persistence.restore() == BallotSnapshot(selections={}, locked={"p0": False})
    assert len(persistence.store) == 1


def test_snapshots_are_scoped_by_session():
    store = MemoryStore()
    first = SessionPersistence(store, "tab-1")
    second = SessionPersistence(store, "tab-2")

    first.save(BallotSnapshot(selections={"p0": "A"}, locked={"p0": True}))

    assert second.restore() is None
    assert first.restore().selections == {"p0": "A"}


@pytest.mark.parametrize("raw", [
    "{not json",
    "[1, 2, 3]",
    '{"selections": 5, "locked": {}}',
    '{"selections": {"p0": ["A"]}}',
    "null",
])
def test_malformed_snapshot_is_treated_as_absent(raw, caplog):
    store = MemoryStore()
    store.set("tab-1:ballot_data", raw)

    with caplog.at_level(logging.WARNING):
        assert SessionPersistence(store, "tab-1").restore() is None
    assert "tab-1" in caplog.text


def test_unreadable_store_is_treated_as_absent(caplog):
    with caplog.at_level(logging.WARNING):
        assert SessionPersistence(BrokenStore(), "tab-1").restore() is None
    assert "storage unavailable" in caplog.text


def test_leave_guard_follows_ballot_progress(persistence):
    assert not persistence.should_warn_on_leave()

    persistence.save(BallotSnapshot(selections={"p0": "A"}, locked={"p0": True}))
    assert persistence.should_warn_on_leave()

    persistence.mark_submitted()
    assert persistence.is_submitted()
    assert not persistence.should_warn_on_leave()


def test_reset_clears_snapshot_and_marker(persistence):
    persistence.save(BallotSnapshot())
    persistence.mark_submitted()

    persistence.reset()

    assert persistence.restore() is None
    assert not persistence.is_submitted()
    assert len(persistence.store) == 0


def test_leave_warning_text_mentions_restore():
    assert "restored" in LEAVE_WARNING


def test_memory_store_expires_unwritten_entries():
    now = [0.0]
    store = MemoryStore(ttl=60, clock=lambda: now[0])
    store.set("tab-1:ballot_data", "{}")
    store.set("tab-2:ballot_data", "{}")

    now[0] = 45.0
    store.set("tab-2:ballot_data", "{}")
    now[0] = 90.0

    assert store.get("tab-1:ballot_data") is None
    assert store.get("tab-2:ballot_data") == "{}"

    now[0] = 200.0
    assert store.purge() == 1
    assert len(store) == 0
