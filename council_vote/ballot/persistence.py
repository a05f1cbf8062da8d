"""
Session persistence for ballot progress.

A browser session's selections and locks are written after every change so a
reload resumes where the voter left off. A separate completion marker lets the
page-leave guard tell an abandoned ballot from a finished one.
"""
import logging
import time
from typing import Callable, Protocol

from pydantic import ValidationError

from council_vote.schemas import BallotSnapshot

logger = logging.getLogger(__name__)

BALLOT_KEY = "ballot_data"
SUBMITTED_KEY = "vote_submitted"

LEAVE_WARNING = (
    "You have not completed voting yet. Your vote will not be recorded, "
    "but your selections will be restored if you return to this page."
)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def clear(self, key: str) -> None: ...


class MemoryStore:
    """Process-local string store.

    With ``ttl`` set, an entry not rewritten within that many seconds
    reads as absent and is dropped by ``purge``.
    """

    def __init__(self, ttl: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}

    def _expired(self, written_at: float, now: float) -> bool:
        return self.ttl is not None and now - written_at > self.ttl

    def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, written_at = entry
        if self._expired(written_at, self._clock()):
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: str) -> None:
        self._data[key] = (value, self._clock())

    def purge(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        stale = [k for k, (_, written_at) in self._data.items() if self._expired(written_at, now)]
        for key in stale:
            del self._data[key]
        return len(stale)

    def clear(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class SessionPersistence:
    """Snapshot storage scoped to one session id."""

    def __init__(self, store: KeyValueStore, session_id: str):
        self.store = store
        self.session_id = session_id

    def _key(self, name: str) -> str:
        return f"{self.session_id}:{name}"

    def save(self, snapshot: BallotSnapshot) -> None:
        self.store.set(self._key(BALLOT_KEY), snapshot.model_dump_json())

    def restore(self) -> BallotSnapshot | None:
        """Return the last saved snapshot, or None if absent or unreadable."""
        try:
            raw = self.store.get(self._key(BALLOT_KEY))
        except Exception as e:
            logger.warning(f"Could not read ballot snapshot for {self.session_id}: {e}")
            return None

        if not raw:
            return None

        try:
            return BallotSnapshot.model_validate_json(raw)
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning(f"Discarding malformed ballot snapshot for {self.session_id}: {e}")
            return None

    def mark_submitted(self) -> None:
        self.store.set(self._key(SUBMITTED_KEY), "true")

    def is_submitted(self) -> bool:
        return self.store.get(self._key(SUBMITTED_KEY)) == "true"

    def has_started(self) -> bool:
        return self.store.get(self._key(BALLOT_KEY)) is not None

    def should_warn_on_leave(self) -> bool:
        """True when voting has started in this session but not finished."""
        return self.has_started() and not self.is_submitted()

    def reset(self) -> None:
        self.store.clear(self._key(BALLOT_KEY))
        self.store.clear(self._key(SUBMITTED_KEY))
