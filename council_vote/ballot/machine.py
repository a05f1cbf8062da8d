"""
Ballot session state machine.

A voter walks the positions in order, picking one candidate per position:

    VOTING(i) --select--> (locked, vote submitted in background)
              --confirm_delay--> EXITING(i) --exit_delay--> VOTING(i+1)
    VOTING(last) --confirm_delay--> REVIEWING --review_delay--> SUBMITTING
              --completion_delay--> COMPLETED  (completion callback, once)

Selections are applied optimistically: the lock is set before the submitter
has answered. Submissions run as separate tasks and are never awaited by the
machine; a failed one comes back as a rollback event that unlocks and clears
its position, whatever state the machine has reached by then.

Every input (user selection, timer expiry, submission failure) goes through
one event queue, so transitions are applied strictly one at a time.
"""
import asyncio
import logging
import os
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from council_vote.ballot.persistence import SessionPersistence
from council_vote.ballot.submission import VoteSubmitter, failure_reason
from council_vote.schemas import BallotSnapshot, Position

logger = logging.getLogger(__name__)


class BallotState(str, Enum):
    VOTING = "voting"
    EXITING = "exiting"
    REVIEWING = "reviewing"
    SUBMITTING = "submitting"
    COMPLETED = "completed"


@dataclass(frozen=True)
class BallotTimings:
    """Delays, in seconds, between the visible steps of a ballot."""
    confirm_delay: float = 1.5
    exit_delay: float = 0.4
    review_delay: float = 0.8
    completion_delay: float = 2.0

    @classmethod
    def from_env(cls) -> "BallotTimings":
        return cls(
            confirm_delay=float(os.getenv("BALLOT_CONFIRM_DELAY", "1.5")),
            exit_delay=float(os.getenv("BALLOT_EXIT_DELAY", "0.4")),
            review_delay=float(os.getenv("BALLOT_REVIEW_DELAY", "0.8")),
            completion_delay=float(os.getenv("BALLOT_COMPLETION_DELAY", "2.0")),
        )


# -- Events -------------------------------------------------------------------

@dataclass(frozen=True)
class CandidateSelected:
    position_id: str
    candidate_id: str


@dataclass(frozen=True)
class ConfirmElapsed:
    index: int


@dataclass(frozen=True)
class ExitElapsed:
    index: int


@dataclass(frozen=True)
class ReviewElapsed:
    pass


@dataclass(frozen=True)
class CompletionElapsed:
    pass


@dataclass(frozen=True)
class SubmissionFailed:
    position_id: str
    candidate_id: str
    reason: str


# -- Session ------------------------------------------------------------------

class BallotSession:
    """One voter's pass through the ballot.

    Must be driven from inside a running event loop: selections start
    submission tasks and every delay is an asyncio task.
    """

    def __init__(
        self,
        positions: Sequence[Position],
        submit_vote: VoteSubmitter,
        on_complete: Callable[[dict[str, str]], None],
        *,
        persistence: SessionPersistence | None = None,
        notify: Callable[[str], None] | None = None,
        celebrate: Callable[[], None] | None = None,
        timings: BallotTimings | None = None,
    ):
        if not positions:
            raise ValueError("A ballot needs at least one position")

        self.positions = tuple(positions)
        self.persistence = persistence
        self.timings = timings or BallotTimings.from_env()
        self._submit_vote = submit_vote
        self._on_complete = on_complete
        self._notify = notify
        self._celebrate = celebrate

        self.state = BallotState.VOTING
        self.index = 0
        self.selections: dict[str, str] = {}
        self.locked: dict[str, bool] = {}
        self._completion_reported = False

        self._events: deque = deque()
        self._draining = False
        self._timers: set[asyncio.Task] = set()
        self._submissions: set[asyncio.Task] = set()
        self._pending_advance: asyncio.Task | None = None
        self._handlers = {
            CandidateSelected: self._on_candidate_selected,
            ConfirmElapsed: self._on_confirm_elapsed,
            ExitElapsed: self._on_exit_elapsed,
            ReviewElapsed: self._on_review_elapsed,
            CompletionElapsed: self._on_completion_elapsed,
            SubmissionFailed: self._on_submission_failed,
        }

        self._restore()

    # -- Queries --------------------------------------------------------------

    @property
    def total_positions(self) -> int:
        return len(self.positions)

    @property
    def current_position(self) -> Position:
        return self.positions[self.index]

    @property
    def is_complete(self) -> bool:
        return self.state is BallotState.COMPLETED

    def can_select(self, candidate_id: str | None = None) -> bool:
        if self.state is not BallotState.VOTING:
            return False
        position = self.current_position
        if self.locked.get(position.id):
            return False
        if candidate_id is not None and position.candidate(candidate_id) is None:
            return False
        return True

    def snapshot(self) -> BallotSnapshot:
        return BallotSnapshot(selections=dict(self.selections), locked=dict(self.locked))

    # -- Inputs ---------------------------------------------------------------

    def start(self) -> None:
        """Resume timers for a restored session that has nothing left to pick here."""
        if self._timers:
            return
        if self.state is BallotState.REVIEWING:
            self._schedule(self.timings.review_delay, ReviewElapsed())
        else:
            self._confirm_if_locked()

    def select_candidate(self, candidate_id: str) -> bool:
        """Select a candidate for the current position.

        Returns False, changing nothing, when the position is locked, the
        machine is not waiting for a selection, or the candidate is not
        standing for this position.
        """
        if not self.can_select(candidate_id):
            logger.debug(f"Ignoring selection of {candidate_id} in state {self.state.value}")
            return False
        self._dispatch(CandidateSelected(self.current_position.id, candidate_id))
        return True

    async def settle(self, *, submissions: bool = True) -> None:
        """Wait until no timers (and, by default, no submissions) are pending."""
        while True:
            pending = set(self._timers)
            if submissions:
                pending |= self._submissions
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def close(self) -> None:
        """Cancel pending timers. Submissions already sent keep running."""
        for task in list(self._timers):
            task.cancel()
        self._pending_advance = None

    # -- Event loop -----------------------------------------------------------

    def _dispatch(self, event) -> None:
        self._events.append(event)
        if self._draining:
            return
        self._draining = True
        try:
            while self._events:
                current = self._events.popleft()
                self._handlers[type(current)](current)
        finally:
            self._draining = False

    def _schedule(self, delay: float, event) -> asyncio.Task:
        task = asyncio.create_task(self._fire_after(delay, event))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    async def _fire_after(self, delay: float, event) -> None:
        await asyncio.sleep(delay)
        self._dispatch(event)

    async def _submit(self, position_id: str, candidate_id: str) -> None:
        try:
            await self._submit_vote(position_id, candidate_id)
        except Exception as exc:
            logger.error(f"Vote for position {position_id} failed: {exc!r}")
            self._dispatch(SubmissionFailed(position_id, candidate_id, failure_reason(exc)))

    # -- Handlers -------------------------------------------------------------

    def _on_candidate_selected(self, event: CandidateSelected) -> None:
        position_id = event.position_id
        if (self.state is not BallotState.VOTING
                or self.current_position.id != position_id
                or self.locked.get(position_id)):
            return

        self.selections[position_id] = event.candidate_id
        self.locked[position_id] = True
        self._save()

        task = asyncio.create_task(self._submit(position_id, event.candidate_id))
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)

        self._pending_advance = self._schedule(
            self.timings.confirm_delay, ConfirmElapsed(self.index)
        )

    def _on_confirm_elapsed(self, event: ConfirmElapsed) -> None:
        self._pending_advance = None
        if self.state is not BallotState.VOTING or self.index != event.index:
            return
        if not self.locked.get(self.current_position.id):
            return

        if self.index + 1 < self.total_positions:
            self.state = BallotState.EXITING
            self._schedule(self.timings.exit_delay, ExitElapsed(self.index))
        else:
            self.state = BallotState.REVIEWING
            self._schedule(self.timings.review_delay, ReviewElapsed())

    def _on_exit_elapsed(self, event: ExitElapsed) -> None:
        if self.state is not BallotState.EXITING or self.index != event.index:
            return
        self.index += 1
        self.state = BallotState.VOTING
        self._confirm_if_locked()

    def _on_review_elapsed(self, event: ReviewElapsed) -> None:
        if self.state is not BallotState.REVIEWING:
            return
        self.state = BallotState.SUBMITTING
        self._call_hook(self._celebrate)
        self._schedule(self.timings.completion_delay, CompletionElapsed())

    def _on_completion_elapsed(self, event: CompletionElapsed) -> None:
        if self.state is not BallotState.SUBMITTING:
            return
        self.state = BallotState.COMPLETED
        if self.persistence is not None:
            self.persistence.mark_submitted()
        if not self._completion_reported:
            self._completion_reported = True
            logger.info(f"Ballot completed with {len(self.selections)} selections")
            self._call_hook(self._on_complete, dict(self.selections))

    def _on_submission_failed(self, event: SubmissionFailed) -> None:
        position_id = event.position_id
        self.locked[position_id] = False
        self.selections.pop(position_id, None)
        self._save()

        # Still waiting to leave this position: stay so it can be re-selected.
        if (self._pending_advance is not None
                and self.state is BallotState.VOTING
                and self.current_position.id == position_id):
            self._pending_advance.cancel()
            self._pending_advance = None

        reason = event.reason or "Unknown error"
        self._call_hook(self._notify, f"Failed to record vote: {reason}. Please try again.")

    # -- Helpers --------------------------------------------------------------

    def _confirm_if_locked(self) -> None:
        # Positions already chosen before a reload are passed over one step at a time.
        if self.state is BallotState.VOTING and self.locked.get(self.current_position.id):
            self._pending_advance = self._schedule(
                self.timings.confirm_delay, ConfirmElapsed(self.index)
            )

    def _save(self) -> None:
        if self.persistence is not None:
            self.persistence.save(self.snapshot())

    def _call_hook(self, hook, *args) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:
            logger.exception(f"Ballot callback {hook!r} failed")

    def _restore(self) -> None:
        if self.persistence is None:
            return
        snapshot = self.persistence.restore()
        if snapshot is None:
            return

        for position in self.positions:
            candidate_id = snapshot.selections.get(position.id)
            if candidate_id is not None and position.candidate(candidate_id) is not None:
                self.selections[position.id] = candidate_id
                self.locked[position.id] = True
            elif position.id in snapshot.locked:
                self.locked[position.id] = False

        for i, position in enumerate(self.positions):
            if position.id not in self.selections:
                self.index = i
                return

        self.index = self.total_positions - 1
        if self.persistence.is_submitted():
            self.state = BallotState.COMPLETED
            self._completion_reported = True
        else:
            self.state = BallotState.REVIEWING
