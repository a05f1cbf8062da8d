"""
Shared fixtures: a three-position ballot and a controllable vote submitter.
"""
import asyncio

import pytest

from council_vote.ballot import BallotTimings, SubmissionError
from council_vote.schemas import Candidate, Position

IMMEDIATE = BallotTimings(confirm_delay=0, exit_delay=0, review_delay=0, completion_delay=0)


def _candidate(cid: str, name: str) -> Candidate:
    return Candidate(
        id=cid, name=name, email=f"{cid}@school.test",
        class_name="Form 4", stream_name="East",
    )


def make_positions() -> list[Position]:
    return [
        Position(id="p0", title="Head Prefect", description="Leads the council",
                 candidates=(_candidate("A", "Amina"), _candidate("B", "Brian"))),
        Position(id="p1", title="Games Captain",
                 candidates=(_candidate("C", "Chloe"), _candidate("D", "Daniel"))),
        Position(id="p2", title="Librarian",
                 candidates=(_candidate("E", "Esther"), _candidate("F", "Felix"))),
    ]


class FakeSubmitter:
    """Records every call.

    ``fail`` maps position ids to an immediate failure reason. With
    ``hold=True`` each call parks on a future until ``resolve``/``reject``.
    """

    def __init__(self, fail: dict[str, str] | None = None, hold: bool = False):
        self.calls: list[tuple[str, str]] = []
        self.fail = fail or {}
        self.hold = hold
        self.pending: dict[str, asyncio.Future] = {}

    async def __call__(self, position_id: str, candidate_id: str) -> None:
        self.calls.append((position_id, candidate_id))
        if position_id in self.fail:
            raise SubmissionError(self.fail.pop(position_id))
        if self.hold:
            future = asyncio.get_running_loop().create_future()
            self.pending[position_id] = future
            await future

    def resolve(self, position_id: str) -> None:
        self.pending.pop(position_id).set_result(None)

    def reject(self, position_id: str, reason: str) -> None:
        self.pending.pop(position_id).set_exception(SubmissionError(reason))


@pytest.fixture
def positions() -> list[Position]:
    return make_positions()


@pytest.fixture
def submitter() -> FakeSubmitter:
    return FakeSubmitter()
