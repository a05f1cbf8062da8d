from council_vote.ballot.machine import BallotSession, BallotState, BallotTimings
from council_vote.ballot.persistence import KeyValueStore, MemoryStore, SessionPersistence
from council_vote.ballot.submission import (
    DatabaseVoteSubmitter, RestVoteSubmitter, SubmissionError, VoteSubmitter,
)

__all__ = [
    "BallotSession", "BallotState", "BallotTimings",
    "KeyValueStore", "MemoryStore", "SessionPersistence",
    "DatabaseVoteSubmitter", "RestVoteSubmitter", "SubmissionError", "VoteSubmitter",
]
