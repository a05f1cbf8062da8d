"""
Voting Service - the student-facing ballot.

It owns the voter experience end-to-end:
    1. Voter token verification (bearer JWT from the school sign-in)
    2. Ballot loading (active positions + confirmed candidates)
    3. One live ballot session per browser session, resumed after reloads
    4. Per-position vote submission with device context
    5. Page-leave guard for unfinished ballots

Votes are submitted in the background as soon as a candidate is picked;
a failed submission unlocks the position again and is reported to the voter
through the ``messages`` list of the next ballot view.

Runs on port 5003.
"""

import os
import time
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

from council_vote.ballot import (
    BallotSession, BallotState, DatabaseVoteSubmitter, MemoryStore,
    SessionPersistence, VoteSubmitter,
)
from council_vote.ballot.persistence import LEAVE_WARNING
from council_vote.ballot.submission import RestVoteSubmitter
from council_vote.database import Database
from council_vote.schemas import (
    Candidate, DeviceContext, HealthResponse, LeaveWarning, Position,
    SelectRequest, VoterProfile,
)
from council_vote.security import (
    InvalidVoterToken, decode_voter_token, generate_session_id,
)

logger = logging.getLogger("voting-service")

# -- Config -------------------------------------------------------------------
SESSION_SECRET = os.getenv("SESSION_SECRET", "change-me-in-production")
TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")
VOTE_BACKEND = os.getenv("VOTE_BACKEND", "database")  # "database" or "rest"
# Seconds an untouched ballot stays live, and an unwritten snapshot is kept.
BALLOT_IDLE_TTL = float(os.getenv("BALLOT_IDLE_TTL", "1800"))
SNAPSHOT_TTL = float(os.getenv("BALLOT_SNAPSHOT_TTL", "86400"))

LOAD_ERROR = "Failed to load voting data. Please refresh the page."
COMPLETE_MESSAGE = "All votes submitted! Thank you for voting in the Student Council Elections."

# -- Live ballots -------------------------------------------------------------
# Snapshots outlive the in-memory sessions; a session dropped from ``ballots``
# is rebuilt from its snapshot on the next request.
snapshot_store = MemoryStore(ttl=SNAPSHOT_TTL)
ballots: dict[str, "LiveBallot"] = {}

# -- Async HTTP client (REST vote backend) -------------------------------------
http_client: httpx.AsyncClient | None = None


def make_submitter(voter: VoterProfile, positions: list[Position],
                   context_provider) -> VoteSubmitter:
    if VOTE_BACKEND == "rest":
        return RestVoteSubmitter(voter, positions, context_provider, client=http_client)
    return DatabaseVoteSubmitter(voter, positions, context_provider)


class LiveBallot:
    """A ballot session plus what the voter has not been shown yet."""

    def __init__(self, session_id: str, voter: VoterProfile, positions: list[Position]):
        self.session_id = session_id
        self.voter = voter
        self.device = DeviceContext()
        self.celebrating = False
        self.last_seen = time.monotonic()
        self._messages: list[dict] = []
        self.persistence = SessionPersistence(snapshot_store, session_id)
        self.session = BallotSession(
            positions,
            make_submitter(voter, positions, lambda: self.device),
            self._on_complete,
            persistence=self.persistence,
            notify=lambda message: self.flash(message, "danger"),
            celebrate=self._on_celebrate,
        )

    def flash(self, message: str, category: str = "info"):
        self._messages.append({"message": message, "category": category})

    def touch(self):
        self.last_seen = time.monotonic()

    @property
    def has_messages(self) -> bool:
        return bool(self._messages)

    def pop_messages(self) -> list[dict]:
        messages, self._messages = self._messages, []
        return messages

    def _on_celebrate(self):
        self.celebrating = True

    def _on_complete(self, selections: dict[str, str]):
        logger.info(f"Voter {self.voter.id} completed the ballot ({len(selections)} positions)")
        self.flash(COMPLETE_MESSAGE, "success")

    def view(self) -> dict:
        session = self.session
        on_position = session.state in (BallotState.VOTING, BallotState.EXITING)
        position = session.current_position

        review = []
        for p in session.positions:
            candidate_id = session.selections.get(p.id)
            chosen = p.candidate(candidate_id) if candidate_id else None
            review.append({
                "position_id": p.id,
                "position": p.title,
                "candidate_id": candidate_id,
                "candidate": chosen.name if chosen else None,
            })

        return {
            "already_voted": False,
            "state": session.state.value,
            "position_index": session.index,
            "position_number": session.index + 1,
            "total_positions": session.total_positions,
            "current_position": position.model_dump() if on_position else None,
            "selected_candidate_id": session.selections.get(position.id) if on_position else None,
            "is_locked": bool(session.locked.get(position.id)) if on_position else False,
            "selections": dict(session.selections),
            "locked": dict(session.locked),
            "review": review,
            "celebrate": self.celebrating,
            "messages": self.pop_messages(),
        }


# -- Lifespan -----------------------------------------------------------------

@asynccontextmanager
async def lifespan(application: FastAPI):
    global http_client
    await Database.get_pool()
    http_client = httpx.AsyncClient(timeout=10.0)
    yield
    for live in ballots.values():
        live.session.close()
    ballots.clear()
    await http_client.aclose()
    await Database.close()


app = FastAPI(
    title="Voting Service",
    description="Student-facing ballot - sequential per-position voting",
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)
templates = Jinja2Templates(directory=TEMPLATES_DIR)


# -- Data access --------------------------------------------------------------

async def load_voter(student_id: str) -> VoterProfile | None:
    async with Database.connection() as conn:
        row = await conn.fetchrow(
            """
            SELECT s.id, s.name, s.email,
                   COALESCE(c.name, 'Unknown') AS class_name,
                   COALESCE(st.name, 'Unknown') AS stream_name
            FROM students s
            LEFT JOIN classes c ON c.id = s.class_id
            LEFT JOIN streams st ON st.id = s.stream_id
            WHERE s.id = $1
            """,
            student_id,
        )
    if not row:
        return None
    return VoterProfile(
        id=row["id"], name=row["name"], email=row["email"],
        class_name=row["class_name"], stream_name=row["stream_name"],
    )


async def has_already_voted(student_id: str) -> bool:
    async with Database.connection() as conn:
        found = await conn.fetchval(
            "SELECT 1 FROM electoral_votes WHERE voter_id = $1 LIMIT 1", student_id
        )
    return found is not None


async def load_positions() -> list[Position]:
    """Active positions with their confirmed candidates; empty positions dropped."""
    async with Database.connection() as conn:
        position_rows = await conn.fetch(
            """
            SELECT id, title, COALESCE(description, '') AS description
            FROM electoral_positions
            WHERE is_active = TRUE
            ORDER BY title
            """
        )
        candidate_rows = await conn.fetch(
            """
            SELECT id, position, student_name, student_email, student_photo,
                   class_name, stream_name
            FROM electoral_applications
            WHERE status = 'confirmed'
            ORDER BY student_name
            """
        )

    by_position: dict[str, list[Candidate]] = {}
    for r in candidate_rows:
        by_position.setdefault(r["position"], []).append(Candidate(
            id=r["id"],
            name=r["student_name"],
            email=r["student_email"],
            photo=r["student_photo"],
            class_name=r["class_name"],
            stream_name=r["stream_name"],
        ))

    return [
        Position(
            id=p["id"], title=p["title"], description=p["description"],
            candidates=tuple(by_position[p["id"]]),
        )
        for p in position_rows
        if by_position.get(p["id"])
    ]


# -- Helpers ------------------------------------------------------------------

async def current_voter_id(request: Request) -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return decode_voter_token(token)
    except InvalidVoterToken:
        raise HTTPException(status_code=401, detail="Invalid or expired voter token")


def sweep_ballots(now: float | None = None) -> int:
    """Drop finished ballots whose messages were shown, and ballots left idle.

    Their snapshots stay in ``snapshot_store`` (until they expire) so a
    later request still restores or recognises the finished ballot.
    """
    now = time.monotonic() if now is None else now
    stale = [
        session_id for session_id, live in ballots.items()
        if (live.session.is_complete and not live.has_messages)
        or now - live.last_seen > BALLOT_IDLE_TTL
    ]
    for session_id in stale:
        ballots.pop(session_id).session.close()
    snapshot_store.purge()
    return len(stale)


def _session_id(request: Request, voter_id: str) -> str:
    """Ballot session id for this browser session, reissued if the voter changed."""
    if request.session.get("voter_id") != voter_id or "ballot_session" not in request.session:
        request.session["voter_id"] = voter_id
        request.session["ballot_session"] = generate_session_id()
    return request.session["ballot_session"]


async def _open_ballot(request: Request, voter_id: str) -> LiveBallot | None:
    """Return the voter's live ballot, creating it if needed; None if already voted."""
    sweep_ballots()
    session_id = _session_id(request, voter_id)
    live = ballots.get(session_id)
    if live is not None:
        live.touch()
        return live

    persistence = SessionPersistence(snapshot_store, session_id)
    if persistence.is_submitted():
        return None
    in_progress = persistence.should_warn_on_leave()
    try:
        if not in_progress and await has_already_voted(voter_id):
            return None
        voter = await load_voter(voter_id)
        positions = await load_positions()
    except Exception as e:
        logger.error(f"Error loading voting data for {voter_id}: {e}")
        raise HTTPException(status_code=503, detail=LOAD_ERROR)

    if voter is None:
        raise HTTPException(status_code=404, detail="Student record not found")
    if not positions:
        raise HTTPException(status_code=404, detail="No positions are open for voting")

    live = LiveBallot(session_id, voter, positions)
    ballots[session_id] = live
    live.session.start()
    return live


# -- Routes -------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
async def health():
    return {"status": "healthy", "service": "voting"}


@app.get("/ballot")
async def get_ballot(request: Request, voter_id: str = Depends(current_voter_id)):
    """Current ballot view for this browser session."""
    live = await _open_ballot(request, voter_id)
    if live is None:
        return {"already_voted": True}
    return live.view()


@app.get("/ballot/page", response_class=HTMLResponse)
async def ballot_page(request: Request, voter_id: str = Depends(current_voter_id)):
    live = await _open_ballot(request, voter_id)
    context = live.view() if live is not None else {"already_voted": True, "messages": []}
    return templates.TemplateResponse(request, "ballot.html", context)


@app.post("/ballot/select")
async def select_candidate(request: Request, data: SelectRequest,
                           voter_id: str = Depends(current_voter_id)):
    """Pick a candidate for the current position; the vote is sent in the background."""
    live = ballots.get(_session_id(request, voter_id))
    if live is None:
        raise HTTPException(status_code=404, detail="No ballot in progress")

    live.touch()
    detected = DeviceContext.from_user_agent(request.headers.get("user-agent"))
    device = (data.device or DeviceContext()).with_defaults(detected)

    accepted = live.session.select_candidate(data.candidate_id)
    if accepted:
        # The submission task only reads the context once it runs.
        live.device = device
    return {**live.view(), "accepted": accepted}


@app.get("/ballot/leave-warning", response_model=LeaveWarning)
async def leave_warning(request: Request):
    """Whether leaving now would abandon a started ballot."""
    session_id = request.session.get("ballot_session")
    if session_id and SessionPersistence(snapshot_store, session_id).should_warn_on_leave():
        return LeaveWarning(warn=True, message=LEAVE_WARNING)
    return LeaveWarning(warn=False)
