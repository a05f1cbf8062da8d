"""
Results Service: live tallies, paper-ballot entry and vote cleanup.

This service owns the results bounded context:
    - Tallies per position and candidate (electronic + physical votes)
    - Physical vote entry for the paper-ballot fallback
    - Duplicate electronic vote cleanup

Electronic votes only count once per voter and position: the earliest row
wins, both in the tally and in the cleanup.

Runs on port 5004.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from council_vote.database import Database
from council_vote.schemas import (
    CandidateTally, DedupeResponse, HealthResponse, PhysicalVoteCreate,
    PositionResults,
)

logger = logging.getLogger("results-service")

ELECTRONIC_TALLY_SQL = """
    WITH first_votes AS (
        SELECT candidate_id, candidate_name, position, vote_status,
               ROW_NUMBER() OVER (
                   PARTITION BY voter_id, position ORDER BY created_at ASC, id ASC
               ) AS rn
        FROM electoral_votes
    )
    SELECT position, candidate_id, MAX(candidate_name) AS candidate_name,
           COUNT(*) FILTER (WHERE vote_status = 'valid') AS valid_votes,
           COUNT(*) FILTER (WHERE vote_status <> 'valid') AS invalid_votes
    FROM first_votes
    WHERE rn = 1
    GROUP BY position, candidate_id
"""

PHYSICAL_TALLY_SQL = """
    SELECT position, candidate_id, MAX(candidate_name) AS candidate_name,
           SUM(votes_count) AS physical_votes
    FROM physical_votes
    GROUP BY position, candidate_id
"""

DEDUPE_VOTES_SQL = """
    DELETE FROM electoral_votes
    WHERE id IN (
        SELECT id
        FROM (
            SELECT id,
                   ROW_NUMBER() OVER (
                       PARTITION BY voter_id, position ORDER BY created_at ASC, id ASC
                   ) AS rn
            FROM electoral_votes
        ) t
        WHERE rn > 1
    )
"""


# ── Lifespan ─────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(application: FastAPI):
    await Database.get_pool()
    yield
    await Database.close()


app = FastAPI(
    title="Results Service",
    description="Election tallies, physical vote entry and duplicate cleanup",
    lifespan=lifespan,
)


# ── Tallying ─────────────────────────────────────────────────────────────────

def build_results(electronic_rows, physical_rows) -> list[PositionResults]:
    """Merge electronic and physical tallies into per-position results.

    Totals count valid electronic votes plus physical votes; invalid
    electronic votes are reported but not counted.
    """
    tallies: dict[str, dict[str, CandidateTally]] = {}

    def _entry(row) -> CandidateTally:
        by_candidate = tallies.setdefault(row["position"], {})
        if row["candidate_id"] not in by_candidate:
            by_candidate[row["candidate_id"]] = CandidateTally(
                candidate_id=row["candidate_id"],
                candidate_name=row["candidate_name"],
            )
        return by_candidate[row["candidate_id"]]

    for r in electronic_rows:
        entry = _entry(r)
        entry.valid_votes += r["valid_votes"] or 0
        entry.invalid_votes += r["invalid_votes"] or 0

    for r in physical_rows:
        _entry(r).physical_votes += r["physical_votes"] or 0

    results = []
    for position in sorted(tallies):
        candidates = list(tallies[position].values())
        for c in candidates:
            c.total_votes = c.valid_votes + c.physical_votes
        candidates.sort(key=lambda c: (-c.total_votes, c.candidate_name))
        results.append(PositionResults(
            position=position,
            total_votes=sum(c.total_votes for c in candidates),
            candidates=candidates,
        ))
    return results


def _affected_rows(status: str) -> int:
    """Row count from an asyncpg command tag such as ``DELETE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


# ── Routes ───────────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse)
async def health():
    return {"status": "healthy", "service": "results"}


@app.get("/results", response_model=list[PositionResults])
async def get_results():
    """Live results for every position."""
    async with Database.connection() as conn:
        electronic = await conn.fetch(ELECTRONIC_TALLY_SQL)
        physical = await conn.fetch(PHYSICAL_TALLY_SQL)
    return build_results(electronic, physical)


@app.post("/physical-votes", status_code=201)
async def add_physical_votes(data: PhysicalVoteCreate):
    """Record a paper-ballot count for one candidate."""
    try:
        async with Database.transaction() as conn:
            vote_id = await conn.fetchval(
                """
                INSERT INTO physical_votes
                    (candidate_id, candidate_name, position, votes_count, added_by, notes)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING id
                """,
                data.candidate_id, data.candidate_name, data.position,
                data.votes_count, data.added_by, data.notes,
            )
    except Exception as e:
        logger.error(f"Failed to add physical votes for {data.candidate_name}: {e}")
        raise HTTPException(status_code=500, detail="Failed to add physical votes")

    return {
        "message": f"Added {data.votes_count} physical votes for {data.candidate_name}",
        "id": vote_id,
    }


@app.post("/maintenance/dedupe-votes", response_model=DedupeResponse)
async def dedupe_votes():
    """Delete all but the earliest electronic vote per voter and position."""
    async with Database.transaction() as conn:
        status = await conn.execute(DEDUPE_VOTES_SQL)

    deleted = _affected_rows(status)
    if deleted:
        logger.info(f"Removed {deleted} duplicate votes")
    return {"message": "Duplicate votes removed", "deleted": deleted}
