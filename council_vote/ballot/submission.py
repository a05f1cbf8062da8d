"""
Vote submission: the contract the ballot session calls for each selection,
and the two backends the voting service can submit through.

A submitter is any ``async (position_id, candidate_id) -> None`` callable.
It signals failure by raising; ``SubmissionError`` carries a user-facing
reason, any other exception is reported with its own text.

Backends:
    DatabaseVoteSubmitter  inserts straight into ``electoral_votes`` (asyncpg)
    RestVoteSubmitter      posts the same row to a hosted REST table (httpx)
"""
import os
import logging
from typing import Awaitable, Callable, Sequence

import asyncpg
import httpx

from council_vote.database import Database
from council_vote.schemas import (
    BehaviorAnalytics, Candidate, DeviceContext, Position, VoterProfile,
)
from council_vote.security import fingerprint_digest

logger = logging.getLogger(__name__)

VOTES_API_URL = os.getenv("VOTES_API_URL", "http://localhost:54321/rest/v1")
VOTES_API_KEY = os.getenv("VOTES_API_KEY", "")

VoteSubmitter = Callable[[str, str], Awaitable[None]]

__all__ = [
    "DatabaseVoteSubmitter", "DeviceContext", "RestVoteSubmitter",
    "SubmissionError", "VoteSubmitter", "failure_reason", "vote_row",
]


class SubmissionError(Exception):
    """A single vote could not be recorded."""

    def __init__(self, reason: str = ""):
        super().__init__(reason)
        self.reason = reason


def failure_reason(exc: BaseException) -> str:
    """Text to show the voter for a failed submission; empty if none."""
    if isinstance(exc, SubmissionError):
        return exc.reason
    return str(exc)


def vote_row(voter: VoterProfile, position: Position, candidate: Candidate,
             device: DeviceContext) -> dict:
    """Column values for one ``electoral_votes`` row, in insert order."""
    behavior = device.behavior or BehaviorAnalytics()
    fonts = ",".join(device.installed_fonts)
    return {
        "voter_id": voter.id,
        "voter_name": voter.name,
        "candidate_id": candidate.id,
        "candidate_name": candidate.name,
        "position": position.title,
        "vote_status": device.vote_status,
        "device_type": device.device,
        "browser": device.browser,
        "os": device.os,
        "screen_resolution": device.screen_resolution,
        "timezone": device.timezone,
        "language": device.language,
        "latitude": device.latitude,
        "longitude": device.longitude,
        "location_accuracy": device.location_accuracy,
        "canvas_fingerprint": device.canvas_fingerprint,
        "webgl_fingerprint": device.webgl_fingerprint,
        "installed_fonts": fonts,
        "device_fingerprint": fingerprint_digest(
            device.canvas_fingerprint, device.webgl_fingerprint, fonts
        ),
        "battery_level": device.battery_level,
        "battery_charging": device.battery_charging,
        "mouse_movement_count": behavior.mouse_movement_count,
        "average_mouse_speed": behavior.average_mouse_speed,
        "typing_speed": behavior.average_typing_speed,
        "click_count": behavior.click_count,
        "behavior_signature": behavior.behavior_signature,
    }


class _BaseSubmitter:
    """Resolves the position/candidate pair and the device context."""

    def __init__(
        self,
        voter: VoterProfile,
        positions: Sequence[Position],
        context_provider: Callable[[], DeviceContext] | None = None,
    ):
        self.voter = voter
        self._positions = {p.id: p for p in positions}
        self._context_provider = context_provider or DeviceContext

    def _row(self, position_id: str, candidate_id: str) -> dict:
        position = self._positions.get(position_id)
        candidate = position.candidate(candidate_id) if position else None
        if candidate is None:
            raise SubmissionError("Invalid position or candidate")
        # Read at call time: the context is whatever the client last reported.
        return vote_row(self.voter, position, candidate, self._context_provider())


class DatabaseVoteSubmitter(_BaseSubmitter):
    """Insert one ``electoral_votes`` row per accepted selection."""

    async def __call__(self, position_id: str, candidate_id: str) -> None:
        row = self._row(position_id, candidate_id)
        columns = ", ".join(row)
        placeholders = ", ".join(f"${i}" for i in range(1, len(row) + 1))

        try:
            async with Database.transaction() as conn:
                vote_id = await conn.fetchval(
                    f"INSERT INTO electoral_votes ({columns}) "
                    f"VALUES ({placeholders}) RETURNING id",
                    *row.values(),
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Vote insertion failed for voter {self.voter.id}, {row['position']}: {e}")
            raise SubmissionError(str(e)) from e

        logger.info(
            f"Vote {vote_id} recorded for {row['position']} "
            f"(voter {self.voter.id}, status {row['vote_status']})"
        )


def safe_json(resp, fallback=None):
    try:
        return resp.json()
    except ValueError:
        return fallback or {}


class RestVoteSubmitter(_BaseSubmitter):
    """Post each vote to a hosted REST table (PostgREST-style ``/electoral_votes``)."""

    def __init__(self, voter, positions, context_provider=None, *,
                 client: httpx.AsyncClient, base_url: str = VOTES_API_URL,
                 api_key: str = VOTES_API_KEY):
        super().__init__(voter, positions, context_provider)
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    async def __call__(self, position_id: str, candidate_id: str) -> None:
        row = self._row(position_id, candidate_id)
        headers = {"Prefer": "return=minimal"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            resp = await self.client.post(
                f"{self.base_url}/electoral_votes", json=row, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Vote request failed for voter {self.voter.id}: {e}")
            raise SubmissionError(str(e) or "network error") from e

        if resp.status_code >= 400:
            body = safe_json(resp)
            detail = (body.get("message") if isinstance(body, dict) else None) \
                or f"HTTP {resp.status_code}"
            logger.error(f"Vote rejected for voter {self.voter.id}, {row['position']}: {detail}")
            raise SubmissionError(detail)

        logger.info(f"Vote recorded for {row['position']} (voter {self.voter.id})")
