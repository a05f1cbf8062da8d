"""
Shared security utilities.

Covers:
  - Voter bearer-token verification (JWT via python-jose)
  - Ballot session identifiers (one per browser session)
  - Behaviour / fingerprint digests stored with each vote

Voter tokens are issued by the school's sign-in service; these helpers
only verify them and read the student id from the ``sub`` claim.
"""

import os
import hashlib
import secrets
from datetime import datetime, timedelta, timezone

from jose import jwt, JWTError

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = "HS256"


class InvalidVoterToken(Exception):
    """Raised when a bearer token is missing, expired or forged."""


# ---------------------------------------------------------------------------
# Voter tokens
# ---------------------------------------------------------------------------

def decode_voter_token(token: str) -> str:
    """Return the student id carried by a voter token."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        raise InvalidVoterToken(str(exc)) from exc

    student_id = payload.get("sub")
    if not student_id:
        raise InvalidVoterToken("Token has no subject")
    return str(student_id)


def create_voter_token(student_id: str, hours: int = 12) -> str:
    """Issue a voter token. Used by tooling and tests; production tokens come from sign-in."""
    expires = datetime.now(timezone.utc) + timedelta(hours=hours)
    return jwt.encode(
        {"sub": student_id, "exp": expires}, JWT_SECRET, algorithm=JWT_ALGORITHM
    )


# ---------------------------------------------------------------------------
# Session identifiers
# ---------------------------------------------------------------------------

def generate_session_id() -> str:
    """Identifier scoping one browser session's ballot snapshot."""
    return secrets.token_urlsafe(16)


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------

def fingerprint_digest(*parts) -> str:
    """SHA-256 over the non-empty parts, joined with '|'."""
    data = "|".join(str(p) for p in parts if p not in (None, ""))
    return hashlib.sha256(data.encode()).hexdigest()
