"""
Voter token and digest helpers.
"""
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from council_vote.security import (
    JWT_ALGORITHM, JWT_SECRET, InvalidVoterToken, create_voter_token,
    decode_voter_token, fingerprint_digest, generate_session_id,
)


def test_token_roundtrip():
    assert decode_voter_token(create_voter_token("stu-1")) == "stu-1"


def test_expired_token_is_rejected():
    with pytest.raises(InvalidVoterToken):
        decode_voter_token(create_voter_token("stu-1", hours=-1))


def test_token_signed_with_another_key_is_rejected():
    forged = jwt.encode({"sub": "stu-1"}, "not-the-secret", algorithm=JWT_ALGORITHM)
    with pytest.raises(InvalidVoterToken):
        decode_voter_token(forged)


def test_token_without_subject_is_rejected():
    expires = datetime.now(timezone.utc) + timedelta(hours=1)
    token = jwt.encode({"exp": expires}, JWT_SECRET, algorithm=JWT_ALGORITHM)
    with pytest.raises(InvalidVoterToken, match="no subject"):
        decode_voter_token(token)


def test_session_ids_are_unique():
    assert generate_session_id() != generate_session_id()


def test_fingerprint_digest_skips_empty_parts():
    assert fingerprint_digest("Chrome", None, "", "Windows") == fingerprint_digest("Chrome", "Windows")
    assert len(fingerprint_digest()) == 64
