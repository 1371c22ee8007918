from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth import IdentityVerifier, extract_token
from conftest import TEST_SECRET
from errors import InvalidToken, Unauthenticated


def test_issue_and_verify(verifier):
    token = verifier.issue("u1", "alice")

    identity = verifier.verify(token)

    assert identity.user_id == "u1"
    assert identity.username == "alice"


@pytest.mark.parametrize("token", [None, ""])
def test_missing_token(verifier, token):
    with pytest.raises(Unauthenticated):
        verifier.verify(token)


def test_wrong_signature(verifier):
    token = IdentityVerifier(secret="someone-else").issue("u1", "alice")
    with pytest.raises(InvalidToken):
        verifier.verify(token)


def test_expired_token(verifier):
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    token = jwt.encode({"userId": "u1", "username": "alice", "exp": int(past.timestamp())}, TEST_SECRET, algorithm="HS256")
    with pytest.raises(InvalidToken) as exc:
        verifier.verify(token)
    assert exc.value.message == "Token expired"


def test_token_without_identity_claims(verifier):
    token = jwt.encode({"sub": "u1"}, TEST_SECRET, algorithm="HS256")
    with pytest.raises(InvalidToken):
        verifier.verify(token)


def test_garbage_token(verifier):
    with pytest.raises(InvalidToken):
        verifier.verify("not.a.jwt")


@pytest.mark.parametrize(
    "header, query, expected",
    [
        ("Bearer abc", None, "abc"),
        ("bearer  abc ", None, "abc"),
        (None, "xyz", "xyz"),
        ("Bearer abc", "xyz", "abc"),
        ("Basic abc", "xyz", "xyz"),
        ("Bearer ", None, None),
        (None, "  ", None),
        (None, None, None),
    ],
)
def test_extract_token(header, query, expected):
    assert extract_token(header, query) == expected
