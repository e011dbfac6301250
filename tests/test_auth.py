import pytest
from fastapi import HTTPException

from auth import create_token, decode_token, hash_password, public_user, verify_password


def test_password_hash_round_trip():
    hashed = hash_password("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("wrong", hashed)


def test_verify_rejects_missing_or_plaintext_hash():
    assert not verify_password("secret123", None)
    assert not verify_password("secret123", "secret123")


def test_token_round_trip():
    token = create_token({"id": 3, "role": "user"}, "s3cret", expire_days=1)
    payload = decode_token(token, "s3cret")
    assert payload["id"] == 3
    assert payload["role"] == "user"
    assert "exp" in payload


def test_expired_token():
    token = create_token({"id": 3}, "s3cret", expire_days=-1)
    with pytest.raises(HTTPException) as exc:
        decode_token(token, "s3cret")
    assert exc.value.status_code == 401
    assert exc.value.detail == "Token expired"


def test_wrong_secret():
    token = create_token({"id": 3}, "s3cret")
    with pytest.raises(HTTPException) as exc:
        decode_token(token, "other")
    assert exc.value.detail == "Invalid token"


def test_public_user_strips_password():
    assert public_user({"id": 1, "email": "a@b.c", "password": "h"}) == {"id": 1, "email": "a@b.c"}
