import time

import jwt as pyjwt
import pytest
from fastapi import HTTPException

from messaging.infra import jwt as jwt_helper
from messaging.infra.auth import verify_access_jwt
from messaging.settings import settings


def test_round_trip_keeps_subject_and_handle():
    token = jwt_helper.encode_access("user-1", handle="  alice ")

    claims = jwt_helper.decode_access(token)

    assert claims.user_id == "user-1"
    assert claims.handle == "alice"
    assert claims.expires_at > time.time()


def test_expired_token_is_rejected():
    token = jwt_helper.encode_access("user-1", ttl_seconds=-60)

    with pytest.raises(pyjwt.ExpiredSignatureError):
        jwt_helper.decode_access(token)


def test_foreign_audience_is_rejected():
    now = int(time.time())
    token = pyjwt.encode(
        {"iss": settings.jwt_issuer, "aud": "someone-else", "sub": "user-1", "iat": now, "exp": now + 60},
        settings.secret_key,
        algorithm="HS256",
    )

    with pytest.raises(pyjwt.InvalidAudienceError):
        jwt_helper.decode_access(token)


def test_blank_subject_is_rejected():
    now = int(time.time())
    token = pyjwt.encode(
        {"iss": settings.jwt_issuer, "aud": settings.jwt_audience, "sub": "  ", "iat": now, "exp": now + 60},
        settings.secret_key,
        algorithm="HS256",
    )

    with pytest.raises(pyjwt.InvalidTokenError):
        jwt_helper.decode_access(token)


def test_verify_maps_bad_tokens_to_401():
    token = jwt_helper.encode_access("user-1") + "x"

    with pytest.raises(HTTPException) as excinfo:
        verify_access_jwt(token)

    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == "invalid_token"
    assert verify_access_jwt(jwt_helper.encode_access("user-2")).id == "user-2"
