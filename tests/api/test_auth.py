"""Bearer token verification on protected endpoints.

Tokens are ES256 JWTs from the auth service; tests mint them with the
ephemeral key token_service generates when JWT_PUBLIC_KEY is unset.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

from app.services import token_service

PROTECTED = "/v1/progress/courses/c1"


def _claims(**overrides) -> dict:
    now = datetime.now(UTC)
    claims = {
        "sub": "alice",
        "iss": token_service.ISSUER,
        "aud": token_service.AUDIENCE,
        "exp": now + timedelta(minutes=5),
        "iat": now,
        "jti": str(uuid.uuid4()),
        "roles": ["student"],
    }
    claims.update(overrides)
    return claims


def _sign(claims: dict, key=None) -> str:
    return jwt.encode(claims, key or token_service._private_key, algorithm="ES256")


def _get(client: TestClient, token: str):
    return client.get(PROTECTED, headers={"Authorization": f"Bearer {token}"})


def test_valid_token_is_accepted(client: TestClient, token: str) -> None:
    assert _get(client, token).status_code == 200


def test_missing_token_is_401(client: TestClient) -> None:
    resp = client.get(PROTECTED)
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"


def test_garbage_token_is_401(client: TestClient) -> None:
    resp = _get(client, "total-garbage")
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid token"


def test_expired_token_is_401(client: TestClient) -> None:
    past = datetime.now(UTC) - timedelta(minutes=30)
    resp = _get(client, _sign(_claims(exp=past + timedelta(minutes=15), iat=past)))
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Token expired"


def test_token_from_another_key_is_401(client: TestClient) -> None:
    stranger = ec.generate_private_key(ec.SECP256R1())
    assert _get(client, _sign(_claims(), stranger)).status_code == 401


def test_tampered_signature_is_401(client: TestClient, token: str) -> None:
    head, body, sig = token.split(".")
    flipped = sig[:-2] + ("AA" if sig[-2:] != "AA" else "BB")
    assert _get(client, f"{head}.{body}.{flipped}").status_code == 401


def test_wrong_audience_is_401(client: TestClient) -> None:
    assert _get(client, _sign(_claims(aud="someone-else"))).status_code == 401


def test_unsigned_token_is_401(client: TestClient) -> None:
    unsigned = jwt.encode(_claims(), key=None, algorithm="none")
    assert _get(client, unsigned).status_code == 401


def test_token_without_jti_is_401(client: TestClient) -> None:
    claims = _claims()
    del claims["jti"]
    assert _get(client, _sign(claims)).status_code == 401


# ---- logging ----


def test_expired_token_logs_warning(
    client: TestClient, caplog: pytest.LogCaptureFixture
) -> None:
    past = datetime.now(UTC) - timedelta(minutes=30)
    with caplog.at_level(logging.WARNING, logger="app.api.dependencies"):
        _get(client, _sign(_claims(exp=past + timedelta(minutes=15), iat=past)))
    assert any("Expired token" in m for m in caplog.messages)


def test_invalid_token_logs_warning(
    client: TestClient, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING, logger="app.api.dependencies"):
        _get(client, "total-garbage")
    assert any("Invalid token" in m for m in caplog.messages)


def test_valid_token_logs_debug(
    client: TestClient, token: str, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.DEBUG, logger="app.api.dependencies"):
        _get(client, token)
    assert any("Token validated" in m for m in caplog.messages)


def test_token_never_logged(
    client: TestClient, token: str, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.DEBUG):
        _get(client, token)
    assert all(token not in m for m in caplog.messages)
