import base64
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from backend.analytics import auth, config

ISSUER = "https://issuer.example.com"
AUDIENCE = "analytics-dashboard"


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


@pytest.fixture(autouse=True)
def reset_auth(monkeypatch):
    monkeypatch.setenv("ANALYTICS_JWT_JWKS_URL", "https://jwks.example.com")
    monkeypatch.setenv("ANALYTICS_JWT_ISSUER", ISSUER)
    monkeypatch.setenv("ANALYTICS_JWT_AUDIENCE", AUDIENCE)
    config.clear_settings_cache()

    known_kids = {"primary", "secondary"}

    def get_signing_key(token: str, jwks_url: str):
        assert jwks_url == "https://jwks.example.com"
        kid = jwt.get_unverified_header(token)["kid"]
        if kid not in known_kids:
            raise jwt.PyJWKClientError(f"Unable to find a signing key that matches: {kid}")
        return SimpleNamespace(key=f"public-key-{kid}")

    monkeypatch.setattr(auth, "_get_signing_key", get_signing_key)

    def fake_decode(token: str, key, algorithms=None, audience=None, issuer=None, options=None, **_):
        header_b64, payload_b64, _signature = token.split(".")
        header = json.loads(_b64decode(header_b64))
        if algorithms and header.get("alg") not in algorithms:
            raise jwt.InvalidAlgorithmError("Invalid algorithm")

        payload = json.loads(_b64decode(payload_b64))
        for claim in (options or {}).get("require", []):
            if claim not in payload:
                raise jwt.MissingRequiredClaimError(claim)

        if issuer is not None and payload.get("iss") != issuer:
            raise jwt.InvalidIssuerError("Invalid issuer")
        if audience is not None and payload.get("aud") != audience:
            raise jwt.InvalidAudienceError("Invalid audience")

        if payload["exp"] < int(datetime.now(timezone.utc).timestamp()):
            raise jwt.ExpiredSignatureError("Token expired")
        return payload

    monkeypatch.setattr(auth.jwt, "decode", fake_decode)
    auth.reset_auth_state()

    yield

    auth.reset_auth_state()
    config.clear_settings_cache()


def _build_token(*, subject="owner-1", issuer=ISSUER, audience=AUDIENCE, lifetime_seconds=300, kid="primary", alg="RS256"):
    now = datetime.now(timezone.utc)
    payload = {
        "iss": issuer,
        "aud": audience,
        "exp": int((now + timedelta(seconds=lifetime_seconds)).timestamp()),
    }
    if subject is not None:
        payload["sub"] = subject
    header = {"alg": alg, "typ": "JWT", "kid": kid}
    segments = [_b64encode(json.dumps(header).encode()), _b64encode(json.dumps(payload).encode())]
    segments.append(_b64encode(f"signed-with-{kid}".encode()))
    return ".".join(segments)


def _credentials(token: str, scheme: str = "Bearer") -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme=scheme, credentials=token)


def _rejection(token: str) -> HTTPException:
    with pytest.raises(HTTPException) as excinfo:
        auth.verify_jwt(_credentials(token))
    assert excinfo.value.status_code == 401
    return excinfo.value


def test_verify_jwt_accepts_valid_token():
    payload = auth.verify_jwt(_credentials(_build_token()))
    assert payload["sub"] == "owner-1"


def test_current_owner_id_uses_subject():
    payload = auth.verify_jwt(_credentials(_build_token(subject="owner-42")))
    assert auth.current_owner_id(payload) == "owner-42"


def test_verify_jwt_supports_key_rotation():
    auth.verify_jwt(_credentials(_build_token(kid="primary")))
    auth.verify_jwt(_credentials(_build_token(kid="secondary")))


def test_verify_jwt_requires_token():
    with pytest.raises(HTTPException) as excinfo:
        auth.verify_jwt(None)
    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == "Missing token"


def test_verify_jwt_rejects_non_bearer_scheme():
    with pytest.raises(HTTPException) as excinfo:
        auth.verify_jwt(_credentials(_build_token(), scheme="Basic"))
    assert excinfo.value.detail == "Missing token"


def test_verify_jwt_rejects_invalid_audience():
    error = _rejection(_build_token(audience="other-audience"))
    assert "audience" in error.detail.lower()


def test_verify_jwt_rejects_invalid_issuer():
    error = _rejection(_build_token(issuer="https://elsewhere.example.com"))
    assert error.detail == "Invalid issuer"


def test_verify_jwt_rejects_expired_token():
    error = _rejection(_build_token(lifetime_seconds=-60))
    assert error.detail == "Token expired"


def test_verify_jwt_requires_subject():
    error = _rejection(_build_token(subject=None))
    assert error.detail == "Missing claim"


def test_verify_jwt_rejects_empty_subject():
    error = _rejection(_build_token(subject=""))
    assert error.detail == "Missing claim"


def test_verify_jwt_rejects_unknown_signing_key():
    error = _rejection(_build_token(kid="retired"))
    assert error.detail == "Invalid token"


def test_verify_jwt_rejects_unexpected_algorithm():
    error = _rejection(_build_token(alg="HS256"))
    assert error.detail == "Invalid token"


def test_missing_configuration_is_reported(monkeypatch):
    monkeypatch.delenv("ANALYTICS_JWT_AUDIENCE")
    config.clear_settings_cache()

    with pytest.raises(RuntimeError, match="ANALYTICS_JWT_AUDIENCE"):
        auth.verify_jwt(_credentials(_build_token()))


def test_token_expectations_follow_environment(monkeypatch):
    monkeypatch.setenv("ANALYTICS_JWT_ISSUER", "https://other-issuer.example.com")

    expected = auth.token_expectations()

    assert expected.jwks_url == "https://jwks.example.com"
    assert expected.issuer == "https://other-issuer.example.com"
    assert expected.audience == AUDIENCE
    assert _rejection(_build_token()).detail == "Invalid issuer"
