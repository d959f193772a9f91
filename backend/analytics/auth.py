"""Bearer token verification for the dashboard query endpoints.

Tokens are RS256 JWTs signed by the identity provider; the ``sub`` claim
names the owner whose websites the caller may read.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, NamedTuple

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import get_settings

ALGORITHMS = ["RS256"]
REQUIRED_CLAIMS = ("exp", "iss", "aud", "sub")
auth_scheme = HTTPBearer(auto_error=False)

# Checked in order; subclasses before their bases.
_REJECTION_DETAILS = (
    (jwt.ExpiredSignatureError, "Token expired"),
    (jwt.InvalidAudienceError, "Invalid audience"),
    (jwt.InvalidIssuerError, "Invalid issuer"),
    (jwt.MissingRequiredClaimError, "Missing claim"),
)


class TokenExpectations(NamedTuple):
    jwks_url: str
    issuer: str
    audience: str


def token_expectations() -> TokenExpectations:
    settings = get_settings()
    values = {
        "ANALYTICS_JWT_JWKS_URL": settings.jwt_jwks_url,
        "ANALYTICS_JWT_ISSUER": settings.jwt_issuer,
        "ANALYTICS_JWT_AUDIENCE": settings.jwt_audience,
    }
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise RuntimeError(f"{', '.join(missing)} must be set to validate dashboard tokens.")
    return TokenExpectations(*values.values())


@lru_cache(maxsize=1)
def _get_jwks_client(url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(url)


def _get_signing_key(token: str, jwks_url: str) -> jwt.PyJWK:
    return _get_jwks_client(jwks_url).get_signing_key_from_jwt(token)


def decode_owner_token(token: str) -> Dict:
    """Verify signature and registered claims; raises ``jwt.PyJWTError`` on failure."""
    expected = token_expectations()
    signing_key = _get_signing_key(token, expected.jwks_url)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=ALGORITHMS,
        audience=expected.audience,
        issuer=expected.issuer,
        options={"require": list(REQUIRED_CLAIMS)},
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def verify_jwt(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)) -> Dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Missing token")

    try:
        claims = decode_owner_token(credentials.credentials)
    except jwt.PyJWTError as exc:
        detail = next(
            (message for error, message in _REJECTION_DETAILS if isinstance(exc, error)),
            "Invalid token",
        )
        raise _unauthorized(detail) from exc

    if not claims.get("sub"):
        raise _unauthorized("Missing claim")
    return claims


def current_owner_id(claims: Dict = Depends(verify_jwt)) -> str:
    return str(claims["sub"])


def reset_auth_state() -> None:
    """Drop the cached JWKS client. Intended for use in tests."""

    _get_jwks_client.cache_clear()
