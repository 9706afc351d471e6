from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from backchannel.config.settings import AuthSettings, get_settings

ANONYMOUS_USER = "anonymous"


@dataclass
class IdentityContext:
    """The authenticated end user. Only this user may decide their own requests."""

    user_id: str
    claims: dict[str, Any] = field(default_factory=dict)


class AuthError(RuntimeError):
    pass


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8"))


def extract_bearer_token(headers: Mapping[str, str]) -> str | None:
    auth_header = headers.get("authorization") or headers.get("Authorization")
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def verify_jwt(token: str, settings: AuthSettings, now: float | None = None) -> dict[str, Any]:
    if not settings.jwt_secret:
        raise AuthError("JWT secret not configured")
    parts = token.split(".")
    if len(parts) != 3:
        raise AuthError("invalid token format")
    try:
        header = json.loads(_b64url_decode(parts[0]).decode("utf-8"))
        claims = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValueError) as exc:
        raise AuthError("invalid token payload") from exc
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise AuthError("unsupported JWT algorithm")
    if not isinstance(claims, dict):
        raise AuthError("invalid token payload")
    expected = hmac.new(
        settings.jwt_secret.encode("utf-8"),
        f"{parts[0]}.{parts[1]}".encode(),
        hashlib.sha256,
    ).digest()
    try:
        actual = _b64url_decode(parts[2])
    except (binascii.Error, ValueError) as exc:
        raise AuthError("invalid token signature") from exc
    if not hmac.compare_digest(actual, expected):
        raise AuthError("invalid token signature")

    current = int(now if now is not None else time.time())
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and int(exp) < current:
        raise AuthError("token expired")
    nbf = claims.get("nbf")
    if isinstance(nbf, (int, float)) and int(nbf) > current:
        raise AuthError("token not yet valid")
    if settings.jwt_issuer and claims.get("iss") != settings.jwt_issuer:
        raise AuthError("token issuer mismatch")
    if settings.jwt_audience:
        aud = claims.get("aud")
        if isinstance(aud, list):
            if settings.jwt_audience not in [str(item) for item in aud]:
                raise AuthError("token audience mismatch")
        elif aud is None or str(aud) != settings.jwt_audience:
            raise AuthError("token audience mismatch")
    return claims


def resolve_identity(
    headers: Mapping[str, str],
    settings: AuthSettings,
    token: str | None = None,
) -> tuple[IdentityContext | None, str | None]:
    if settings.mode == "none":
        return IdentityContext(user_id=ANONYMOUS_USER), None
    if settings.mode == "header":
        user_id = (headers.get(settings.header_user_id) or "").strip()
        if not user_id:
            return None, f"missing {settings.header_user_id} header"
        return IdentityContext(user_id=user_id), None

    bearer = token or extract_bearer_token(headers)
    if not bearer:
        return None, "missing bearer token"
    try:
        claims = verify_jwt(bearer, settings)
    except AuthError as exc:
        return None, str(exc)
    user_id = str(claims.get("sub") or claims.get("user_id") or "").strip()
    if not user_id:
        return None, "token has no subject"
    return IdentityContext(user_id=user_id, claims=claims), None


class AuthMiddleware(BaseHTTPMiddleware):
    """Attach identity to request.state using the configured auth mode."""

    async def dispatch(self, request: Request, call_next):
        settings = get_settings().auth
        identity, error = resolve_identity(request.headers, settings)
        if identity:
            request.state.identity = identity
        if error:
            request.state.auth_error = error
        return await call_next(request)
