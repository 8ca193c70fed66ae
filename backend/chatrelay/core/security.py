from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import jwt
from jwt import InvalidTokenError, PyJWKClient, PyJWKClientError

from chatrelay.core.errors import Unauthenticated
from chatrelay.core.settings import Settings


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, as asserted by the identity provider."""

    subject: str
    token: str
    name: str | None = None
    email: str | None = None


@lru_cache(maxsize=8)
def _jwks_client(url: str) -> PyJWKClient:
    # PyJWKClient caches fetched keys itself; one client per URL.
    return PyJWKClient(url)


def _signing_key(token: str, settings: Settings) -> Any:
    if settings.auth_jwks_url:
        try:
            return _jwks_client(settings.auth_jwks_url).get_signing_key_from_jwt(token).key
        except PyJWKClientError as e:
            raise ValueError("Unable to resolve signing key") from e
    if not settings.auth_jwt_secret:
        raise ValueError("No token verification key configured (AUTH_JWT_SECRET or AUTH_JWKS_URL)")
    return settings.auth_jwt_secret


def decode_identity_token(token: str, settings: Settings) -> dict[str, Any]:
    """
    Verify an identity-provider token and return its claims.

    Raises ValueError on any signature/claim problem.
    """
    key = _signing_key(token, settings)
    options: dict[str, Any] = {"require": ["exp", "sub"]}
    if not settings.auth_jwt_audience:
        options["verify_aud"] = False
    try:
        return jwt.decode(
            token,
            key,
            algorithms=list(settings.auth_jwt_algorithms),
            audience=settings.auth_jwt_audience,
            issuer=settings.auth_jwt_issuer,
            options=options,
        )
    except InvalidTokenError as e:
        raise ValueError("Invalid token") from e


def _display_name(claims: dict[str, Any]) -> str | None:
    name = claims.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    given = str(claims.get("given_name") or "").strip()
    family = str(claims.get("family_name") or "").strip()
    full = f"{given} {family}".strip()
    return full or None


def identity_from_token(token: str, settings: Settings) -> Identity:
    claims = decode_identity_token(token, settings)
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise ValueError("Invalid token")
    email = claims.get("email")
    return Identity(
        subject=sub,
        token=token,
        name=_display_name(claims),
        email=email if isinstance(email, str) else None,
    )


def require_identity(identity: Identity | None) -> Identity:
    """Gate for every store operation: fail before touching the database."""
    if identity is None or not identity.subject:
        raise Unauthenticated()
    return identity
