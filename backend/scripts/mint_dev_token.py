from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

import jwt

from chatrelay.core.settings import get_settings


def main() -> None:
    parser = argparse.ArgumentParser(description="Mint a local identity token signed with AUTH_JWT_SECRET.")
    parser.add_argument("--subject", required=True)
    parser.add_argument("--name", default=None)
    parser.add_argument("--email", default=None)
    parser.add_argument("--ttl-seconds", type=int, default=3600)
    args = parser.parse_args()

    settings = get_settings()
    if not settings.auth_jwt_secret:
        raise SystemExit("AUTH_JWT_SECRET is not set; dev tokens need a shared secret.")

    now = datetime.now(timezone.utc)
    claims = {
        "sub": args.subject,
        "iat": now,
        "exp": now + timedelta(seconds=args.ttl_seconds),
    }
    if args.name:
        claims["name"] = args.name
    if args.email:
        claims["email"] = args.email
    if settings.auth_jwt_issuer:
        claims["iss"] = settings.auth_jwt_issuer
    if settings.auth_jwt_audience:
        claims["aud"] = settings.auth_jwt_audience

    print(jwt.encode(claims, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithms[0]))


if __name__ == "__main__":
    main()
