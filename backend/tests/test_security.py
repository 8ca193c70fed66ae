from __future__ import annotations

import pytest

from chatrelay.core.errors import Unauthenticated
from chatrelay.core.security import Identity, identity_from_token, require_identity
from support import make_token


def test_identity_from_valid_token(settings) -> None:
    token = make_token("user_123", name="  Ada Lovelace ", email="ada@example.com")

    identity = identity_from_token(token, settings)

    assert identity == Identity(subject="user_123", token=token, name="Ada Lovelace", email="ada@example.com")


def test_display_name_falls_back_to_given_and_family_name(settings) -> None:
    token = make_token("user_123", given_name="Ada", family_name="Lovelace")
    assert identity_from_token(token, settings).name == "Ada Lovelace"

    bare = make_token("user_123")
    assert identity_from_token(bare, settings).name is None


@pytest.mark.parametrize(
    ("subject", "token_kwargs"),
    [
        ("user_123", {"expires_in": -60}),
        ("user_123", {"secret": "another-secret-0123456789-0123456789"}),
        ("", {}),
    ],
    ids=["expired", "wrong-secret", "empty-subject"],
)
def test_invalid_tokens_raise_value_error(settings, subject, token_kwargs) -> None:
    token = make_token(subject, **token_kwargs)
    with pytest.raises(ValueError):
        identity_from_token(token, settings)


def test_issuer_and_audience_are_enforced_when_configured(settings) -> None:
    strict = settings.model_copy(update={"auth_jwt_issuer": "https://id.example.com", "auth_jwt_audience": "chatrelay"})

    good = make_token("user_123", iss="https://id.example.com", aud="chatrelay")
    assert identity_from_token(good, strict).subject == "user_123"

    with pytest.raises(ValueError):
        identity_from_token(make_token("user_123", iss="https://evil.example.com", aud="chatrelay"), strict)
    with pytest.raises(ValueError):
        identity_from_token(make_token("user_123"), strict)


def test_missing_verification_key_is_rejected(settings) -> None:
    unconfigured = settings.model_copy(update={"auth_jwt_secret": None, "auth_jwks_url": None})
    with pytest.raises(ValueError, match="No token verification key"):
        identity_from_token(make_token("user_123"), unconfigured)


def test_require_identity() -> None:
    with pytest.raises(Unauthenticated):
        require_identity(None)
    with pytest.raises(Unauthenticated):
        require_identity(Identity(subject="", token="t"))

    identity = Identity(subject="user_123", token="t")
    assert require_identity(identity) is identity
