from __future__ import annotations

import pytest

from eventboard.errors import AuthenticationFailure
from eventboard.identity import IdentityProvider


@pytest.fixture()
def provider():
    return IdentityProvider("unit-test-secret")


def test_anonymous_identity_is_issued_then_kept(provider):
    first = provider.resolve_identity()
    assert first.is_anonymous and first.is_new
    assert first.user_id.startswith("anon-")

    again = provider.resolve_identity(session_user_id=first.user_id)
    assert again.user_id == first.user_id
    assert again.is_anonymous
    assert not again.is_new


def test_fresh_anonymous_ids_are_unique(provider):
    ids = {provider.issue_anonymous().user_id for _ in range(20)}
    assert len(ids) == 20


@pytest.mark.parametrize(
    "cookie", ["", "anon-short", "admin", "anon-<script>alert(1)</script>xx", "tok-XYZ"]
)
def test_malformed_session_ids_are_replaced(provider, cookie):
    identity = provider.resolve_identity(session_user_id=cookie)
    assert identity.user_id != cookie
    assert identity.user_id.startswith("anon-")
    assert identity.is_new


def test_token_exchange_is_stable_per_secret(provider):
    first = provider.exchange_token("organizer-token-123")
    second = provider.exchange_token("organizer-token-123")
    other = IdentityProvider("another-secret").exchange_token("organizer-token-123")

    assert first.user_id == second.user_id
    assert first.user_id.startswith("tok-") and len(first.user_id) == 36
    assert not first.is_anonymous
    assert other.user_id != first.user_id
    assert provider.exchange_token("someone-else-456").user_id != first.user_id


def test_token_wins_over_session_cookie(provider):
    anonymous = provider.resolve_identity()
    identity = provider.resolve_identity(
        session_user_id=anonymous.user_id, bearer_token="organizer-token-123"
    )
    assert identity.user_id.startswith("tok-")
    assert identity.is_new

    settled = provider.resolve_identity(
        session_user_id=identity.user_id, bearer_token="organizer-token-123"
    )
    assert settled.user_id == identity.user_id
    assert not settled.is_new


@pytest.mark.parametrize("token", ["", "short", "has spaces in it", "x" * 600])
def test_malformed_tokens_are_rejected(provider, token):
    with pytest.raises(AuthenticationFailure):
        provider.resolve_identity(bearer_token=token)


def test_change_callbacks_fire_only_on_transitions(provider):
    changes = []
    unsubscribe = provider.on_change(
        lambda previous, identity: changes.append((previous, identity.user_id))
    )

    first = provider.resolve_identity()
    provider.resolve_identity(session_user_id=first.user_id)
    token_identity = provider.resolve_identity(
        session_user_id=first.user_id, bearer_token="organizer-token-123"
    )
    unsubscribe()
    unsubscribe()
    provider.resolve_identity()

    assert changes == [(None, first.user_id), (first.user_id, token_identity.user_id)]


def test_empty_secret_is_rejected():
    with pytest.raises(ValueError):
        IdentityProvider("")
