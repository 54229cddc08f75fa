from datetime import timedelta

import pytest

from roastauth.storage.errors import ConstraintViolation, DuplicateProviderLink
from roastauth.storage.memory import MemoryCache, MemoryStore
from roastauth.storage.models import OAuthState, PendingLink, utcnow


def _oauth_state(client_id="client-a", provider="google", ttl=timedelta(minutes=10)):
    now = utcnow()
    return OAuthState(
        state="a" * 32,
        code_verifier="v" * 43,
        code_challenge="c" * 43,
        redirect_uri="https://auth.example.com/v1/auth/oauth/google/callback",
        provider=provider,
        client_id=client_id,
        timestamp=now,
        expires_at=now + ttl,
    )


def _pending(token="link-token", ttl=timedelta(minutes=10)):
    now = utcnow()
    return PendingLink(
        token=token,
        provider="github",
        provider_id="4242",
        email="octo@example.com",
        existing_user_id="user-1",
        csrf_token="b" * 64,
        created_at=now,
        expires_at=now + ttl,
    )


def test_duplicate_email_is_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com")

    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("dup@example.com")

    assert exc.value.field == "email"


def test_shared_email_allowed_when_requested(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    first = store.create_user("shared@example.com", auth_method="email")
    second = store.create_user("shared@example.com", auth_method="oauth", allow_duplicate_email=True)

    assert [u.id for u in store.list_users_by_email("shared@example.com")] == [first.id, second.id]
    assert store.get_user_by_email("shared@example.com").id == first.id


def test_provider_identity_belongs_to_one_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    alice = store.create_user("alice@example.com")
    bob = store.create_user("bob@example.com")
    store.link_account(alice.id, "github", "4242", "alice@example.com")

    with pytest.raises(DuplicateProviderLink):
        store.link_account(bob.id, "github", "4242", "bob@example.com")

    assert store.get_user_by_provider("github", "4242").id == alice.id


def test_one_identity_per_provider_per_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    alice = store.create_user("alice@example.com")
    store.link_account(alice.id, "github", "4242", "alice@example.com")

    with pytest.raises(DuplicateProviderLink):
        store.link_account(alice.id, "github", "9999", "alice@example.com")


def test_relinking_same_identity_is_idempotent(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    alice = store.create_user("alice@example.com")
    first = store.link_account(alice.id, "google", "g-1", "alice@example.com")

    again = store.link_account(alice.id, "google", "g-1", "alice@example.com")

    assert again is first
    assert len(store.list_linked_accounts(alice.id)) == 1


def test_create_linked_user_links_in_one_step(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    user = store.create_linked_user("octo@example.com", "github", "4242", name="Octo")

    assert user.auth_method == "oauth"
    assert store.get_user_by_provider("github", "4242").id == user.id


def test_create_linked_user_is_all_or_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    alice = store.create_user("alice@example.com")
    store.link_account(alice.id, "github", "4242", "alice@example.com")

    with pytest.raises(DuplicateProviderLink):
        store.create_linked_user("alice@example.com", "github", "4242", allow_duplicate_email=True)
    with pytest.raises(ConstraintViolation):
        store.create_linked_user("alice@example.com", "google", "g-1")

    assert [u.id for u in store.list_users_by_email("alice@example.com")] == [alice.id]
    assert len(store.linked_accounts) == 1


def test_session_expiry_only_moves_forward(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("member@example.com")
    session = store.create_session(user.id, "c" * 64)

    with pytest.raises(ConstraintViolation):
        store.update_session(session.id, expires_at=session.expires_at - timedelta(seconds=1))

    later = session.expires_at + timedelta(hours=1)
    assert store.update_session(session.id, expires_at=later).expires_at == later


def test_session_requires_existing_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    with pytest.raises(ConstraintViolation):
        store.create_session("missing-user", "c" * 64)


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", name="Persist", auth_method="oauth")
    store.save_password(user.id, "$argon2id$hash", "argon2id")
    store.link_account(user.id, "apple", "apple-1", "persist@example.com")
    session = store.create_session(user.id, "c" * 64, auth_method="oauth", oauth_provider="apple")
    store.set_user_locked(user.id, True)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.name == "Persist"
    assert reloaded_user.is_locked is True
    assert reloaded.get_password_record(user.id) == ("$argon2id$hash", "argon2id")
    assert reloaded.get_user_by_provider("apple", "apple-1").id == user.id
    reloaded_session = reloaded.get_session(session.id)
    assert reloaded_session.oauth_provider == "apple"
    assert reloaded_session.expires_at == session.expires_at


def test_unlock_clears_failed_attempts(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("member@example.com")
    store.update_login_attempt(user.id, success=False)
    store.set_user_locked(user.id, True)

    store.set_user_locked(user.id, False)

    assert store.get_user(user.id).failed_login_attempts == 0


class TestMemoryCache:
    async def test_oauth_state_is_put_if_absent(self):
        cache = MemoryCache()

        assert await cache.put_oauth_state(_oauth_state()) is True
        assert await cache.put_oauth_state(_oauth_state()) is False
        assert await cache.put_oauth_state(_oauth_state(provider="github")) is True

    async def test_oauth_state_pops_once(self):
        cache = MemoryCache()
        await cache.put_oauth_state(_oauth_state())

        assert (await cache.pop_oauth_state("client-a", "google")).state == "a" * 32
        assert await cache.pop_oauth_state("client-a", "google") is None

    async def test_states_are_scoped_to_client(self):
        cache = MemoryCache()
        await cache.put_oauth_state(_oauth_state())

        assert await cache.pop_oauth_state("client-b", "google") is None
        assert await cache.get_oauth_state("client-a", "google") is not None

    async def test_expired_state_is_purged(self):
        cache = MemoryCache()
        await cache.put_oauth_state(_oauth_state(ttl=timedelta(seconds=-1)))

        assert await cache.get_oauth_state("client-a", "google") is None

    async def test_pending_link_round_trip(self):
        cache = MemoryCache()
        await cache.put_pending_link(_pending())

        popped = await cache.pop_pending_link("link-token")

        assert popped.provider_id == "4242"
        assert await cache.pop_pending_link("link-token") is None

    async def test_expired_pending_link_is_dropped(self):
        cache = MemoryCache()
        await cache.put_pending_link(_pending(token="old", ttl=timedelta(seconds=-1)))
        await cache.put_pending_link(_pending(token="fresh"))

        assert await cache.pop_pending_link("old") is None
        assert await cache.pop_pending_link("fresh") is not None

    async def test_rate_limit_hit_counts_under_one_lock(self):
        cache = MemoryCache()

        hits = [
            await cache.hit_rate_limit("login:198.51.100.1", 2, timedelta(minutes=15), timedelta(minutes=30))
            for _ in range(3)
        ]

        assert [h.allowed for h in hits] == [True, True, False]
        assert hits[-1].lockout_started is True
        assert (await cache.get_rate_limit("login:198.51.100.1")).locked_until is not None

    async def test_expired_rate_limits_are_purged(self):
        cache = MemoryCache()
        earlier = utcnow() - timedelta(hours=1)
        for n in range(500):
            await cache.hit_rate_limit(
                f"login:10.0.{n // 256}.{n % 256}", 10, timedelta(minutes=15), None, now=earlier
            )

        await cache.hit_rate_limit("login:198.51.100.1", 10, timedelta(minutes=15), None)

        assert list(cache._rate_limits) == ["login:198.51.100.1"]

    async def test_active_lockout_survives_purge(self):
        cache = MemoryCache()
        earlier = utcnow() - timedelta(minutes=20)
        for _ in range(2):
            await cache.hit_rate_limit(
                "login:198.51.100.1", 1, timedelta(minutes=15), timedelta(minutes=30), now=earlier
            )

        await cache.hit_rate_limit("login:198.51.100.2", 10, timedelta(minutes=15), None)

        assert await cache.get_rate_limit("login:198.51.100.1") is not None
