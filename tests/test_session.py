import pytest
from supabase import AuthApiError

from howtalk.auth.session import SessionProvider
from howtalk.core.errors import AuthenticationError, ValidationError
from howtalk.core.sessions import SessionRegistry
from howtalk.core.supabase_client import set_clients
from howtalk.messenger.schemas import ProfileStatus


@pytest.fixture()
def provider(backend):
    return SessionProvider(backend, backend)


@pytest.fixture()
def clients(backend):
    # Sessions opened on demand build their provider from the shared clients
    set_clients(backend)
    yield backend
    set_clients(None)


@pytest.mark.asyncio
async def test_sign_up_creates_account_and_profile(provider, backend):
    identity = await provider.sign_up("new@example.com", "Secret#123", "Newbie")

    rows = backend.rows("profiles", user_id=identity.id)
    assert len(rows) == 1
    assert rows[0]["display_name"] == "Newbie"
    assert rows[0]["email"] == "new@example.com"


@pytest.mark.asyncio
async def test_sign_up_twice_fails(provider):
    await provider.sign_up("new@example.com", "Secret#123")

    with pytest.raises(AuthenticationError):
        await provider.sign_up("new@example.com", "Secret#123")


@pytest.mark.asyncio
async def test_sign_in_creates_missing_profile_and_notifies(provider, backend):
    user = backend.auth.add_user("fresh@example.com", "Secret#123")
    seen = []

    async def listener(identity, profile):
        seen.append((identity, profile))

    provider.add_listener(listener)
    tokens = await provider.sign_in("fresh@example.com", "Secret#123")

    assert tokens.access_token
    assert provider.identity.id == user.id
    assert provider.profile.display_name == "fresh"
    assert len(backend.rows("profiles", user_id=user.id)) == 1
    assert seen == [(provider.identity, provider.profile)]


@pytest.mark.asyncio
async def test_sign_in_with_wrong_password(provider, alice):
    with pytest.raises(AuthenticationError):
        await provider.sign_in("alice@example.com", "wrong")
    assert provider.identity is None


@pytest.mark.asyncio
async def test_sign_out_clears_state_even_when_backend_fails(provider, backend, alice, monkeypatch):
    await provider.sign_in("alice@example.com", "Secret#123")
    seen = []

    async def listener(identity, profile):
        seen.append(identity)

    async def broken_sign_out(jwt, scope="global"):
        raise RuntimeError("network down")

    provider.add_listener(listener)
    monkeypatch.setattr(backend.auth.admin, "sign_out", broken_sign_out)

    await provider.sign_out()

    assert provider.identity is None
    assert provider.profile is None
    assert provider.tokens is None
    assert provider.access_token is None
    assert seen == [None]


@pytest.mark.asyncio
async def test_update_profile(provider, backend, alice):
    await provider.sign_in("alice@example.com", "Secret#123")

    profile = await provider.update_profile(display_name="Ally", status="away")

    assert profile.display_name == "Ally"
    assert profile.status is ProfileStatus.AWAY
    row = backend.rows("profiles", user_id=alice[0].id)[0]
    assert row["display_name"] == "Ally"
    assert row["status"] == "away"

    with pytest.raises(ValidationError):
        await provider.update_profile(email="other@example.com")


@pytest.mark.asyncio
async def test_update_profile_requires_sign_in(provider):
    with pytest.raises(AuthenticationError):
        await provider.update_profile(display_name="Ghost")


@pytest.mark.asyncio
async def test_registry_opens_and_tears_down_messenger(provider, backend, alice):
    registry = SessionRegistry()
    tokens = await provider.sign_in("alice@example.com", "Secret#123")

    session = await registry.open(provider)

    assert registry.get(alice[0].id) is session
    assert session.messenger.identity.id == alice[0].id
    assert session.messenger.subscribed
    assert len(backend.channels) == 1

    assert await registry.close(alice[0].id) is True

    assert registry.get(alice[0].id) is None
    assert session.messenger.identity is None
    assert not session.messenger.subscribed
    assert backend.channels == []
    assert backend.auth.admin.revoked == [(tokens.access_token, "local")]
    assert await registry.close(alice[0].id) is False


@pytest.mark.asyncio
async def test_reopening_replaces_previous_session(backend, alice):
    registry = SessionRegistry()
    first = SessionProvider(backend, backend)
    second = SessionProvider(backend, backend)
    await first.sign_in("alice@example.com", "Secret#123")
    await second.sign_in("alice@example.com", "Secret#123")

    old = await registry.open(first)
    new = await registry.open(second)

    assert registry.get(alice[0].id) is new
    assert old.messenger.identity is None
    assert len(registry) == 1
    assert len(backend.channels) == 1

    await registry.close_all()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_registry_ensure_reuses_open_session(backend, alice):
    registry = SessionRegistry()
    identity, _ = alice
    provider = SessionProvider(backend, backend)
    await provider.attach(identity)

    session = await registry.open(provider)

    assert await registry.ensure(identity) is session
    await registry.close_all()


@pytest.mark.asyncio
async def test_refresh_profile_reads_latest_row(provider, backend, alice):
    assert await provider.refresh_profile() is None
    await provider.sign_in("alice@example.com", "Secret#123")
    backend.rows("profiles", user_id=alice[0].id)[0]["display_name"] = "Alicia"

    profile = await provider.refresh_profile()

    assert profile.display_name == "Alicia"
    assert provider.profile is profile


@pytest.mark.asyncio
async def test_signing_out_one_user_keeps_the_other_signed_in(backend, alice, bob):
    registry = SessionRegistry()
    # Both providers share one auth client, like every request in the app
    alice_provider = SessionProvider(backend, backend)
    bob_provider = SessionProvider(backend, backend)
    alice_tokens = await alice_provider.sign_in("alice@example.com", "Secret#123")
    bob_tokens = await bob_provider.sign_in("bob@example.com", "Secret#123")
    await registry.open(alice_provider)
    await registry.open(bob_provider)

    await registry.close(alice[0].id)

    with pytest.raises(AuthApiError):
        await backend.auth.refresh_session(alice_tokens.refresh_token)
    refreshed = await backend.auth.refresh_session(bob_tokens.refresh_token)
    assert refreshed.user.id == bob[0].id
    assert registry.get(bob[0].id).messenger.identity.id == bob[0].id
    await registry.close_all()


@pytest.mark.asyncio
async def test_bearer_session_revokes_its_own_token(clients, backend, alice):
    registry = SessionRegistry()
    identity, _ = alice

    await registry.ensure(identity, access_token="bearer-token")
    await registry.close(identity.id)

    assert backend.auth.admin.revoked == [("bearer-token", "local")]


@pytest.mark.asyncio
async def test_sweep_evicts_idle_sessions_only(clients, backend, alice, bob):
    now = [1000.0]
    registry = SessionRegistry(idle_timeout=60, clock=lambda: now[0])
    alice_provider = SessionProvider(backend, backend)
    bob_provider = SessionProvider(backend, backend)
    await alice_provider.attach(alice[0])
    await bob_provider.attach(bob[0])
    idle = await registry.open(alice_provider)
    await registry.open(bob_provider)

    now[0] += 45
    await registry.ensure(bob[0])
    now[0] += 30

    assert await registry.sweep() == [alice[0].id]

    assert registry.get(alice[0].id) is None
    assert idle.messenger.identity is None
    assert registry.get(bob[0].id) is not None
    assert len(backend.channels) == 1
    assert backend.auth.admin.revoked == []

    reopened = await registry.ensure(alice[0])
    assert reopened is not idle
    assert reopened.messenger.identity.id == alice[0].id
    await registry.close_all()


@pytest.mark.asyncio
async def test_sweep_without_idle_timeout_keeps_everything(provider, alice):
    registry = SessionRegistry()
    await provider.attach(alice[0])
    await registry.open(provider)

    assert await registry.sweep() == []
    assert len(registry) == 1
    await registry.close_all()
