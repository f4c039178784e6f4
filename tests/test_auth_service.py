"""Unit tests for the identity and session orchestrator."""

import asyncio
import base64
import threading
from datetime import timedelta

import httpx
import pytest

from authsvc.config import Settings
from authsvc.service.auth import AuthService
from authsvc.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from authsvc.service.oauth import OAuthExchangeClient
from authsvc.service.passwords import CredentialHasher
from authsvc.service.revocation import RevocationStore
from authsvc.service.tokens import TokenService
from authsvc.storage.memory import MemoryStore
from authsvc.storage.models import AccountTier, IdentityProvider, utcnow

TOKEN_URI = "https://oauth.test/token"
USERINFO_URI = "https://oauth.test/userinfo"


def _settings(**overrides) -> Settings:
    values = {
        "jwt_secret": "unit-test-secret-" + "x" * 32,
        "google_client_id": "client-id",
        "google_client_secret": "client-secret",
        "google_token_uri": TOKEN_URI,
        "google_userinfo_uri": USERINFO_URI,
    }
    values.update(overrides)
    return Settings(**values)


def _google(profile: dict) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url == httpx.URL(TOKEN_URI):
            return httpx.Response(200, json={"access_token": "provider-token", "expires_in": 3599})
        if request.url == httpx.URL(USERINFO_URI):
            return httpx.Response(200, json=profile)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def _nested_header_token(depth: int = 5000) -> str:
    header = base64.urlsafe_b64encode(b"[" * depth).decode().rstrip("=")
    return f"{header}.e30.sig"


def _service(tmp_path, profile: dict | None = None) -> AuthService:
    settings = _settings()
    store = MemoryStore(fs_root=str(tmp_path))
    transport = _google(profile or {"sub": "g-1", "email": "alice@example.com"})
    return AuthService(
        store,
        TokenService(settings),
        CredentialHasher(),
        RevocationStore(store),
        oauth=OAuthExchangeClient(settings, transport=transport),
    )


async def test_register_then_login_issues_token_for_email(tmp_path):
    auth = _service(tmp_path)
    registered = await auth.register("bob@example.com", "hunter2", "Bob", "Builder")
    assert registered.token_type == "Bearer"
    assert registered.user.identity_provider == IdentityProvider.LOCAL
    assert registered.user.account_tier == AccountTier.STANDARD

    session = await auth.login("bob@example.com", "hunter2")
    claims = auth.tokens.verify(session.access_token, expected_type="access")
    assert claims is not None
    assert claims.subject == "bob@example.com"
    assert claims.user_id == registered.user.id
    assert session.expires_in == auth.tokens.access_ttl_seconds()


async def test_register_normalizes_email(tmp_path):
    auth = _service(tmp_path)
    session = await auth.register("  Carol@Example.COM ", "pw")
    assert session.user.email == "carol@example.com"
    with pytest.raises(ConflictError):
        await auth.register("carol@example.com", "other")
    again = await auth.login("CAROL@example.com", "pw")
    assert again.user.id == session.user.id


async def test_register_duplicate_conflicts(tmp_path):
    auth = _service(tmp_path)
    await auth.register("dup@example.com", "pw")
    with pytest.raises(ConflictError) as excinfo:
        await auth.register("dup@example.com", "pw")
    assert excinfo.value.status_code == 409
    assert excinfo.value.message == "Email already exists"


def test_concurrent_registration_creates_one_user(tmp_path):
    auth = _service(tmp_path)
    outcomes: list[str] = []
    barrier = threading.Barrier(6)

    def attempt() -> None:
        barrier.wait()
        try:
            asyncio.run(auth.register("race@example.com", "pw"))
            outcomes.append("ok")
        except ConflictError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 5
    assert len([u for u in auth.store.users.values() if u.email == "race@example.com"]) == 1


async def test_login_rejects_bad_credentials(tmp_path):
    auth = _service(tmp_path)
    await auth.register("eve@example.com", "right")

    with pytest.raises(AuthenticationError) as wrong:
        await auth.login("eve@example.com", "wrong")
    with pytest.raises(AuthenticationError) as missing:
        await auth.login("nobody@example.com", "right")
    assert wrong.value.message == missing.value.message == "Invalid email or password"


async def test_login_rejects_disabled_user(tmp_path):
    auth = _service(tmp_path)
    await auth.register("off@example.com", "pw")
    user = auth.store.find_by_email("off@example.com")
    user.enabled = False
    auth.store.save(user)

    with pytest.raises(AuthenticationError):
        await auth.login("off@example.com", "pw")


async def test_refresh_issues_new_pair(tmp_path):
    auth = _service(tmp_path)
    session = await auth.register("ref@example.com", "pw")
    old_claims = auth.tokens.verify(session.access_token)

    refreshed = await auth.refresh(session.refresh_token)
    new_claims = auth.tokens.verify(refreshed.access_token)
    assert new_claims.expires_at >= old_claims.expires_at
    assert refreshed.user.id == session.user.id
    assert refreshed.refresh_token != session.refresh_token

    # No rotation: the original refresh token keeps working
    again = await auth.refresh(session.refresh_token)
    assert again.user.email == "ref@example.com"


@pytest.mark.parametrize("token", ["", "garbage", "a.b.c", "x" * 300])
async def test_refresh_rejects_malformed(tmp_path, token):
    auth = _service(tmp_path)
    with pytest.raises(AuthenticationError):
        await auth.refresh(token)


async def test_refresh_rejects_access_token(tmp_path):
    auth = _service(tmp_path)
    session = await auth.register("kind@example.com", "pw")
    with pytest.raises(AuthenticationError):
        await auth.refresh(session.access_token)


async def test_refresh_rejects_revoked_token(tmp_path):
    auth = _service(tmp_path)
    session = await auth.register("rev@example.com", "pw")
    await auth.logout(session.refresh_token)
    with pytest.raises(AuthenticationError):
        await auth.refresh(session.refresh_token)


async def test_logout_revokes_until_expiry(tmp_path):
    auth = _service(tmp_path)
    session = await auth.register("out@example.com", "pw")
    other = await auth.login("out@example.com", "pw")

    assert await auth.is_revoked(session.access_token) is False
    await auth.logout(session.access_token)
    assert await auth.is_revoked(session.access_token) is True
    assert await auth.is_revoked(other.access_token) is False
    assert await auth.authenticate(f"Bearer {session.access_token}") is None
    assert await auth.authenticate(f"Bearer {other.access_token}") is not None

    # Once the entry passes the token's expiry it no longer counts
    assert auth.revocations.purge_expired(utcnow() + timedelta(days=1)) == 1
    assert await auth.is_revoked(session.access_token) is False


async def test_logout_ignores_invalid_token(tmp_path):
    auth = _service(tmp_path)
    await auth.logout("not-a-token")
    await auth.logout(None)
    assert auth.store.revocations == {}


async def test_logout_swallows_backend_failure(tmp_path):
    auth = _service(tmp_path)
    session = await auth.register("fail@example.com", "pw")

    def explode(entry):
        raise RuntimeError("store down")

    auth.store.insert_revocation = explode
    await auth.logout(session.access_token)


async def test_change_password(tmp_path):
    auth = _service(tmp_path)
    await auth.register("pw@example.com", "old")

    with pytest.raises(BadRequestError):
        await auth.change_password("pw@example.com", "old", "new", "different")
    with pytest.raises(BadRequestError):
        await auth.change_password("pw@example.com", "wrong", "new", "new")
    with pytest.raises(NotFoundError):
        await auth.change_password("ghost@example.com", "old", "new", "new")

    await auth.change_password("pw@example.com", "old", "new", "new")
    await auth.login("pw@example.com", "new")
    with pytest.raises(AuthenticationError):
        await auth.login("pw@example.com", "old")


async def test_upgrade_tier(tmp_path):
    auth = _service(tmp_path)
    await auth.register("vip@example.com", "pw")

    profile = await auth.upgrade_tier("vip@example.com", AccountTier.VIP)
    assert profile.account_tier == AccountTier.VIP
    assert (await auth.get_profile("vip@example.com")).account_tier == AccountTier.VIP

    with pytest.raises(BadRequestError) as already:
        await auth.upgrade_tier("vip@example.com", AccountTier.VIP)
    assert already.value.message == "Account is already VIP"
    back = await auth.upgrade_tier("vip@example.com", AccountTier.STANDARD)
    assert back.account_tier == AccountTier.STANDARD
    assert (await auth.get_profile("vip@example.com")).account_tier == AccountTier.STANDARD
    with pytest.raises(NotFoundError):
        await auth.upgrade_tier("ghost@example.com", AccountTier.VIP)


async def test_get_profile_missing_user(tmp_path):
    auth = _service(tmp_path)
    with pytest.raises(NotFoundError):
        await auth.get_profile("ghost@example.com")


async def test_external_login_creates_user_once(tmp_path):
    auth = _service(
        tmp_path,
        {
            "sub": "g-42",
            "email": "New@Example.com",
            "given_name": "Nia",
            "picture": "https://img.test/nia.png",
        },
    )
    first = await auth.login_with_external_provider("code-1")
    second = await auth.login_with_external_provider("code-2")

    assert first.user.id == second.user.id
    assert first.user.email == "new@example.com"
    user = auth.store.find_by_email("new@example.com")
    assert user.identity_provider == IdentityProvider.EXTERNAL
    assert user.external_provider_id == "g-42"
    assert user.first_name == "Nia"
    assert user.last_name == ""
    assert user.password_digest is None
    assert len(auth.store.users) == 1


async def test_external_login_refreshes_picture(tmp_path):
    profile = {"sub": "g-7", "email": "pic@example.com", "picture": "https://img.test/1.png"}
    auth = _service(tmp_path, profile)
    await auth.login_with_external_provider("code")

    profile["picture"] = "https://img.test/2.png"
    await auth.login_with_external_provider("code")
    assert auth.store.find_by_email("pic@example.com").profile_picture_url == "https://img.test/2.png"


async def test_external_login_links_local_account(tmp_path):
    auth = _service(
        tmp_path,
        {"sub": "g-9", "email": "link@example.com", "given_name": "Lin", "family_name": "Kay"},
    )
    local = await auth.register("link@example.com", "pw", None, "Local")
    digest = auth.store.find_by_email("link@example.com").password_digest

    linked = await auth.login_with_external_provider("code")
    assert linked.user.id == local.user.id
    user = auth.store.find_by_email("link@example.com")
    assert user.identity_provider == IdentityProvider.EXTERNAL
    assert user.external_provider_id == "g-9"
    assert user.password_digest == digest
    assert user.first_name == "Lin"
    assert user.last_name == "Local"


async def test_external_login_create_race_converges(tmp_path):
    auth = _service(tmp_path, {"sub": "g-r", "email": "racer@example.com"})
    winner = await auth.register("racer@example.com", "pw")

    # Simulate losing the race: the lookup misses but the insert collides
    original_find = auth.store.find_by_email
    calls = {"n": 0}

    def stale_find(email):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return original_find(email)

    auth.store.find_by_email = stale_find
    session = await auth.login_with_external_provider("code")
    assert session.user.id == winner.user.id
    assert len(auth.store.users) == 1


async def test_external_login_failure_is_bad_request(tmp_path):
    settings = _settings()
    store = MemoryStore(fs_root=str(tmp_path))
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
    auth = AuthService(
        store,
        TokenService(settings),
        CredentialHasher(),
        RevocationStore(store),
        oauth=OAuthExchangeClient(settings, transport=transport),
    )
    with pytest.raises(BadRequestError) as excinfo:
        await auth.login_with_external_provider("bad-code")
    assert excinfo.value.message == "Failed to authenticate with Google"
    assert store.users == {}


async def test_alice_scenario(tmp_path):
    auth = _service(tmp_path, {"sub": "g-alice", "email": "alice@example.com"})
    registered = await auth.register("alice@example.com", "pw1")

    await auth.login("alice@example.com", "pw1")
    with pytest.raises(AuthenticationError):
        await auth.login("alice@example.com", "wrongpw")

    linked = await auth.login_with_external_provider("code")
    assert linked.user.id == registered.user.id
    assert linked.user.identity_provider == IdentityProvider.EXTERNAL

    again = await auth.login("alice@example.com", "pw1")
    assert again.user.id == registered.user.id


async def test_authenticate_rejects_refresh_and_bad_headers(tmp_path):
    auth = _service(tmp_path)
    session = await auth.register("hdr@example.com", "pw")

    ctx = await auth.authenticate(f"bearer {session.access_token}")
    assert ctx.email == "hdr@example.com"
    assert ctx.user_id == session.user.id
    assert await auth.authenticate(f"Bearer {session.refresh_token}") is None
    assert await auth.authenticate(session.access_token) is None
    assert await auth.authenticate(None) is None
    assert await auth.authenticate("Bearer ") is None


async def test_deeply_nested_token_is_rejected_not_raised(tmp_path):
    auth = _service(tmp_path)
    token = _nested_header_token()

    await auth.logout(token)
    assert auth.store.revocations == {}
    with pytest.raises(AuthenticationError):
        await auth.refresh(token)
    assert await auth.authenticate(f"Bearer {token}") is None


async def test_external_only_user_has_no_password(tmp_path):
    auth = _service(tmp_path, {"sub": "g-np", "email": "nopw@example.com"})
    session = await auth.login_with_external_provider("code")
    assert auth.store.find_by_email("nopw@example.com").password_digest is None

    for attempt in ["", "pw", "anything"]:
        with pytest.raises(AuthenticationError):
            await auth.login("nopw@example.com", attempt)
    with pytest.raises(BadRequestError) as excinfo:
        await auth.change_password("nopw@example.com", "", "new-pw", "new-pw")
    assert excinfo.value.message == "Current password is incorrect"
    assert await auth.authenticate(f"Bearer {session.access_token}") is not None


async def test_external_login_on_disabled_account_changes_nothing(tmp_path):
    auth = _service(
        tmp_path,
        {"sub": "g-off", "email": "off@example.com", "picture": "https://img.test/off.png"},
    )
    await auth.register("off@example.com", "pw")
    user = auth.store.find_by_email("off@example.com")
    user.enabled = False
    before = auth.store.save(user)

    with pytest.raises(AuthenticationError):
        await auth.login_with_external_provider("code")

    after = auth.store.find_by_email("off@example.com")
    assert after.identity_provider == IdentityProvider.LOCAL
    assert after.external_provider_id is None
    assert after.profile_picture_url is None
    assert after.updated_at == before.updated_at
