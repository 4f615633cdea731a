"""Tests for SessionManager: credentials, validation, refresh, failure tracking."""

from __future__ import annotations

import base64
import contextlib
import json
import time
from pathlib import Path

import pytest
from aiohttp import test_utils, web

from maas.auth.codec import JwtToken, OAuthToken, VendorKey
from maas.auth.session import SessionManager, auth_delay_ms
from maas.config import AuthSettings, DiscoverySettings
from maas.discovery import ServiceDiscovery
from maas.errors import AuthError, NetworkError, ValidationError
from maas.store.config_store import ConfigStore

SHARED_KEY = "pk_shared123456789.sk_shared123456789012345"


def make_jwt(claims: dict) -> str:
    """Helper: unsigned JWT with the given claims."""

    def seg(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()

    return f"{seg({'alg': 'HS256'})}.{seg(claims)}.sig"


def make_session(path: Path, auth_base: str = "http://127.0.0.1:9", **auth) -> SessionManager:
    store = ConfigStore(path)
    discovery = ServiceDiscovery(
        store, DiscoverySettings(skip=True), environ={"MAAS_AUTH_BASE": auth_base}
    )
    return SessionManager(store, discovery, AuthSettings(**auth))


@contextlib.asynccontextmanager
async def auth_server(statuses=(200,), token_status=200, token_body=None):
    """Local auth service. Health answers with `statuses` in turn (last one repeats)."""
    pending = list(statuses)
    calls: list[dict] = []

    async def health(request):
        calls.append({"path": request.path, "headers": dict(request.headers)})
        status = pending.pop(0) if len(pending) > 1 else pending[0]
        return web.Response(status=status)

    async def token(request):
        form = await request.post()
        calls.append({"path": request.path, "form": dict(form)})
        if token_status != 200:
            return web.Response(status=token_status)
        return web.json_response(token_body or {})

    app = web.Application()
    app.router.add_get("/v1/auth/health", health)
    app.router.add_post("/oauth/token", token)
    async with test_utils.TestServer(app) as server:
        yield str(server.make_url("/")).rstrip("/"), calls


class TestAuthDelay:
    def test_pure_function(self):
        assert [auth_delay_ms(n) for n in range(6)] == [0, 0, 0, 2000, 4000, 8000]
        assert auth_delay_ms(20) == 30_000


class TestSetCredential:
    @pytest.mark.asyncio
    async def test_shared_key_across_devices(self, tmp_path: Path):
        sessions = [make_session(tmp_path / f"device-{i}") for i in range(3)]
        for session in sessions:
            await session.set_credential(SHARED_KEY, skip_validation=True)

        credentials = [s.get_active_credential() for s in sessions]
        assert credentials[0] == credentials[1] == credentials[2]
        assert isinstance(credentials[0], VendorKey)
        assert len({s.get_device_id() for s in sessions}) == 3

    @pytest.mark.asyncio
    async def test_invalid_format(self, tmp_path: Path):
        session = make_session(tmp_path)
        with pytest.raises(ValidationError, match="Vendor key is required"):
            await session.set_credential("   ")
        with pytest.raises(ValidationError, match="Invalid format"):
            await session.set_credential("pk_short.sk_short")
        assert session.get_active_credential() is None

    @pytest.mark.asyncio
    async def test_accepted_by_server(self, tmp_path: Path):
        async with auth_server([200]) as (base, calls):
            session = make_session(tmp_path, base)
            session.increment_failure_count()
            await session.set_credential(SHARED_KEY)

        assert calls[0]["headers"]["X-API-Key"] == SHARED_KEY
        config = session.store.load()
        assert config.auth_method == "vendor_key"
        assert config.auth_failure_count == 0
        assert config.last_validated is not None

    @pytest.mark.asyncio
    async def test_rejected_by_server(self, tmp_path: Path):
        async with auth_server([401]) as (base, _):
            session = make_session(tmp_path, base)
            with pytest.raises(AuthError) as exc:
                await session.set_credential(SHARED_KEY)
        assert exc.value.status == 401
        assert session.get_active_credential() is None

    @pytest.mark.asyncio
    async def test_server_unreachable(self, tmp_path: Path):
        async with test_utils.TestServer(web.Application()) as server:
            base = str(server.make_url("/")).rstrip("/")
        # Server closed: connection refused
        session = make_session(tmp_path, base)
        with pytest.raises(NetworkError):
            await session.set_credential(SHARED_KEY)
        assert session.get_active_credential() is None

    @pytest.mark.asyncio
    async def test_env_skip_validation(self, tmp_path: Path):
        session = make_session(tmp_path, skip_server_validation=True)
        await session.set_credential(SHARED_KEY)
        config = session.store.load()
        assert config.credential is not None
        assert config.last_validated is None

    @pytest.mark.asyncio
    async def test_jwt_claims_become_user(self, tmp_path: Path):
        token = make_jwt({"email": "dev@example.test", "role": "admin", "exp": time.time() + 3600})
        session = make_session(tmp_path)
        await session.set_credential(token, skip_validation=True)
        config = session.store.load()
        assert config.auth_method == "jwt"
        assert config.user["email"] == "dev@example.test"
        assert config.user["role"] == "admin"


class TestFailureTracking:
    @pytest.mark.asyncio
    async def test_three_failures_then_success(self, tmp_path: Path):
        async with auth_server([503, 503, 503, 200]) as (base, _):
            session = make_session(tmp_path, base)
            await session.set_credential(SHARED_KEY, skip_validation=True)

            for _ in range(3):
                assert await session.validate_stored_credentials() is False
            assert isinstance(session.last_validation_error, NetworkError)
            # Unreachable is not rejected: the credential stays
            assert session.get_active_credential() is not None
            assert session.get_failure_count() == 3
            assert session.should_delay_auth() is True
            assert session.get_auth_delay_ms() == 2000

            assert await session.validate_stored_credentials() is True
        assert session.get_failure_count() == 0
        assert session.should_delay_auth() is False
        assert session.get_auth_delay_ms() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_credential_is_cleared(self, tmp_path: Path, status: int):
        async with auth_server([status]) as (base, _):
            session = make_session(tmp_path, base)
            await session.set_credential(SHARED_KEY, skip_validation=True)
            assert await session.validate_stored_credentials() is False

        assert isinstance(session.last_validation_error, AuthError)
        assert session.get_active_credential() is None
        assert session.status()["authenticated"] is False
        assert session.get_failure_count() == 1
        # A fresh process reading the document sees the same
        assert make_session(tmp_path).get_active_credential() is None

    @pytest.mark.asyncio
    async def test_count_persists_across_instances(self, tmp_path: Path):
        first = make_session(tmp_path)
        first.increment_failure_count()
        first.increment_failure_count()
        second = make_session(tmp_path)
        assert second.get_failure_count() == 2
        assert second.store.load().last_auth_failure is not None
        second.reset_failure_count()
        assert first.get_failure_count() == 0

    @pytest.mark.asyncio
    async def test_no_credential(self, tmp_path: Path):
        session = make_session(tmp_path)
        assert await session.validate_stored_credentials() is False
        assert session.get_failure_count() == 0


class TestRefresh:
    @pytest.mark.asyncio
    async def test_vendor_key_never_expires(self, tmp_path: Path):
        session = make_session(tmp_path)
        await session.set_credential(SHARED_KEY, skip_validation=True)
        assert isinstance(await session.refresh_token_if_needed(), VendorKey)

    @pytest.mark.asyncio
    async def test_valid_jwt_kept(self, tmp_path: Path):
        session = make_session(tmp_path)
        token = make_jwt({"exp": time.time() + 3600})
        await session.set_credential(token, skip_validation=True)
        assert await session.refresh_token_if_needed() == JwtToken(
            raw=token, expires_at_epoch=session.get_active_credential().expires_at_epoch
        )

    @pytest.mark.asyncio
    async def test_expired_jwt_requires_reauth(self, tmp_path: Path):
        session = make_session(tmp_path)
        await session.set_credential(make_jwt({"exp": time.time() + 60}), skip_validation=True)
        # Inside the 5 minute refresh buffer
        with pytest.raises(AuthError) as exc:
            await session.refresh_token_if_needed()
        assert exc.value.code == "expired"
        assert session.get_active_credential() is None

    @pytest.mark.asyncio
    async def test_oauth_refresh(self, tmp_path: Path):
        body = {"access_token": "new-access", "refresh_token": "r2", "expires_in": 3600}
        async with auth_server(token_body=body) as (base, calls):
            session = make_session(tmp_path, base)
            expired = OAuthToken(
                access=make_jwt({"email": "dev@example.test"}),
                refresh="r1",
                expires_at_epoch=time.time() - 10,
            )
            await session.set_credential(expired, skip_validation=True)

            refreshed = await session.refresh_token_if_needed()

        assert calls[-1]["form"] == {"grant_type": "refresh_token", "refresh_token": "r1"}
        assert refreshed.access == "new-access"
        assert refreshed.refresh == "r2"
        assert refreshed.expires_at_epoch > time.time()
        assert session.get_active_credential() == refreshed

    @pytest.mark.asyncio
    async def test_oauth_refresh_rejected(self, tmp_path: Path):
        async with auth_server(token_status=401) as (base, _):
            session = make_session(tmp_path, base)
            expired = OAuthToken(access="old", refresh="r1", expires_at_epoch=time.time() - 10)
            await session.set_credential(expired, skip_validation=True)
            with pytest.raises(AuthError, match="re-authentication required"):
                await session.refresh_token_if_needed()
        assert session.get_active_credential() is None

    @pytest.mark.asyncio
    async def test_get_valid_credential_requires_login(self, tmp_path: Path):
        session = make_session(tmp_path)
        with pytest.raises(AuthError) as exc:
            await session.get_valid_credential()
        assert exc.value.code == "required"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_auth_headers(self, tmp_path: Path):
        session = make_session(tmp_path)
        with pytest.raises(AuthError):
            session.auth_headers()
        await session.set_credential(SHARED_KEY, skip_validation=True)
        assert session.auth_headers()["X-API-Key"] == SHARED_KEY

    @pytest.mark.asyncio
    async def test_logout_keeps_device_id(self, tmp_path: Path):
        session = make_session(tmp_path)
        device = session.get_device_id()
        await session.set_credential(SHARED_KEY, skip_validation=True)
        session.logout()
        config = session.store.load()
        assert config.credential is None
        assert config.auth_method is None
        assert config.device_id == device

    @pytest.mark.asyncio
    async def test_reset_backs_up_and_keeps_device_id(self, tmp_path: Path):
        session = make_session(tmp_path)
        await session.set_credential(SHARED_KEY, skip_validation=True)
        device = session.get_device_id()

        session.reset()
        assert session.get_active_credential() is None
        assert session.get_device_id() == device
        assert len(session.store.list_backups()) == 1

    @pytest.mark.asyncio
    async def test_switching_method_clears_credential(self, tmp_path: Path):
        session = make_session(tmp_path)
        await session.set_credential(SHARED_KEY, skip_validation=True)
        session.set_auth_method("vendor_key")
        assert session.get_active_credential() is not None
        session.set_auth_method("jwt")
        assert session.get_active_credential() is None
        assert session.store.load().auth_method == "jwt"
        with pytest.raises(ValidationError):
            session.set_auth_method("password")

    def test_chosen_method_survives_reload(self, tmp_path: Path):
        session = make_session(tmp_path)
        session.set_auth_method("oauth")
        assert session.store.load().auth_method == "oauth"
        assert make_session(tmp_path).status()["auth_method"] == "oauth"

    def test_record_connection_error(self, tmp_path: Path):
        session = make_session(tmp_path)
        session.record_connection_error(NetworkError("refused", kind="refused"))
        error = session.store.load().last_connection_error
        assert error["category"] == "network"
        assert error["message"] == "refused"
        assert error["at"]
        session.record_connection_error(None)
        assert session.store.load().last_connection_error is None

    def test_status(self, tmp_path: Path):
        session = make_session(tmp_path)
        info = session.status()
        assert info["authenticated"] is False
        assert info["failure_count"] == 0
        assert info["device_id"] == session.get_device_id()
