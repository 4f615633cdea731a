"""Session lifecycle: login, validation, refresh and logout, plus failure tracking.

Composes CredentialCodec, ConfigStore and ServiceDiscovery. Holds no state of
its own between calls: every read goes to the store, every write goes through
`ConfigStore.update` so concurrent CLI processes never lose each other's writes.
"""

from __future__ import annotations

import functools
import logging
import time
from datetime import datetime, timezone
from typing import Any

import aiohttp

from maas.auth.codec import (
    AUTH_METHODS,
    Credential,
    JwtToken,
    OAuthToken,
    VendorKey,
    auth_headers,
    credential_from_material,
    decode_payload,
    describe_credential,
    is_expired,
)
from maas.config import AuthSettings
from maas.discovery import ServiceDiscovery
from maas.errors import (
    AuthError,
    MaasError,
    NetworkError,
    ValidationError,
    classify_exception,
    classify_status,
)
from maas.store.config_store import ConfigStore
from maas.store.document import SessionConfig

logger = logging.getLogger(__name__)

AUTH_DELAY_THRESHOLD = 2
AUTH_DELAY_BASE_MS = 1000
AUTH_DELAY_MAX_MS = 30_000

HEALTH_PATH = "/v1/auth/health"
TOKEN_PATH = "/oauth/token"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def auth_delay_ms(failure_count: int) -> int:
    """Delay before the next auth attempt. Depends only on the failure count."""
    if failure_count <= AUTH_DELAY_THRESHOLD:
        return 0
    return min(AUTH_DELAY_BASE_MS * 2 ** (failure_count - AUTH_DELAY_THRESHOLD), AUTH_DELAY_MAX_MS)


def _user_from_claims(claims: dict[str, Any]) -> dict[str, str]:
    return {
        "email": str(claims.get("email", "")),
        "organization_id": str(claims.get("organizationId", claims.get("organization_id", ""))),
        "role": str(claims.get("role", "")),
        "plan": str(claims.get("plan", "")),
    }


# ── Store mutations ──────────────────────────────────────────


def _drop_credential(config: SessionConfig) -> None:
    config.set_credential(None)
    config.user = None


def _count_failure(config: SessionConfig) -> None:
    config.auth_failure_count += 1
    config.last_auth_failure = _now_iso()


def _set_connection_error(error: MaasError | None, config: SessionConfig) -> None:
    config.last_connection_error = None if error is None else {**error.to_dict(), "at": _now_iso()}


def _headers_for(credential: Credential | None) -> dict[str, str]:
    if credential is None:
        raise AuthError("No authentication credentials found", code="required")
    return auth_headers(credential)


class SessionManager:
    """Credential lifecycle on top of the shared config document."""

    def __init__(
        self,
        store: ConfigStore,
        discovery: ServiceDiscovery,
        settings: AuthSettings | None = None,
    ) -> None:
        self.store = store
        self.discovery = discovery
        self.settings = settings or AuthSettings()
        self.last_validation_error: MaasError | None = None

    # ── Credentials ──────────────────────────────────────────

    def parse_material(self, material: str) -> Credential:
        return credential_from_material(
            material,
            min_public=self.settings.vendor_key_min_public,
            min_secret=self.settings.vendor_key_min_secret,
        )

    async def set_credential(
        self,
        material: str | Credential,
        *,
        skip_validation: bool | None = None,
    ) -> Credential:
        """Validate, confirm with the server, then persist.

        Raises ValidationError (invalid format), AuthError (rejected by server)
        or NetworkError (server unreachable).
        """
        credential = self.parse_material(material) if isinstance(material, str) else material

        skip = self.settings.skip_server_validation if skip_validation is None else skip_validation
        if skip:
            logger.info("Skipping server validation for %s", credential.method)
        else:
            await self._check_with_server(credential)

        user = self._decode_user(credential)

        def _apply(config: SessionConfig) -> None:
            config.set_credential(credential)
            config.user = user
            config.auth_failure_count = 0
            config.last_validated = None if skip else _now_iso()

        await self.store.aupdate(_apply)
        logger.info("Stored %s credential", credential.method)
        return credential

    def get_active_credential(self) -> Credential | None:
        return self.store.load().credential

    async def aget_active_credential(self) -> Credential | None:
        return (await self.store.aload()).credential

    def auth_headers(self) -> dict[str, str]:
        """Authorization headers for collaborators (memory API, editor adapters)."""
        return _headers_for(self.get_active_credential())

    async def aauth_headers(self) -> dict[str, str]:
        return _headers_for(await self.aget_active_credential())

    def set_auth_method(self, method: str) -> None:
        if method not in AUTH_METHODS:
            raise ValidationError(f"Unknown auth method: {method}")
        self.store.update(lambda config: config.set_auth_method(method))

    def clear_credential(self) -> None:
        self.store.update(_drop_credential)
        logger.info("Cleared stored credential")

    async def aclear_credential(self) -> None:
        await self.store.aupdate(_drop_credential)
        logger.info("Cleared stored credential")

    def logout(self) -> None:
        self.clear_credential()

    def reset(self) -> SessionConfig:
        """Back up, then start a fresh document that keeps the device id."""
        self.store.backup()
        with self.store.locked():
            fresh = SessionConfig(device_id=self.store.load().device_id)
            self.store.save(fresh)
        logger.info("Config reset (device id kept)")
        return fresh

    def get_device_id(self) -> str:
        return self.store.load().device_id

    # ── Validation / refresh ─────────────────────────────────

    async def validate_stored_credentials(self) -> bool:
        """Re-check the stored credential with the server, tracking failures.

        A credential the server rejects is cleared; one that could not be
        checked because the server is unreachable is kept.
        """
        credential = await self.aget_active_credential()
        if credential is None:
            self.last_validation_error = AuthError("No credential stored", code="required")
            return False

        try:
            await self._check_with_server(credential)
        except (AuthError, NetworkError) as e:
            logger.warning("Stored credential validation failed: %s", e.message)
            self.last_validation_error = e
            await self.aincrement_failure_count()
            if isinstance(e, AuthError):
                await self.aclear_credential()
            return False

        self.last_validation_error = None

        def _apply(config: SessionConfig) -> None:
            config.auth_failure_count = 0
            config.last_validated = _now_iso()

        await self.store.aupdate(_apply)
        return True

    async def refresh_token_if_needed(self) -> Credential | None:
        """Refresh an expiring JWT/OAuth token or require re-authentication."""
        credential = await self.aget_active_credential()
        if credential is None or isinstance(credential, VendorKey):
            return credential
        if not is_expired(credential.expires_at_epoch, self.settings.refresh_buffer_ms):
            return credential

        if isinstance(credential, OAuthToken) and credential.refresh:
            try:
                refreshed = await self._refresh_oauth(credential)
            except MaasError as e:
                logger.warning("Token refresh failed: %s", e.message)
            else:

                def _apply(config: SessionConfig) -> None:
                    config.set_credential(refreshed)
                    config.user = self._decode_user(refreshed) or config.user

                await self.store.aupdate(_apply)
                logger.info("Refreshed OAuth access token")
                return refreshed

        await self.aclear_credential()
        raise AuthError(
            f"{credential.method} token expired; re-authentication required", code="expired"
        )

    async def get_valid_credential(self) -> Credential:
        """The credential to connect with, refreshed if needed."""
        if await self.aget_active_credential() is None:
            raise AuthError(
                "AUTHENTICATION_REQUIRED: No authentication credentials found", code="required"
            )
        credential = await self.refresh_token_if_needed()
        if credential is None:
            raise AuthError("Re-authentication required", code="expired")
        return credential

    # ── Failure tracking ─────────────────────────────────────

    def increment_failure_count(self) -> int:
        return self.store.update(_count_failure).auth_failure_count

    async def aincrement_failure_count(self) -> int:
        return (await self.store.aupdate(_count_failure)).auth_failure_count

    def reset_failure_count(self) -> None:
        def _apply(config: SessionConfig) -> None:
            config.auth_failure_count = 0
            config.last_auth_failure = None

        self.store.update(_apply)

    def get_failure_count(self) -> int:
        return self.store.load().auth_failure_count

    async def aget_failure_count(self) -> int:
        return (await self.store.aload()).auth_failure_count

    def should_delay_auth(self) -> bool:
        return self.get_failure_count() > AUTH_DELAY_THRESHOLD

    def get_auth_delay_ms(self) -> int:
        return auth_delay_ms(self.get_failure_count())

    async def aget_auth_delay_ms(self) -> int:
        return auth_delay_ms(await self.aget_failure_count())

    def record_connection_error(self, error: MaasError | None) -> None:
        self.store.update(functools.partial(_set_connection_error, error))

    async def arecord_connection_error(self, error: MaasError | None) -> None:
        await self.store.aupdate(functools.partial(_set_connection_error, error))

    # ── Status ───────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        config = self.store.load()
        credential = config.credential
        expires = credential.expires_at_epoch if credential else None
        return {
            "authenticated": credential is not None,
            "auth_method": config.auth_method,
            "credential": describe_credential(credential),
            "expires_at": (
                datetime.fromtimestamp(expires, timezone.utc).isoformat(timespec="seconds")
                if expires
                else None
            ),
            "expired": is_expired(expires, 0) if credential else None,
            "user": config.user,
            "device_id": config.device_id,
            "failure_count": config.auth_failure_count,
            "last_auth_failure": config.last_auth_failure,
            "last_validated": config.last_validated,
            "auth_delay_ms": auth_delay_ms(config.auth_failure_count),
            "config_path": str(self.store.path),
        }

    # ── Internal: HTTP ───────────────────────────────────────

    @staticmethod
    def _decode_user(credential: Credential) -> dict[str, str] | None:
        raw = (
            credential.raw
            if isinstance(credential, JwtToken)
            else credential.access if isinstance(credential, OAuthToken) else None
        )
        if not raw:
            return None
        try:
            return _user_from_claims(decode_payload(raw).claims)
        except ValidationError:
            return None

    async def _auth_base(self) -> str:
        services = await self.discovery.get_manifest()
        return services["auth_base"]

    async def _check_with_server(self, credential: Credential) -> None:
        url = f"{await self._auth_base()}{HEALTH_PATH}"
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=auth_headers(credential)) as resp:
                    if resp.status >= 400:
                        raise classify_status(resp.status, "Credential rejected by server")
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e, "Auth server unreachable") from e

    async def _refresh_oauth(self, credential: OAuthToken) -> OAuthToken:
        url = f"{await self._auth_base()}{TOKEN_PATH}"
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
        form = {"grant_type": "refresh_token", "refresh_token": credential.refresh}
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, data=form) as resp:
                    if resp.status >= 400:
                        raise classify_status(resp.status, "Token refresh rejected")
                    data = await resp.json(content_type=None)
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e, "Token refresh failed") from e

        access = data.get("access_token") if isinstance(data, dict) else None
        if not access:
            raise AuthError("Token refresh response has no access_token", code="invalid")

        expires_in = data.get("expires_in")
        if isinstance(expires_in, (int, float)):
            expires = time.time() + float(expires_in)
        else:
            try:
                expires = decode_payload(access).expires_at_epoch
            except ValidationError:
                expires = None
        return OAuthToken(
            access=access,
            refresh=data.get("refresh_token") or credential.refresh,
            expires_at_epoch=expires,
        )
