"""SessionConfig: typed view of the persisted config document."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from maas.auth.codec import AUTH_METHODS, Credential, credential_from_dict, credential_to_dict
from maas.store.migrations import CURRENT_VERSION

# Keys owned by SessionConfig; everything else round-trips through `extra`
_KNOWN_KEYS = {
    "version",
    "deviceId",
    "authMethod",
    "credential",
    "discoveredServices",
    "servicesDiscoveredAt",
    "authFailureCount",
    "lastAuthFailure",
    "lastValidated",
    "lastConnectionError",
    "user",
}


@dataclass
class SessionConfig:
    """The on-disk session document."""

    device_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: int = CURRENT_VERSION
    auth_method: str | None = None
    credential: Credential | None = None
    discovered_services: dict[str, str] = field(default_factory=dict)
    services_discovered_at: float | None = None
    auth_failure_count: int = 0
    last_auth_failure: str | None = None
    last_validated: str | None = None
    last_connection_error: dict[str, Any] | None = None
    user: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        credential = credential_from_dict(data.get("credential"))
        auth_method = data.get("authMethod")
        if auth_method not in AUTH_METHODS:
            auth_method = None
        if credential is not None:
            auth_method = credential.method
        return cls(
            version=data.get("version", CURRENT_VERSION),
            device_id=data.get("deviceId") or str(uuid.uuid4()),
            auth_method=auth_method,
            credential=credential,
            discovered_services=dict(data.get("discoveredServices") or {}),
            services_discovered_at=data.get("servicesDiscoveredAt"),
            auth_failure_count=int(data.get("authFailureCount") or 0),
            last_auth_failure=data.get("lastAuthFailure"),
            last_validated=data.get("lastValidated"),
            last_connection_error=data.get("lastConnectionError"),
            user=data.get("user"),
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "deviceId": self.device_id,
            "authMethod": self.auth_method,
            "credential": credential_to_dict(self.credential),
            "discoveredServices": dict(self.discovered_services),
            "servicesDiscoveredAt": self.services_discovered_at,
            "authFailureCount": self.auth_failure_count,
            "lastAuthFailure": self.last_auth_failure,
            "lastValidated": self.last_validated,
            "lastConnectionError": self.last_connection_error,
            "user": self.user,
        }
        data.update(self.extra)
        return data

    def set_credential(self, credential: Credential | None) -> None:
        """Install `credential` as the only active one; method follows it."""
        self.credential = credential
        self.auth_method = credential.method if credential else None

    def set_auth_method(self, method: str | None) -> None:
        """Switching method drops a credential of another kind."""
        if self.credential is not None and self.credential.method != method:
            self.credential = None
            self.user = None
        self.auth_method = method
