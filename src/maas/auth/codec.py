"""Credential types + pure validation/decoding helpers (no I/O).

- Vendor keys: `pk_<public>.sk_<secret>`
- JWTs: payload decoded locally only to time refreshes; the server verifies signatures
- Persisted form: tagged dicts, see `credential_to_dict`
"""

from __future__ import annotations

import base64
import binascii
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

from maas.errors import ValidationError

VENDOR_KEY_REQUIRED = "Vendor key is required"

_EXPECTED = "Expected format: pk_xxx.sk_xxx"
_ALNUM = re.compile(r"^[A-Za-z0-9]+$")

DEFAULT_MIN_PUBLIC = 8
DEFAULT_MIN_SECRET = 16


# ── Credential types ──────────────────────────────────────────


@dataclass(frozen=True)
class VendorKey:
    """Two-part machine credential."""

    public: str
    secret: str

    method = "vendor_key"

    @property
    def text(self) -> str:
        return f"pk_{self.public}.sk_{self.secret}"

    @property
    def expires_at_epoch(self) -> float | None:
        return None


@dataclass(frozen=True)
class JwtToken:
    """Bearer JWT issued by the auth service."""

    raw: str
    expires_at_epoch: float | None = None

    method = "jwt"


@dataclass(frozen=True)
class OAuthToken:
    """OAuth access token with an optional refresh token."""

    access: str
    refresh: str | None = None
    expires_at_epoch: float | None = None

    method = "oauth"


Credential = VendorKey | JwtToken | OAuthToken

AUTH_METHODS = ("vendor_key", "jwt", "oauth")


@dataclass
class JwtPayload:
    """Result of `decode_payload`."""

    expires_at_epoch: float | None
    claims: dict[str, Any] = field(default_factory=dict)


# ── Vendor keys ───────────────────────────────────────────────


def validate_vendor_key_format(
    value: str | None,
    *,
    min_public: int = DEFAULT_MIN_PUBLIC,
    min_secret: int = DEFAULT_MIN_SECRET,
) -> str | None:
    """Return None for a well-formed vendor key, else a fixed error message.

    Messages depend only on the input and the length bounds, so every device
    reports the same text for the same bad key.
    """
    if value is None or not value.strip():
        return VENDOR_KEY_REQUIRED

    trimmed = value.strip()
    if "." not in trimmed:
        return f"Invalid format: Vendor key must contain a dot (.) separator\n{_EXPECTED}"

    parts = trimmed.split(".")
    if len(parts) != 2:
        return (
            "Invalid format: Vendor key must have exactly two parts separated by a dot\n"
            f"{_EXPECTED}"
        )

    public_part, secret_part = parts
    if not public_part.startswith("pk_"):
        return f'Invalid format: First part must start with "pk_"\n{_EXPECTED}'
    if not secret_part.startswith("sk_"):
        return f'Invalid format: Second part must start with "sk_"\n{_EXPECTED}'

    public, secret = public_part[3:], secret_part[3:]
    if not public:
        return f"Invalid format: Public key part is empty\n{_EXPECTED}"
    if not secret:
        return f"Invalid format: Secret key part is empty\n{_EXPECTED}"
    if not _ALNUM.match(public):
        return (
            "Invalid format: Public key part contains invalid characters\n"
            'Only letters and numbers are allowed after "pk_"'
        )
    if not _ALNUM.match(secret):
        return (
            "Invalid format: Secret key part contains invalid characters\n"
            'Only letters and numbers are allowed after "sk_"'
        )
    if len(public) < min_public:
        return (
            "Invalid format: Public key part is too short "
            f'(minimum {min_public} characters after "pk_")'
        )
    if len(secret) < min_secret:
        return (
            "Invalid format: Secret key part is too short "
            f'(minimum {min_secret} characters after "sk_")'
        )
    return None


def parse_vendor_key(
    value: str,
    *,
    min_public: int = DEFAULT_MIN_PUBLIC,
    min_secret: int = DEFAULT_MIN_SECRET,
) -> VendorKey:
    error = validate_vendor_key_format(value, min_public=min_public, min_secret=min_secret)
    if error:
        raise ValidationError(error)
    public_part, secret_part = value.strip().split(".")
    return VendorKey(public=public_part[3:], secret=secret_part[3:])


def looks_like_vendor_key(value: str) -> bool:
    text = value.strip()
    return text.startswith("pk_") or ".sk_" in text


# ── JWT ───────────────────────────────────────────────────────


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def decode_payload(token: str) -> JwtPayload:
    """Decode the claims of a JWT without verifying its signature."""
    parts = token.strip().split(".") if token else []
    if len(parts) != 3 or not all(parts[:2]):
        raise ValidationError("Invalid token: expected three dot-separated segments")

    try:
        # Header must decode too, otherwise this is not a JWT
        json.loads(_b64url_decode(parts[0]))
        claims = json.loads(_b64url_decode(parts[1]))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ValidationError(f"Invalid token: undecodable segment ({e})") from e

    if not isinstance(claims, dict):
        raise ValidationError("Invalid token: payload is not a JSON object")

    exp = claims.get("exp")
    expires = float(exp) if isinstance(exp, (int, float)) and not isinstance(exp, bool) else None
    return JwtPayload(expires_at_epoch=expires, claims=claims)


def is_expired(expires_at_epoch: float | None, buffer_ms: int = 0, *, now: float | None = None) -> bool:
    """True once `now` is within `buffer_ms` of the expiry. No expiry never expires."""
    if expires_at_epoch is None:
        return False
    current = time.time() if now is None else now
    return current >= expires_at_epoch - buffer_ms / 1000.0


def is_jwt(value: str) -> bool:
    try:
        decode_payload(value)
    except ValidationError:
        return False
    return True


# ── Classification + persistence ──────────────────────────────


def credential_from_material(
    material: str,
    *,
    min_public: int = DEFAULT_MIN_PUBLIC,
    min_secret: int = DEFAULT_MIN_SECRET,
) -> Credential:
    """Turn raw login input into a credential. Raises ValidationError."""
    if material is None or not material.strip():
        raise ValidationError(VENDOR_KEY_REQUIRED)

    text = material.strip()
    if looks_like_vendor_key(text):
        return parse_vendor_key(text, min_public=min_public, min_secret=min_secret)

    payload = decode_payload(text)
    return JwtToken(raw=text, expires_at_epoch=payload.expires_at_epoch)


def credential_to_dict(credential: Credential | None) -> dict[str, Any] | None:
    if credential is None:
        return None
    if isinstance(credential, VendorKey):
        return {"type": "vendor_key", "public": credential.public, "secret": credential.secret}
    if isinstance(credential, JwtToken):
        return {
            "type": "jwt",
            "raw": credential.raw,
            "expiresAtEpoch": credential.expires_at_epoch,
        }
    return {
        "type": "oauth",
        "access": credential.access,
        "refresh": credential.refresh,
        "expiresAtEpoch": credential.expires_at_epoch,
    }


def credential_from_dict(data: dict[str, Any] | None) -> Credential | None:
    """Inverse of `credential_to_dict`. Unknown shapes yield None."""
    if not data:
        return None
    kind = data.get("type")
    if kind == "vendor_key" and data.get("public") and data.get("secret"):
        return VendorKey(public=data["public"], secret=data["secret"])
    if kind == "jwt" and data.get("raw"):
        return JwtToken(raw=data["raw"], expires_at_epoch=data.get("expiresAtEpoch"))
    if kind == "oauth" and data.get("access"):
        return OAuthToken(
            access=data["access"],
            refresh=data.get("refresh"),
            expires_at_epoch=data.get("expiresAtEpoch"),
        )
    return None


def auth_headers(credential: Credential) -> dict[str, str]:
    """HTTP headers carrying the credential."""
    if isinstance(credential, VendorKey):
        return {"X-API-Key": credential.text, "Authorization": f"Bearer {credential.text}"}
    if isinstance(credential, JwtToken):
        return {"Authorization": f"Bearer {credential.raw}"}
    return {"Authorization": f"Bearer {credential.access}"}


def mask_secret(text: str, visible: int = 4) -> str:
    if len(text) <= visible * 2:
        return "*" * len(text)
    return f"{text[:visible]}{'*' * 8}{text[-visible:]}"


def describe_credential(credential: Credential | None) -> str:
    if credential is None:
        return "none"
    if isinstance(credential, VendorKey):
        return f"vendor key pk_{credential.public}.sk_{mask_secret(credential.secret)}"
    if isinstance(credential, JwtToken):
        return f"jwt {mask_secret(credential.raw)}"
    suffix = " (refreshable)" if credential.refresh else ""
    return f"oauth {mask_secret(credential.access)}{suffix}"
