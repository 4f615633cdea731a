"""Ordered schema migrations for the config document.

Each step takes the raw dict at version N and returns it at version N+1.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from maas import manifest
from maas.auth.codec import decode_payload, looks_like_vendor_key, parse_vendor_key
from maas.errors import UnsupportedConfigVersion, ValidationError

logger = logging.getLogger(__name__)

CURRENT_VERSION = 3

Migration = Callable[[dict[str, Any]], dict[str, Any]]


def _v0_to_v1(doc: dict[str, Any]) -> dict[str, Any]:
    """Legacy flat `vendorKey` / `token` keys become a tagged credential."""
    vendor_key = doc.pop("vendorKey", None)
    token = doc.pop("token", None)
    method = doc.get("authMethod")

    credential = None
    if vendor_key and method in (None, "vendor_key") and looks_like_vendor_key(vendor_key):
        try:
            key = parse_vendor_key(vendor_key, min_public=1, min_secret=1)
            credential = {"type": "vendor_key", "public": key.public, "secret": key.secret}
            method = "vendor_key"
        except ValidationError:
            logger.warning("Dropping malformed legacy vendor key during migration")
    if credential is None and token:
        try:
            expires = decode_payload(token).expires_at_epoch
        except ValidationError:
            expires = None
        kind = "oauth" if method == "oauth" else "jwt"
        if kind == "oauth":
            credential = {"type": "oauth", "access": token, "refresh": None, "expiresAtEpoch": expires}
        else:
            credential = {"type": "jwt", "raw": token, "expiresAtEpoch": expires}
        method = kind

    doc["credential"] = credential
    doc["authMethod"] = method if credential else None
    return doc


def _v1_to_v2(doc: dict[str, Any]) -> dict[str, Any]:
    """Per-installation device id and persisted failure tracking."""
    doc.setdefault("deviceId", str(uuid.uuid4()))
    doc.setdefault("authFailureCount", 0)
    doc.setdefault("lastAuthFailure", None)
    doc.setdefault("lastValidated", None)
    return doc


def _v2_to_v3(doc: dict[str, Any]) -> dict[str, Any]:
    """Partial legacy manifests are completed; TTL timestamp added."""
    services = manifest.normalize(doc.get("discoveredServices"))
    doc["discoveredServices"] = manifest.complete(services) if services else {}
    doc.setdefault("servicesDiscoveredAt", None)
    doc.setdefault("lastConnectionError", None)
    return doc


MIGRATIONS: dict[int, Migration] = {
    0: _v0_to_v1,
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def document_version(doc: dict[str, Any]) -> int:
    version = doc.get("version", 0)
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        return 0
    return version


def migrate(doc: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Bring `doc` to CURRENT_VERSION. Returns (doc, changed)."""
    version = document_version(doc)
    if version > CURRENT_VERSION:
        raise UnsupportedConfigVersion(version, CURRENT_VERSION)

    changed = False
    while version < CURRENT_VERSION:
        logger.info("Migrating config document v%d -> v%d", version, version + 1)
        doc = MIGRATIONS[version](doc)
        version += 1
        doc["version"] = version
        changed = True

    if not doc.get("deviceId"):
        # Assigned once and persisted by the caller, never per read
        doc["deviceId"] = str(uuid.uuid4())
        changed = True
    return doc, changed
