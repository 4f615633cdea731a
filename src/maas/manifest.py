"""Service manifest: endpoint names, defaults, env overrides, merging.

Pure helpers, shared by `maas.discovery` and the config migrations.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

# Endpoint name -> hardcoded default
DEFAULT_ENDPOINTS: dict[str, str] = {
    "auth_base": "https://api.lanonasis.com",
    "memory_base": "https://api.lanonasis.com/api/v1",
    "mcp_base": "https://mcp.lanonasis.com/api/v1",
    "mcp_ws_base": "wss://mcp.lanonasis.com/ws",
    "mcp_sse_base": "https://mcp.lanonasis.com/api/v1/events",
}

REQUIRED_ENDPOINTS = tuple(DEFAULT_ENDPOINTS)

# Endpoint name -> environment variable consulted when discovery fails
ENV_OVERRIDES: dict[str, str] = {
    "auth_base": "MAAS_AUTH_BASE",
    "memory_base": "MAAS_MEMORY_BASE",
    "mcp_base": "MAAS_MCP_BASE",
    "mcp_ws_base": "MAAS_MCP_WS_BASE",
    "mcp_sse_base": "MAAS_MCP_SSE_BASE",
}

ServiceManifest = dict[str, str]


def _clean(url: object) -> str | None:
    if not isinstance(url, str) or not url.strip():
        return None
    return url.strip().rstrip("/")


def normalize(data: Mapping[str, object] | None) -> ServiceManifest:
    """Keep string-valued entries only, without trailing slashes."""
    if not data:
        return {}
    manifest: ServiceManifest = {}
    for key, value in data.items():
        cleaned = _clean(value)
        if cleaned:
            manifest[str(key)] = cleaned
    return manifest


def is_complete(manifest: Mapping[str, str] | None) -> bool:
    return bool(manifest) and all(manifest.get(key) for key in REQUIRED_ENDPOINTS)


def missing_endpoints(manifest: Mapping[str, str] | None) -> list[str]:
    manifest = manifest or {}
    return [key for key in REQUIRED_ENDPOINTS if not manifest.get(key)]


def env_overrides(environ: Mapping[str, str] | None = None) -> ServiceManifest:
    env = os.environ if environ is None else environ
    overrides: ServiceManifest = {}
    for key, var in ENV_OVERRIDES.items():
        cleaned = _clean(env.get(var))
        if cleaned:
            overrides[key] = cleaned
    return overrides


def fallback_manifest(environ: Mapping[str, str] | None = None) -> ServiceManifest:
    """Env overrides completed with the hardcoded defaults. Deterministic."""
    manifest = dict(DEFAULT_ENDPOINTS)
    manifest.update(env_overrides(environ))
    return manifest


def merge(existing: Mapping[str, str] | None, fetched: Mapping[str, str]) -> ServiceManifest:
    """Fetched values win per key; keys only in `existing` survive."""
    merged = dict(existing or {})
    merged.update(fetched)
    return merged


def complete(manifest: Mapping[str, str], environ: Mapping[str, str] | None = None) -> ServiceManifest:
    """Fill missing required endpoints from the fallback chain."""
    result = dict(manifest)
    fallback = fallback_manifest(environ)
    for key in missing_endpoints(result):
        result[key] = fallback[key]
    return result
