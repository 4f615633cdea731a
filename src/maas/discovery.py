"""Service discovery: resolve the endpoint manifest with deterministic fallback.

Order on a failed fetch:
1. Previously cached manifest (if present)
2. Environment overrides (MAAS_*_BASE) completed with
3. Hardcoded defaults

Fetched manifests are merged into the cached one, never wholesale replaced.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass

import aiohttp

from maas import manifest
from maas.config import DiscoverySettings
from maas.errors import AuthError, MaasError, NetworkError, classify_exception, classify_status
from maas.manifest import ServiceManifest
from maas.store.config_store import ConfigStore

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    """Outcome of the last resolution, for diagnostics."""

    manifest: ServiceManifest
    source: str  # fresh | cache | remote | fallback
    error: MaasError | None = None


def _cache_entry(config) -> tuple[ServiceManifest, float | None]:
    return manifest.normalize(config.discovered_services), config.services_discovered_at


class ServiceDiscovery:
    """Resolves and caches the service manifest in the config document."""

    def __init__(
        self,
        store: ConfigStore,
        settings: DiscoverySettings | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or DiscoverySettings()
        self._environ = environ
        self._refresh_task: asyncio.Task | None = None
        self.last_result: DiscoveryResult | None = None

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    # ── Cache ────────────────────────────────────────────────

    def cached(self) -> tuple[ServiceManifest, float | None]:
        return _cache_entry(self.store.load())

    async def acached(self) -> tuple[ServiceManifest, float | None]:
        return _cache_entry(await self.store.aload())

    def is_fresh(self, discovered_at: float | None, now: float | None = None) -> bool:
        if discovered_at is None:
            return False
        current = time.time() if now is None else now
        return current - discovered_at < self.settings.ttl_seconds

    # ── Public API ───────────────────────────────────────────

    async def discover(self, force: bool = False) -> ServiceManifest:
        """Fetch the manifest (unless the cache is fresh), falling back on failure."""
        cached, discovered_at = await self.acached()
        if not force and manifest.is_complete(cached) and self.is_fresh(discovered_at):
            self.last_result = DiscoveryResult(cached, "fresh")
            return cached

        if self.settings.skip:
            logger.debug("Service discovery skipped by configuration")
            return await self._fallback(cached, None)

        try:
            fetched = await self._fetch()
        except AuthError:
            raise
        except MaasError as e:
            if isinstance(e, NetworkError):
                logger.warning("Service discovery unreachable (%s): %s", e.kind, e.message)
            else:
                logger.error("Service discovery failed: %s", e.message)
            return await self._fallback(cached, e)

        def _apply(config) -> None:
            merged = manifest.merge(manifest.normalize(config.discovered_services), fetched)
            config.discovered_services = manifest.complete(merged, self.environ)
            config.services_discovered_at = time.time()

        updated = await self.store.aupdate(_apply)
        result = dict(updated.discovered_services)
        self.last_result = DiscoveryResult(result, "remote")
        logger.info("Discovered %d service endpoints from %s", len(result), self.settings.url)
        return result

    async def get_manifest(self) -> ServiceManifest:
        """Return endpoints without blocking on a stale-but-usable cache."""
        cached, discovered_at = await self.acached()
        if manifest.is_complete(cached):
            if not self.is_fresh(discovered_at) and not self.settings.skip:
                self.schedule_refresh()
            self.last_result = DiscoveryResult(cached, "cache")
            return cached
        return await self.discover()

    def schedule_refresh(self) -> asyncio.Task:
        """Start a background re-discovery (at most one in flight)."""
        if self._refresh_task and not self._refresh_task.done():
            return self._refresh_task
        self._refresh_task = asyncio.create_task(self._background_refresh())
        return self._refresh_task

    async def aclose(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Internal ─────────────────────────────────────────────

    async def _background_refresh(self) -> None:
        try:
            await self.discover(force=True)
        except MaasError as e:
            logger.warning("Background service discovery failed: %s", e.message)

    async def _fetch(self) -> ServiceManifest:
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.settings.url) as resp:
                    if resp.status != 200:
                        raise classify_status(resp.status, "Service discovery failed")
                    data = await resp.json(content_type=None)
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e, "Service discovery failed") from e

        if not isinstance(data, dict):
            raise classify_exception(ValueError("manifest is not a JSON object"), "Service discovery failed")
        fetched = manifest.normalize(data)
        if not fetched:
            raise classify_exception(ValueError("manifest has no endpoints"), "Service discovery failed")
        return fetched

    async def _fallback(self, cached: ServiceManifest, error: MaasError | None) -> ServiceManifest:
        if manifest.is_complete(cached):
            logger.info("Using cached service endpoints")
            self.last_result = DiscoveryResult(cached, "cache", error)
            return cached

        fallback = manifest.fallback_manifest(self.environ)
        overridden = sorted(manifest.env_overrides(self.environ))
        logger.info(
            "Using fallback service endpoints (env overrides: %s)",
            ", ".join(overridden) or "none",
        )

        def _apply(config) -> None:
            # Only fill in when nothing complete was cached meanwhile
            if not manifest.is_complete(manifest.normalize(config.discovered_services)):
                config.discovered_services = dict(fallback)
                config.services_discovered_at = None

        updated = await self.store.aupdate(_apply)
        result = manifest.normalize(updated.discovered_services)
        self.last_result = DiscoveryResult(result, "fallback", error)
        return result
