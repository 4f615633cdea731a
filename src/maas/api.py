"""Authenticated HTTP client for the memory API.

Carries no auth logic of its own: headers come from
`SessionManager.aauth_headers()` and the base URL from service discovery.
"""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from maas.auth.session import SessionManager
from maas.discovery import ServiceDiscovery
from maas.errors import MaasError, classify_exception, classify_status

logger = logging.getLogger(__name__)


class ApiClient:
    """Thin JSON client against `memory_base`."""

    def __init__(
        self,
        session: SessionManager,
        discovery: ServiceDiscovery,
        *,
        timeout: float = 30.0,
    ) -> None:
        self.session = session
        self.discovery = discovery
        self.timeout = timeout

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        services = await self.discovery.get_manifest()
        url = f"{services['memory_base']}/{path.lstrip('/')}"
        headers = {**await self.session.aauth_headers(), "Accept": "application/json"}
        logger.debug("%s %s", method, url)

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.request(
                    method, url, params=params, json=json, headers=headers
                ) as resp:
                    if resp.status >= 400:
                        raise classify_status(resp.status, f"{method} {path} failed")
                    if resp.status == 204:
                        return None
                    return await resp.json(content_type=None)
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e, f"{method} {path} failed") from e

    async def get(self, path: str, **params: Any) -> Any:
        return await self.request("GET", path, params=params or None)

    async def post(self, path: str, payload: Any) -> Any:
        return await self.request("POST", path, json=payload)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)
