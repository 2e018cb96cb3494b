"""Source directory client.

Lists the monitorable endpoints a viewer can pick from.
- When DEMO_MODE=true (default), returns a fixed set of stub sources.
- When DEMO_MODE=false, fetches DIRECTORY_URL over HTTP.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
from loguru import logger
from pydantic import ValidationError

from camrelay.app_config import AppEnvironConfig, get_app_environ_config
from camrelay.schemas import SourceInfo, watchable_sources
from camrelay.utils.relay_errors import RelayError, RelayErrorCode

_DEMO_SOURCES: list[dict[str, Any]] = [
    {"id": "15550100001", "displayName": "Front door", "online": True, "canStream": True},
    {"id": "15550100002", "displayName": "Garage", "online": True, "canStream": True},
    {"id": "15550100003", "displayName": "Back yard", "online": False, "canStream": True},
]


class SourceDirectory(Protocol):
    async def list_sources(self) -> list[SourceInfo]: ...


class HttpSourceDirectory:
    def __init__(
        self,
        config: AppEnvironConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        cfg = config or get_app_environ_config()
        self._demo_mode = cfg.DEMO_MODE
        self._url = cfg.DIRECTORY_URL
        self._api_key = cfg.DIRECTORY_API_KEY
        self._transport = transport
        self._timeout = timeout

        if self._demo_mode:
            logger.info("HttpSourceDirectory initialized in DEMO_MODE (stubbed)")
        elif not self._url:
            raise RelayError(
                errcode=RelayErrorCode.E_INVALID_CONFIG,
                errmesg="DIRECTORY_URL must be configured when DEMO_MODE=false.",
            )

    async def list_sources(self) -> list[SourceInfo]:
        if self._demo_mode:
            return [SourceInfo.model_validate(item) for item in _DEMO_SOURCES]

        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(self._url, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise RelayError(
                errcode=RelayErrorCode.E_DIRECTORY_UNAVAILABLE,
                errmesg=f"Directory returned {exc.response.status_code}",
            ) from exc
        except httpx.HTTPError as exc:
            raise RelayError(
                errcode=RelayErrorCode.E_DIRECTORY_UNAVAILABLE,
                errmesg=f"Directory request failed: {type(exc).__name__}: {exc}",
            ) from exc
        except ValueError as exc:
            raise RelayError(
                errcode=RelayErrorCode.E_DIRECTORY_UNAVAILABLE,
                errmesg=f"Directory returned invalid JSON: {exc}",
            ) from exc

        items = payload.get("sources", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise RelayError(
                errcode=RelayErrorCode.E_DIRECTORY_UNAVAILABLE,
                errmesg=f"Unexpected directory payload: {type(items).__name__}",
            )

        sources: list[SourceInfo] = []
        for item in items:
            try:
                sources.append(SourceInfo.model_validate(item))
            except ValidationError as exc:
                logger.warning(f"Skipping invalid directory entry {item!r}: {exc.error_count()} errors")
        logger.debug(f"Directory listed {len(sources)} sources")
        return sources

    async def list_watchable(self) -> list[SourceInfo]:
        return watchable_sources(await self.list_sources())
