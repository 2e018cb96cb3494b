"""WebSocket signaling transport.

Each session opens its own socket at `{SIGNALING_BASE_URL}/{role_path}/{source_id}`;
the relay server pairs the viewer and source sockets that share a source id.
"""

from __future__ import annotations

import asyncio
from urllib.parse import quote

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from camrelay.app_config import AppEnvironConfig, get_app_environ_config
from camrelay.domain.relay.session import ChannelConnector
from camrelay.schemas import SessionRole
from camrelay.utils.relay_errors import RelayError, RelayErrorCode

_OPEN_ERRORS = (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError)


def build_signaling_url(base_url: str, role_path: str, source_id: str) -> str:
    return f"{base_url.rstrip('/')}/{role_path.strip('/')}/{quote(source_id, safe='')}"


class WebSocketChannel:
    def __init__(self, url: str, websocket) -> None:
        self.url = url
        self._websocket = websocket
        self._closed = False

    @classmethod
    async def connect(cls, url: str, *, open_timeout: float = 10.0) -> WebSocketChannel:
        """Open a signaling socket.

        Raises:
            RelayError: E_CHANNEL_UNAVAILABLE when the server cannot be reached.
        """
        try:
            websocket = await websockets.connect(url, open_timeout=open_timeout)
        except _OPEN_ERRORS as exc:
            raise RelayError(
                errcode=RelayErrorCode.E_CHANNEL_UNAVAILABLE,
                errmesg=f"Cannot open signaling channel {url}: {type(exc).__name__}: {exc}",
            ) from exc
        logger.debug(f"Signaling socket open: {url}")
        return cls(url, websocket)

    async def send(self, text: str) -> None:
        try:
            await self._websocket.send(text)
        except ConnectionClosed as exc:
            raise self._closed_error(exc) from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._websocket.recv()
        except ConnectionClosed as exc:
            raise self._closed_error(exc) from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._websocket.close()
        logger.debug(f"Signaling socket closed: {self.url}")

    def _closed_error(self, exc: ConnectionClosed) -> RelayError:
        return RelayError(
            errcode=RelayErrorCode.E_CHANNEL_UNAVAILABLE,
            errmesg=f"Signaling channel {self.url} closed: {exc}",
        )


def websocket_connector(
    role: SessionRole,
    config: AppEnvironConfig | None = None,
) -> ChannelConnector:
    """Connector opening one WebSocketChannel per session for the given role."""
    cfg = config or get_app_environ_config()
    role_path = (
        cfg.SIGNALING_VIEWER_PATH if role == SessionRole.VIEWER else cfg.SIGNALING_SOURCE_PATH
    )

    async def connect(source_id: str) -> WebSocketChannel:
        url = build_signaling_url(cfg.SIGNALING_BASE_URL, role_path, source_id)
        return await WebSocketChannel.connect(url, open_timeout=cfg.SIGNALING_OPEN_TIMEOUT_SECONDS)

    return connect
