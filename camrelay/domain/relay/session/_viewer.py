from __future__ import annotations

from typing import Any

from loguru import logger

from camrelay.domain.relay.peer_link import PeerLink
from camrelay.domain.relay.session._base import BaseSession
from camrelay.schemas import (
    ErrorMessage,
    IceCandidate,
    RequestStream,
    SessionRole,
    SessionState,
    StreamAnswer,
    StreamEnded,
    StreamOffer,
    StreamStarted,
    normalize_source_id,
)
from camrelay.schemas.signaling import SignalingMessage
from camrelay.utils.relay_errors import RelayError, RelayErrorCode


class ViewerSession(BaseSession):
    """Viewer end of one relay session.

    Asks the source for a stream, answers its offer and surfaces the inbound
    media once the peer connection produces a track.
    """

    role = SessionRole.VIEWER

    def __init__(self, source_id: str, *, viewer_id: str | None = None, **kwargs) -> None:
        super().__init__(source_id, **kwargs)
        self.viewer_id = viewer_id or self._cfg.VIEWER_ID
        self.stream_started = False

    @property
    def track(self) -> Any | None:
        return self._peer_link.track if self._peer_link else None

    async def _on_channel_open(self, *, restored: bool) -> None:
        if restored and self._peer_link is not None:
            logger.info(f"Discarding peer link for {self.source_id} after channel restore")
        # Each request gets a fresh link; early candidates for it buffer there
        await self._close_peer_link()
        self._new_peer_link()
        self.stream_started = False

        self._transition(SessionState.AWAITING_OFFER)
        await self._send(RequestStream(viewer_id=self.viewer_id))
        self._arm_negotiation_timer()

    async def _handle_message(self, message: SignalingMessage) -> None:
        if isinstance(message, StreamOffer):
            await self._handle_offer(message)
        elif isinstance(message, IceCandidate):
            await self._handle_remote_candidate(message)
        elif isinstance(message, StreamStarted):
            logger.info(f"Source {self.source_id} reports stream started")
            self.stream_started = True
            self._emit("stream_started", self.source_id)
        elif isinstance(message, StreamEnded):
            logger.info(f"Source {self.source_id} ended the stream")
            await self._finish("stream_ended")
        elif isinstance(message, ErrorMessage):
            await self._fail(
                RelayError(
                    errcode=RelayErrorCode.E_PERMISSION_DENIED,
                    errmesg=message.message or f"Source {self.source_id} refused the stream",
                )
            )
        else:
            logger.warning(f"Viewer session {self.source_id} ignoring {message.type}")

    async def _handle_offer(self, message: StreamOffer) -> None:
        if self.state not in (SessionState.AWAITING_OFFER, SessionState.NEGOTIATING):
            logger.warning(f"Ignoring stream_offer from {self.source_id} in state {self.state}")
            return

        try:
            offered_by = normalize_source_id(message.source_id)
        except RelayError:
            offered_by = ""
        if offered_by != self.source_id:
            logger.warning(
                f"Ignoring stream_offer for {message.source_id!r} on session {self.source_id}"
            )
            return

        link = self._peer_link
        if link is None or link.has_remote_description:
            # Renegotiation from the source replaces the link outright
            await self._close_peer_link()
            link = self._new_peer_link()

        answer = await link.accept_offer(message.offer)
        self._transition(SessionState.NEGOTIATING)
        await self._send(StreamAnswer(answer=answer))
        self._arm_negotiation_timer()

    async def _handle_remote_candidate(self, message: IceCandidate) -> None:
        if self._peer_link is None:
            logger.warning(f"Dropping ice_candidate for {self.source_id}: no peer link")
            return
        await self._peer_link.add_remote_candidate(message.candidate)

    async def _handle_track(self, link: PeerLink, track: Any) -> None:
        if self.state == SessionState.NEGOTIATING:
            self._cancel_negotiation_timer()
            self._transition(SessionState.ACTIVE)
        elif self.state != SessionState.ACTIVE:
            logger.warning(f"Ignoring track from {self.source_id} in state {self.state}")
            return
        self._emit("track_ready", self.source_id, track)

