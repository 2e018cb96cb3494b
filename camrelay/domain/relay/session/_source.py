from __future__ import annotations

from loguru import logger

from camrelay.domain.relay.capture import CaptureHandle, CaptureManager
from camrelay.domain.relay.peer_link import PeerLink
from camrelay.domain.relay.session._base import BaseSession, _Inbound
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
)
from camrelay.schemas.signaling import SignalingMessage, message_age_seconds
from camrelay.utils.relay_errors import RelayError


class SourceSession(BaseSession):
    """Source end of one relay session.

    Waits for a viewer's request, opens the local capture (once, shared by
    every link it serves) and offers it. A repeated request replaces the peer
    link but keeps the capture.
    """

    role = SessionRole.SOURCE

    def __init__(self, source_id: str, *, capture: CaptureManager, **kwargs) -> None:
        super().__init__(source_id, **kwargs)
        self.viewer_id: str | None = None
        self._capture = capture
        self._capture_handle: CaptureHandle | None = None
        self._capture.on_ended(self._on_capture_ended)

    @property
    def capturing(self) -> bool:
        return self._capture_handle is not None

    async def serve(self) -> None:
        """Start serving and wait until the session ends."""
        self.start()
        await self.wait_closed()

    async def end_stream(self, reason: str = "ended by source") -> None:
        """Announce stream_ended to the viewer, then tear down.

        Used when capture stops or consent is withdrawn. Falls back to a
        plain stop() while the channel is down.
        """
        if self.finishing or self._stopped:
            return
        if self._task is None or self._task.done() or self._channel is None:
            await self.stop()
            return

        self._inbox.put_nowait(_Inbound("end_stream", reason))
        await self.wait_closed()
        self._silenced = True

    # ==================== PROTOCOL ====================

    async def _on_channel_open(self, *, restored: bool) -> None:
        if restored and self._peer_link is not None:
            logger.info(f"Discarding peer link for {self.source_id} after channel restore")
        await self._close_peer_link()
        self._transition(SessionState.AWAITING_REQUEST)

    async def _handle_message(self, message: SignalingMessage) -> None:
        if isinstance(message, RequestStream):
            await self._handle_request(message)
        elif isinstance(message, StreamAnswer):
            await self._handle_answer(message)
        elif isinstance(message, IceCandidate):
            if self._peer_link is None:
                logger.warning(f"Dropping ice_candidate for {self.source_id}: no viewer attached")
                return
            await self._peer_link.add_remote_candidate(message.candidate)
        elif isinstance(message, ErrorMessage):
            logger.warning(f"Viewer reported error on {self.source_id}: {message.message}")
        else:
            logger.warning(f"Source session {self.source_id} ignoring {message.type}")

    async def _handle_request(self, message: RequestStream) -> None:
        age = message_age_seconds(message)
        if age is not None and age > self._cfg.REQUEST_STALE_SECONDS:
            logger.warning(
                f"Ignoring stale request_stream from {message.viewer_id} ({age:.1f}s old)"
            )
            return

        logger.info(f"Viewer {message.viewer_id} requested stream from {self.source_id}")
        self.viewer_id = message.viewer_id

        try:
            handle = await self._ensure_capture()
        except RelayError as exc:
            logger.warning(f"Capture refused on {self.source_id}: {exc.errcode} {exc.errmesg}")
            await self._send(ErrorMessage(message=exc.errmesg))
            await self._reset_to_awaiting_request()
            return

        await self._close_peer_link()
        self._cancel_negotiation_timer()
        try:
            link = self._new_peer_link()
            link.add_tracks(handle.subscribe())
            offer = await link.create_offer()
        except RelayError as exc:
            if exc.retryable:
                raise
            logger.warning(f"Cannot offer stream from {self.source_id}: {exc.errcode} {exc.errmesg}")
            await self._send(ErrorMessage(message=exc.errmesg))
            await self._reset_to_awaiting_request()
            return

        self._transition(SessionState.NEGOTIATING)
        await self._send(StreamOffer(offer=offer, source_id=self.source_id))
        await self._send(StreamStarted(source_id=self.source_id))
        self._arm_negotiation_timer()

    async def _handle_answer(self, message: StreamAnswer) -> None:
        link = self._peer_link
        if self.state != SessionState.NEGOTIATING or link is None:
            logger.warning(f"Ignoring stream_answer on {self.source_id} in state {self.state}")
            return

        await link.accept_answer(message.answer)
        self._cancel_negotiation_timer()
        self._transition(SessionState.ACTIVE)

    async def _handle_peer_failed(self, link: PeerLink) -> None:
        logger.warning(f"Peer link to viewer {self.viewer_id} failed on {self.source_id}")
        await self._reset_to_awaiting_request()

    async def _handle_timeout(self) -> None:
        logger.warning(f"No stream_answer from viewer {self.viewer_id} on {self.source_id}")
        await self._reset_to_awaiting_request()

    async def _handle_local_event(self, event: _Inbound) -> None:
        if event.kind == "capture_ended":
            await self._announce_end("capture ended")
        elif event.kind == "end_stream":
            await self._announce_end(event.payload)
        else:
            await super()._handle_local_event(event)

    async def _announce_end(self, reason: str) -> None:
        if self._channel is not None and self.state in (
            SessionState.NEGOTIATING,
            SessionState.ACTIVE,
        ):
            try:
                await self._send(StreamEnded(source_id=self.source_id))
            except RelayError as exc:
                logger.warning(f"Could not announce stream end on {self.source_id}: {exc.errmesg}")
        await self._finish(reason)

    async def _reset_to_awaiting_request(self) -> None:
        self._cancel_negotiation_timer()
        await self._close_peer_link()
        await self._release_capture()
        self._transition(SessionState.AWAITING_REQUEST)

    # ==================== CAPTURE ====================

    async def _ensure_capture(self) -> CaptureHandle:
        if self._capture_handle is None or self._capture_handle.ended:
            self._capture_handle = await self._capture.acquire()
        return self._capture_handle

    async def _release_capture(self) -> None:
        handle, self._capture_handle = self._capture_handle, None
        if handle is not None:
            await self._capture.release(handle)

    def _on_capture_ended(self) -> None:
        if self._capture_handle is None or self.finishing:
            return
        self._inbox.put_nowait(_Inbound("capture_ended"))

    async def _release_role_resources(self) -> None:
        self._capture.remove_listener(self._on_capture_ended)
        await self._release_capture()
