"""Peer link controller.

Wraps one negotiated peer connection. Remote ICE candidates that arrive before
the remote description is applied are held back and replayed, in arrival
order, right after it is set; WebRTC rejects candidates for an unknown remote
description.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from loguru import logger

from camrelay.utils.relay_errors import RelayError, RelayErrorCode

if TYPE_CHECKING:
    from camrelay.domain.relay.session.session_models import PeerConnection


class PeerLink:
    """One direct media path between a viewer and a source."""

    def __init__(
        self,
        source_id: str,
        connection: PeerConnection,
        *,
        on_track: Callable[[PeerLink, Any], None] | None = None,
        on_failed: Callable[[PeerLink], None] | None = None,
        on_local_candidate: Callable[[PeerLink, dict[str, Any]], None] | None = None,
    ) -> None:
        self.source_id = source_id
        self._connection = connection
        self._on_track = on_track
        self._on_failed = on_failed
        self._on_local_candidate = on_local_candidate

        self.local_description: dict[str, Any] | None = None
        self.remote_description: dict[str, Any] | None = None
        self.tracks: list[Any] = []

        self._pending_candidates: list[dict[str, Any]] = []
        self._flushing = False
        self._closed = False

        connection.on("track", self._handle_track)
        connection.on("connectionstatechange", self._handle_connection_state)
        connection.on("icecandidate", self._handle_local_candidate)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    @property
    def pending_candidates(self) -> list[dict[str, Any]]:
        return list(self._pending_candidates)

    @property
    def track(self) -> Any | None:
        """First inbound media track, if any."""
        return self.tracks[0] if self.tracks else None

    # ==================== NEGOTIATION ====================

    async def accept_offer(self, offer: dict[str, Any]) -> dict[str, Any]:
        """Apply a remote offer and return the local answer."""
        await self._apply_remote_description(offer)
        answer = await self._call(self._connection.create_answer, "create answer")
        self.local_description = answer
        return answer

    async def create_offer(self) -> dict[str, Any]:
        self._ensure_open()
        offer = await self._call(self._connection.create_offer, "create offer")
        self.local_description = offer
        return offer

    async def accept_answer(self, answer: dict[str, Any]) -> None:
        await self._apply_remote_description(answer)

    def add_tracks(self, tracks: Iterable[Any]) -> None:
        self._ensure_open()
        for track in tracks:
            self._connection.add_track(track)

    async def add_remote_candidate(self, candidate: dict[str, Any]) -> bool:
        """Apply a remote candidate, or buffer it until the remote description is set.

        Returns:
            True if applied now, False if buffered or dropped
        """
        if self._closed:
            logger.debug(f"Dropping candidate for closed peer link: source={self.source_id}")
            return False

        if self.remote_description is None or self._flushing:
            self._pending_candidates.append(candidate)
            logger.debug(
                f"Buffered remote candidate #{len(self._pending_candidates)} for {self.source_id}"
            )
            return False

        await self._apply_candidate(candidate)
        return True

    async def close(self) -> None:
        """Close the underlying connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._pending_candidates.clear()

        try:
            await self._connection.close()
        except Exception as exc:
            logger.warning(f"Error closing peer connection for {self.source_id}: {exc}")

        logger.debug(f"Peer link closed: source={self.source_id}")

    # ==================== INTERNALS ====================

    async def _apply_remote_description(self, description: dict[str, Any]) -> None:
        self._ensure_open()
        await self._call(
            lambda: self._connection.set_remote_description(description),
            "set remote description",
        )
        self.remote_description = description
        await self._flush_pending_candidates()

    async def _flush_pending_candidates(self) -> None:
        if not self._pending_candidates:
            return

        logger.debug(
            f"Flushing {len(self._pending_candidates)} buffered candidates for {self.source_id}"
        )
        # Candidates that arrive mid-flush queue behind the buffered ones
        self._flushing = True
        try:
            while self._pending_candidates and not self._closed:
                await self._apply_candidate(self._pending_candidates.pop(0))
        finally:
            self._flushing = False

    async def _apply_candidate(self, candidate: dict[str, Any]) -> None:
        try:
            await self._connection.add_ice_candidate(candidate)
        except Exception as exc:
            logger.warning(f"Error adding ICE candidate for {self.source_id}: {exc}")

    async def _call(self, fn, action: str):
        try:
            return await fn()
        except RelayError:
            raise
        except Exception as exc:
            raise RelayError(
                errcode=RelayErrorCode.E_PEER_FAILED,
                errmesg=f"Failed to {action} for {self.source_id}: {type(exc).__name__}: {exc}",
            ) from exc

    def _ensure_open(self) -> None:
        if self._closed:
            raise RelayError(
                errcode=RelayErrorCode.E_PEER_FAILED,
                errmesg=f"Peer link for {self.source_id} is closed",
            )

    def _handle_track(self, track: Any) -> None:
        if self._closed:
            return
        self.tracks.append(track)
        logger.info(
            f"Inbound {getattr(track, 'kind', 'media')} track from {self.source_id}"
        )
        if self._on_track:
            self._on_track(self, track)

    def _handle_connection_state(self, state: str) -> None:
        if self._closed:
            return
        logger.debug(f"Peer connection state for {self.source_id}: {state}")
        if state == "failed" and self._on_failed:
            self._on_failed(self)

    def _handle_local_candidate(self, candidate: dict[str, Any] | None) -> None:
        if self._closed or not candidate:
            return
        if self._on_local_candidate:
            self._on_local_candidate(self, candidate)
