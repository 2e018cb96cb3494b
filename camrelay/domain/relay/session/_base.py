"""Shared machinery for viewer and source sessions.

A session is a single task draining one inbox. Channel frames, channel loss,
peer connection callbacks and timer expiries are all queued onto that inbox,
so every state change happens in arrival order and never concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar

from loguru import logger
from pyee.base import EventEmitter

from camrelay.app_config import AppEnvironConfig, get_app_environ_config
from camrelay.domain.relay.peer_link import PeerLink
from camrelay.domain.relay.reconnect import ReconnectionSupervisor
from camrelay.domain.relay.session.session_models import (
    PeerConnectionFactory,
    SessionSnapshot,
    SignalingChannel,
)
from camrelay.domain.relay.session.session_state_machine import SessionStateMachine
from camrelay.schemas import (
    SessionRole,
    SessionState,
    decode_message,
    encode_message,
    normalize_source_id,
)
from camrelay.schemas.signaling import IceCandidate, SignalingMessage
from camrelay.shared.utils import log_task_exception
from camrelay.utils.idgen import new_session_id
from camrelay.utils.relay_errors import RelayError, RelayErrorCode


@dataclass
class _Inbound:
    kind: str
    payload: Any = None
    # Channel, peer link or timer generation the event belongs to
    origin: Any = None


class BaseSession:
    role: ClassVar[SessionRole]

    def __init__(
        self,
        source_id: str,
        *,
        supervisor: ReconnectionSupervisor,
        peer_factory: PeerConnectionFactory,
        emitter: EventEmitter | None = None,
        config: AppEnvironConfig | None = None,
        on_terminal=None,
    ) -> None:
        self.source_id = normalize_source_id(source_id)
        self.session_id = new_session_id()
        self.created_at = datetime.now(timezone.utc)
        self.state = SessionState.IDLE
        self.reconnecting = False
        self.last_error: RelayError | None = None

        self._supervisor = supervisor
        self._peer_factory = peer_factory
        self._emitter = emitter
        self._cfg = config or get_app_environ_config()
        self._on_terminal = on_terminal

        self._inbox: asyncio.Queue[_Inbound] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._reader: asyncio.Task | None = None
        self._channel: SignalingChannel | None = None
        self._peer_link: PeerLink | None = None

        self._timer: asyncio.TimerHandle | None = None
        self._timer_generation = 0

        self._silenced = False
        self._stopped = False
        self._terminal_notified = False

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(source_id={self.source_id!r}, "
            f"session_id={self.session_id!r}, state={self.state})"
        )

    # ==================== PUBLIC API ====================

    @property
    def peer_link(self) -> PeerLink | None:
        return self._peer_link

    @property
    def finishing(self) -> bool:
        return SessionStateMachine.is_finishing(self.state)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            source_id=self.source_id,
            session_id=self.session_id,
            role=self.role,
            state=self.state,
            created_at=self.created_at,
            reconnecting=self.reconnecting,
            last_error=self.last_error,
        )

    def start(self) -> None:
        """Open the channel and run the protocol in the background."""
        if self.state != SessionState.IDLE or self._stopped:
            raise RelayError(
                errcode=RelayErrorCode.E_INVALID_TRANSITION,
                errmesg=f"Session {self.session_id} already started (state={self.state})",
            )
        self._transition(SessionState.CONNECTING)
        self._task = asyncio.create_task(
            self._run(), name=f"relay-{self.role}-{self.source_id}-{self.session_id}"
        )
        self._task.add_done_callback(log_task_exception)

    async def wait_closed(self) -> None:
        """Block until the session reaches ENDED."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(self._task)

    async def stop(self) -> None:
        """Tear the session down from any state.

        Idempotent. When this returns the channel and peer link are closed,
        the state is ENDED, and no further events are emitted.
        """
        if self._stopped:
            return
        self._stopped = True

        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._release_resources()
        if not SessionStateMachine.is_terminal(self.state):
            logger.info(f"Session {self.source_id} ({self.role}) stopped")
            self._transition(SessionState.ENDED)
        self._silenced = True
        self._notify_terminal("stopped")

    # ==================== ROLE HOOKS ====================

    async def _on_channel_open(self, *, restored: bool) -> None:
        raise NotImplementedError

    async def _handle_message(self, message: SignalingMessage) -> None:
        raise NotImplementedError

    async def _handle_track(self, link: PeerLink, track: Any) -> None:
        logger.debug(f"Ignoring inbound track on {self.role} session {self.source_id}")

    async def _handle_peer_failed(self, link: PeerLink) -> None:
        await self._fail(
            RelayError(
                errcode=RelayErrorCode.E_PEER_FAILED,
                errmesg=f"Peer connection to {self.source_id} failed",
            )
        )

    async def _handle_timeout(self) -> None:
        await self._fail(
            RelayError(
                errcode=RelayErrorCode.E_NEGOTIATION_TIMEOUT,
                errmesg=(
                    f"No progress from {self.source_id} within "
                    f"{self._cfg.NEGOTIATION_TIMEOUT_SECONDS}s (state={self.state})"
                ),
            )
        )

    async def _handle_local_event(self, event: _Inbound) -> None:
        logger.debug(f"Unhandled {event.kind} event on {self.role} session {self.source_id}")

    async def _release_role_resources(self) -> None:
        return None

    # ==================== MAIN LOOP ====================

    async def _run(self) -> None:
        try:
            await self._connect_channel(restored=False)
            while not self.finishing:
                event = await self._inbox.get()
                try:
                    await self._dispatch(event)
                except RelayError as exc:
                    if not exc.retryable:
                        raise
                    await self._recover_channel(self._channel, exc)
        except asyncio.CancelledError:
            raise
        except RelayError as exc:
            await self._fail(exc)
        except Exception as exc:
            logger.exception(f"Unexpected error in {self.role} session {self.source_id}")
            await self._fail(
                RelayError(
                    errcode=RelayErrorCode.E_INTERNAL_ERROR,
                    errmesg=f"{type(exc).__name__}: {exc}",
                )
            )

    async def _dispatch(self, event: _Inbound) -> None:
        if self.finishing:
            return

        if event.kind == "message":
            if event.origin is not self._channel:
                return
            try:
                message = decode_message(event.payload)
            except RelayError as exc:
                logger.warning(
                    f"Dropping malformed message on {self.role} session {self.source_id}: "
                    f"{exc.errmesg}"
                )
                return
            logger.debug(f"Received {message.type} on {self.role} session {self.source_id}")
            await self._handle_message(message)

        elif event.kind == "channel_lost":
            await self._recover_channel(event.origin, event.payload)

        elif event.kind == "timeout":
            if event.origin == self._timer_generation:
                self._timer = None
                await self._handle_timeout()

        elif event.kind in ("track", "peer_failed", "local_candidate"):
            if event.origin is not self._peer_link:
                logger.debug(f"Ignoring {event.kind} from a discarded peer link ({self.source_id})")
                return
            if event.kind == "track":
                await self._handle_track(event.origin, event.payload)
            elif event.kind == "peer_failed":
                await self._handle_peer_failed(event.origin)
            else:
                await self._send(IceCandidate(candidate=event.payload))

        else:
            await self._handle_local_event(event)

    # ==================== CHANNEL ====================

    async def _connect_channel(self, *, restored: bool) -> None:
        while True:
            channel = await self._supervisor.connect(self.source_id, on_retry=self._on_connect_retry)
            self._channel = channel
            self._set_reconnecting(False)
            self._reader = asyncio.create_task(
                self._read_channel(channel), name=f"relay-reader-{self.source_id}"
            )
            self._reader.add_done_callback(log_task_exception)
            logger.info(f"Signaling channel open for {self.role} session {self.source_id}")

            try:
                await self._on_channel_open(restored=restored)
                return
            except RelayError as exc:
                if not exc.retryable:
                    raise
                logger.warning(f"Signaling channel for {self.source_id} dropped right after open")
                self._set_reconnecting(True)
                await self._close_channel()
                restored = True

    async def _recover_channel(self, channel: SignalingChannel | None, error: RelayError) -> None:
        if channel is None or channel is not self._channel:
            return

        logger.warning(f"Signaling channel lost for {self.role} session {self.source_id}: {error.errmesg}")
        self._cancel_negotiation_timer()
        self._set_reconnecting(True)
        await self._close_channel()
        await self._connect_channel(restored=True)

    async def _read_channel(self, channel: SignalingChannel) -> None:
        try:
            while True:
                raw = await channel.recv()
                self._inbox.put_nowait(_Inbound("message", raw, channel))
        except asyncio.CancelledError:
            raise
        except RelayError as exc:
            self._inbox.put_nowait(_Inbound("channel_lost", exc, channel))
        except Exception as exc:
            self._inbox.put_nowait(
                _Inbound(
                    "channel_lost",
                    RelayError(
                        errcode=RelayErrorCode.E_CHANNEL_UNAVAILABLE,
                        errmesg=f"{type(exc).__name__}: {exc}",
                    ),
                    channel,
                )
            )

    async def _send(self, message: SignalingMessage) -> None:
        if self._channel is None:
            raise RelayError(
                errcode=RelayErrorCode.E_CHANNEL_UNAVAILABLE,
                errmesg=f"No signaling channel for {self.source_id}",
            )
        await self._channel.send(encode_message(message))
        logger.debug(f"Sent {message.type} on {self.role} session {self.source_id}")

    async def _close_channel(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await channel.close()
        except Exception as exc:
            logger.warning(f"Error closing signaling channel for {self.source_id}: {exc}")

    def _on_connect_retry(self, attempt: int, delay: float, error: RelayError) -> None:
        self._set_reconnecting(True)

    def _set_reconnecting(self, reconnecting: bool) -> None:
        if self.reconnecting == reconnecting:
            return
        self.reconnecting = reconnecting
        self._emit("reconnecting", self.source_id, reconnecting)

    # ==================== PEER LINK ====================

    def _new_peer_link(self) -> PeerLink:
        link = PeerLink(
            self.source_id,
            self._peer_factory(),
            on_track=lambda link, track: self._inbox.put_nowait(_Inbound("track", track, link)),
            on_failed=lambda link: self._inbox.put_nowait(_Inbound("peer_failed", None, link)),
            on_local_candidate=lambda link, candidate: self._inbox.put_nowait(
                _Inbound("local_candidate", candidate, link)
            ),
        )
        self._peer_link = link
        return link

    async def _close_peer_link(self) -> None:
        link, self._peer_link = self._peer_link, None
        if link is not None:
            await link.close()

    # ==================== TIMER ====================

    def _arm_negotiation_timer(self) -> None:
        self._cancel_negotiation_timer()
        generation = self._timer_generation
        self._timer = asyncio.get_running_loop().call_later(
            self._cfg.NEGOTIATION_TIMEOUT_SECONDS,
            self._inbox.put_nowait,
            _Inbound("timeout", None, generation),
        )

    def _cancel_negotiation_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        # Invalidates any expiry already sitting in the inbox
        self._timer_generation += 1

    # ==================== STATE ====================

    def _transition(self, new_state: SessionState) -> None:
        current = self.state
        if current == new_state:
            return

        if not SessionStateMachine.can_transition(self.role, current, new_state):
            raise RelayError(
                errcode=RelayErrorCode.E_INVALID_TRANSITION,
                errmesg=f"Invalid {self.role} transition: {current} -> {new_state}",
            )

        self.state = new_state
        logger.info(f"Session {self.source_id} ({self.role}) {current} -> {new_state}")
        self._emit("state_changed", self.source_id, new_state)

    async def _fail(self, error: RelayError) -> None:
        if self.finishing:
            return

        self.last_error = error
        logger.warning(
            f"Session {self.source_id} ({self.role}) failed: {error.errcode} "
            f"msg={error.errmesg} erresid={error.erresid} caller={error.caller_info}"
        )
        self._transition(SessionState.ERRORED)
        self._emit("session_error", self.source_id, error)
        await self._release_resources()
        self._transition(SessionState.ENDED)
        self._notify_terminal(error.errcode)

    async def _finish(self, reason: str) -> None:
        if self.finishing:
            return

        logger.info(f"Session {self.source_id} ({self.role}) finishing: {reason}")
        await self._release_resources()
        self._transition(SessionState.ENDED)
        self._notify_terminal(reason)

    async def _release_resources(self) -> None:
        self._cancel_negotiation_timer()
        await self._close_peer_link()
        await self._close_channel()
        await self._release_role_resources()

    def _emit(self, event: str, *args: Any) -> None:
        if self._silenced or self._emitter is None:
            return
        self._emitter.emit(event, *args)

    def _notify_terminal(self, reason: str) -> None:
        if self._terminal_notified:
            return
        self._terminal_notified = True
        if self._on_terminal is not None:
            self._on_terminal(self, reason)
