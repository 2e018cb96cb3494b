"""Viewer-side owner of every live session.

The registry is the only thing that creates, keeps or destroys viewer
sessions. All mutations run under one asyncio lock, so admission, eviction and
mode switches never interleave. Session events are re-emitted on the registry
itself (a pyee EventEmitter):

- session_admitted(source_id)
- session_evicted(source_id, reason)
- state_changed(source_id, state)
- track_ready(source_id, track)
- stream_started(source_id)
- reconnecting(source_id, reconnecting)
- session_error(source_id, error)
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from loguru import logger
from pyee.base import EventEmitter

from camrelay.app_config import AppEnvironConfig, get_app_environ_config
from camrelay.domain.relay.reconnect import ReconnectionSupervisor
from camrelay.domain.relay.session import (
    BaseSession,
    ChannelConnector,
    PeerConnectionFactory,
    SessionHandle,
    SessionSnapshot,
    ViewerSession,
)
from camrelay.schemas import RegistryMode, SessionState, normalize_source_id
from camrelay.utils.relay_errors import RelayError, RelayErrorCode


class MultiSessionRegistry(EventEmitter):
    def __init__(
        self,
        *,
        peer_factory: PeerConnectionFactory,
        connector: ChannelConnector | None = None,
        supervisor: ReconnectionSupervisor | None = None,
        mode: RegistryMode = RegistryMode.SINGLE,
        max_sessions: int | None = None,
        viewer_id: str | None = None,
        config: AppEnvironConfig | None = None,
    ) -> None:
        super().__init__()
        self._cfg = config or get_app_environ_config()

        if supervisor is None:
            if connector is None:
                raise ValueError("MultiSessionRegistry needs a connector or a supervisor")
            supervisor = ReconnectionSupervisor.from_config(connector, self._cfg)
        self._supervisor = supervisor
        self._peer_factory = peer_factory

        self.mode = RegistryMode(mode)
        self.max_sessions = max_sessions if max_sessions is not None else self._cfg.MAX_CONCURRENT_SESSIONS
        if self.max_sessions < 1:
            raise ValueError(f"max_sessions must be at least 1, got {self.max_sessions}")
        self.viewer_id = viewer_id or self._cfg.VIEWER_ID

        # Insertion order is request order; a re-watch moves the entry to the end
        self._sessions: dict[str, ViewerSession] = {}
        self._mutation_lock = asyncio.Lock()

    async def __aenter__(self) -> MultiSessionRegistry:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop_all()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, source_id: object) -> bool:
        if not isinstance(source_id, str):
            return False
        try:
            return normalize_source_id(source_id) in self._sessions
        except RelayError:
            return False

    @property
    def capacity(self) -> int:
        return 1 if self.mode == RegistryMode.SINGLE else self.max_sessions

    # ==================== QUERIES ====================

    def active_sources(self) -> list[str]:
        """Source ids with a live session, oldest request first."""
        return list(self._sessions)

    def snapshot(self, source_id: str) -> SessionSnapshot | None:
        try:
            session = self._sessions.get(normalize_source_id(source_id))
        except RelayError:
            return None
        return session.snapshot() if session else None

    def state_of(self, source_id: str) -> SessionState | None:
        try:
            session = self._sessions.get(normalize_source_id(source_id))
        except RelayError:
            return None
        return session.state if session else None

    def handle(self, source_id: str) -> SessionHandle | None:
        try:
            session = self._sessions.get(normalize_source_id(source_id))
        except RelayError:
            return None
        return self._handle_for(session) if session else None

    # ==================== MUTATIONS ====================

    async def watch(self, source_id: str) -> SessionHandle:
        """Start watching a source, or return the live session already watching it.

        Single mode evicts every other session first. Multiple mode refuses
        admission beyond `max_sessions`.

        Raises:
            RelayError: E_CAPACITY_EXCEEDED (nothing changed) or E_INVALID_SOURCE.
        """
        source_id = normalize_source_id(source_id)

        async with self._mutation_lock:
            existing = self._sessions.get(source_id)
            if existing is not None and not existing.finishing:
                self._sessions[source_id] = self._sessions.pop(source_id)
                logger.debug(f"Reusing live session for {source_id} ({existing.state})")
                return self._handle_for(existing)

            if self.mode == RegistryMode.MULTIPLE:
                live = len(self._sessions) - (1 if existing is not None else 0)
                if live >= self.max_sessions:
                    raise RelayError(
                        errcode=RelayErrorCode.E_CAPACITY_EXCEEDED,
                        errmesg=(
                            f"Cannot watch {source_id}: {live} of {self.max_sessions} "
                            "sessions already live"
                        ),
                    )

            if existing is not None:
                await self._evict(source_id, "replaced")

            if self.mode == RegistryMode.SINGLE:
                for other in [sid for sid in self._sessions if sid != source_id]:
                    await self._evict(other, "replaced")

            session = ViewerSession(
                source_id,
                viewer_id=self.viewer_id,
                supervisor=self._supervisor,
                peer_factory=self._peer_factory,
                emitter=self,
                config=self._cfg,
                on_terminal=self._on_session_terminal,
            )
            self._sessions[source_id] = session
            logger.info(
                f"Admitted session for {source_id} ({len(self._sessions)}/{self.capacity}, mode={self.mode})"
            )
            self.emit("session_admitted", source_id)
            session.start()
            return self._handle_for(session)

    async def watch_many(self, source_ids: Iterable[str]) -> list[SessionHandle]:
        """Watch several sources in order; stops at the first refusal."""
        return [await self.watch(source_id) for source_id in source_ids]

    async def stop(self, source_id: str) -> None:
        source_id = normalize_source_id(source_id)
        async with self._mutation_lock:
            await self._evict(source_id, "stopped")

    async def stop_session(self, source_id: str, session_id: str) -> None:
        """Stop a session only if it is still the one identified by `session_id`."""
        async with self._mutation_lock:
            session = self._sessions.get(source_id)
            if session is None or session.session_id != session_id:
                return
            await self._evict(source_id, "stopped")

    async def stop_all(self) -> None:
        """Stop every session. Safe to call repeatedly."""
        async with self._mutation_lock:
            for source_id in list(self._sessions):
                await self._evict(source_id, "stopped")

    async def set_mode(self, mode: RegistryMode) -> None:
        """Switch admission mode; entering single mode keeps only the newest session."""
        mode = RegistryMode(mode)
        async with self._mutation_lock:
            if mode == self.mode:
                return
            logger.info(f"Registry mode {self.mode} -> {mode}")
            self.mode = mode

            if mode == RegistryMode.SINGLE and len(self._sessions) > 1:
                newest = next(reversed(self._sessions))
                for source_id in [sid for sid in self._sessions if sid != newest]:
                    await self._evict(source_id, "mode_single")

    # ==================== INTERNALS ====================

    def _handle_for(self, session: BaseSession) -> SessionHandle:
        return SessionHandle(
            source_id=session.source_id,
            session_id=session.session_id,
            created_at=session.created_at,
            _registry=self,
        )

    async def _evict(self, source_id: str, reason: str) -> None:
        session = self._sessions.pop(source_id, None)
        if session is None:
            return
        logger.info(f"Evicting session for {source_id}: {reason}")
        await session.stop()
        self.emit("session_evicted", source_id, reason)

    def _on_session_terminal(self, session: BaseSession, reason: str) -> None:
        if self._sessions.get(session.source_id) is not session:
            return
        del self._sessions[session.source_id]
        logger.info(f"Session for {session.source_id} ended on its own: {reason}")
        self.emit("session_evicted", session.source_id, reason)
