"""Session domain models and the collaborator protocols sessions depend on."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from camrelay.schemas import SessionRole, SessionState
from camrelay.utils.relay_errors import RelayError

if TYPE_CHECKING:
    from camrelay.domain.relay.registry import MultiSessionRegistry


class SignalingChannel(Protocol):
    """One open signaling connection scoped to a single source.

    `recv()` and `send()` raise RelayError(E_CHANNEL_UNAVAILABLE) once the
    underlying transport is gone.
    """

    async def send(self, text: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


ChannelConnector = Callable[[str], Awaitable[SignalingChannel]]


class PeerConnection(Protocol):
    """The subset of a WebRTC peer connection a PeerLink drives.

    Events registered through `on()`:
    - "track": handler(track) for every inbound media track
    - "connectionstatechange": handler(state: str)
    - "icecandidate": handler(candidate: dict) for runtimes that trickle
    """

    def on(self, event: str, handler: Callable[..., Any]) -> Any: ...

    async def set_remote_description(self, description: dict[str, Any]) -> None: ...

    async def create_offer(self) -> dict[str, Any]: ...

    async def create_answer(self) -> dict[str, Any]: ...

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None: ...

    def add_track(self, track: Any) -> None: ...

    async def close(self) -> None: ...


PeerConnectionFactory = Callable[[], PeerConnection]


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time view of a session for logging and UI."""

    source_id: str
    session_id: str
    role: SessionRole
    state: SessionState
    created_at: datetime
    reconnecting: bool = False
    last_error: RelayError | None = None


@dataclass(frozen=True)
class SessionHandle:
    """What `watch()` hands back to callers.

    The registry keeps exclusive ownership of the session; a handle only
    resolves through it, so a stale handle never reaches a newer session for
    the same source.
    """

    source_id: str
    session_id: str
    created_at: datetime
    _registry: MultiSessionRegistry = field(repr=False, compare=False)

    @property
    def state(self) -> SessionState:
        snapshot = self._registry.snapshot(self.source_id)
        if snapshot is None or snapshot.session_id != self.session_id:
            return SessionState.ENDED
        return snapshot.state

    @property
    def active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def last_error(self) -> RelayError | None:
        snapshot = self._registry.snapshot(self.source_id)
        if snapshot is None or snapshot.session_id != self.session_id:
            return None
        return snapshot.last_error

    async def stop(self) -> None:
        await self._registry.stop_session(self.source_id, self.session_id)
