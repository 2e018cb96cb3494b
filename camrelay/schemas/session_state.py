"""Common enums used across schemas."""

from enum import Enum


class SessionRole(str, Enum):
    """Which end of a relay session this process plays."""

    SOURCE = "source"
    VIEWER = "viewer"

    def __str__(self) -> str:
        return self.value


class SessionState(str, Enum):
    """Relay session lifecycle states.

    Viewer flow:

    IDLE → CONNECTING → AWAITING_OFFER → NEGOTIATING → ACTIVE → ENDED
                 ↓              ↓              ↓          ↓
               ERRORED ───────────────────────────────→ ENDED

    Source flow:

    IDLE → CONNECTING → AWAITING_REQUEST → NEGOTIATING → ACTIVE → ENDED

    State Descriptions:
    - IDLE: Session object built, nothing opened yet.
    - CONNECTING: Signaling channel being opened (or re-opened after a drop).
    - AWAITING_REQUEST: Source only. Channel open, waiting for a viewer's request_stream.
    - AWAITING_OFFER: Viewer only. request_stream sent, waiting for stream_offer.
    - NEGOTIATING: Descriptions exchanged, waiting for media (viewer) or the answer (source).
    - ACTIVE: Media flowing over the direct peer path.
    - ERRORED: Failure recorded; cleanup in progress. Always followed by ENDED.
    - ENDED: Terminal. Channel and peer link are closed.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_REQUEST = "awaiting_request"
    AWAITING_OFFER = "awaiting_offer"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    ERRORED = "errored"
    ENDED = "ended"

    def __str__(self) -> str:
        return self.value


class RegistryMode(str, Enum):
    """Viewer concurrency policy."""

    SINGLE = "single"
    MULTIPLE = "multiple"

    def __str__(self) -> str:
        return self.value


__all__ = ["RegistryMode", "SessionRole", "SessionState"]
