"""Relay error taxonomy.

Every failure inside the relay is expressed as a RelayError carrying one of the
RelayErrorCode values below. Callers branch on `errcode`, never on message text.
"""

import inspect
from enum import Enum
from uuid import uuid4


class RelayErrorCode(str, Enum):
    # Signaling transport down; retried by the reconnection supervisor
    E_CHANNEL_UNAVAILABLE = "E_CHANNEL_UNAVAILABLE"
    # No media within the negotiation budget; terminal for the session
    E_NEGOTIATION_TIMEOUT = "E_NEGOTIATION_TIMEOUT"
    # Registry refused admission; nothing was mutated
    E_CAPACITY_EXCEEDED = "E_CAPACITY_EXCEEDED"
    # Source-side capture unavailable
    E_PERMISSION_DENIED = "E_PERMISSION_DENIED"
    # Protocol violation; message dropped
    E_MALFORMED_MESSAGE = "E_MALFORMED_MESSAGE"
    E_INVALID_TRANSITION = "E_INVALID_TRANSITION"
    E_INVALID_SOURCE = "E_INVALID_SOURCE"
    E_INVALID_CONFIG = "E_INVALID_CONFIG"
    # Source directory lookup failed
    E_DIRECTORY_UNAVAILABLE = "E_DIRECTORY_UNAVAILABLE"
    # ICE / DTLS failure reported by the peer connection
    E_PEER_FAILED = "E_PEER_FAILED"
    E_INTERNAL_ERROR = "E_INTERNAL_ERROR"

    def __str__(self) -> str:
        return self.value


RETRYABLE_CODES = frozenset({RelayErrorCode.E_CHANNEL_UNAVAILABLE.value})


class RelayError(Exception):
    """Exception raised by relay components.

    Captures the raising call site so log lines point at the origin, not at the
    handler that eventually reports the error.
    """

    def __init__(
        self,
        errcode: RelayErrorCode | str = RelayErrorCode.E_INTERNAL_ERROR,
        errmesg: str | None = None,
    ):
        self.errcode = errcode.value if isinstance(errcode, RelayErrorCode) else str(errcode)
        self.errmesg = errmesg or "Relay error"
        self.erresid = uuid4().hex[:10]

        caller_frame = inspect.stack()[1]
        module = inspect.getmodule(caller_frame.frame)
        module_name = (
            module.__name__ if module and getattr(module, "__name__", None) else caller_frame.filename
        )
        self.caller_info = f"{module_name}:{caller_frame.function}:{caller_frame.lineno}"

        super().__init__(f"{self.errcode}: {self.errmesg}")

    @property
    def retryable(self) -> bool:
        return self.errcode in RETRYABLE_CODES

    def is_code(self, code: RelayErrorCode) -> bool:
        return self.errcode == code.value

    def __repr__(self) -> str:
        return f"RelayError(errcode={self.errcode!r}, errmesg={self.errmesg!r}, erresid={self.erresid!r})"
