"""Relay schemas: session enums, signaling messages, directory entries."""

from .session_state import RegistryMode, SessionRole, SessionState
from .signaling import (
    ErrorMessage,
    IceCandidate,
    RequestStream,
    SignalingMessage,
    StreamAnswer,
    StreamEnded,
    StreamOffer,
    StreamStarted,
    decode_message,
    encode_message,
)
from .source import SourceInfo, normalize_source_id, watchable_sources

__all__ = [
    "ErrorMessage",
    "IceCandidate",
    "RegistryMode",
    "RequestStream",
    "SessionRole",
    "SessionState",
    "SignalingMessage",
    "SourceInfo",
    "StreamAnswer",
    "StreamEnded",
    "StreamOffer",
    "StreamStarted",
    "decode_message",
    "encode_message",
    "normalize_source_id",
    "watchable_sources",
]
