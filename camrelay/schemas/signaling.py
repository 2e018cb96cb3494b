"""Signaling wire messages.

One JSON object per message, discriminated by `type`. Session descriptions and
ICE candidates are opaque dicts at this layer; only the peer adapter looks
inside them.

Legacy clients addressed the two ends as `adminId` / `userId`; both names are
still accepted on input and always written as `viewerId` / `sourceId`.
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, Union

import orjson
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from camrelay.utils.relay_errors import RelayError, RelayErrorCode


def now_ms() -> int:
    return int(time.time() * 1000)


class _SignalingMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    timestamp: int | None = Field(default=None, description="Sender wall clock, ms epoch")


class RequestStream(_SignalingMessage):
    type: Literal["request_stream"] = "request_stream"
    viewer_id: str = Field(
        ...,
        alias="viewerId",
        validation_alias=AliasChoices("viewerId", "viewer_id", "adminId"),
    )


class StreamOffer(_SignalingMessage):
    type: Literal["stream_offer"] = "stream_offer"
    offer: dict[str, Any]
    source_id: str = Field(
        ...,
        alias="sourceId",
        validation_alias=AliasChoices("sourceId", "source_id", "userId"),
    )


class StreamAnswer(_SignalingMessage):
    type: Literal["stream_answer"] = "stream_answer"
    answer: dict[str, Any]


class IceCandidate(_SignalingMessage):
    type: Literal["ice_candidate"] = "ice_candidate"
    candidate: dict[str, Any]


class StreamStarted(_SignalingMessage):
    type: Literal["stream_started"] = "stream_started"
    source_id: str = Field(
        ...,
        alias="sourceId",
        validation_alias=AliasChoices("sourceId", "source_id", "userId"),
    )


class StreamEnded(_SignalingMessage):
    type: Literal["stream_ended"] = "stream_ended"
    source_id: str = Field(
        ...,
        alias="sourceId",
        validation_alias=AliasChoices("sourceId", "source_id", "userId"),
    )


class ErrorMessage(_SignalingMessage):
    type: Literal["error"] = "error"
    message: str


SignalingMessage = Annotated[
    Union[
        RequestStream,
        StreamOffer,
        StreamAnswer,
        IceCandidate,
        StreamStarted,
        StreamEnded,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[SignalingMessage] = TypeAdapter(SignalingMessage)


def decode_message(raw: str | bytes) -> SignalingMessage:
    """Parse one wire frame.

    Raises:
        RelayError: E_MALFORMED_MESSAGE for binary frames, invalid JSON,
            unknown types or missing fields.
    """
    if isinstance(raw, (bytes, bytearray)):
        raise RelayError(
            errcode=RelayErrorCode.E_MALFORMED_MESSAGE,
            errmesg=f"Binary frame on signaling channel ({len(raw)} bytes)",
        )

    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise RelayError(
            errcode=RelayErrorCode.E_MALFORMED_MESSAGE,
            errmesg=f"Invalid JSON: {exc}",
        ) from exc

    try:
        return _message_adapter.validate_python(data)
    except ValidationError as exc:
        raise RelayError(
            errcode=RelayErrorCode.E_MALFORMED_MESSAGE,
            errmesg=f"Invalid signaling message: {exc.errors(include_url=False)}",
        ) from exc


def encode_message(message: _SignalingMessage) -> str:
    """Serialize a message, stamping `timestamp` when the caller left it empty."""
    if message.timestamp is None:
        message = message.model_copy(update={"timestamp": now_ms()})
    return orjson.dumps(message.model_dump(by_alias=True, exclude_none=True)).decode()


def message_age_seconds(message: _SignalingMessage, *, now: int | None = None) -> float | None:
    """Seconds since the sender stamped the message, or None when unstamped."""
    if message.timestamp is None:
        return None
    return max(0.0, ((now if now is not None else now_ms()) - message.timestamp) / 1000.0)


__all__ = [
    "ErrorMessage",
    "IceCandidate",
    "RequestStream",
    "SignalingMessage",
    "StreamAnswer",
    "StreamEnded",
    "StreamOffer",
    "StreamStarted",
    "decode_message",
    "encode_message",
    "message_age_seconds",
    "now_ms",
]
