"""Source directory entries and source identifiers."""

from __future__ import annotations

import re
from collections.abc import Iterable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from camrelay.utils.relay_errors import RelayError, RelayErrorCode

# Separators people type into phone numbers
_SOURCE_ID_NOISE = re.compile(r"[\s\-+()]")


def normalize_source_id(raw: str) -> str:
    """Canonical form of a source identifier (phone number or device id).

    Raises:
        RelayError: E_INVALID_SOURCE if nothing is left after cleaning.
    """
    cleaned = _SOURCE_ID_NOISE.sub("", raw or "")
    if not cleaned:
        raise RelayError(
            errcode=RelayErrorCode.E_INVALID_SOURCE,
            errmesg=f"Invalid source id: {raw!r}",
        )
    return cleaned


class SourceInfo(BaseModel):
    """A monitorable endpoint as reported by the directory."""

    id: str
    display_name: str = Field(
        default="",
        alias="displayName",
        validation_alias=AliasChoices("displayName", "display_name", "name"),
    )
    online: bool = Field(default=False, validation_alias=AliasChoices("online", "isOnline"))
    can_stream: bool = Field(
        default=False,
        alias="canStream",
        validation_alias=AliasChoices("canStream", "can_stream", "hasCamera"),
    )

    model_config = ConfigDict(populate_by_name=True)

    @property
    def source_id(self) -> str:
        return normalize_source_id(self.id)


def watchable_sources(sources: Iterable[SourceInfo]) -> list[SourceInfo]:
    """Sources a viewer may watch right now: online and stream-capable."""
    return [source for source in sources if source.online and source.can_stream]


__all__ = ["SourceInfo", "normalize_source_id", "watchable_sources"]
