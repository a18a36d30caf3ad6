"""Wire format of the realtime channel.

Every frame is a JSON object {"type": ..., "payload": ...}. Older server builds send the body
under "data" instead of "payload" and add an "event" sub-type ("download" + "status_update"),
so both are accepted.
"""

from typing import Any, Final

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
)
from pydantic import (
    ValidationError as PydanticValidationError,
)

from pandorabox.domain.exceptions import ChannelMessageParseError

# Event types the core itself cares about. Anything else is passed through to subscribers as-is.
DOWNLOAD_PROGRESS: Final = "download_progress"
PING: Final = "ping"
SUBSCRIBE: Final = "subscribe"
UNSUBSCRIBE: Final = "unsubscribe"


class ChannelEvent(BaseModel):
    """A tagged server event."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str = Field(min_length=1)
    payload: Any = Field(default=None, validation_alias=AliasChoices("payload", "data"))
    event: str | None = None

    def to_wire(self) -> str:
        """Serialize for sending."""
        return self.model_dump_json(exclude_none=True)


class DownloadProgress(BaseModel):
    """Payload of a download progress event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    torrent_name: str = Field(alias="torrentName")
    progress: float = Field(ge=0)
    speed: float = Field(default=0, ge=0)  # bytes/s
    eta: int | None = None  # seconds, None when unknown

    @classmethod
    def from_event(cls, event: ChannelEvent) -> "DownloadProgress":
        """Parse the payload of a download progress event.

        Raises:
            ChannelMessageParseError: If the payload does not look like progress data
        """
        try:
            return cls.model_validate(event.payload)
        except PydanticValidationError as exc:
            raise ChannelMessageParseError(
                f"Invalid {event.type} payload: {exc.error_count()} validation error(s)"
            ) from exc


# Hey future me, one function for ALL inbound parsing. model_validate_json() rejects both broken
# JSON and JSON of the wrong shape (no "type", a list, a bare string) with the same pydantic
# ValidationError, so a single except covers every malformed frame.
def parse_event(raw: str | bytes) -> ChannelEvent:
    """Parse one inbound frame.

    Raises:
        ChannelMessageParseError: If the frame is not a {type, payload} JSON object
    """
    try:
        return ChannelEvent.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise ChannelMessageParseError(
            f"Malformed realtime message: {exc.errors()[0]['msg']}", raw=raw
        ) from exc
