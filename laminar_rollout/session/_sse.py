"""Incremental decoder for text/event-stream frames."""

from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class ServerSentEvent:
    """One dispatched SSE frame."""

    event: str = "message"
    data: str = ""
    id: str | None = None
    retry: int | None = None


class SSEDecoder:
    """Turns decoded stream lines into :class:`ServerSentEvent` frames.

    Lines are fed without their terminator. A blank line dispatches the
    frame accumulated so far; frames with neither data nor an explicit event
    name are dropped.
    """

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []
        self._last_id: str | None = None
        self._retry: int | None = None

    def feed_line(self, line: str) -> Iterator[ServerSentEvent]:
        if not line:
            if event := self._dispatch():
                yield event
            return

        if line.startswith(":"):
            return

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        match field:
            case "event":
                self._event = value
            case "data":
                self._data.append(value)
            case "id":
                if "\0" not in value:
                    self._last_id = value
            case "retry":
                if value.isdigit():
                    self._retry = int(value)

    def flush(self) -> Iterator[ServerSentEvent]:
        """Dispatch a trailing frame not terminated by a blank line."""
        if event := self._dispatch():
            yield event

    def _dispatch(self) -> ServerSentEvent | None:
        event_name, data = self._event, self._data
        self._event, self._data = None, []
        if event_name is None and not data:
            return None
        return ServerSentEvent(
            event=event_name or "message",
            data="\n".join(data),
            id=self._last_id,
            retry=self._retry,
        )
