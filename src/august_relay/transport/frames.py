from __future__ import annotations

import codecs
from dataclasses import dataclass


@dataclass(frozen=True)
class SseFrame:
    event: str = "message"
    data: str = ""
    id: str | None = None


class SseFrameParser:
    """Incremental ``text/event-stream`` parser.

    Network reads can end anywhere, including inside a multi-byte character
    or halfway through a line. The unterminated tail is carried over and
    prepended to the next read; a frame is only produced once its blank-line
    terminator has arrived (or on ``flush`` at end of stream).
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""
        self._event: str | None = None
        self._data_lines: list[str] = []
        self.last_event_id: str | None = None

    @property
    def pending(self) -> str:
        return self._carry

    def feed(self, chunk: bytes | str) -> list[SseFrame]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        buffered = self._carry + text
        lines = buffered.split("\n")
        self._carry = lines.pop()
        frames: list[SseFrame] = []
        for line in lines:
            frame = self._process_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[SseFrame]:
        tail = self._carry + self._decoder.decode(b"", final=True)
        self._carry = ""
        frames: list[SseFrame] = []
        if tail:
            frame = self._process_line(tail.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _process_line(self, line: str) -> SseFrame | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if not sep:
            value = ""
        elif value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value or None
        elif field == "data":
            self._data_lines.append(value)
        elif field == "id":
            self.last_event_id = value
        return None

    def _dispatch(self) -> SseFrame | None:
        if not self._data_lines and self._event is None:
            return None
        frame = SseFrame(
            event=self._event or "message",
            data="\n".join(self._data_lines),
            id=self.last_event_id,
        )
        self._event = None
        self._data_lines = []
        return frame
