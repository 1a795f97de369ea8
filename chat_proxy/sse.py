from __future__ import annotations

import codecs
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional


@dataclass(frozen=True)
class SSEFrame:
    """One upstream event: optional `event:` name plus the joined `data:` payload."""

    data: str
    event: Optional[str] = None


class FrameDecoder:
    """Incremental SSE decoder.

    Bytes may arrive split anywhere (mid-line, mid-UTF-8 sequence); partial
    input is buffered until a newline is seen. A frame is emitted at the blank
    line that terminates it (``\\n\\n`` or ``\\r\\n\\r\\n``), and `flush()` emits a
    trailing frame that never received its terminator.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, chunk: bytes) -> List[SSEFrame]:
        self._buffer += self._decoder.decode(chunk)
        frames: List[SSEFrame] = []
        while True:
            nl = self._buffer.find("\n")
            if nl < 0:
                break
            line = self._buffer[:nl]
            self._buffer = self._buffer[nl + 1 :]
            frame = self._consume_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[SSEFrame]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        frames: List[SSEFrame] = []
        if tail.strip():
            frame = self._consume_line(tail.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        frame = self._emit()
        if frame is not None:
            frames.append(frame)
        return frames

    def _consume_line(self, line: str) -> Optional[SSEFrame]:
        if not line.strip():
            return self._emit()
        if line.startswith(":"):
            # comment / keep-alive
            return None
        if line.startswith("event:"):
            self._event = line[6:].strip() or None
        elif line.startswith("data:"):
            self._data.append(line[5:].lstrip())
        return None

    def _emit(self) -> Optional[SSEFrame]:
        event, data = self._event, self._data
        self._event, self._data = None, []
        if not data:
            return None
        return SSEFrame(data="\n".join(data), event=event)


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncIterator[SSEFrame]:
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.flush():
        yield frame


def encode_data(payload: str) -> bytes:
    return f"data: {payload}\n\n".encode("utf-8")


DONE_FRAME = encode_data("[DONE]")
