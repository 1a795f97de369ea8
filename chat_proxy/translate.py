from __future__ import annotations

import json
import time
from typing import Callable, List, Optional

from .events import EventKind, UpstreamEvent
from .schemas.chat import ChatCompletionChunk, CumulativeChunk, DeltaMessage, StreamChoice
from .sse import DONE_FRAME, encode_data
from .state import Phase, StreamState


STYLE_DELTA = "delta"
STYLE_CUMULATIVE = "cumulative"

# User-visible notices (bilingual)
SEARCHING_NOTICE = "🔎 正在联网检索… / Searching the web…\n"
SYNTHESIZING_NOTICE = "📄 已获取结果，正在整合… / Results ready, synthesizing…\n"
HEARTBEAT_NOTICE = "（仍在检索与整合，请稍候… / Still working, please wait…）\n"


def results_notice(count: int) -> str:
    return f"📚 已找到 {count} 条结果 / {count} results found\n"


def unknown_event_notice(etype: str) -> str:
    return f"（事件：{etype} / event: {etype}）"


class ChunkWriter:
    """Encodes outgoing chunks for one connection.

    After `stop()` the writer is closed: the stop chunk and `[DONE]` are emitted
    once and every later call returns None.
    """

    def __init__(self, state: StreamState, style: str = STYLE_DELTA) -> None:
        self.state = state
        self.style = style if style in (STYLE_DELTA, STYLE_CUMULATIVE) else STYLE_DELTA
        self._rendered = ""

    @property
    def closed(self) -> bool:
        return self.state.closed

    def _frame(self, chunk_id: str, content: Optional[str] = None, role: Optional[str] = None,
               finish_reason: Optional[str] = None) -> bytes:
        if self.style == STYLE_CUMULATIVE:
            if content:
                self._rendered += content
            body = CumulativeChunk(response=self._rendered, done=finish_reason is not None).model_dump()
        else:
            chunk = ChatCompletionChunk(
                id=chunk_id,
                choices=[StreamChoice(index=0, delta=DeltaMessage(role=role, content=content), finish_reason=finish_reason)],
            )
            body = chunk.to_wire()
        return encode_data(json.dumps(body, ensure_ascii=False))

    def start(self) -> Optional[bytes]:
        if self.closed or self.style == STYLE_CUMULATIVE:
            return None
        return self._frame("cmpl-start", role="assistant")

    def text(self, content: str, chunk_id: str = "cmpl-chunk") -> Optional[bytes]:
        if self.closed or not content or not content.strip():
            return None
        return self._frame(chunk_id, content=content)

    def notice(self, content: str, chunk_id: str = "cmpl-notice") -> Optional[bytes]:
        return self.text(content, chunk_id=chunk_id)

    def error(self, message: str) -> Optional[bytes]:
        return self.text(message, chunk_id="cmpl-error")

    def stop(self) -> Optional[bytes]:
        if self.closed:
            return None
        self.state.closed = True
        return self._frame("cmpl-stop", finish_reason="stop") + DONE_FRAME


class ResponseTranslator:
    """Maps classified upstream events onto outgoing chunks."""

    def __init__(
        self,
        writer: ChunkWriter,
        debug_events: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.writer = writer
        self.state = writer.state
        self.debug_events = debug_events
        self.clock = clock
        self._pending_ws = ""

    def forward_text(self, text: str) -> List[bytes]:
        # whitespace-only fragments ride along with the next visible fragment
        combined = self._pending_ws + text
        if not combined.strip():
            self._pending_ws = combined
            return []
        out = self.writer.text(combined)
        if out is None:
            return []
        self._pending_ws = ""
        self.state.accumulated_text += combined
        self.state.saw_first_text = True
        self.state.last_activity = self.clock()
        return [out]

    def _notice_once(self, key: tuple, content: str) -> List[bytes]:
        if key in self.state.announced:
            return []
        self.state.announced.add(key)
        out = self.writer.notice(content)
        return [out] if out else []

    def finish(self, phase: Phase = Phase.COMPLETED) -> List[bytes]:
        self.state.advance(phase)
        out = self.writer.stop()
        return [out] if out else []

    def fail(self, message: str, phase: Phase = Phase.ERRORED) -> List[bytes]:
        if self.writer.closed:
            return []
        out = self.writer.error(message)
        return ([out] if out else []) + self.finish(phase)

    def translate(self, event: UpstreamEvent) -> List[bytes]:
        if self.writer.closed:
            return []
        kind = event.kind
        if kind == EventKind.TEXT:
            return self.forward_text(event.text)
        if kind == EventKind.TOOL_STARTED:
            if self.state.tool_progress_announced:
                return []
            self.state.tool_progress_announced = True
            return self._notice_once(("started", ""), SEARCHING_NOTICE)
        if kind == EventKind.TOOL_RESULTS:
            return self._notice_once(("results", event.call_id), results_notice(event.count or 0))
        if kind == EventKind.TOOL_COMPLETED:
            return self._notice_once(("completed", event.call_id), SYNTHESIZING_NOTICE)
        if kind == EventKind.ERROR:
            return self.fail(f"⚠️ {event.text[:900]}")
        if kind in (EventKind.COMPLETED, EventKind.DONE):
            return self.finish(Phase.COMPLETED)
        if kind == EventKind.DUMP:
            out = self.writer.notice(event.text, chunk_id="cmpl-dump")
            return [out] if out else []
        if self.debug_events and event.type:
            out = self.writer.notice(unknown_event_notice(event.type))
            return [out] if out else []
        return []
