"""Resilient relay from the upstream Responses stream to the browser.

One `ChatRelay` drives one client connection. Its `stream()` generator races
the next upstream event against three deadlines (overall timeout, heartbeat,
first-packet watchdog) with `asyncio.wait`; whichever fires first decides the
next chunk. The upstream side is an async generator of classified events, so
switching to the non-streaming fallback is just swapping that generator.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional, Sequence

import httpx

from .events import EventKind, UpstreamEvent, classify
from .schemas.chat import ChatMessage
from .sse import iter_frames
from .state import Phase, StreamState
from .transform import RequestConfig, fallback_payload, fallback_text, strip_fields
from .translate import HEARTBEAT_NOTICE, ChunkWriter, ResponseTranslator
from .upstream import detect_rejected_fields, error_message, redact, upstream_headers


logger = logging.getLogger("chat-proxy")

TIMEOUT_MESSAGE = (
    "⌛ 后端连接超时（可能在调起联网检索或网络受限）。 / "
    "Upstream timed out (possibly while running a web search, or the network is restricted)."
)
DEBUG_DUMP_LIMIT = 5


async def _next_event(source: AsyncIterator[UpstreamEvent]) -> UpstreamEvent:
    return await source.__anext__()


def _retrieve(task: "asyncio.Future[Any]") -> None:
    # mark a finished task's exception as consumed so asyncio does not warn about it
    if task.done() and not task.cancelled():
        task.exception()


class ChatRelay:
    def __init__(
        self,
        client: httpx.AsyncClient,
        config: RequestConfig,
        messages: Sequence[ChatMessage],
        record: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.client = client
        self.config = config
        self.messages = list(messages)
        self.record: Dict[str, Any] = record if record is not None else {}
        self._clock = clock
        self.state = StreamState()
        self.writer = ChunkWriter(self.state, config.style)
        self.translator = ResponseTranslator(self.writer, debug_events=config.debug_events, clock=self.now)
        self.payload: Dict[str, Any] = config.build_payload(self.messages, stream=True)
        self.retried = False
        self._dumped = 0

    def now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def _set_phase(self, phase: Phase) -> None:
        if self.state.advance(phase):
            self.record["phase"] = phase.value
            logger.debug("relay phase -> %s", phase.value)

    # Upstream sources

    async def _open_stream(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = upstream_headers(self.config, stream=True)
        logger.debug(
            "upstream request (stream): %s",
            json.dumps({"url": self.config.responses_url, "headers": redact(headers)}, ensure_ascii=False),
        )
        request = self.client.build_request(
            "POST", self.config.responses_url, json=payload, headers=headers, timeout=None
        )
        return await self.client.send(request, stream=True)

    def _status_error(self, status: int, body_text: str) -> UpstreamEvent:
        self.record["upstream_status"] = status
        detail = error_message(body_text) or f"HTTP {status}"
        logger.warning("upstream rejected request: status=%s message=%s", status, detail[:200])
        return UpstreamEvent(EventKind.ERROR, text=f"上游返回错误 / Upstream {status}: {detail[:800]}")

    async def _stream_events(self) -> AsyncIterator[UpstreamEvent]:
        response = await self._open_stream(self.payload)
        try:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="ignore")
                groups = detect_rejected_fields(response.status_code, body)
                if not groups or self.retried:
                    yield self._status_error(response.status_code, body)
                    return
                # one retry with the offending optional fields removed
                self.retried = True
                self.record["retry_stripped"] = sorted(groups)
                logger.info("upstream %s rejected %s; retrying without them", response.status_code, sorted(groups))
                await response.aclose()
                self.payload = strip_fields(self.payload, groups)
                response = await self._open_stream(self.payload)
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="ignore")
                    yield self._status_error(response.status_code, body)
                    return
            self.record["upstream_status"] = response.status_code
            self._set_phase(Phase.STREAMING)
            async for frame in iter_frames(response.aiter_bytes()):
                if self.config.debug_dump and self._dumped < DEBUG_DUMP_LIMIT and frame.data.strip() != "[DONE]":
                    self._dumped += 1
                    yield UpstreamEvent(EventKind.DUMP, text=f"（RAW#{self._dumped}）{frame.data[:300]}\n")
                event = classify(frame)
                if event is not None:
                    yield event
        finally:
            await response.aclose()

    async def _fallback_events(self) -> AsyncIterator[UpstreamEvent]:
        payload = fallback_payload(self.payload)
        response = await self.client.post(
            self.config.responses_url,
            json=payload,
            headers=upstream_headers(self.config, stream=False),
            timeout=None,
        )
        body = response.text
        self.record["fallback_status"] = response.status_code
        if response.status_code >= 400 or not body:
            logger.warning("non-streaming fallback failed: status=%s", response.status_code)
            yield UpstreamEvent(
                EventKind.ERROR, text=f"非流式回退失败 / Non-streaming fallback failed: {body[:600]}"
            )
            return
        yield UpstreamEvent(EventKind.TEXT, text=fallback_text(body))
        yield UpstreamEvent(EventKind.COMPLETED)

    # Outgoing stream

    async def stream(self) -> AsyncIterator[bytes]:
        cfg = self.config
        started = self.now()
        self.state.last_activity = started
        deadline = started + cfg.request_timeout
        first_packet_deadline = started + cfg.first_packet_timeout
        fallback_started = False

        first = self.writer.start()
        if first:
            yield first
        self._set_phase(Phase.UPSTREAM_REQUESTED)

        source: AsyncIterator[UpstreamEvent] = self._stream_events()
        pending: Optional[asyncio.Task] = None
        try:
            while not self.writer.closed:
                if pending is None:
                    pending = asyncio.ensure_future(_next_event(source))
                watchdog = not (self.state.saw_first_text or fallback_started)
                wake = min(deadline, self.state.last_activity + cfg.heartbeat_interval)
                if watchdog:
                    wake = min(wake, first_packet_deadline)
                done, _ = await asyncio.wait({pending}, timeout=max(0.0, wake - self.now()))

                if not done:
                    now = self.now()
                    if now >= deadline:
                        logger.warning("upstream timed out after %.1fs", cfg.request_timeout)
                        await self._abandon(pending)
                        pending = None
                        for out in self.translator.fail(TIMEOUT_MESSAGE, Phase.TIMED_OUT):
                            yield out
                        break
                    if watchdog and now >= first_packet_deadline:
                        logger.info("no text within %.1fs; falling back to a non-streaming call", cfg.first_packet_timeout)
                        await self._abandon(pending)
                        pending = None
                        await source.aclose()
                        source = self._fallback_events()
                        fallback_started = True
                        self.record["fallback"] = True
                        self._set_phase(Phase.FALLBACK_NONSTREAM)
                        continue
                    if now - self.state.last_activity >= cfg.heartbeat_interval:
                        self.state.last_activity = now
                        beat = self.writer.notice(HEARTBEAT_NOTICE)
                        if beat:
                            yield beat
                    continue

                task, pending = pending, None
                try:
                    event = task.result()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    logger.warning("upstream failure: %s: %s", type(e).__name__, e)
                    self.record["exception_type"] = type(e).__name__
                    for out in self.translator.fail(f"⚠️ 代理错误 / Worker error: {type(e).__name__}: {str(e)[:800]}"):
                        yield out
                    break
                for out in self.translator.translate(event):
                    yield out

            if not self.writer.closed:
                # upstream ended without [DONE] or a completion event
                for out in self.translator.finish(Phase.COMPLETED):
                    yield out
        finally:
            if pending is not None:
                # also reached on client disconnect: the in-flight upstream read is cancelled and awaited
                await self._abandon(pending)
            self.record["phase"] = self.state.phase.value
            self.state.advance(Phase.CLOSED)
            self.record["text_chars"] = len(self.state.accumulated_text)
            logger.info(
                "stream closed: phase=%s fallback=%s retried=%s chars=%d",
                self.record.get("phase"),
                fallback_started,
                self.retried,
                len(self.state.accumulated_text),
            )
            await source.aclose()

    async def _abandon(self, task: asyncio.Task) -> None:
        task.cancel()
        await asyncio.wait({task})
        _retrieve(task)
