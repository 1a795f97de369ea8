import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from chat_proxy.transform import RequestConfig


UPSTREAM_BASE = "https://upstream.test/v1"
SSE_HEADERS = {"content-type": "text/event-stream"}


def sse(obj: Union[Dict[str, Any], str], event: Optional[str] = None) -> bytes:
    data = obj if isinstance(obj, str) else json.dumps(obj)
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {data}\n\n".encode("utf-8")


def text_delta(text: str) -> bytes:
    return sse({"type": "response.output_text.delta", "delta": text})


async def delayed(chunks: List[bytes], delay: float = 0.0, raise_after: Optional[Exception] = None):
    if delay:
        await asyncio.sleep(delay)
    for chunk in chunks:
        yield chunk
    if raise_after is not None:
        raise raise_after


def stream_response(chunks: List[bytes], delay: float = 0.0, raise_after: Optional[Exception] = None) -> httpx.Response:
    return httpx.Response(200, headers=SSE_HEADERS, content=delayed(chunks, delay, raise_after))


class ScriptedUpstream:
    """MockTransport handler that replays responses in order and records request bodies."""

    def __init__(self, *responses: Union[httpx.Response, Callable[[], httpx.Response], Exception]) -> None:
        self.responses = list(responses)
        self.bodies: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(json.loads(request.content) if request.content else {})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item() if callable(item) else item

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def make_config(**overrides: Any) -> RequestConfig:
    values: Dict[str, Any] = dict(
        model="gpt-4o",
        api_base=UPSTREAM_BASE,
        max_output_tokens=64,
        temperature=0.7,
        top_p=1.0,
        request_timeout=5.0,
        heartbeat_interval=5.0,
        first_packet_timeout=5.0,
        extra_headers={"Authorization": "Bearer sk-test"},
    )
    values.update(overrides)
    return RequestConfig(**values)


def parse_sse(raw: bytes) -> List[Any]:
    """Outgoing stream → list of JSON payloads, with "[DONE]" kept as a string."""
    out: List[Any] = []
    for frame in raw.decode("utf-8").split("\n\n"):
        if not frame.startswith("data: "):
            continue
        data = frame[len("data: "):]
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


def contents(payloads: List[Any]) -> List[str]:
    return [
        p["choices"][0]["delta"]["content"]
        for p in payloads
        if isinstance(p, dict) and "content" in p["choices"][0]["delta"]
    ]
