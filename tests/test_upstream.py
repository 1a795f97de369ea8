import asyncio

import pytest

from chat_proxy.upstream import close_http_client, get_http_client, redact, upstream_headers
from conftest import make_config


@pytest.mark.asyncio
async def test_concurrent_first_calls_share_one_client():
    await close_http_client()
    try:
        first, second = await asyncio.gather(get_http_client(), get_http_client())
        assert first is second
        assert await get_http_client() is first
    finally:
        await close_http_client()


@pytest.mark.asyncio
async def test_closed_client_is_rebuilt():
    first = await get_http_client()
    await close_http_client()
    assert first.is_closed
    second = await get_http_client()
    assert second is not first
    await close_http_client()


def test_streaming_headers_enable_tools_beta():
    cfg = make_config(openai_beta="responses-2024-12-17")
    streaming = upstream_headers(cfg, stream=True)
    assert streaming["Accept"] == "text/event-stream"
    assert streaming["OpenAI-Beta"] == "responses-2024-12-17; tools=v1"
    blocking = upstream_headers(cfg, stream=False)
    assert blocking["Accept"] == "application/json"
    assert blocking["OpenAI-Beta"] == "responses-2024-12-17"
    assert redact(streaming)["Authorization"] == "<redacted>"
