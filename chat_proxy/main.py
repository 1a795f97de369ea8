from __future__ import annotations

import logging
import os
import uuid
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

import httpx
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .relay import ChatRelay
from .schemas.chat import ChatMessage, ChatRequest, ErrorResponse
from .transform import (
    InvalidParameter,
    RequestConfig,
    extract_output_text,
    normalize_messages,
    resolve_request_config,
    single_turn,
)
from .upstream import close_http_client, error_message, get_http_client, upstream_headers


logger = logging.getLogger("chat-proxy")

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    **CORS_HEADERS,
}
PREFLIGHT_HEADERS = {
    **CORS_HEADERS,
    "Access-Control-Allow-Headers": "content-type, authorization",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Max-Age": "86400",
}
INDEX_HTML = """<!doctype html><meta charset="utf-8"><title>LLM Chat</title>
<body style="font-family:system-ui;margin:40px">
<h2>LLM Chat App</h2>
<ul>
  <li><code>/api/ping</code></li>
  <li><code>/api/chat?q=hello</code></li>
  <li><code>/api/debug</code></li>
  <li><code>/api/health</code></li>
</ul>
</body>"""

# Recent per-request records for /api/debug (no payloads, no secrets)
_RECENT: deque = deque(maxlen=64)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await close_http_client()


app = FastAPI(title="Chat SSE Proxy", lifespan=lifespan)


def _error(status: int, error_type: str, message: str) -> JSONResponse:
    body = ErrorResponse(error={"type": error_type, "message": message}).model_dump()
    return JSONResponse(status_code=status, content=body, headers=CORS_HEADERS)


def _error_type_for_status(status: int) -> str:
    if status == 400:
        return "invalid_request_error"
    if status == 404:
        return "not_found_error"
    if status == 405:
        return "method_not_allowed"
    if 500 <= status < 600:
        return "api_error"
    return "request_error"


@app.exception_handler(StarletteHTTPException)
async def _http_exception(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, _error_type_for_status(exc.status_code), str(exc.detail))


@app.exception_handler(Exception)
async def _unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", f"{type(exc).__name__}: {exc}")


@app.options("/{path:path}")
async def preflight(path: str) -> Response:
    return Response(status_code=204, headers=PREFLIGHT_HEADERS)


# Chat


@app.get("/api/chat")
async def chat_get(
    request: Request,
    q: Optional[str] = None,
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    messages = single_turn(q, settings.system_prompt)
    return await _chat(request, messages, settings, client, authorization)


@app.post("/api/chat")
async def chat_post(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "invalid_request_error", "Invalid JSON body")
    try:
        parsed = ChatRequest.model_validate(body)
    except ValidationError as e:
        return _error(400, "invalid_request_error", str(e))
    return await _chat(request, parsed.messages, settings, client, authorization)


async def _chat(
    request: Request,
    messages: Sequence[ChatMessage],
    settings: Settings,
    client: httpx.AsyncClient,
    authorization: Optional[str],
) -> Response:
    try:
        config = resolve_request_config(settings, request.query_params, authorization)
    except InvalidParameter as e:
        return _error(400, "invalid_request_error", str(e))
    conversation = normalize_messages(messages, settings.system_prompt)
    rec: Dict[str, Any] = {"id": uuid.uuid4().hex[:8], "phase": "start", "model": config.model}
    _RECENT.append(rec)

    if request.query_params.get("mode") == "json":
        return await _chat_json(client, config, conversation, rec)

    # Headers go out now; the upstream round trip happens inside the stream
    relay = ChatRelay(client, config, conversation, record=rec)
    return StreamingResponse(relay.stream(), media_type="text/event-stream; charset=utf-8", headers=SSE_HEADERS)


async def _chat_json(
    client: httpx.AsyncClient,
    config: RequestConfig,
    messages: List[ChatMessage],
    rec: Dict[str, Any],
) -> JSONResponse:
    try:
        resp = await client.post(
            config.responses_url,
            json=config.build_payload(messages, stream=False),
            headers=upstream_headers(config, stream=False),
            timeout=httpx.Timeout(config.request_timeout),
        )
    except httpx.HTTPError as e:
        rec.update({"phase": "json_exception", "exception_type": type(e).__name__})
        return _error(502, "upstream_error", f"Upstream error: {e}")
    rec["upstream_status"] = resp.status_code
    if resp.status_code >= 400:
        rec["phase"] = "json_error"
        return _error(resp.status_code, _error_type_for_status(resp.status_code), error_message(resp.text))
    try:
        data = resp.json()
    except ValueError:
        data = None
    rec["phase"] = "json_ok"
    text = extract_output_text(data) or resp.text[:2000]
    return JSONResponse(
        content={"response": text, "model": config.model, "status": resp.status_code},
        headers=CORS_HEADERS,
    )


# Diagnostics


@app.get("/api/ping")
async def ping(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    config = resolve_request_config(settings, {}, authorization)
    try:
        resp = await client.get(
            f"{config.api_base}/models",
            headers=dict(config.extra_headers),
            timeout=httpx.Timeout(30.0),
        )
    except httpx.HTTPError as e:
        return _error(502, "upstream_error", f"Upstream error: {e}")
    return Response(
        content=resp.content,
        status_code=resp.status_code,
        media_type="application/json",
        headers=CORS_HEADERS,
    )


@app.get("/api/health")
async def health(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    config = resolve_request_config(settings, {}, authorization)
    payload = {
        "model": config.model,
        "input": [
            {"role": "system", "content": "Reply with 'OK' only."},
            {"role": "user", "content": "ping"},
        ],
        "stream": False,
        "max_output_tokens": 16,
    }
    try:
        resp = await client.post(
            config.responses_url,
            json=payload,
            headers=upstream_headers(config, stream=False),
            timeout=httpx.Timeout(20.0),
        )
    except httpx.HTTPError as e:
        return _error(502, "upstream_error", f"Upstream error: {e}")
    return Response(
        content=resp.content or b"no-body",
        status_code=resp.status_code,
        media_type="application/json",
        headers=CORS_HEADERS,
    )


@app.get("/api/debug")
async def debug(settings: Settings = Depends(get_settings)):
    return JSONResponse(
        content={
            "OPENAI_API_KEY": "set" if settings.openai_api_key else "not set",
            "OPENAI_MODEL": settings.model_override or "not set",
            "OPENAI_API_BASE": settings.api_base_override or "not set",
            "OPENAI_NATIVE_TOOLS": "on" if settings.native_tools else "off",
            "effective_model": settings.model,
            "recent": list(_RECENT),
        },
        headers=CORS_HEADERS,
    )


API_PATHS = {"chat", "ping", "health", "debug"}


@app.api_route("/api/{rest:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def api_fallthrough(rest: str):
    if rest.strip("/") in API_PATHS:
        return _error(405, "method_not_allowed", "Method Not Allowed")
    return _error(404, "not_found_error", "Not found")


# Everything else: static assets or the fallback page


def _static_file(static_dir: str, path: str) -> Optional[str]:
    root = os.path.realpath(static_dir)
    candidate = os.path.realpath(os.path.join(root, path))
    if candidate != root and not candidate.startswith(root + os.sep):
        return None
    if os.path.isdir(candidate):
        candidate = os.path.join(candidate, "index.html")
    return candidate if os.path.isfile(candidate) else None


@app.get("/{path:path}")
async def assets(path: str, settings: Settings = Depends(get_settings)):
    if path == "api":
        return _error(404, "not_found_error", "Not found")
    if settings.static_dir:
        found = _static_file(settings.static_dir, path)
        if found:
            return FileResponse(found)
    return HTMLResponse(INDEX_HTML)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("starting chat proxy on %s:%s (model=%s)", settings.host, settings.port, settings.model)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
