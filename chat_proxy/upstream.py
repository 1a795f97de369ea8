from __future__ import annotations

import json
import logging
import re
from typing import Dict, FrozenSet, Optional

import httpx

from .transform import RequestConfig


logger = logging.getLogger("chat-proxy")

# Shared HTTP client with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


async def get_http_client() -> httpx.AsyncClient:
    # must stay async: FastAPI runs sync dependencies in a threadpool, where two first calls could each build a client
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        _HTTPX_CLIENT = httpx.AsyncClient(limits=limits)
    return _HTTPX_CLIENT


async def close_http_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        await _HTTPX_CLIENT.aclose()
        _HTTPX_CLIENT = None


def upstream_headers(config: RequestConfig, stream: bool = True) -> Dict[str, str]:
    headers: Dict[str, str] = {
        "Content-Type": "application/json",
        "Accept": "text/event-stream" if stream else "application/json",
        "OpenAI-Beta": f"{config.openai_beta}; tools=v1" if stream else config.openai_beta,
    }
    headers.update(config.extra_headers)
    return headers


def redact(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() in ("authorization", "x-api-key") else v) for k, v in headers.items()}


def error_message(body_text: str) -> str:
    """Best-effort human message from an upstream error body."""
    try:
        data = json.loads(body_text) if body_text else {}
    except ValueError:
        return body_text
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if data.get("message"):
            return str(data["message"])
    return json.dumps(data, ensure_ascii=False) if data else body_text


def _error_param(body_text: str) -> str:
    try:
        data = json.loads(body_text)
    except ValueError:
        return ""
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("param") or "").lower()
    return ""


def detect_rejected_fields(status: int, body_text: str) -> FrozenSet[str]:
    """Which optional field groups a 4xx rejection points at (tools/sampling/reasoning)."""
    if not 400 <= status < 500:
        return frozenset()
    lower = (body_text or "").lower()
    param = _error_param(body_text)
    groups = set()

    if param.startswith("tool") or (
        ("invalid_value" in lower and "tools" in lower)
        or ("not supported with" in lower and "tool" in lower)
        or ("unsupported" in lower and "tool" in lower)
        or "unknown tool" in lower
        or ("param" in lower and '"tools' in lower)
    ):
        groups.add("tools")
    if param in ("temperature", "top_p") or (
        ("unsupported" in lower or "not supported" in lower) and re.search(r"temperature|top_p", lower)
    ):
        groups.add("sampling")
    if param.startswith("reasoning") or (
        ("unsupported" in lower or "not supported" in lower) and "reasoning.effort" in lower
    ):
        groups.add("reasoning")
    return frozenset(groups)
