from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .config import Settings
from .schemas.chat import ChatMessage


logger = logging.getLogger("chat-proxy")

DEFAULT_GREETING = "Hello"
WEB_SEARCH_TOOL = {"type": "web_search_preview_2025_03_11"}

# Optional payload fields the upstream may reject, grouped by what a retry strips
STRIPPABLE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "tools": ("tools", "tool_choice"),
    "sampling": ("temperature", "top_p"),
    "reasoning": ("reasoning",),
}


class InvalidParameter(ValueError):
    def __init__(self, name: str, value: str) -> None:
        super().__init__(f"Invalid value for query parameter '{name}': {value!r}")
        self.name = name


@dataclass(frozen=True)
class RequestConfig:
    """Everything one proxied request needs, resolved up front."""

    model: str
    api_base: str
    max_output_tokens: int
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    seed: Optional[int] = None
    reasoning_effort: Optional[str] = None
    tools: Tuple[Dict[str, Any], ...] = ()
    tool_choice: Optional[str] = None
    openai_beta: str = "responses-2024-12-17"
    request_timeout: float = 45.0
    heartbeat_interval: float = 8.0
    first_packet_timeout: float = 12.0
    debug_events: bool = False
    debug_dump: bool = False
    style: str = "delta"
    extra_headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def responses_url(self) -> str:
        return f"{self.api_base}/responses"

    def build_payload(self, messages: Sequence[ChatMessage], stream: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "input": [m.model_dump() for m in messages],
            "stream": stream,
            "max_output_tokens": self.max_output_tokens,
        }
        if self.seed is not None:
            payload["seed"] = self.seed
        if self.reasoning_effort is not None:
            payload["reasoning"] = {"effort": self.reasoning_effort}
        else:
            if self.temperature is not None:
                payload["temperature"] = self.temperature
            if self.top_p is not None:
                payload["top_p"] = self.top_p
        if self.tools:
            payload["tools"] = [dict(t) for t in self.tools]
            payload["tool_choice"] = self.tool_choice or "auto"
        return payload


def is_reasoning_model(model: str, pattern: str) -> bool:
    try:
        return re.search(pattern, model, flags=re.IGNORECASE) is not None
    except re.error as e:
        logger.warning("invalid OPENAI_REASONING_MODEL_PATTERN %r (%s); matching 'thinking' instead", pattern, e)
        return "thinking" in model.lower()


def _query_number(query: Mapping[str, str], names: Sequence[str], kind: type) -> Optional[Any]:
    for name in names:
        raw = query.get(name)
        if raw is None:
            continue
        raw = raw.strip()
        try:
            value = float(raw)
            if value != value or value in (float("inf"), float("-inf")):
                raise ValueError(raw)
            if kind is int:
                if not value.is_integer():
                    raise ValueError(raw)
                return int(value)
            return value
        except ValueError:
            raise InvalidParameter(name, raw)
    return None


def resolve_request_config(
    settings: Settings,
    query: Mapping[str, str],
    authorization: Optional[str] = None,
) -> RequestConfig:
    """Merge query overrides over environment defaults.

    Sampling (temperature/top_p) and reasoning effort are mutually exclusive:
    models whose name matches the reasoning pattern only get the effort hint.
    """
    model = settings.model
    max_tokens = _query_number(query, ("max_tokens", "max_output_tokens"), int)
    seed = _query_number(query, ("seed",), int)
    temperature = _query_number(query, ("temperature",), float)
    top_p = _query_number(query, ("top_p",), float)

    thinking = is_reasoning_model(model, settings.reasoning_model_pattern)
    tools: Tuple[Dict[str, Any], ...] = ()
    if settings.supports_tools(model):
        tools = (dict(WEB_SEARCH_TOOL),)

    headers: Dict[str, str] = {}
    if settings.openai_api_key:
        headers["Authorization"] = f"Bearer {settings.openai_api_key}"
    elif authorization:
        headers["Authorization"] = authorization if authorization.lower().startswith("bearer ") else f"Bearer {authorization}"

    return RequestConfig(
        model=model,
        api_base=settings.api_base,
        max_output_tokens=max(1, max_tokens) if max_tokens is not None else settings.max_output_tokens,
        temperature=None if thinking else (temperature if temperature is not None else settings.temperature),
        top_p=None if thinking else (top_p if top_p is not None else settings.top_p),
        seed=seed if seed is not None else settings.seed,
        reasoning_effort=settings.reasoning_effort if thinking else None,
        tools=tools,
        tool_choice="auto" if tools else None,
        openai_beta=settings.openai_beta,
        request_timeout=settings.request_timeout,
        heartbeat_interval=settings.heartbeat_interval,
        first_packet_timeout=settings.first_packet_timeout,
        debug_events=settings.debug_events,
        debug_dump=settings.debug_dump,
        style=query.get("format") or "delta",
        extra_headers=headers,
    )


def normalize_messages(messages: Sequence[ChatMessage], system_prompt: str) -> List[ChatMessage]:
    """Exactly one leading system message; a canned greeting when no user content was sent."""
    systems = [m for m in messages if m.role == "system"]
    rest = [m for m in messages if m.role != "system"]
    if not any(m.role == "user" and m.content.strip() for m in rest):
        rest = rest + [ChatMessage(role="user", content=DEFAULT_GREETING)]
    if not systems:
        system = ChatMessage(role="system", content=system_prompt)
    elif len(systems) == 1:
        system = systems[0]
    else:
        system = ChatMessage(role="system", content="\n\n".join(m.content for m in systems))
    return [system] + rest


def single_turn(question: Optional[str], system_prompt: str) -> List[ChatMessage]:
    return [
        ChatMessage(role="system", content=system_prompt),
        ChatMessage(role="user", content=question or DEFAULT_GREETING),
    ]


def strip_fields(payload: Mapping[str, Any], groups: FrozenSet[str]) -> Dict[str, Any]:
    out = dict(payload)
    for group in groups:
        for key in STRIPPABLE_FIELDS.get(group, ()):
            out.pop(key, None)
    return out


def fallback_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Same logical request as a blocking call: no tools, no streaming."""
    out = strip_fields(payload, frozenset({"tools"}))
    out["stream"] = False
    return out


def extract_output_text(data: Any) -> str:
    """Pull the answer text out of a non-streaming Responses (or chat-completions) body."""
    if not isinstance(data, dict):
        return ""
    output_text = data.get("output_text")
    if isinstance(output_text, str) and output_text:
        return output_text
    if isinstance(output_text, list) and output_text:
        first = output_text[0]
        if isinstance(first, dict):
            content = first.get("content")
            if isinstance(content, list) and content and isinstance(content[0], dict):
                text = content[0].get("text")
                if isinstance(text, str) and text:
                    return text
    parts: List[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for block in item.get("content") or []:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
    if parts:
        return "".join(parts)
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
    return ""


def fallback_text(body: str) -> str:
    try:
        text = extract_output_text(json.loads(body))
    except ValueError:
        text = ""
    return text or body[:2000]
