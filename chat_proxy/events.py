"""Classify decoded upstream SSE frames.

Upstream event naming differs between Responses API versions and tool
families, so classification is a prioritized table of rules. Each rule looks
at the derived ``type`` string and the parsed payload and either returns an
`UpstreamEvent` or ``None`` to fall through to the next rule.
"""
from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .sse import SSEFrame


class EventKind(str, enum.Enum):
    TEXT = "text"
    TOOL_STARTED = "tool_started"
    TOOL_RESULTS = "tool_results"
    TOOL_COMPLETED = "tool_completed"
    ERROR = "error"
    COMPLETED = "completed"
    DONE = "done"
    UNKNOWN = "unknown"
    DUMP = "dump"


@dataclass(frozen=True)
class UpstreamEvent:
    kind: EventKind
    text: str = ""
    type: str = ""
    # tool-call identity (item_id) used to suppress duplicate progress notices
    call_id: str = ""
    count: Optional[int] = None


DONE_SENTINEL = "[DONE]"
GENERIC_DELTA_TYPES = ("response.delta", "delta")
GENERIC_COMPLETED_TYPES = ("response.completed", "completed", "done")

TOOL_FAMILY = r"(?:web_search_call|file_search_call|code_interpreter_call|tool_call|tool)"
_TOOL_STARTED_RE = re.compile(TOOL_FAMILY + r"\.(?:created|started|in_progress|searching)$", re.IGNORECASE)
_TOOL_RESULTS_RE = re.compile(TOOL_FAMILY + r"\.results?$", re.IGNORECASE)
_TOOL_COMPLETED_RE = re.compile(TOOL_FAMILY + r"\.(?:completed|finish|finished|done)$", re.IGNORECASE)
# deltas that are not user-visible text (streamed tool arguments)
_NON_TEXT_DELTA_RE = re.compile(r"arguments\.delta$|\.code\.delta$", re.IGNORECASE)


def derive_type(obj: Dict[str, Any], event_name: Optional[str]) -> str:
    for candidate in (obj.get("type"), event_name, obj.get("event")):
        if isinstance(candidate, str) and candidate:
            return candidate
    return ""


def _call_id(obj: Dict[str, Any]) -> str:
    item = obj.get("item")
    for candidate in (obj.get("item_id"), item.get("id") if isinstance(item, dict) else None, obj.get("id")):
        if isinstance(candidate, str) and candidate:
            return candidate
    return ""


def _tool_item(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    item = obj.get("item")
    if isinstance(item, dict) and str(item.get("type") or "").endswith("_call"):
        return item
    return None


def extract_text(obj: Dict[str, Any]) -> Optional[str]:
    """First non-empty text field: delta, text, content, nested output_text, chat choices."""
    for key in ("delta", "text", "content"):
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    output_text = obj.get("output_text")
    if isinstance(output_text, dict):
        parts = output_text.get("content")
        if isinstance(parts, list) and parts and isinstance(parts[0], dict):
            value = parts[0].get("text")
            if isinstance(value, str) and value:
                return value
    choices = obj.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict):
            value = delta.get("content")
            if isinstance(value, str) and value:
                return value
    return None


# Rules: (name, fn(type, obj) -> Optional[UpstreamEvent])


def _rule_text_delta(etype: str, obj: Dict[str, Any]) -> Optional[UpstreamEvent]:
    if _NON_TEXT_DELTA_RE.search(etype):
        return None
    typed = etype.endswith(".delta") or etype in GENERIC_DELTA_TYPES
    if typed or isinstance(obj.get("delta"), str):
        return UpstreamEvent(EventKind.TEXT, text=extract_text(obj) or "", type=etype)
    # untyped payloads that still carry text (chat-completions style or bare {"text": ...})
    if not etype:
        text = extract_text(obj)
        if text:
            return UpstreamEvent(EventKind.TEXT, text=text, type=etype)
    return None


def _rule_tool_started(etype: str, obj: Dict[str, Any]) -> Optional[UpstreamEvent]:
    if _TOOL_STARTED_RE.search(etype) or (etype == "response.output_item.added" and _tool_item(obj)):
        return UpstreamEvent(EventKind.TOOL_STARTED, type=etype, call_id=_call_id(obj))
    return None


def _rule_tool_results(etype: str, obj: Dict[str, Any]) -> Optional[UpstreamEvent]:
    if not _TOOL_RESULTS_RE.search(etype):
        return None
    results = obj.get("results")
    if not isinstance(results, list):
        return None
    return UpstreamEvent(EventKind.TOOL_RESULTS, type=etype, call_id=_call_id(obj), count=len(results))


def _rule_tool_completed(etype: str, obj: Dict[str, Any]) -> Optional[UpstreamEvent]:
    if _TOOL_COMPLETED_RE.search(etype) or (etype == "response.output_item.done" and _tool_item(obj)):
        return UpstreamEvent(EventKind.TOOL_COMPLETED, type=etype, call_id=_call_id(obj))
    return None


def _rule_error(etype: str, obj: Dict[str, Any]) -> Optional[UpstreamEvent]:
    err = obj.get("error")
    if etype == "error" or etype.endswith(".failed") or isinstance(err, dict):
        message = ""
        if isinstance(err, dict):
            message = str(err.get("message") or err.get("code") or "")
        if not message:
            response = obj.get("response")
            if isinstance(response, dict) and isinstance(response.get("error"), dict):
                message = str(response["error"].get("message") or "")
        if not message:
            message = str(obj.get("message") or etype or "upstream error")
        return UpstreamEvent(EventKind.ERROR, text=f"上游错误 / Upstream error: {message[:800]}", type=etype)
    return None


def _part_done(etype: str, obj: Dict[str, Any]) -> bool:
    """A reasoning step or non-message output item finished; the response is still open."""
    if "reasoning" in etype:
        return True
    item = obj.get("item")
    return etype == "response.output_item.done" and isinstance(item, dict) and item.get("type") not in (None, "message")


def _rule_completed(etype: str, obj: Dict[str, Any]) -> Optional[UpstreamEvent]:
    finished = (
        (etype.endswith(".done") and not _part_done(etype, obj))
        or etype in GENERIC_COMPLETED_TYPES
        or obj.get("done") is True
        or obj.get("status") == "completed"
    )
    if not finished:
        choices = obj.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            finished = bool(choices[0].get("finish_reason"))
    if finished:
        return UpstreamEvent(EventKind.COMPLETED, type=etype)
    return None


def _rule_unknown(etype: str, obj: Dict[str, Any]) -> Optional[UpstreamEvent]:
    return UpstreamEvent(EventKind.UNKNOWN, type=etype)


RULES: List[Tuple[str, Callable[[str, Dict[str, Any]], Optional[UpstreamEvent]]]] = [
    ("text_delta", _rule_text_delta),
    ("tool_started", _rule_tool_started),
    ("tool_results", _rule_tool_results),
    ("tool_completed", _rule_tool_completed),
    ("error", _rule_error),
    ("completed", _rule_completed),
    ("unknown", _rule_unknown),
]


def classify_payload(etype: str, obj: Dict[str, Any]) -> UpstreamEvent:
    for _name, rule in RULES:
        event = rule(etype, obj)
        if event is not None:
            return event
    return UpstreamEvent(EventKind.UNKNOWN, type=etype)


def classify(frame: SSEFrame) -> Optional[UpstreamEvent]:
    """Classify one frame; None means the frame is discarded (non-JSON heartbeat/comment)."""
    data = frame.data.strip()
    if data == DONE_SENTINEL:
        return UpstreamEvent(EventKind.DONE)
    try:
        obj = json.loads(data)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    return classify_payload(derive_type(obj, frame.event), obj)
