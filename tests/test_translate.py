import json

from chat_proxy.events import EventKind, UpstreamEvent
from chat_proxy.state import Phase, StreamState
from chat_proxy.translate import (
    HEARTBEAT_NOTICE,
    SEARCHING_NOTICE,
    ChunkWriter,
    ResponseTranslator,
)


def _payloads(chunks):
    out = []
    for blob in chunks:
        for frame in blob.decode("utf-8").split("\n\n"):
            if frame.startswith("data: "):
                data = frame[len("data: "):]
                out.append(data if data == "[DONE]" else json.loads(data))
    return out


def _translator(style="delta", debug_events=False):
    writer = ChunkWriter(StreamState(), style=style)
    return ResponseTranslator(writer, debug_events=debug_events, clock=lambda: 42.0)


def test_role_chunk_opens_stream():
    writer = ChunkWriter(StreamState())
    first = _payloads([writer.start()])[0]
    assert first == {
        "id": "cmpl-start",
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": {"role": "assistant"}, "finish_reason": None}],
    }


def test_stop_is_emitted_exactly_once_and_followed_by_done():
    tr = _translator()
    out = tr.translate(UpstreamEvent(EventKind.COMPLETED))
    out += tr.translate(UpstreamEvent(EventKind.DONE))
    out += tr.finish()
    out += tr.translate(UpstreamEvent(EventKind.TEXT, text="late"))
    payloads = _payloads(out)
    assert payloads[-1] == "[DONE]"
    assert [p for p in payloads if p != "[DONE]"] == [
        {"id": "cmpl-stop", "object": "chat.completion.chunk",
         "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}
    ]
    assert tr.state.closed


def test_text_updates_state():
    tr = _translator()
    out = tr.translate(UpstreamEvent(EventKind.TEXT, text="4"))
    assert _payloads(out)[0]["choices"][0]["delta"] == {"content": "4"}
    assert tr.state.saw_first_text
    assert tr.state.accumulated_text == "4"
    assert tr.state.last_activity == 42.0


def test_whitespace_only_fragment_rides_with_next_text():
    tr = _translator()
    out = []
    for piece in ["Hello", " ", "\n", "world"]:
        out += tr.translate(UpstreamEvent(EventKind.TEXT, text=piece))
    contents = [p["choices"][0]["delta"]["content"] for p in _payloads(out)]
    assert contents == ["Hello", " \nworld"]
    assert "".join(contents) == "Hello \nworld"


def test_empty_text_emits_nothing():
    tr = _translator()
    assert tr.translate(UpstreamEvent(EventKind.TEXT, text="")) == []
    assert not tr.state.saw_first_text


def test_searching_notice_only_once():
    tr = _translator()
    first = tr.translate(UpstreamEvent(EventKind.TOOL_STARTED, call_id="a"))
    again = tr.translate(UpstreamEvent(EventKind.TOOL_STARTED, call_id="b"))
    assert _payloads(first)[0]["choices"][0]["delta"]["content"] == SEARCHING_NOTICE
    assert again == []
    # notices are not answer text
    assert not tr.state.saw_first_text


def test_results_and_completion_notices_dedupe_per_call():
    tr = _translator()
    out = tr.translate(UpstreamEvent(EventKind.TOOL_RESULTS, call_id="ws", count=3))
    out += tr.translate(UpstreamEvent(EventKind.TOOL_COMPLETED, call_id="ws"))
    out += tr.translate(UpstreamEvent(EventKind.TOOL_COMPLETED, call_id="ws"))
    contents = [p["choices"][0]["delta"]["content"] for p in _payloads(out)]
    assert len(contents) == 2
    assert "3 results" in contents[0]
    assert "synthesizing" in contents[1]


def test_error_event_ends_stream():
    tr = _translator()
    out = tr.translate(UpstreamEvent(EventKind.ERROR, text="Upstream 500: down"))
    payloads = _payloads(out)
    assert payloads[0]["id"] == "cmpl-error"
    assert "Upstream 500: down" in payloads[0]["choices"][0]["delta"]["content"]
    assert payloads[1]["choices"][0]["finish_reason"] == "stop"
    assert payloads[2] == "[DONE]"
    assert tr.state.phase == Phase.ERRORED


def test_unknown_events_only_visible_in_debug():
    quiet = _translator()
    assert quiet.translate(UpstreamEvent(EventKind.UNKNOWN, type="response.created")) == []
    loud = _translator(debug_events=True)
    out = loud.translate(UpstreamEvent(EventKind.UNKNOWN, type="response.created"))
    assert "response.created" in _payloads(out)[0]["choices"][0]["delta"]["content"]
    assert loud.translate(UpstreamEvent(EventKind.UNKNOWN, type="")) == []


def test_cumulative_style():
    tr = _translator(style="cumulative")
    assert tr.writer.start() is None
    out = tr.translate(UpstreamEvent(EventKind.TEXT, text="Par"))
    out += tr.translate(UpstreamEvent(EventKind.TEXT, text="is"))
    out += tr.finish()
    assert _payloads(out) == [
        {"response": "Par", "done": False},
        {"response": "Paris", "done": False},
        {"response": "Paris", "done": True},
        "[DONE]",
    ]


def test_heartbeat_notice_is_not_text():
    writer = ChunkWriter(StreamState())
    beat = writer.notice(HEARTBEAT_NOTICE)
    assert _payloads([beat])[0]["id"] == "cmpl-notice"
    assert writer.state.accumulated_text == ""


def test_terminal_phase_is_sticky():
    state = StreamState()
    assert state.advance(Phase.STREAMING)
    assert state.advance(Phase.TIMED_OUT)
    assert not state.advance(Phase.COMPLETED)
    assert state.advance(Phase.CLOSED)
    assert not state.advance(Phase.CLOSED)
    assert state.phase == Phase.CLOSED
