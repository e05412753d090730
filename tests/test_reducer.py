"""Tests for the client-side stream reducers."""

import json

import pytest

from referral_api.client.action_plan import ActionPlanReducer, ReplaceBySlot
from referral_api.client.lines import LineBuffer
from referral_api.client.reducer import (
    INCOMPLETE_MESSAGE,
    RETRY_MESSAGE,
    AppendOnceByKey,
    ConversationHistory,
    FollowUpCollector,
    ReferralStreamReducer,
    StreamState,
)
from referral_api.models.referral import ResourceRecord


def line(payload) -> bytes:
    return (json.dumps(payload) + "\n").encode("utf-8")


def resource(number, title="Resource", **extra):
    return {"type": "resource", "data": {"number": number, "title": title, **extra}}


@pytest.fixture
def reducer():
    r = ReferralStreamReducer()
    r.start("food for family of four")
    return r


def test_line_buffer_carries_partial_lines():
    buffer = LineBuffer()
    assert buffer.feed(b'{"a": 1}\n{"b"') == ['{"a": 1}']
    assert buffer.feed(b': 2}\n\n') == ['{"b": 2}']
    assert buffer.flush() == []


def test_line_buffer_decodes_split_utf8():
    raw = '{"t": "café"}\n'.encode("utf-8")
    buffer = LineBuffer()
    split = raw.index(b"\xc3") + 1
    assert buffer.feed(raw[:split]) == []
    assert buffer.feed(raw[split:]) == ['{"t": "café"}']


def test_line_buffer_flushes_unterminated_tail():
    buffer = LineBuffer()
    buffer.feed('{"type": "complete"}')
    assert buffer.flush() == ['{"type": "complete"}']


def test_resource_split_across_reads(reducer):
    status = line({"type": "status", "message": "Searching..."})
    first = line(resource(1, "Food Bank", badge="x.org"))
    second = line(resource(2, "Pantry", badge="y.org"))
    stream = status + first + second
    cut = len(status) + len(first) // 2

    reducer.feed(stream[:cut])
    assert reducer.status_message == "Searching..."
    assert len(reducer.resources) == 0

    reducer.feed(stream[cut:])
    assert [r.number for r in reducer.resource_list] == [1, 2]
    assert reducer.state == StreamState.STREAMING


def test_duplicate_resource_is_ignored(reducer):
    reducer.feed(line(resource(1, "First title")))
    reducer.feed(line(resource(1, "Catch-up copy")))
    assert len(reducer.resource_list) == 1
    assert reducer.resource_list[0].title == "First title"


def test_resources_sorted_by_number(reducer):
    reducer.feed(line(resource(3)) + line(resource(1)) + line(resource(2)))
    assert [r.number for r in reducer.resource_list] == [1, 2, 3]


def test_malformed_line_does_not_stop_stream(reducer):
    reducer.feed(line(resource(1)) + b"{not json\n" + b'{"type": "unknown"}\n' + line(resource(2)))
    reducer.feed(line({"type": "complete"}))
    assert [r.number for r in reducer.resource_list] == [1, 2]
    assert reducer.dropped_lines == 2
    assert reducer.state == StreamState.COMPLETE


def test_metadata_does_not_overwrite_question(reducer):
    reducer.feed(line({"type": "metadata", "data": {"question": "Model restatement", "summary": "Found 2"}}))
    assert reducer.question == "food for family of four"
    assert reducer.summary == "Found 2"


def test_complete_commits_history_entry():
    history = ConversationHistory()
    reducer = ReferralStreamReducer(history)
    reducer.start("food", prompt="Family of 4: food")
    reducer.feed(
        line(resource(1))
        + line({"type": "metadata", "data": {"question": "q", "summary": "s"}})
        + line({"type": "followups", "data": ["How do I apply?"]})
        + line({"type": "complete"})
    )
    assert reducer.state == StreamState.COMPLETE
    assert len(history) == 1
    entry = history.entries[0]
    assert entry.prompt == "Family of 4: food"
    assert entry.user_prompt == "food"
    assert entry.response.question == "food"
    assert entry.response.summary == "s"
    assert entry.response.suggested_follow_ups == ["How do I apply?"]
    assert [r.number for r in entry.response.resources] == [1]


def test_events_after_terminal_are_ignored(reducer):
    reducer.feed(line({"type": "complete"}) + line(resource(9)))
    reducer.dispatch_line(json.dumps({"type": "error", "error": "late"}))
    assert reducer.state == StreamState.COMPLETE
    assert reducer.resource_list == []


def test_error_keeps_partial_results(reducer):
    reducer.feed(line(resource(1)) + line({"type": "error", "error": "Sorry"}))
    assert reducer.state == StreamState.FAILED
    assert reducer.error == RETRY_MESSAGE
    assert reducer.has_partial_results
    assert not reducer.is_blocking_error
    assert len(reducer.history) == 0


def test_error_without_results_is_blocking(reducer):
    reducer.feed(line({"type": "error", "error": "Sorry"}))
    assert reducer.is_blocking_error


def test_end_of_stream_without_terminal_event_fails(reducer):
    reducer.feed(line(resource(1)))
    reducer.finish()
    assert reducer.state == StreamState.FAILED
    assert reducer.error == INCOMPLETE_MESSAGE


def test_finish_dispatches_unterminated_complete(reducer):
    reducer.feed(b'{"type": "complete"}')
    reducer.finish()
    assert reducer.state == StreamState.COMPLETE


def test_cancel_resets_without_committing():
    history = ConversationHistory()
    reducer = ReferralStreamReducer(history)
    reducer.start("food")
    reducer.feed(line(resource(1)))
    reducer.cancel()
    assert reducer.state == StreamState.IDLE
    assert reducer.resource_list == []
    assert len(history) == 0
    reducer.feed(line({"type": "complete"}))
    assert reducer.state == StreamState.IDLE


def test_append_once_by_key():
    strategy = AppendOnceByKey()
    assert strategy.merge(ResourceRecord(number=2, title="b"))
    assert not strategy.merge(ResourceRecord(number=2, title="again"))
    assert strategy.merge(ResourceRecord(number=1, title="a"))
    assert 2 in strategy
    assert [r.title for r in strategy.items()] == ["a", "b"]


def test_replace_by_slot_keeps_latest_content():
    slots = ReplaceBySlot()
    slots.put(0, "partial")
    slots.put(0, "partial and more")
    assert slots.get(0) == "partial and more"
    assert slots.items() == ["partial and more"]


def test_action_plan_reducer_replaces_slots():
    reducer = ActionPlanReducer(2)
    reducer.start()
    reducer.feed(line({"type": "summary", "content": "## Plan"}) + line({"type": "summary", "content": " overview"}))
    reducer.feed(line({"type": "resource", "resourceIndex": 0, "content": "partial..."}))
    reducer.feed(line({"type": "resource", "resourceIndex": 0, "content": "partial... done"}))
    reducer.feed(b"garbage\n" + line({"type": "complete"}))
    assert reducer.summary == "## Plan overview"
    assert reducer.slots.items() == ["partial... done"]
    assert reducer.content == "## Plan overview\n\npartial... done"
    assert reducer.dropped_lines == 1
    assert reducer.state == StreamState.COMPLETE


def test_action_plan_reducer_error():
    reducer = ActionPlanReducer(2)
    reducer.start()
    reducer.feed(line({"type": "error", "error": "boom"}))
    assert reducer.state == StreamState.FAILED


def test_follow_up_collector_commits_entry():
    history = ConversationHistory()
    collector = FollowUpCollector(history)
    collector.start("Which takes pets?")
    document = json.dumps({"question": "Restated", "summary": "One does.", "content": "**A** allows pets."})
    raw = f"```json\n{document}\n```".encode("utf-8")
    collector.feed(raw[:10])
    collector.feed(raw[10:])
    entry = collector.finish()
    assert collector.state == StreamState.COMPLETE
    assert entry.response.question == "Which takes pets?"
    assert entry.response.summary == "One does."
    assert entry.response.content == "**A** allows pets."
    assert history.entries == [entry]


def test_follow_up_collector_invalid_json():
    history = ConversationHistory()
    collector = FollowUpCollector(history)
    collector.start("Which takes pets?")
    collector.feed(b'{"summary": "cut off')
    assert collector.finish() is None
    assert collector.state == StreamState.FAILED
    assert len(history) == 0
