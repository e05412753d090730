"""Tests for the action plan endpoint."""

from referral_api.client.action_plan import ActionPlanReducer, MarkdownPlanReducer, choose_format
from referral_api.client.reducer import StreamState
from referral_api.services.errors import CompletionError
from referral_api.services.pipeline import ACTION_PLAN_FAILED_MESSAGE
from tests.helpers import parse_ndjson

URL = "/api/v1/generate-action-plan"

FOOD_BANK = {
    "number": 1,
    "title": "Central Texas Food Bank",
    "service": "Food Pantry",
    "category": "Food",
    "providerType": "Community Resource",
}
SNAP = {
    "number": 3,
    "title": "SNAP Benefits",
    "service": "Food Assistance",
    "category": "Government Benefits",
    "providerType": "Government Benefit",
}


def test_single_resource_streams_markdown(test_client, fake_llm):
    fake_llm.queue("### Central Texas Food Bank\n", "1. **Call ahead**", " to confirm hours.")

    response = test_client.post(URL, json={"resources": [FOOD_BANK]})

    assert response.status_code == 200
    assert response.headers["X-Stream-Format"] == "markdown"
    assert response.headers["content-type"].startswith("text/markdown")
    assert response.text == "### Central Texas Food Bank\n1. **Call ahead** to confirm hours."
    assert "Central Texas Food Bank - Food Pantry (Community Resource)" in fake_llm.prompts[0]

    reducer = MarkdownPlanReducer()
    reducer.start()
    reducer.feed(response.content)
    reducer.finish()
    assert reducer.state == StreamState.COMPLETE
    assert reducer.content == response.text


def test_multiple_resources_stream_slot_events(test_client, fake_llm):
    fake_llm.queue("## Action Plan", " Summary\n")
    fake_llm.queue("### Food Bank", "\n1. Call ahead")
    fake_llm.queue("### SNAP")

    response = test_client.post(URL, json={"resources": [FOOD_BANK, SNAP], "outputLanguage": "Spanish"})

    assert response.status_code == 200
    assert response.headers["X-Stream-Format"] == "ndjson"
    events = parse_ndjson(response.text)
    assert events == [
        {"type": "summary", "content": "## Action Plan"},
        {"type": "summary", "content": " Summary\n"},
        {"type": "resource", "resourceIndex": 0, "content": "### Food Bank"},
        {"type": "resource", "resourceIndex": 0, "content": "### Food Bank\n1. Call ahead"},
        {"type": "resource", "resourceIndex": 1, "content": "### SNAP"},
        {"type": "complete"},
    ]
    assert len(fake_llm.prompts) == 3
    assert all("Spanish" in prompt for prompt in fake_llm.prompts)

    reducer = ActionPlanReducer(2)
    reducer.start()
    reducer.feed(response.content)
    reducer.finish()
    assert reducer.state == StreamState.COMPLETE
    assert reducer.summary == "## Action Plan Summary\n"
    assert reducer.slots.items() == ["### Food Bank\n1. Call ahead", "### SNAP"]


def test_guide_failure_ends_with_error(test_client, fake_llm):
    fake_llm.queue("## Summary")
    fake_llm.queue("### Food Bank", error=CompletionError("Completion stream interrupted"))

    response = test_client.post(URL, json={"resources": [FOOD_BANK, SNAP]})

    events = parse_ndjson(response.text)
    assert events[-1] == {"type": "error", "error": ACTION_PLAN_FAILED_MESSAGE}
    assert [e["type"] for e in events].count("error") == 1
    assert "complete" not in [e["type"] for e in events]


def test_empty_resources_rejected(test_client, fake_llm):
    response = test_client.post(URL, json={"resources": []})
    assert response.status_code == 400
    assert response.json()["error"] == "Selected resources are required"
    assert fake_llm.prompts == []


def test_single_resource_immediate_failure(test_client, fake_llm):
    fake_llm.queue(fail_on_open=True)
    response = test_client.post(URL, json={"resources": [FOOD_BANK]})
    assert response.status_code == 500


def test_choose_format_prefers_header():
    assert choose_format({"X-Stream-Format": "ndjson"}, 1) == "ndjson"
    assert choose_format({"x-stream-format": "markdown"}, 3) == "markdown"
    assert choose_format({}, 1) == "markdown"
    assert choose_format(None, 2) == "ndjson"
    assert choose_format({"X-Stream-Format": "bogus"}, 2) == "ndjson"
