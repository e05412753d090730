"""Tests for prompt refinement helpers and the support endpoints."""

import pytest

from referral_api.services.errors import CompletionError
from referral_api.services.refinement import (
    REFINEMENT_SUGGESTIONS,
    build_refined_prompt,
    detect_search_category,
    get_suggestions_for_search,
    is_prompt_vague,
)


@pytest.mark.parametrize("prompt,expected", [
    ("food", True),
    ("food in austin", True),
    ("need help now please", True),
    ("single mother with two children needs food assistance", False),
    ("", False),
    (None, False),
])
def test_is_prompt_vague(prompt, expected):
    assert is_prompt_vague(prompt) is expected


def test_detect_search_category():
    assert detect_search_category("food pantry and a bus pass") == ["food", "transportation", "*"]
    assert detect_search_category("something else") == ["*"]


def test_suggestions_universal_first():
    suggestions = get_suggestions_for_search("food")
    ids = [s.id for s in suggestions]
    assert ids == ["low-income", "family", "emergency", "snap", "senior-meals", "no-transport", "rural", "youth"]


def test_suggestions_respect_limit():
    assert len(get_suggestions_for_search("housing job health", max_suggestions=4)) == 4


def test_catalogue_entries_are_immutable():
    with pytest.raises(Exception):
        REFINEMENT_SUGGESTIONS[0].label = "changed"


def test_build_refined_prompt():
    snap, senior = REFINEMENT_SUGGESTIONS[3], REFINEMENT_SUGGESTIONS[4]
    assert build_refined_prompt("food", "", [snap]) == "food eligible for SNAP/food stamps"
    assert build_refined_prompt("food", "  groceries in Austin ", [snap, senior]) == (
        "groceries in Austin eligible for SNAP/food stamps, for senior citizen age 60 or older"
    )
    assert build_refined_prompt(" food ", "", []) == "food"


def test_suggest_prompt_improvements(test_client, fake_llm):
    response = test_client.post("/api/v1/suggest-prompt-improvements", json={"prompt": "food"})
    assert response.status_code == 200
    assert response.json() == {"suggestions": fake_llm.generate_result}
    assert 'Current search prompt: "food"' in fake_llm.prompts[0]


def test_suggest_prompt_improvements_requires_prompt(test_client):
    response = test_client.post("/api/v1/suggest-prompt-improvements", json={})
    assert response.status_code == 400
    assert response.json()["error"] == "Prompt is required"


def test_suggest_prompt_improvements_upstream_failure(test_client, fake_llm):
    fake_llm.generate_error = CompletionError("Completion service rate limit exceeded", status_code=429)
    response = test_client.post("/api/v1/suggest-prompt-improvements", json={"prompt": "food"})
    assert response.status_code == 500
    assert response.json()["error"] == "Failed to generate suggestions"


def test_refinements_endpoint(test_client):
    response = test_client.get("/api/v1/refinements", params={"prompt": "food"})
    assert response.status_code == 200
    data = response.json()
    assert data["vague"] is True
    assert data["categories"] == ["food", "*"]
    assert data["suggestions"][0]["id"] == "low-income"
    assert data["suggestions"][0]["category"] == ["*"]
    assert data["refinedPrompt"] == "food"


def test_refinements_builds_refined_prompt(test_client):
    response = test_client.get("/api/v1/refinements", params={
        "prompt": "food",
        "selected": ["snap", "senior-meals", "unknown-chip"],
    })
    assert response.json()["refinedPrompt"] == (
        "food eligible for SNAP/food stamps, for senior citizen age 60 or older"
    )

    response = test_client.get("/api/v1/refinements", params={
        "prompt": "food",
        "selected": ["snap"],
        "manual": "groceries in Austin",
    })
    assert response.json()["refinedPrompt"] == "groceries in Austin eligible for SNAP/food stamps"


def test_email_pdf_accepts_valid_request(test_client):
    response = test_client.post("/api/v1/email-pdf", json={
        "htmlContent": "<h1>Plan</h1>",
        "recipientEmail": "case.manager@example.org",
    })
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Email sent successfully"}


@pytest.mark.parametrize("body,message", [
    ({"htmlContent": "<p>x</p>"}, "Missing required fields"),
    ({"recipientEmail": "a@b.org"}, "Missing required fields"),
    ({"htmlContent": "<p>x</p>", "recipientEmail": "not-an-email"}, "Invalid email address"),
])
def test_email_pdf_rejects_bad_request(test_client, body, message):
    response = test_client.post("/api/v1/email-pdf", json=body)
    assert response.status_code == 400
    assert response.json() == {"message": message}
