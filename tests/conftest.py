"""Pytest fixtures for referral stream API tests."""

import json
import os
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from tests.helpers import FakeLLMService

# Set test environment
os.environ["ENVIRONMENT"] = "testing"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["OPENAI_BASE_URL"] = "http://mock-openai/v1"
os.environ["ACTION_PLAN_EMIT_INTERVAL"] = "0"


@pytest.fixture
def fake_llm():
    return FakeLLMService()


@pytest.fixture
def test_client(fake_llm):
    """Create test client for FastAPI app."""
    from referral_api.main import app

    with TestClient(app) as client:
        app.state.llm_service = fake_llm
        yield client


@pytest.fixture
def referral_document() -> Dict[str, Any]:
    """Complete model output for a first-turn referral search"""
    return {
        "question": "Single mother in Austin needs food and job training",
        "summary": "Food assistance and job training options near Austin.",
        "resources": [
            {
                "number": 1,
                "title": "Central Texas Food Bank",
                "service": "Food Pantry",
                "category": "Food",
                "providerType": "Community Resource",
                "whyItFits": "Weekly groceries for families.",
                "contact": "(512) 282-2111",
                "badge": "centraltexasfoodbank.org",
            },
            {
                "number": 2,
                "title": "Goodwill Career Case Management",
                "service": "Job Training",
                "category": "Jobs & Employment",
                "providerType": "Goodwill Provided",
                "whyItFits": "One-on-one job search help — free.",
                "badge": "goodwillcentraltexas.org",
            },
            {
                "number": 3,
                "title": "SNAP Benefits",
                "service": "Food Assistance",
                "category": "Government Benefits",
                "providerType": "Government Benefit",
                "badge": "yourtexasbenefits.com",
            },
        ],
        "suggestedFollowUps": [
            "Are there evening classes?",
            "What documents does SNAP require?",
        ],
    }


@pytest.fixture
def referral_json(referral_document) -> str:
    return json.dumps(referral_document, ensure_ascii=False)
