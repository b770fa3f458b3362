"""test_lambda_function.py — Tests for ai_chat Lambda handler."""

from __future__ import annotations

import importlib.util
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer"))

from fake_dynamodb import FakeDynamoClient
from rollmodel_shared import store
from rollmodel_shared.entries import entry_item, entry_meta_item
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.keywords import entry_keyword_items
from rollmodel_shared.links import link_coach

_SPEC = importlib.util.spec_from_file_location(
    "ai_chat_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
ai_lambda = importlib.util.module_from_spec(_SPEC)
_SPEC.loader.exec_module(ai_lambda)

REPLY = {
    "text": "Focus on frames.",
    "extracted_updates": {
        "summary": "Frames",
        "actionPack": {
            "wins": [],
            "leaks": [],
            "oneFocus": "frames",
            "drills": [],
            "positionalRequests": [],
            "fallbackDecisionGuidance": "",
            "confidenceFlags": [],
        },
        "suggestedFollowUpQuestions": [],
    },
    "suggested_prompts": ["What drill next?"],
}


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


@pytest.fixture
def sent(monkeypatch):
    calls = []

    def _fake_call(messages):
        calls.append(messages)
        return REPLY

    monkeypatch.setattr(ai_lambda, "call_openai", _fake_call)
    return calls


def _seed_entry(entry_id, created_at, shared, private):
    entry = {
        "entryId": entry_id,
        "athleteId": "a-1",
        "createdAt": created_at,
        "updatedAt": created_at,
        "sections": {"shared": shared, "private": private},
        "sessionMetrics": {"durationMinutes": 60, "intensity": 5, "rounds": 5, "giOrNoGi": "gi", "tags": []},
    }
    store.put_item(entry_item(entry))
    store.put_item(entry_meta_item(entry))
    store.batch_write_items(entry_keyword_items(entry))


def _event(body, user="a-1", role="athlete"):
    return {
        "requestContext": {
            "http": {"method": "POST"},
            "authorizer": {"claims": {"sub": user, "custom:role": role}},
        },
        "rawPath": "/ai/chat",
        "body": json.dumps(body),
    }


def _call(event):
    resp = ai_lambda.lambda_handler(event, None)
    return resp["statusCode"], json.loads(resp["body"])


def test_chat_creates_thread_and_stores_messages(fake, sent):
    _seed_entry("e-1", "2026-01-01T10:00:00.000Z", "armbar from guard", "secret shoulder worry")
    status, body = _call(_event({"message": "How do I finish the armbar?"}))

    assert status == 200
    assert body["assistant_text"] == "Focus on frames."
    assert body["suggested_prompts"] == ["What drill next?"]
    thread_id = body["threadId"]
    assert fake.keys_with_prefix("USER#a-1", "AI_THREAD#") == [f"AI_THREAD#{thread_id}"]
    assert len(fake.keys_with_prefix(f"AI_THREAD#{thread_id}", "MSG#")) == 2

    system, user = sent[0]
    assert system["role"] == "system"
    assert "armbar from guard" in user["content"]
    assert "secret shoulder worry" not in user["content"]


def test_private_context_for_athlete(fake, sent):
    _seed_entry("e-1", "2026-01-01T10:00:00.000Z", "armbar from guard", "secret shoulder worry")
    _call(_event({"message": "hi", "context": {"includePrivate": True}}))
    assert "secret shoulder worry" in sent[0][1]["content"]


def test_continuing_thread_includes_history(fake, sent):
    _, first = _call(_event({"message": "first question"}))
    status, body = _call(_event({"message": "second question", "threadId": first["threadId"]}))
    assert status == 200
    assert body["threadId"] == first["threadId"]
    assert "USER: first question" in sent[1][1]["content"]
    assert len(fake.keys_with_prefix(f"AI_THREAD#{first['threadId']}", "MSG#")) == 4


def test_unknown_thread(fake, sent):
    status, body = _call(_event({"message": "hi", "threadId": "nope"}))
    assert status == 404
    assert body["error"]["message"] == "Thread not found."
    assert sent == []


def test_coach_needs_athlete_and_link(fake, sent):
    status, body = _call(_event({"message": "hi"}, user="c-1", role="coach"))
    assert status == 400
    assert body["error"]["message"] == "Coach requests must include context.athleteId."

    request = {"message": "hi", "context": {"athleteId": "a-1", "includePrivate": True}}
    status, _ = _call(_event(request, user="c-1", role="coach"))
    assert status == 403

    _seed_entry("e-1", "2026-01-01T10:00:00.000Z", "armbar from guard", "secret shoulder worry")
    link_coach("a-1", "c-1", "2026-01-01T00:00:00.000Z")
    status, _ = _call(_event(request, user="c-1", role="coach"))
    assert status == 200
    assert "secret shoulder worry" not in sent[0][1]["content"]
    assert "armbar from guard" in sent[0][1]["content"]


def test_keyword_matches_are_not_duplicated(fake):
    _seed_entry("e-1", "2026-01-01T10:00:00.000Z", "armbar from guard", "")
    _seed_entry("e-2", "2026-01-02T10:00:00.000Z", "kimura from side", "")
    context = {
        "athleteId": "a-1",
        "coachMode": False,
        "includePrivate": False,
        "entryIds": None,
        "from": None,
        "to": None,
        "keywords": ["armbar"],
    }
    entries = ai_lambda.gather_context_entries(context)
    assert [e["entryId"] for e in entries] == ["e-2", "e-1"]

    context["entryIds"] = ["e-1"]
    assert [e["entryId"] for e in ai_lambda.gather_context_entries(context)] == ["e-1"]


def test_message_required(fake, sent):
    status, body = _call(_event({"message": "  "}))
    assert status == 400
    assert body["error"]["message"] == "message is required."


def test_provider_error_is_returned(fake, monkeypatch):
    def _failing(messages):
        raise ApiError("AI_PROVIDER_ERROR", "Failed to generate assistant response.", 502)

    monkeypatch.setattr(ai_lambda, "call_openai", _failing)
    status, body = _call(_event({"message": "hi"}))
    assert status == 502
    assert body["error"]["code"] == "AI_PROVIDER_ERROR"
