"""test_lambda_function.py — Tests for coach_questions_api Lambda handler."""

from __future__ import annotations

import importlib.util
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer"))

from fake_dynamodb import FakeDynamoClient
from rollmodel_shared import openai_client, store
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.links import link_coach

_SPEC = importlib.util.spec_from_file_location(
    "coach_questions_api_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
questions_lambda = importlib.util.module_from_spec(_SPEC)
_SPEC.loader.exec_module(questions_lambda)


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)

    def _fail(messages):
        raise ApiError("AI_PROVIDER_ERROR", "Failed to generate assistant response.", 502)

    monkeypatch.setattr(openai_client, "request_json_output", _fail)
    return client


def _event(method, path, user="a-1", role="athlete", body=None, query=None):
    event = {
        "requestContext": {
            "http": {"method": method},
            "authorizer": {"claims": {"sub": user, "custom:role": role}},
        },
        "rawPath": path,
        "queryStringParameters": query,
    }
    if body is not None:
        event["body"] = json.dumps(body)
    return event


def _call(event):
    resp = questions_lambda.lambda_handler(event, None)
    return resp["statusCode"], json.loads(resp["body"])


def test_first_get_creates_then_returns_stored(fake):
    status, body = _call(_event("GET", "/coach-questions"))
    assert status == 201
    first = body["questionSet"]
    assert len(first["questions"]) == 3
    assert body["generation"] == {"regenerated": False, "confidenceLow": True}

    status, body = _call(_event("GET", "/coach-questions"))
    assert status == 200
    assert body["questionSet"]["questionSetId"] == first["questionSetId"]
    assert body["generation"]["regenerated"] is False

    status, body = _call(_event("GET", "/coach-questions", query={"regenerate": "true"}))
    assert status == 200
    assert body["questionSet"]["questionSetId"] != first["questionSetId"]
    assert body["questionSet"]["generationReason"] == "low-confidence-refresh"
    assert body["generation"]["regenerated"] is True


def test_coach_needs_link(fake):
    status, body = _call(_event("GET", "/athletes/a-1/coach-questions", user="c-1", role="coach"))
    assert status == 403
    assert body["error"]["message"] == "Coach is not linked to this athlete."

    link_coach("a-1", "c-1", "2026-01-01T00:00:00.000Z")
    status, body = _call(_event("GET", "/athletes/a-1/coach-questions", user="c-1", role="coach"))
    assert status == 201
    assert body["questionSet"]["generatedByRole"] == "coach"


def test_coach_edits_and_athlete_responds(fake):
    link_coach("a-1", "c-1", "2026-01-01T00:00:00.000Z")
    _, body = _call(_event("GET", "/coach-questions"))
    set_id = body["questionSet"]["questionSetId"]
    qid = body["questionSet"]["questions"][0]["questionId"]

    status, body = _call(_event(
        "PUT", f"/coach-questions/{set_id}", user="c-1", role="coach",
        body={"questionEdits": [{"questionId": qid, "text": "Which frame will you test first next round?"}],
              "coachNote": "Start here"},
    ))
    assert status == 200
    assert body["questionSet"]["questions"][0]["coachEditedText"] == "Which frame will you test first next round?"
    assert body["questionSet"]["coachEditedBy"] == "c-1"

    status, body = _call(_event(
        "PUT", f"/coach-questions/{set_id}", body={"responses": [{"questionId": qid, "response": "Elbow frame"}]}
    ))
    assert status == 200
    assert body["questionSet"]["questions"][0]["athleteResponse"] == "Elbow frame"
    assert body["questionSet"]["coachNote"] == "Start here"


def test_athlete_cannot_edit_questions(fake):
    _, body = _call(_event("GET", "/coach-questions"))
    set_id = body["questionSet"]["questionSetId"]

    status, body = _call(_event("PUT", f"/coach-questions/{set_id}", body={"coachNote": "mine"}))
    assert status == 403
    assert body["error"]["message"] == "Only coaches can edit generated questions."


def test_other_athlete_is_forbidden(fake):
    _, body = _call(_event("GET", "/coach-questions"))
    set_id = body["questionSet"]["questionSetId"]

    status, body = _call(_event("PUT", f"/coach-questions/{set_id}", user="a-2", body={"responses": []}))
    assert status == 403
    assert body["error"]["message"] == "User does not have permission for this athlete."

    status, body = _call(_event("GET", "/athletes/a-1/coach-questions", user="a-2"))
    assert status == 403


def test_missing_set_and_bad_payload(fake):
    status, body = _call(_event("PUT", "/coach-questions/missing", body={"coachNote": "x"}))
    assert status == 404
    assert body["error"]["message"] == "Coach question set not found."

    status, body = _call(_event("PUT", "/coach-questions/missing", body={}))
    assert status == 400


def test_unknown_route(fake):
    status, _ = _call(_event("DELETE", "/coach-questions"))
    assert status == 404
