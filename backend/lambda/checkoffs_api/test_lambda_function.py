"""test_lambda_function.py — Tests for checkoffs_api Lambda handler."""

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
from rollmodel_shared.links import link_coach

_SPEC = importlib.util.spec_from_file_location(
    "checkoffs_api_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
checkoffs_lambda = importlib.util.module_from_spec(_SPEC)
_SPEC.loader.exec_module(checkoffs_lambda)

NOW = "2026-01-10T10:00:00.000Z"
ACTION_PACK = {
    "wins": ["Hit the armbar from closed guard"],
    "leaks": [],
    "oneFocus": "",
    "drills": [],
    "positionalRequests": [],
    "fallbackDecisionGuidance": "",
    "confidenceFlags": [],
}


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _seed_entry(action_pack=None):
    entry = {
        "entryId": "e-1",
        "athleteId": "a-1",
        "createdAt": NOW,
        "updatedAt": NOW,
        "sections": {"shared": "", "private": ""},
        "sessionMetrics": {"durationMinutes": 60, "intensity": 5, "rounds": 5, "giOrNoGi": "gi", "tags": []},
    }
    if action_pack:
        entry["actionPackFinal"] = {"actionPack": action_pack, "finalizedAt": NOW}
    store.put_item(entry_item(entry))
    store.put_item(entry_meta_item(entry))


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
    resp = checkoffs_lambda.lambda_handler(event, None)
    return resp["statusCode"], json.loads(resp["body"])


def test_evidence_derived_from_final_action_pack(fake):
    _seed_entry(ACTION_PACK)
    status, body = _call(_event("POST", "/entries/e-1/checkoff-evidence", body={"skillIds": ["armbar"]}))
    assert status == 200
    assert body["checkoffs"][0]["checkoffId"] == "armbar::hit-in-live-roll"
    assert body["checkoffs"][0]["status"] == "pending"

    status, body = _call(_event("GET", "/entries/e-1/checkoff-evidence"))
    assert status == 200
    assert len(body["evidence"]) == 1

    status, body = _call(_event("GET", "/checkoffs"))
    assert [c["skillId"] for c in body["checkoffs"]] == ["armbar"]


def test_skill_ids_without_action_pack(fake):
    _seed_entry()
    status, body = _call(_event("POST", "/entries/e-1/checkoff-evidence", body={"skillIds": ["armbar"]}))
    assert status == 400
    assert body["error"]["message"] == "Entry has no action pack to derive evidence from."


def test_evidence_on_someone_elses_entry(fake):
    _seed_entry(ACTION_PACK)
    status, _ = _call(_event("POST", "/entries/e-1/checkoff-evidence", user="a-2", body={"skillIds": ["armbar"]}))
    assert status == 403


def test_coach_review_requires_link(fake):
    _seed_entry(ACTION_PACK)
    _call(_event("POST", "/entries/e-1/checkoff-evidence", body={"skillIds": ["armbar"]}))

    review = {"evidenceReviews": []}
    path = "/athletes/a-1/checkoffs/armbar%3A%3Ahit-in-live-roll/review"
    status, _ = _call(_event("PUT", path, user="c-1", role="coach", body=review))
    assert status == 403

    link_coach("a-1", "c-1", NOW)
    status, body = _call(_event("PUT", path, user="c-1", role="coach", body={"status": "superseded", **review}))
    assert status == 200
    assert body["checkoff"]["status"] == "superseded"
    assert body["checkoff"]["coachReviewedBy"] == "c-1"

    status, body = _call(_event("GET", "/athletes/a-1/checkoffs", user="c-1", role="coach"))
    assert status == 200
    assert body["checkoffs"][0]["status"] == "superseded"


def test_athlete_cannot_list_other_athletes(fake):
    status, _ = _call(_event("GET", "/athletes/a-2/checkoffs"))
    assert status == 403


def test_review_route_with_query_athlete(fake):
    status, body = _call(
        _event(
            "PUT",
            "/checkoffs/armbar::hit-in-live-roll/review",
            user="c-1",
            role="coach",
            body={"evidenceReviews": []},
            query={"athleteId": "a-1"},
        )
    )
    assert status == 403
    assert body["error"]["message"] == "Coach is not linked to this athlete."
