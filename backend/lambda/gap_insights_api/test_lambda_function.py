"""test_lambda_function.py — Tests for gap_insights_api Lambda handler."""

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
from rollmodel_shared.links import link_coach

_SPEC = importlib.util.spec_from_file_location(
    "gap_insights_api_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
gap_lambda = importlib.util.module_from_spec(_SPEC)
_SPEC.loader.exec_module(gap_lambda)


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
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
    resp = gap_lambda.lambda_handler(event, None)
    return resp["statusCode"], json.loads(resp["body"])


def _seed_checkoff():
    store.put_item({
        "PK": "USER#a-1",
        "SK": "CHECKOFF#SKILL#armbar#TYPE#hit-in-live-roll",
        "entityType": "CHECKOFF",
        "checkoffId": "armbar::hit-in-live-roll",
        "skillId": "armbar",
        "evidenceType": "hit-in-live-roll",
        "status": "pending",
        "minEvidenceRequired": 2,
        "confirmedEvidenceCount": 0,
    })


def test_athlete_reads_own_gaps(fake):
    _seed_checkoff()
    status, body = _call(_event("GET", "/gap-insights", query={"topN": "5"}))

    assert status == 200
    report = body["report"]
    assert report["athleteId"] == "a-1"
    assert report["thresholds"]["topN"] == 5
    assert {i["gapId"] for i in report["ranked"]} == {"stale-skill:armbar", "not-training:armbar"}


def test_invalid_threshold(fake):
    status, body = _call(_event("GET", "/gap-insights", query={"staleDays": "0"}))
    assert status == 400
    assert body["error"]["message"] == "staleDays must be an integer between 1 and 365."


def test_coach_needs_active_link(fake):
    status, body = _call(_event("GET", "/athletes/a-1/gap-insights", user="c-1", role="coach"))
    assert status == 403
    assert body["error"]["message"] == "Coach is not linked to this athlete."

    link_coach("a-1", "c-1", "2026-01-01T00:00:00.000Z")
    status, body = _call(_event("GET", "/athletes/a-1/gap-insights", user="c-1", role="coach"))
    assert status == 200
    assert body["report"]["athleteId"] == "a-1"


def test_athlete_cannot_read_other_athlete(fake):
    status, _ = _call(_event("GET", "/athletes/a-1/gap-insights", user="a-2"))
    assert status == 403


def test_coach_priorities_apply_to_report(fake):
    _seed_checkoff()
    link_coach("a-1", "c-1", "2026-01-01T00:00:00.000Z")
    status, body = _call(
        _event(
            "PUT",
            "/athletes/a-1/gap-insights/priorities",
            user="c-1",
            role="coach",
            body={"priorities": [{"gapId": "stale-skill:armbar", "status": "dismissed", "note": "injured"}]},
        )
    )
    assert status == 200
    assert body["saved"][0]["updatedByRole"] == "coach"
    assert body["saved"][0]["note"] == "injured"

    status, body = _call(_event("GET", "/gap-insights"))
    assert [i["gapId"] for i in body["report"]["ranked"]] == ["not-training:armbar"]
    dismissed = body["report"]["sections"]["staleSkills"][0]
    assert dismissed["priority"]["status"] == "dismissed"


def test_priority_payload_errors(fake):
    status, body = _call(_event("PUT", "/gap-insights/priorities", body={"priorities": []}))
    assert status == 400
    assert body["error"]["message"] == "Gap priority payload is invalid: priorities must be a non-empty array."

    event = _event("PUT", "/gap-insights/priorities")
    status, body = _call(event)
    assert status == 400
    assert body["error"]["message"] == "Request body is required."


def test_admin_role_is_rejected(fake):
    status, body = _call(_event("GET", "/gap-insights", role="admin"))
    assert status == 403
    assert body["error"]["message"] == "User does not have permission for this action."


def test_unknown_route(fake):
    status, _ = _call(_event("POST", "/gap-insights"))
    assert status == 404
