"""test_lambda_function.py — Tests for coach_links_api Lambda handler."""

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

_SPEC = importlib.util.spec_from_file_location(
    "coach_links_api_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
links_lambda = importlib.util.module_from_spec(_SPEC)
_SPEC.loader.exec_module(links_lambda)


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _event(method, body=None, role="athlete"):
    event = {
        "requestContext": {
            "http": {"method": method},
            "authorizer": {"claims": {"sub": "a-1", "custom:role": role}},
        },
        "rawPath": "/links/coach",
    }
    if body is not None:
        event["body"] = json.dumps(body)
    return event


def _call(event):
    resp = links_lambda.lambda_handler(event, None)
    return resp["statusCode"], json.loads(resp["body"])


def test_link_revoke_and_relink(fake):
    status, body = _call(_event("POST", {"coachId": " c-1 "}))
    assert status == 201
    assert body == {"linked": True, "athleteId": "a-1", "coachId": "c-1"}

    status, body = _call(_event("DELETE", {"coachId": "c-1"}))
    assert status == 200
    assert body["status"] == "revoked"
    assert store.get_item("USER#a-1", "COACH#c-1")["status"] == "revoked"

    status, _ = _call(_event("POST", {"coachId": "c-1"}))
    assert status == 201
    assert store.get_item("USER#a-1", "COACH#c-1")["status"] == "active"


def test_coach_id_required(fake):
    status, body = _call(_event("POST", {}))
    assert status == 400
    assert body["error"]["message"] == "coachId is required."


def test_revoke_unknown_link(fake):
    status, body = _call(_event("DELETE", {"coachId": "c-9"}))
    assert status == 404
    assert body["error"]["message"] == "Coach link not found."


def test_only_athletes_manage_links(fake):
    status, _ = _call(_event("POST", {"coachId": "c-1"}, role="coach"))
    assert status == 403
