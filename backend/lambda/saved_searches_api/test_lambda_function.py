"""test_lambda_function.py — Tests for saved_searches_api Lambda handler."""

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
    "saved_searches_api_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
saved_searches_lambda = importlib.util.module_from_spec(_SPEC)
_SPEC.loader.exec_module(saved_searches_lambda)

PAYLOAD = {"name": "Leg locks", "query": "heel hook", "tag": "", "minIntensity": "", "maxIntensity": "", "isPinned": True}


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _event(method, path, role="athlete", body=None):
    event = {
        "requestContext": {
            "http": {"method": method},
            "authorizer": {"claims": {"sub": "a-1", "custom:role": role}},
        },
        "rawPath": path,
    }
    if body is not None:
        event["body"] = json.dumps(body)
    return event


def _call(event):
    resp = saved_searches_lambda.lambda_handler(event, None)
    return resp["statusCode"], json.loads(resp["body"]) if resp["body"] else None


def test_crud_flow(fake):
    status, body = _call(_event("POST", "/saved-searches", body=PAYLOAD))
    assert status == 201
    search_id = body["savedSearch"]["id"]
    assert body["savedSearch"]["sortBy"] == "createdAt"

    status, body = _call(_event("GET", "/saved-searches"))
    assert [s["name"] for s in body["savedSearches"]] == ["Leg locks"]

    status, body = _call(_event("PUT", f"/saved-searches/{search_id}", body={**PAYLOAD, "isPinned": False}))
    assert status == 200
    assert body["savedSearch"]["isPinned"] is False

    status, _ = _call(_event("DELETE", f"/saved-searches/{search_id}"))
    assert status == 204
    status, body = _call(_event("GET", "/saved-searches"))
    assert body["savedSearches"] == []


def test_coaches_are_rejected(fake):
    status, _ = _call(_event("GET", "/saved-searches", role="coach"))
    assert status == 403


def test_invalid_payload(fake):
    status, body = _call(_event("POST", "/saved-searches", body={"name": "x"}))
    assert status == 400
    assert body["error"]["message"] == "Saved search payload is invalid."


def test_missing_search(fake):
    status, body = _call(_event("DELETE", "/saved-searches/nope"))
    assert status == 404
    assert body["error"]["message"] == "Saved search not found."
