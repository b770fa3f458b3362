"""test_lambda_function.py — Tests for partners_api Lambda handler."""

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
    "partners_api_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
partners_lambda = importlib.util.module_from_spec(_SPEC)
_SPEC.loader.exec_module(partners_lambda)


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _event(method, path, user="a-1", role="athlete", body=None):
    event = {
        "requestContext": {
            "http": {"method": method},
            "authorizer": {"claims": {"sub": user, "custom:role": role}},
        },
        "rawPath": path,
    }
    if body is not None:
        event["body"] = json.dumps(body)
    return event


def _call(event):
    resp = partners_lambda.lambda_handler(event, None)
    return resp["statusCode"], json.loads(resp["body"]) if resp["body"] else None


def _create(name, visibility="private"):
    status, body = _call(
        _event("POST", "/partners", body={"displayName": name, "styleTags": ["wrestler"], "visibility": visibility})
    )
    assert status == 201
    return body["partner"]


def test_athlete_crud(fake):
    partner = _create("Sam")
    status, body = _call(_event("GET", f"/partners/{partner['partnerId']}"))
    assert body["partner"]["displayName"] == "Sam"

    status, body = _call(
        _event("PUT", f"/partners/{partner['partnerId']}", body={"displayName": "Sammy", "styleTags": []})
    )
    assert status == 200
    assert body["partner"]["styleTags"] == []

    status, _ = _call(_event("DELETE", f"/partners/{partner['partnerId']}"))
    assert status == 204
    status, _ = _call(_event("GET", f"/partners/{partner['partnerId']}"))
    assert status == 404


def test_coach_sees_only_shared_profiles(fake):
    _create("Private")
    shared = _create("Shared", visibility="shared-with-coach")

    status, _ = _call(_event("GET", "/athletes/a-1/partners", user="c-1", role="coach"))
    assert status == 403

    link_coach("a-1", "c-1", "2026-01-01T00:00:00.000Z")
    status, body = _call(_event("GET", "/athletes/a-1/partners", user="c-1", role="coach"))
    assert [p["partnerId"] for p in body["partners"]] == [shared["partnerId"]]


def test_coach_can_only_edit_guidance(fake):
    private = _create("Private")
    shared = _create("Shared", visibility="shared-with-coach")
    link_coach("a-1", "c-1", "2026-01-01T00:00:00.000Z")

    status, body = _call(
        _event(
            "PUT",
            f"/athletes/a-1/partners/{shared['partnerId']}",
            user="c-1",
            role="coach",
            body={"guidance": {"final": "win the underhook battle"}},
        )
    )
    assert status == 200
    assert body["partner"]["guidance"] == {"final": "win the underhook battle"}
    assert body["partner"]["displayName"] == "Shared"

    status, body = _call(
        _event(
            "PUT",
            f"/athletes/a-1/partners/{shared['partnerId']}",
            user="c-1",
            role="coach",
            body={"displayName": "Renamed"},
        )
    )
    assert status == 400
    assert body["error"]["message"] == "Coach updates only support the guidance field."

    status, body = _call(
        _event(
            "PUT",
            f"/athletes/a-1/partners/{private['partnerId']}",
            user="c-1",
            role="coach",
            body={"guidance": {"final": "x"}},
        )
    )
    assert status == 403
    assert body["error"]["message"] == "Partner profile is private."


def test_coach_cannot_read_private_profile(fake):
    private = _create("Private")
    link_coach("a-1", "c-1", "2026-01-01T00:00:00.000Z")
    status, _ = _call(_event("GET", f"/athletes/a-1/partners/{private['partnerId']}", user="c-1", role="coach"))
    assert status == 404


def test_invalid_partner(fake):
    status, body = _call(_event("POST", "/partners", body={"displayName": "", "styleTags": []}))
    assert status == 400
    assert body["error"]["message"] == "displayName is required."
