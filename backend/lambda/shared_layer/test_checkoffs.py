"""Unit tests for checkoff evidence, status rules and action-pack derivation."""

from __future__ import annotations

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))
sys.path.insert(0, os.path.dirname(__file__))

from fake_dynamodb import FakeDynamoClient
from rollmodel_shared import store
from rollmodel_shared.checkoffs import (
    derive_evidence_from_action_pack,
    is_status_transition_allowed,
    list_checkoffs,
    list_entry_evidence,
    next_checkoff_status,
    parse_checkoff_id,
    parse_review_payload,
    parse_upsert_evidence_payload,
    record_evidence,
    review_checkoff,
)
from rollmodel_shared.http_utils import ApiError

NOW = "2026-02-01T12:00:00.000Z"


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _evidence(skill="Armbar", evidence_type="explain-counters-and-recounters", confidence="high", **extra):
    return {"skillId": skill, "evidenceType": evidence_type, "statement": "Explained the stack defense", "confidence": confidence, **extra}


# ---------------------------------------------------------------------------
# Status rules
# ---------------------------------------------------------------------------


def test_next_status_follows_confirmed_count():
    assert next_checkoff_status(None, 0, 1) == "pending"
    assert next_checkoff_status(None, 1, 1) == "earned"
    assert next_checkoff_status("superseded", 0, 1) == "superseded"
    assert next_checkoff_status("superseded", 2, 1) == "revalidated"


def test_status_transitions():
    assert is_status_transition_allowed("pending", "earned")
    assert is_status_transition_allowed("earned", "earned")
    assert not is_status_transition_allowed("pending", "revalidated")


def test_parse_checkoff_id():
    assert parse_checkoff_id("armbar::hit-in-live-roll") == ("armbar", "hit-in-live-roll")
    with pytest.raises(ApiError):
        parse_checkoff_id("armbar")


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


def test_upsert_payload_with_evidence():
    parsed = parse_upsert_evidence_payload({"body": json.dumps({"evidence": [_evidence(sourceOutcomeField=" wins ")]})})
    assert parsed["evidence"][0]["skillId"] == "Armbar"
    assert parsed["evidence"][0]["sourceOutcomeField"] == "wins"


def test_upsert_payload_with_skill_ids():
    parsed = parse_upsert_evidence_payload({"body": json.dumps({"skillIds": ["armbar"]})})
    assert parsed == {"skillIds": ["armbar"]}


@pytest.mark.parametrize(
    "body, message",
    [
        ({}, "Checkoff payload is invalid: provide evidence or skillIds."),
        ({"evidence": []}, "Checkoff payload is invalid: evidence must be a non-empty array."),
        ({"evidence": [_evidence(evidence_type="vibes")]}, "Checkoff payload is invalid: evidence[0].evidenceType is unsupported."),
        ({"evidence": [_evidence(confidence="certain")]}, "Checkoff payload is invalid: evidence[0].confidence must be high, medium, or low."),
    ],
)
def test_upsert_payload_errors(body, message):
    with pytest.raises(ApiError) as caught:
        parse_upsert_evidence_payload({"body": json.dumps(body)})
    assert caught.value.message == message


def test_review_payload_requires_evidence_reviews():
    with pytest.raises(ApiError) as caught:
        parse_review_payload({"body": json.dumps({"status": "earned"})})
    assert "evidenceReviews must be an array" in caught.value.message


# ---------------------------------------------------------------------------
# Derivation
# ---------------------------------------------------------------------------


def test_derive_evidence_maps_fields_and_confidence():
    action_pack = {
        "wins": ["", "Hit the armbar from closed guard"],
        "leaks": [],
        "oneFocus": "posture",
        "drills": [],
        "positionalRequests": ["Start in closed guard"],
        "fallbackDecisionGuidance": "If they stack, switch to triangle",
        "confidenceFlags": [{"field": "positionalRequests", "confidence": "low"}],
    }
    derived = derive_evidence_from_action_pack(action_pack, [" Armbar ", "armbar"])

    assert [d["evidenceType"] for d in derived] == [
        "hit-in-live-roll",
        "hit-on-equal-or-better-partner",
        "explain-counters-and-recounters",
    ]
    assert {d["skillId"] for d in derived} == {"armbar"}
    assert derived[0]["statement"] == "Hit the armbar from closed guard"
    assert derived[0]["confidence"] == "medium"
    assert derived[0]["mappingStatus"] == "confirmed"
    assert derived[1]["confidence"] == "low"
    assert derived[1]["mappingStatus"] == "pending_confirmation"
    assert derived[2]["sourceOutcomeField"] == "fallbackDecisionGuidance"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def test_record_evidence_earns_checkoff_when_minimum_met(fake):
    result = record_evidence("a-1", "e-1", [_evidence()], NOW)

    checkoff = result["checkoffs"][0]
    assert checkoff["checkoffId"] == "armbar::explain-counters-and-recounters"
    assert checkoff["status"] == "earned"
    assert checkoff["earnedAt"] == NOW
    assert result["pendingConfirmationCount"] == 0

    assert len(list_entry_evidence("e-1", "a-1")) == 1
    meta = store.get_item("CHECKOFF#armbar::explain-counters-and-recounters", "META")
    assert meta["athleteId"] == "a-1"


def test_low_confidence_evidence_stays_pending(fake):
    result = record_evidence("a-1", "e-1", [_evidence(confidence="low")], NOW)
    assert result["checkoffs"][0]["status"] == "pending"
    assert result["pendingConfirmationCount"] == 1


def test_list_checkoffs_includes_evidence(fake):
    record_evidence("a-1", "e-1", [_evidence(), _evidence(evidence_type="hit-in-live-roll")], NOW)
    checkoffs = list_checkoffs("a-1")
    assert sorted(c["evidenceType"] for c in checkoffs) == ["explain-counters-and-recounters", "hit-in-live-roll"]
    assert all(len(c["evidence"]) == 1 for c in checkoffs)
    assert all("PK" not in c for c in checkoffs)


def test_review_confirms_pending_evidence(fake):
    recorded = record_evidence("a-1", "e-1", [_evidence(confidence="low")], NOW)
    evidence_id = recorded["evidence"][0]["evidenceId"]

    result = review_checkoff(
        "a-1",
        "armbar::explain-counters-and-recounters",
        {"evidenceReviews": [{"evidenceId": evidence_id, "mappingStatus": "confirmed", "quality": "strong"}]},
        "2026-02-02T12:00:00.000Z",
        reviewed_by="c-1",
    )
    assert result["checkoff"]["status"] == "earned"
    assert result["checkoff"]["coachReviewedBy"] == "c-1"
    assert result["evidence"][0]["quality"] == "strong"


def test_review_rejects_invalid_transition(fake):
    record_evidence("a-1", "e-1", [_evidence(confidence="low")], NOW)
    with pytest.raises(ApiError) as caught:
        review_checkoff(
            "a-1", "armbar::explain-counters-and-recounters", {"status": "revalidated", "evidenceReviews": []}, NOW
        )
    assert caught.value.message == "Invalid checkoff status transition: pending -> revalidated."


def test_review_missing_checkoff(fake):
    with pytest.raises(ApiError) as caught:
        review_checkoff("a-1", "armbar::hit-in-live-roll", {"evidenceReviews": []}, NOW)
    assert caught.value.status_code == 404
