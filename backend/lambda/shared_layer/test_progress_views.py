"""Unit tests for progress report building, filters and coach annotations."""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))
sys.path.insert(0, os.path.dirname(__file__))

from fake_dynamodb import FakeDynamoClient
from rollmodel_shared import store
from rollmodel_shared.auth import AuthContext
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.links import link_coach
from rollmodel_shared.progress_store import (
    load_persisted_report,
    recompute_progress_views,
    resolve_progress_access,
    upsert_annotation,
)
from rollmodel_shared.progress_views import (
    build_progress_report,
    parse_annotation_payload,
    parse_progress_filters,
)

GENERATED = "2026-02-01T00:00:00.000Z"


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _structured_entry():
    return {
        "entryId": "e1",
        "athleteId": "a-1",
        "createdAt": "2026-01-10T10:00:00.000Z",
        "structured": {"position": "Closed Guard"},
        "sessionMetrics": {"giOrNoGi": "gi", "tags": ["comp-prep"]},
        "actionPackDraft": {
            "wins": ["escaped mount"],
            "leaks": ["guard got passed"],
            "oneFocus": "",
            "drills": [],
            "positionalRequests": [],
            "fallbackDecisionGuidance": "",
            "confidenceFlags": [{"field": "wins", "confidence": "low", "note": "unsure"}],
        },
    }


def _plain_entry():
    return {
        "entryId": "e2",
        "athleteId": "a-1",
        "createdAt": "2026-01-11T10:00:00.000Z",
        "sessionMetrics": {"giOrNoGi": "no-gi", "tags": []},
    }


def _report(filters=None, checkoffs=(), evidence=()):
    return build_progress_report(
        "a-1",
        [_structured_entry(), _plain_entry()],
        list(checkoffs),
        list(evidence),
        [],
        filters if filters is not None else parse_progress_filters(None),
        generated_at=GENERATED,
    )


def test_report_heatmap_and_trends():
    report = _report()

    assert report["sourceSummary"] == {"sessionsConsidered": 2, "structuredSessions": 1, "checkoffsConsidered": 0}
    cell = report["positionHeatmap"]["cells"][0]
    assert cell["position"] == "closed guard"
    assert cell["trainedCount"] == 1
    assert cell["lowConfidenceCount"] == 1
    assert cell["neglected"] is True

    point = report["outcomeTrends"]["points"][0]
    assert point["date"] == "2026-01-10"
    assert point["escapesSuccessRate"] == 1.0
    assert point["guardRetentionFailureRate"] == 1.0

    flag = report["lowConfidenceFlags"][0]
    assert flag == {
        "entryId": "e1",
        "createdAt": "2026-01-10T10:00:00.000Z",
        "source": "action-pack",
        "field": "wins",
        "confidence": "low",
        "metric": "outcome-trend",
        "note": "unsure",
    }


def test_report_timeline_uses_earned_checkoffs_only():
    checkoffs = [
        {
            "checkoffId": "armbar::hit-in-live-roll",
            "skillId": "armbar",
            "status": "earned",
            "earnedAt": "2026-01-12T09:00:00.000Z",
            "updatedAt": "2026-01-12T09:00:00.000Z",
            "confirmedEvidenceCount": 3,
        },
        {
            "checkoffId": "kimura::hit-in-live-roll",
            "skillId": "kimura",
            "status": "pending",
            "updatedAt": "2026-01-12T09:00:00.000Z",
        },
    ]
    evidence = [{"checkoffId": "armbar::hit-in-live-roll", "confidence": "high", "mappingStatus": "confirmed"}]
    report = _report(checkoffs=checkoffs, evidence=evidence)

    assert report["timeline"]["events"] == [
        {
            "date": "2026-01-12",
            "skillId": "armbar",
            "status": "earned",
            "evidenceCount": 3,
            "confidence": "high",
            "lowConfidence": False,
        }
    ]
    assert report["timeline"]["cumulative"] == [{"date": "2026-01-12", "cumulativeSkills": 1}]


def _session(index, position="closed guard", wins=(), leaks=(), flags=()):
    return {
        "entryId": f"s-{index:03d}",
        "athleteId": "a-1",
        "createdAt": f"2026-01-10T{index // 60:02d}:{index % 60:02d}:00.000Z",
        "structured": {"position": position},
        "sessionMetrics": {"giOrNoGi": "gi", "tags": []},
        "actionPackDraft": {
            "wins": list(wins),
            "leaks": list(leaks),
            "oneFocus": "",
            "drills": [],
            "positionalRequests": [],
            "fallbackDecisionGuidance": "",
            "confidenceFlags": list(flags),
        },
    }


def _build(entries, annotations=()):
    return build_progress_report(
        "a-1", entries, [], [], list(annotations), parse_progress_filters(None), generated_at=GENERATED
    )


def test_outcome_rate_rounds_half_up():
    entries = [_session(0, wins=["escaped mount"])]
    entries += [_session(i, leaks=["escape failed"]) for i in range(1, 16)]

    point = _build(entries)["outcomeTrends"]["points"][0]
    assert point["escapesSuccesses"] == 1
    assert point["escapeAttempts"] == 16
    assert point["escapesSuccessRate"] == 0.063
    assert point["guardRetentionFailureRate"] is None


@pytest.mark.parametrize(
    "section, cap, order_key",
    [
        ("lowConfidenceFlags", 200, "createdAt"),
        ("coachAnnotations", 50, "updatedAt"),
    ],
)
def test_report_lists_are_capped_newest_first(section, cap, order_key):
    entries = [_session(i, flags=[{"field": "wins", "confidence": "low"}]) for i in range(250)]
    annotations = [
        {
            "annotationId": f"n-{i:02d}",
            "athleteId": "a-1",
            "scope": "general",
            "note": f"note {i}",
            "createdAt": f"2026-01-20T00:{i:02d}:00.000Z",
            "updatedAt": f"2026-01-20T00:{i:02d}:00.000Z",
            "createdBy": "c-1",
            "updatedBy": "c-1",
        }
        for i in range(60)
    ]

    items = _build(entries, annotations)[section]

    assert len(items) == cap
    stamps = [item[order_key] for item in items]
    assert stamps == sorted(stamps, reverse=True)
    newest = entries[-1]["createdAt"] if section == "lowConfidenceFlags" else annotations[-1]["updatedAt"]
    assert stamps[0] == newest


def test_neglected_threshold_scales_with_structured_sessions():
    positions = ["closed guard"] * 20 + ["mount"] * 2 + ["back control"] * 3
    report = _build([_session(i, position=p) for i, p in enumerate(positions)])

    heatmap = report["positionHeatmap"]
    assert heatmap["neglectedThreshold"] == 2
    assert heatmap["maxTrainedCount"] == 20
    neglected = {c["position"]: c["neglected"] for c in heatmap["cells"]}
    assert neglected == {"closed guard": False, "back control": False, "mount": True}


def test_filters_narrow_sessions():
    assert _report(parse_progress_filters({"giOrNoGi": "no-gi"}))["sourceSummary"]["sessionsConsidered"] == 1
    assert _report(parse_progress_filters({"contextTags": "Comp-Prep"}))["sourceSummary"]["structuredSessions"] == 1
    assert _report(parse_progress_filters({"dateFrom": "2026-01-11"}))["sourceSummary"]["sessionsConsidered"] == 1


def test_filter_validation():
    with pytest.raises(ApiError) as caught:
        parse_progress_filters({"dateFrom": "2026-02-01", "dateTo": "2026-01-01"})
    assert caught.value.message == "dateFrom must be on or before dateTo."
    with pytest.raises(ApiError):
        parse_progress_filters({"dateFrom": "yesterday"})
    with pytest.raises(ApiError):
        parse_progress_filters({"giOrNoGi": "both"})


def test_annotation_payload_validation():
    assert parse_annotation_payload({"scope": "timeline", "note": " watch the frames ", "targetKey": "armbar"}) == {
        "scope": "timeline",
        "note": "watch the frames",
        "targetKey": "armbar",
    }
    with pytest.raises(ApiError):
        parse_annotation_payload({"scope": "everything", "note": "x"})
    with pytest.raises(ApiError):
        parse_annotation_payload({"scope": "general", "note": "ok", "correction": "  "})


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def test_recompute_persists_latest_report(fake):
    report = recompute_progress_views("a-1")
    assert report["sourceSummary"]["sessionsConsidered"] == 0
    persisted = load_persisted_report("a-1")
    assert persisted["athleteId"] == "a-1"


def test_upsert_annotation_create_then_update(fake):
    created, was_created = upsert_annotation("a-1", "n-1", {"scope": "general", "note": "first"}, "c-1")
    assert was_created is True
    assert created["createdBy"] == "c-1"

    updated, was_created = upsert_annotation("a-1", "n-1", {"scope": "general", "note": "second"}, "c-2")
    assert was_created is False
    assert updated["createdBy"] == "c-1"
    assert updated["updatedBy"] == "c-2"
    assert updated["createdAt"] == created["createdAt"]

    report = load_persisted_report("a-1")
    assert [a["note"] for a in report["coachAnnotations"]] == ["second"]


def test_annotation_id_collision_with_other_entity(fake):
    store.put_item({"PK": "USER#a-1", "SK": "PROGRESS_ANNOTATION#n-1", "entityType": "SOMETHING_ELSE"})
    with pytest.raises(ApiError) as caught:
        upsert_annotation("a-1", "n-1", {"scope": "general", "note": "x"}, "c-1")
    assert caught.value.status_code == 409


def test_progress_access_for_coaches(fake):
    coach = AuthContext(user_id="c-1", role="coach", roles=["coach"])
    athlete = AuthContext(user_id="a-2", role="athlete", roles=["athlete"])

    assert resolve_progress_access(athlete, None) == ("a-2", False)
    with pytest.raises(ApiError) as caught:
        resolve_progress_access(athlete, "a-1")
    assert caught.value.message == "athleteId path access requires coach or admin role."
    with pytest.raises(ApiError) as caught:
        resolve_progress_access(coach, "a-1")
    assert caught.value.message == "Coach is not linked to this athlete."

    link_coach("a-1", "c-1", GENERATED)
    assert resolve_progress_access(coach, "a-1") == ("a-1", True)
