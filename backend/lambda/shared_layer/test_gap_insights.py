"""Unit tests for gap detection, ranking and priority overrides."""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))
sys.path.insert(0, os.path.dirname(__file__))

from fake_dynamodb import FakeDynamoClient
from rollmodel_shared import store
from rollmodel_shared.gap_insights import (
    DEFAULT_GAP_THRESHOLDS,
    build_gap_insights_report,
    list_gap_priorities,
    parse_gap_priorities_payload,
    parse_gap_thresholds,
    save_gap_priorities,
)
from rollmodel_shared.http_utils import ApiError

NOW = "2026-03-01T00:00:00.000Z"


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _entry(entry_id, created_at, position=None, leaks=None):
    entry = {"entryId": entry_id, "athleteId": "a-1", "createdAt": created_at}
    if position:
        entry["structured"] = {"position": position}
    if leaks is not None:
        entry["actionPackFinal"] = {"actionPack": {"leaks": leaks}, "finalizedAt": created_at}
    return entry


def _signals():
    entries = [
        _entry("e-old", "2026-01-01T00:00:00.000Z"),
        _entry("e-1", "2026-02-25T09:00:00.000Z", "Mount Bottom", ["Gave up my back"]),
        _entry("e-2", "2026-02-26T09:00:00.000Z", "Mount Bottom", [" gave up my BACK "]),
        _entry("e-3", "2026-02-27T10:00:00.000Z", "Half Guard", ["Gave up my back"]),
        _entry("e-4", "2026-02-28T10:00:00.000Z", "Closed Guard", ["got stacked"]),
    ]
    checkoffs = [
        {"skillId": "armbar", "status": "pending", "minEvidenceRequired": 3, "confirmedEvidenceCount": 1},
        {"skillId": "triangle", "status": "pending", "minEvidenceRequired": 1, "confirmedEvidenceCount": 0},
    ]
    evidence = [
        {
            "evidenceId": "ev-1",
            "checkoffId": "armbar::hit-in-live-roll",
            "skillId": "armbar",
            "entryId": "e-old",
            "createdAt": "2026-01-01T00:00:00.000Z",
            "source": "gpt-structured",
            "mappingStatus": "confirmed",
            "statement": "Hit the armbar from guard",
        },
        {
            "evidenceId": "ev-2",
            "checkoffId": "triangle::hit-in-live-roll",
            "skillId": "triangle",
            "entryId": "e-4",
            "createdAt": "2026-02-28T10:00:00.000Z",
            "source": "gpt-structured",
            "mappingStatus": "rejected",
            "statement": "Not really a triangle",
        },
    ]
    return entries, checkoffs, evidence


def _report(priorities=(), thresholds=None):
    entries, checkoffs, evidence = _signals()
    return build_gap_insights_report(
        "a-1",
        entries,
        checkoffs,
        evidence,
        list(priorities),
        thresholds or dict(DEFAULT_GAP_THRESHOLDS),
        now=NOW,
    )


def _priority(gap_id, status, **extra):
    return {
        "gapId": gap_id,
        "status": status,
        "updatedAt": NOW,
        "updatedBy": "a-1",
        "updatedByRole": "athlete",
        **extra,
    }


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def test_report_sections_and_scores():
    report = _report()

    stale = {i["gapId"]: i for i in report["sections"]["staleSkills"]}
    assert stale["stale-skill:armbar"]["daysSinceLastSeen"] == 59
    assert stale["stale-skill:armbar"]["score"] == 89
    assert stale["stale-skill:armbar"]["impact"] == "high"
    assert stale["stale-skill:armbar"]["sourceLinks"] == [
        {
            "entryId": "e-old",
            "createdAt": "2026-01-01T00:00:00.000Z",
            "evidenceId": "ev-1",
            "checkoffId": "armbar::hit-in-live-roll",
            "skillId": "armbar",
            "excerpt": "Hit the armbar from guard",
        }
    ]

    # Rejected evidence does not count, so triangle was never seen.
    triangle = stale["stale-skill:triangle"]
    assert triangle["daysSinceLastSeen"] is None
    assert triangle["score"] == 100
    assert triangle["reasons"][0] == "Last structured appearance: never."

    not_training = {i["gapId"]: i["score"] for i in report["sections"]["notTraining"]}
    assert not_training == {"not-training:armbar": 80, "not-training:triangle": 100}


def test_repeated_failures_group_by_position_and_leak():
    repeated = _report()["sections"]["repeatedFailures"]

    assert len(repeated) == 1
    gap = repeated[0]
    assert gap["gapId"] == "repeated-failure:mount-bottom::gave-up-my-back"
    assert gap["repeatCount"] == 2
    assert gap["score"] == 69
    assert gap["impact"] == "medium"
    assert [link["entryId"] for link in gap["sourceLinks"]] == ["e-2", "e-1"]


def test_repeated_failure_window_and_min_count():
    thresholds = {**DEFAULT_GAP_THRESHOLDS, "repeatFailureWindowDays": 1}
    assert _report(thresholds=thresholds)["sections"]["repeatedFailures"] == []

    thresholds = {**DEFAULT_GAP_THRESHOLDS, "repeatFailureMinCount": 3}
    assert _report(thresholds=thresholds)["sections"]["repeatedFailures"] == []


def test_ranking_without_priorities():
    report = _report()

    assert [i["gapId"] for i in report["ranked"]] == [
        "not-training:triangle",
        "stale-skill:triangle",
        "stale-skill:armbar",
        "not-training:armbar",
        "repeated-failure:mount-bottom::gave-up-my-back",
    ]
    assert report["summary"] == {
        "totalGaps": 5,
        "staleSkillCount": 2,
        "repeatedFailureCount": 1,
        "notTrainingCount": 2,
    }
    assert report["weeklyFocus"]["headline"] == "Weekly focus is auto-ranked from highest-impact current gaps."
    assert len(report["weeklyFocus"]["items"]) == 3


def test_priorities_reorder_and_dismiss():
    report = _report([
        _priority("stale-skill:triangle", "dismissed"),
        _priority("repeated-failure:mount-bottom::gave-up-my-back", "accepted", manualPriority=1),
        _priority("not-training:armbar", "watch"),
    ])

    ranked = report["ranked"]
    assert [i["gapId"] for i in ranked] == [
        "repeated-failure:mount-bottom::gave-up-my-back",
        "not-training:armbar",
        "not-training:triangle",
        "stale-skill:armbar",
    ]
    assert ranked[0]["score"] == 189
    assert ranked[1]["score"] == 100
    assert ranked[1]["priority"]["status"] == "watch"
    assert report["summary"]["staleSkillCount"] == 2
    assert report["weeklyFocus"]["headline"] == "Weekly focus follows accepted gap priorities."
    assert [i["gapId"] for i in report["weeklyFocus"]["items"]] == [
        "repeated-failure:mount-bottom::gave-up-my-back"
    ]


def test_accepted_gaps_follow_manual_priority():
    report = _report([
        _priority("not-training:triangle", "accepted", manualPriority=2),
        _priority("stale-skill:armbar", "accepted", manualPriority=1),
    ])
    assert [i["gapId"] for i in report["ranked"][:2]] == ["stale-skill:armbar", "not-training:triangle"]


def test_top_n_limits_ranked_list():
    report = _report(thresholds={**DEFAULT_GAP_THRESHOLDS, "topN": 2})
    assert len(report["ranked"]) == 2
    assert report["summary"]["totalGaps"] == 2


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def test_threshold_parsing():
    assert parse_gap_thresholds(None) == DEFAULT_GAP_THRESHOLDS
    assert parse_gap_thresholds({"staleDays": " 45 ", "topN": "5"})["staleDays"] == 45

    with pytest.raises(ApiError) as caught:
        parse_gap_thresholds({"repeatFailureMinCount": "1"})
    assert caught.value.message == "repeatFailureMinCount must be an integer between 2 and 20."
    with pytest.raises(ApiError):
        parse_gap_thresholds({"topN": "ten"})


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"priorities": []}, "Gap priority payload is invalid: priorities must be a non-empty array."),
        ({"priorities": ["x"]}, "Gap priority payload is invalid: priorities[0] must be an object."),
        ({"priorities": [{"gapId": " ", "status": "accepted"}]},
         "Gap priority payload is invalid: priorities[0].gapId must be a non-empty string."),
        ({"priorities": [{"gapId": "g", "status": "later"}]},
         "Gap priority payload is invalid: priorities[0].status is unsupported."),
        ({"priorities": [{"gapId": "g", "status": "watch", "manualPriority": 0}]},
         "Gap priority payload is invalid: priorities[0].manualPriority must be a positive integer."),
        ({"priorities": [{"gapId": "g", "status": "watch", "note": 3}]},
         "Gap priority payload is invalid: priorities[0].note must be a string."),
        ({"priorities": [{"gapId": f"g-{i}", "status": "watch"} for i in range(51)]},
         "At most 50 priorities can be updated per request."),
    ],
)
def test_priority_payload_validation(payload, message):
    with pytest.raises(ApiError) as caught:
        parse_gap_priorities_payload(payload)
    assert caught.value.message == message


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def test_save_and_list_priorities(fake):
    payload = parse_gap_priorities_payload({
        "priorities": [
            {"gapId": "stale-skill:armbar", "status": "watch", "note": " later "},
            {"gapId": "stale-skill:armbar", "status": "accepted", "manualPriority": 1},
        ]
    })
    saved = save_gap_priorities("a-1", payload, "c-1", "coach")

    assert len(saved) == 1
    stored = list_gap_priorities("a-1")
    assert stored == [
        {
            "gapId": "stale-skill:armbar",
            "status": "accepted",
            "manualPriority": 1,
            "updatedAt": saved[0]["updatedAt"],
            "updatedBy": "c-1",
            "updatedByRole": "coach",
        }
    ]
