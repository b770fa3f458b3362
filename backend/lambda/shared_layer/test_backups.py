"""Unit tests for backup validation and restore item building."""

from __future__ import annotations

import copy
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))
sys.path.insert(0, os.path.dirname(__file__))

from fake_dynamodb import FakeDynamoClient
from rollmodel_shared import store
from rollmodel_shared.backups import (
    CURRENT_BACKUP_SCHEMA_VERSION,
    build_restore_items,
    parse_and_validate_backup,
    restore_backup,
)
from rollmodel_shared.comments import load_comment_meta
from rollmodel_shared.entries import list_athlete_entries, load_entry
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.links import ensure_coach_link
from rollmodel_shared.weekly_plans import list_weekly_plans

NOW = "2026-03-01T10:00:00.000Z"


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _backup():
    return {
        "schemaVersion": CURRENT_BACKUP_SCHEMA_VERSION,
        "generatedAt": NOW,
        "full": {
            "athleteId": "a-1",
            "entries": [
                {
                    "entryId": "e-1",
                    "athleteId": "a-1",
                    "createdAt": NOW,
                    "updatedAt": NOW,
                    "sections": {"shared": "armbar from guard", "private": "knee sore"},
                    "sessionMetrics": {"durationMinutes": 60, "intensity": 7, "rounds": 5, "giOrNoGi": "gi", "tags": []},
                    "actionPackFinal": {
                        "actionPack": {"wins": ["armbar"], "leaks": [], "drills": [], "positionalRequests": []},
                        "finalizedAt": NOW,
                    },
                }
            ],
            "comments": [
                {
                    "commentId": "cm-1",
                    "entryId": "e-1",
                    "coachId": "c-1",
                    "createdAt": NOW,
                    "body": "Tighter knees",
                    "visibility": "visible",
                }
            ],
            "links": [
                {
                    "athleteId": "a-1",
                    "coachId": "c-1",
                    "status": "active",
                    "createdAt": NOW,
                    "updatedAt": NOW,
                    "createdBy": "a-1",
                }
            ],
            "aiThreads": [{"threadId": "t-1", "title": "Guard", "createdAt": NOW, "lastActiveAt": NOW}],
            "aiMessages": [
                {
                    "messageId": "m-1",
                    "threadId": "t-1",
                    "role": "user",
                    "content": "How do I keep guard?",
                    "visibilityScope": "private",
                    "createdAt": NOW,
                }
            ],
            "weeklyPlans": [
                {
                    "planId": "p-1",
                    "athleteId": "a-1",
                    "weekOf": "2026-02-23",
                    "generatedAt": NOW,
                    "updatedAt": NOW,
                    "status": "active",
                    "primarySkills": ["Frames"],
                }
            ],
        },
    }


def test_valid_backup_parses():
    dataset = parse_and_validate_backup(_backup())
    assert dataset["athleteId"] == "a-1"
    assert dataset["entries"][0]["schemaVersion"] == 2
    assert dataset["comments"][0]["targetType"] == "entry"
    assert dataset["comments"][0]["updatedAt"] == NOW
    assert dataset["weeklyPlans"][0]["primarySkills"] == ["Frames"]


def test_weekly_plans_are_optional():
    backup = _backup()
    del backup["full"]["weeklyPlans"]
    assert parse_and_validate_backup(backup)["weeklyPlans"] == []


def test_schema_version_mismatch():
    backup = _backup()
    backup["schemaVersion"] = "2026-02-19"
    with pytest.raises(ApiError) as exc:
        parse_and_validate_backup(backup)
    assert exc.value.code == "INCOMPATIBLE_BACKUP_SCHEMA"
    assert exc.value.message == "Unsupported backup schema version: 2026-02-19. Expected 2026-02-27."


def _mutate(path, value):
    backup = _backup()
    target = backup
    for key in path[:-1]:
        target = target[key]
    if value is _DELETE:
        del target[path[-1]]
    else:
        target[path[-1]] = value
    return backup


_DELETE = object()


@pytest.mark.parametrize("path,value,message", [
    (("schemaVersion",), 3, "Backup schemaVersion must be a string."),
    (("full",), _DELETE, 'Restore requires a full backup payload ("full" object) from JSON export.'),
    (("generatedAt",), "", 'Backup field "generatedAt" must be a non-empty string.'),
    (("full", "comments"), None, 'Backup field "full.comments" must be an array.'),
    (("full", "entries", 0, "sessionMetrics", "rounds"), "five", "Backup entry shape is invalid."),
    (("full", "entries", 0, "athleteId"), "a-2", "Backup entry athleteId mismatch for entry e-1."),
    (("full", "entries", 0, "schemaVersion"), 1, "Backup entry is invalid: Unsupported entry schema version: 1."),
    (("full", "comments", 0, "visibility"), "public", "Backup comment visibility is invalid."),
    (("full", "comments", 0, "entryId"), "e-9", "Backup comment references unknown entryId: e-9."),
    (("full", "links", 0, "status"), "paused", "Backup coach link status is invalid."),
    (("full", "links", 0, "athleteId"), "a-2", "Backup coach link athleteId mismatch for coach c-1."),
    (("full", "aiThreads", 0, "title"), "", 'Backup field "aiThreads[].title" must be a non-empty string.'),
    (("full", "aiMessages", 0, "role"), "system", "Backup AI message role is invalid."),
    (("full", "aiMessages", 0, "threadId"), "t-9", "Backup AI message references unknown threadId: t-9."),
    (("full", "weeklyPlans", 0, "athleteId"), "a-2", "Backup weekly plan athleteId mismatch for plan p-1."),
])
def test_invalid_backups(path, value, message):
    with pytest.raises(ApiError) as exc:
        parse_and_validate_backup(_mutate(path, value))
    assert exc.value.code == "INVALID_BACKUP_FORMAT"
    assert exc.value.status_code == 400
    assert exc.value.message == message


def test_non_object_payload():
    with pytest.raises(ApiError) as exc:
        parse_and_validate_backup(["not", "a", "backup"])
    assert exc.value.message == "Backup payload must be a JSON object."


def test_restore_items_rebuild_indexes():
    items = build_restore_items(parse_and_validate_backup(_backup()))
    types = [item["entityType"] for item in items]
    assert types.count("ENTRY") == 1
    assert types.count("ENTRY_META") == 1
    assert "KEYWORD_INDEX" in types
    assert {"COMMENT", "COMMENT_META", "COACH_LINK", "AI_THREAD", "AI_MESSAGE"} <= set(types)
    assert types.count("WEEKLY_PLAN") == 1 and types.count("WEEKLY_PLAN_META") == 1
    private_keys = [i for i in items if i["PK"] == "USER_PRIVATE#a-1"]
    assert any("KW#knee#" in i["SK"] for i in private_keys)


def test_restore_backup_writes_readable_records(fake):
    counts = restore_backup("a-1", _backup())

    assert counts["entries"] == 1
    assert counts["weeklyPlans"] == 1
    assert counts["itemsWritten"] == len(build_restore_items(parse_and_validate_backup(_backup())))

    assert [e["entryId"] for e in list_athlete_entries("a-1")] == ["e-1"]
    assert load_entry("e-1")["sections"]["shared"] == "armbar from guard"
    assert load_comment_meta("cm-1")["athleteId"] == "a-1"
    ensure_coach_link("c-1", "a-1")
    assert list_weekly_plans("a-1")[0]["planId"] == "p-1"
    assert store.get_item("AI_THREAD#t-1", f"MSG#{NOW}#m-1")["content"] == "How do I keep guard?"


def test_restore_rejects_other_athletes_backup(fake):
    with pytest.raises(ApiError) as exc:
        restore_backup("a-2", _backup())
    assert exc.value.message == "Backup athleteId (a-1) does not match authenticated user."
    assert list_athlete_entries("a-1") == []


def test_restore_writes_nothing_when_invalid(fake):
    backup = copy.deepcopy(_backup())
    backup["full"]["aiMessages"][0]["threadId"] = "t-9"
    with pytest.raises(ApiError):
        restore_backup("a-1", backup)
    assert list_athlete_entries("a-1") == []
