"""Unit tests for coach comments and coach links."""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))
sys.path.insert(0, os.path.dirname(__file__))

from fake_dynamodb import FakeDynamoClient
from rollmodel_shared import store
from rollmodel_shared.comments import (
    create_comment,
    delete_entry_comments,
    list_comments,
    load_comment_meta,
    parse_comment_payload,
    parse_comment_update,
    resolve_target,
    target_athlete_id,
    update_comment,
)
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.links import ensure_coach_link, link_coach, revoke_coach_link

NOW = "2026-02-01T12:00:00.000Z"


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def test_resolve_target():
    assert resolve_target("e-1", None) == ("entry", "e-1")
    assert resolve_target(None, None, body_checkoff_id="armbar::hit-in-live-roll") == (
        "checkoff",
        "armbar::hit-in-live-roll",
    )
    for args, kwargs, message in (
        ((None, None), {}, "Either entryId or checkoffId is required."),
        (("e-1", None), {"body_entry_id": "e-2"}, "Entry ID mismatch between path and body."),
        (("e-1", "c-1"), {}, "Provide exactly one target: entryId or checkoffId."),
    ):
        with pytest.raises(ApiError) as caught:
            resolve_target(*args, **kwargs)
        assert caught.value.message == message


def test_target_athlete_id(fake):
    store.put_item({"PK": "ENTRY#e-1", "SK": "META", "entityType": "ENTRY_META", "athleteId": "a-1"})
    assert target_athlete_id("entry", "e-1") == "a-1"
    with pytest.raises(ApiError) as caught:
        target_athlete_id("checkoff", "missing")
    assert caught.value.message == "Checkoff not found."


def test_comment_payload_requires_body():
    assert parse_comment_payload({"body": "  nice frames "})["body"] == "nice frames"
    with pytest.raises(ApiError):
        parse_comment_payload({"body": "   "})
    with pytest.raises(ApiError):
        parse_comment_update({})
    with pytest.raises(ApiError):
        parse_comment_update({"approvalStatus": "rejected"})


def test_pending_comment_is_hidden_until_approved(fake):
    comment = create_comment("c-1", "a-1", "entry", "e-1", {"body": "watch the knee line", "requiresApproval": True})
    assert comment["visibility"] == "hiddenByAthlete"
    assert comment["approval"] == {"requiresApproval": True, "status": "pending"}
    assert list_comments("entry", "e-1", visible_only=True) == []
    assert len(list_comments("entry", "e-1", visible_only=False)) == 1

    meta = load_comment_meta(comment["commentId"])
    approved = update_comment(meta, "c-1", parse_comment_update({"approvalStatus": "approved"}))
    assert approved["visibility"] == "visible"
    assert approved["approval"]["approvedBy"] == "c-1"
    assert [c["commentId"] for c in list_comments("entry", "e-1", visible_only=True)] == [comment["commentId"]]


def test_only_author_can_edit(fake):
    comment = create_comment("c-1", "a-1", "checkoff", "armbar::hit-in-live-roll", {"body": "good"})
    assert comment["checkoffId"] == "armbar::hit-in-live-roll"
    meta = load_comment_meta(comment["commentId"])
    with pytest.raises(ApiError) as caught:
        update_comment(meta, "c-2", {"body": "mine now"})
    assert caught.value.status_code == 403


def test_gpt_feedback_merge(fake):
    comment = create_comment(
        "c-1", "a-1", "entry", "e-1", {"body": "draft", "kind": "gpt-feedback", "gptFeedback": {"draft": "ai text"}}
    )
    meta = load_comment_meta(comment["commentId"])
    updated = update_comment(meta, "c-1", {"gptFeedback": {"coachEdited": "coach text"}})
    assert updated["gptFeedback"] == {"draft": "ai text", "coachEdited": "coach text"}


def test_delete_entry_comments_removes_meta(fake):
    first = create_comment("c-1", "a-1", "entry", "e-1", {"body": "one"})
    create_comment("c-1", "a-1", "entry", "e-1", {"body": "two"})
    assert delete_entry_comments("e-1") == 2
    assert fake.keys_with_prefix("ENTRY#e-1") == []
    with pytest.raises(ApiError):
        load_comment_meta(first["commentId"])


def test_coach_link_lifecycle(fake):
    with pytest.raises(ApiError):
        ensure_coach_link("c-1", "a-1")
    link_coach("a-1", "c-1", NOW)
    ensure_coach_link("c-1", "a-1")

    revoked = revoke_coach_link("a-1", "c-1", "2026-02-02T12:00:00.000Z")
    assert revoked["status"] == "revoked"
    with pytest.raises(ApiError):
        ensure_coach_link("c-1", "a-1")

    relinked = link_coach("a-1", "c-1", "2026-02-03T12:00:00.000Z")
    assert relinked["status"] == "active"
    assert relinked["createdAt"] == NOW


def test_revoke_missing_link(fake):
    with pytest.raises(ApiError) as caught:
        revoke_coach_link("a-1", "c-9", NOW)
    assert caught.value.status_code == 404
