"""rollmodel_shared.comments — Coach comments on entries and checkoffs.

Item layout:
    PK = ENTRY#{entryId} | CHECKOFF#{checkoffId}, SK = COMMENT#{createdAt}#{commentId}   COMMENT
    PK = COMMENT#{commentId}, SK = META                                                  COMMENT_META

Comments that require athlete approval stay ``hiddenByAthlete`` until
their approval status becomes ``approved``.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Tuple

from rollmodel_shared import store
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.serialization import _now_z

COMMENT_PREFIX = "COMMENT#"


def _target_pk(target_type: str, target_id: str) -> str:
    return f"ENTRY#{target_id}" if target_type == "entry" else f"CHECKOFF#{target_id}"


def resolve_target(
    entry_id: Optional[str],
    checkoff_id: Optional[str],
    *,
    body_entry_id: Optional[str] = None,
    body_checkoff_id: Optional[str] = None,
) -> Tuple[str, str]:
    """Pick exactly one comment target from path and body ids. Returns ``(type, id)``."""
    if entry_id and body_entry_id and entry_id != body_entry_id:
        raise ApiError.invalid("Entry ID mismatch between path and body.")
    if checkoff_id and body_checkoff_id and checkoff_id != body_checkoff_id:
        raise ApiError.invalid("Checkoff ID mismatch between path and body.")
    entry_id = entry_id or body_entry_id
    checkoff_id = checkoff_id or body_checkoff_id
    if not entry_id and not checkoff_id:
        raise ApiError.invalid("Either entryId or checkoffId is required.")
    if entry_id and checkoff_id:
        raise ApiError.invalid("Provide exactly one target: entryId or checkoffId.")
    return ("entry", entry_id) if entry_id else ("checkoff", checkoff_id)


def target_athlete_id(target_type: str, target_id: str) -> str:
    """Owner of the comment target, read from its META item."""
    meta = store.get_item(_target_pk(target_type, target_id), "META")
    if not meta or not isinstance(meta.get("athleteId"), str):
        raise ApiError.not_found("Entry not found." if target_type == "entry" else "Checkoff not found.")
    return meta["athleteId"]


def parse_comment_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    body = payload.get("body")
    if not isinstance(body, str) or not body.strip():
        raise ApiError.invalid("Comment payload is invalid.")
    return {**payload, "body": body.strip()}


def _approval(requires_approval: bool, status: str, actor_id: str, now: str) -> Dict[str, Any]:
    approval: Dict[str, Any] = {"requiresApproval": requires_approval, "status": status}
    if status == "approved":
        approval["approvedAt"] = now
        approval["approvedBy"] = actor_id
    return approval


def comment_meta_item(comment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "PK": f"COMMENT#{comment['commentId']}",
        "SK": "META",
        "entityType": "COMMENT_META",
        **{k: comment[k] for k in ("commentId", "targetType", "targetId", "athleteId", "coachId", "createdAt", "updatedAt")},
    }


def create_comment(
    coach_id: str,
    athlete_id: str,
    target_type: str,
    target_id: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    now = _now_z()
    requires_approval = bool(payload.get("requiresApproval"))
    if requires_approval:
        status = "approved" if payload.get("approvalStatus") == "approved" else "pending"
    else:
        status = "approved"

    comment: Dict[str, Any] = {
        "commentId": str(uuid.uuid4()),
        "athleteId": athlete_id,
        "entryId": target_id if target_type == "entry" else "",
        "coachId": coach_id,
        "createdAt": now,
        "updatedAt": now,
        "body": payload["body"],
        "visibility": "visible" if status == "approved" else "hiddenByAthlete",
        "targetType": target_type,
        "targetId": target_id,
        "kind": "gpt-feedback" if payload.get("kind") == "gpt-feedback" else "coach-note",
        "approval": _approval(requires_approval, status, coach_id, now),
    }
    if target_type == "checkoff":
        comment["checkoffId"] = target_id
    feedback = payload.get("gptFeedback")
    if isinstance(feedback, dict) and isinstance(feedback.get("draft"), str):
        comment["gptFeedback"] = {"draft": feedback["draft"]}
        if isinstance(feedback.get("coachEdited"), str):
            comment["gptFeedback"]["coachEdited"] = feedback["coachEdited"]

    store.put_item({
        "PK": _target_pk(target_type, target_id),
        "SK": f"{COMMENT_PREFIX}{now}#{comment['commentId']}",
        "entityType": "COMMENT",
        **comment,
    })
    store.put_item(comment_meta_item(comment))
    return comment


def list_comments(target_type: str, target_id: str, visible_only: bool) -> List[Dict[str, Any]]:
    rows = store.query_items(_target_pk(target_type, target_id), COMMENT_PREFIX, scan_forward=False)
    comments = [store.strip_keys(r) for r in rows if r.get("entityType") == "COMMENT"]
    if visible_only:
        comments = [c for c in comments if c.get("visibility") == "visible"]
    return comments


def parse_comment_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    if all(k not in payload for k in ("body", "approvalStatus", "gptFeedback")):
        raise ApiError.invalid("At least one updatable field is required.")
    if "approvalStatus" in payload and payload["approvalStatus"] not in ("pending", "approved"):
        raise ApiError.invalid("approvalStatus must be pending or approved.")
    return payload


def load_comment_meta(comment_id: str) -> Dict[str, Any]:
    meta = store.get_item(f"COMMENT#{comment_id}", "META")
    if (
        not meta
        or not meta.get("athleteId")
        or meta.get("targetType") not in ("entry", "checkoff")
        or not meta.get("targetId")
    ):
        raise ApiError.not_found("Comment not found.")
    return meta


def update_comment(meta: Dict[str, Any], coach_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a coach's edit. Only the authoring coach may edit a comment."""
    pk = _target_pk(meta["targetType"], meta["targetId"])
    row = next(
        (r for r in store.query_items(pk, COMMENT_PREFIX)
         if r.get("entityType") == "COMMENT" and r.get("commentId") == meta["commentId"]),
        None,
    )
    if row is None:
        raise ApiError.not_found("Comment not found.")
    sk = row["SK"]
    existing = store.strip_keys(row)
    if existing.get("coachId") != coach_id:
        raise ApiError.forbidden("Only the authoring coach can edit this comment.")

    now = _now_z()
    approval = existing.get("approval") or {}
    requires_approval = bool(approval.get("requiresApproval"))
    status = payload.get("approvalStatus") or approval.get("status") or ("pending" if requires_approval else "approved")

    updated = {**existing, "updatedAt": now}
    if isinstance(payload.get("body"), str):
        updated["body"] = payload["body"].strip()
    updated["visibility"] = "visible" if status == "approved" else "hiddenByAthlete"
    updated["approval"] = _approval(requires_approval, status, coach_id, now)

    feedback = payload.get("gptFeedback")
    if isinstance(feedback, dict):
        previous = existing.get("gptFeedback") or {}
        merged = {"draft": feedback["draft"] if isinstance(feedback.get("draft"), str) else previous.get("draft", "")}
        coach_edited = feedback.get("coachEdited") if isinstance(feedback.get("coachEdited"), str) else previous.get("coachEdited")
        if coach_edited:
            merged["coachEdited"] = coach_edited
        updated["gptFeedback"] = merged

    store.put_item({"PK": pk, "SK": sk, "entityType": "COMMENT", **updated})
    store.put_item(comment_meta_item(updated))
    return updated


def delete_entry_comments(entry_id: str) -> int:
    """Remove every comment on an entry along with its META item."""
    rows = store.query_items(f"ENTRY#{entry_id}", COMMENT_PREFIX)
    keys = []
    for row in rows:
        keys.append((row["PK"], row["SK"]))
        if isinstance(row.get("commentId"), str):
            keys.append((f"COMMENT#{row['commentId']}", "META"))
    store.batch_delete_keys(keys)
    return len(rows)
