"""rollmodel_shared.backups — Validation and item building for athlete backups.

A backup is the ``full`` layout of a JSON export wrapped in an envelope:

    {"schemaVersion": "2026-02-27", "generatedAt": "...", "full": {
        "athleteId", "entries", "comments", "links", "aiThreads", "aiMessages", "weeklyPlans"}}

Restoring validates every record and its cross references before anything is
written, then rebuilds the same items the live handlers would have written,
keyword and action pack indexes included. Writes are upserts; records that
exist in the table but not in the backup are left alone.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from rollmodel_shared import store
from rollmodel_shared.action_pack_index import build_action_pack_index_items
from rollmodel_shared.comments import comment_meta_item
from rollmodel_shared.entries import (
    entry_item,
    entry_meta_item,
    is_valid_media_attachments_input,
    normalize_entry,
)
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.keywords import entry_keyword_items
from rollmodel_shared.links import coach_link_key
from rollmodel_shared.weekly_plans import parse_weekly_plan_record, weekly_plan_item, weekly_plan_meta_item

logger = logging.getLogger(__name__)

CURRENT_BACKUP_SCHEMA_VERSION = "2026-02-27"

_REQUIRED_ARRAYS = ("entries", "comments", "links", "aiThreads", "aiMessages")
_METRIC_NUMBERS = ("durationMinutes", "intensity", "rounds")


def _format_error(message: str) -> ApiError:
    return ApiError("INVALID_BACKUP_FORMAT", message, 400)


def _require_string(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise _format_error(f'Backup field "{field}" must be a non-empty string.')
    return value


def _require_array(value: Any, field: str) -> List[Any]:
    if not isinstance(value, list):
        raise _format_error(f'Backup field "{field}" must be an array.')
    return value


def _require_object(value: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise _format_error(f"Backup {kind} items must be objects.")
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Record parsers
# ---------------------------------------------------------------------------


def _parse_entry(value: Any) -> Dict[str, Any]:
    entry = _require_object(value, "entry")
    sections = entry.get("sections")
    metrics = entry.get("sessionMetrics")
    valid = (
        isinstance(entry.get("entryId"), str)
        and isinstance(entry.get("athleteId"), str)
        and isinstance(entry.get("createdAt"), str)
        and isinstance(entry.get("updatedAt"), str)
        and isinstance(sections, dict)
        and isinstance(sections.get("private"), str)
        and isinstance(sections.get("shared"), str)
        and isinstance(metrics, dict)
        and all(_is_number(metrics.get(k)) for k in _METRIC_NUMBERS)
        and isinstance(metrics.get("giOrNoGi"), str)
        and isinstance(metrics.get("tags"), list)
        and all(isinstance(t, str) for t in metrics["tags"])
        and is_valid_media_attachments_input(entry.get("mediaAttachments"))
    )
    if not valid:
        raise _format_error("Backup entry shape is invalid.")
    try:
        return normalize_entry(entry)
    except ApiError as exc:
        raise _format_error(f"Backup entry is invalid: {exc.message}.") from exc


def _parse_comment(value: Any) -> Dict[str, Any]:
    comment = _require_object(value, "comment")
    if comment.get("visibility") not in ("visible", "hiddenByAthlete"):
        raise _format_error("Backup comment visibility is invalid.")
    for field in ("commentId", "entryId", "coachId", "createdAt", "body"):
        _require_string(comment.get(field), f"comments[].{field}")
    return {
        **comment,
        "targetType": "entry",
        "targetId": comment["entryId"],
        "updatedAt": comment.get("updatedAt") if isinstance(comment.get("updatedAt"), str) else comment["createdAt"],
    }


def _parse_link(value: Any) -> Dict[str, Any]:
    link = _require_object(value, "coach link")
    if link.get("status") not in ("pending", "active", "revoked"):
        raise _format_error("Backup coach link status is invalid.")
    fields = ("athleteId", "coachId", "createdAt", "updatedAt", "createdBy")
    parsed = {field: _require_string(link.get(field), f"links[].{field}") for field in fields}
    parsed["status"] = link["status"]
    return parsed


def _parse_thread(value: Any) -> Dict[str, Any]:
    thread = _require_object(value, "AI thread")
    fields = ("threadId", "title", "createdAt", "lastActiveAt")
    return {field: _require_string(thread.get(field), f"aiThreads[].{field}") for field in fields}


def _parse_message(value: Any) -> Dict[str, Any]:
    message = _require_object(value, "AI message")
    if message.get("role") not in ("user", "assistant"):
        raise _format_error("Backup AI message role is invalid.")
    if message.get("visibilityScope") not in ("private", "shared"):
        raise _format_error("Backup AI message visibilityScope is invalid.")
    fields = ("messageId", "threadId", "content", "createdAt")
    parsed = {field: _require_string(message.get(field), f"aiMessages[].{field}") for field in fields}
    parsed["role"] = message["role"]
    parsed["visibilityScope"] = message["visibilityScope"]
    return parsed


def _parse_weekly_plan(value: Any) -> Dict[str, Any]:
    return parse_weekly_plan_record(_require_object(value, "weekly plan"))


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def parse_and_validate_backup(raw: Any) -> Dict[str, Any]:
    """Validate a backup envelope and return its parsed ``full`` dataset.

    Raises INCOMPATIBLE_BACKUP_SCHEMA for a version mismatch and
    INVALID_BACKUP_FORMAT (both 400) for anything else.
    """
    if not isinstance(raw, dict):
        raise _format_error("Backup payload must be a JSON object.")
    version = raw.get("schemaVersion")
    if not isinstance(version, str):
        raise _format_error("Backup schemaVersion must be a string.")
    if version != CURRENT_BACKUP_SCHEMA_VERSION:
        raise ApiError(
            "INCOMPATIBLE_BACKUP_SCHEMA",
            f"Unsupported backup schema version: {version}. Expected {CURRENT_BACKUP_SCHEMA_VERSION}.",
            400,
        )
    _require_string(raw.get("generatedAt"), "generatedAt")
    full = raw.get("full")
    if not isinstance(full, dict):
        raise _format_error('Restore requires a full backup payload ("full" object) from JSON export.')

    athlete_id = _require_string(full.get("athleteId"), "full.athleteId")
    arrays = {name: _require_array(full.get(name), f"full.{name}") for name in _REQUIRED_ARRAYS}
    plans_raw = full.get("weeklyPlans") if isinstance(full.get("weeklyPlans"), list) else []

    dataset = {
        "athleteId": athlete_id,
        "entries": [_parse_entry(v) for v in arrays["entries"]],
        "comments": [_parse_comment(v) for v in arrays["comments"]],
        "links": [_parse_link(v) for v in arrays["links"]],
        "aiThreads": [_parse_thread(v) for v in arrays["aiThreads"]],
        "aiMessages": [_parse_message(v) for v in arrays["aiMessages"]],
        "weeklyPlans": [_parse_weekly_plan(v) for v in plans_raw],
    }

    for entry in dataset["entries"]:
        if entry["athleteId"] != athlete_id:
            raise _format_error(f"Backup entry athleteId mismatch for entry {entry['entryId']}.")
    for link in dataset["links"]:
        if link["athleteId"] != athlete_id:
            raise _format_error(f"Backup coach link athleteId mismatch for coach {link['coachId']}.")
    entry_ids = {e["entryId"] for e in dataset["entries"]}
    for comment in dataset["comments"]:
        if comment["entryId"] not in entry_ids:
            raise _format_error(f"Backup comment references unknown entryId: {comment['entryId']}.")
    thread_ids = {t["threadId"] for t in dataset["aiThreads"]}
    for message in dataset["aiMessages"]:
        if message["threadId"] not in thread_ids:
            raise _format_error(f"Backup AI message references unknown threadId: {message['threadId']}.")
    for plan in dataset["weeklyPlans"]:
        if plan["athleteId"] != athlete_id:
            raise _format_error(f"Backup weekly plan athleteId mismatch for plan {plan['planId']}.")
    return dataset


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def build_restore_items(dataset: Dict[str, Any]) -> List[Dict[str, Any]]:
    athlete_id = dataset["athleteId"]
    items: List[Dict[str, Any]] = []

    for entry in dataset["entries"]:
        items.append(entry_item(entry))
        items.append(entry_meta_item(entry))
        items.extend(entry_keyword_items(entry))
        items.extend(build_action_pack_index_items(entry))

    for comment in dataset["comments"]:
        comment = {**comment, "athleteId": athlete_id}
        items.append({
            "PK": f"ENTRY#{comment['entryId']}",
            "SK": f"COMMENT#{comment['createdAt']}#{comment['commentId']}",
            "entityType": "COMMENT",
            **comment,
        })
        items.append(comment_meta_item(comment))

    for link in dataset["links"]:
        pk, sk = coach_link_key(athlete_id, link["coachId"])
        items.append({"PK": pk, "SK": sk, "entityType": "COACH_LINK", **link})

    for thread in dataset["aiThreads"]:
        items.append({"PK": f"USER#{athlete_id}", "SK": f"AI_THREAD#{thread['threadId']}", "entityType": "AI_THREAD", **thread})

    for message in dataset["aiMessages"]:
        items.append({
            "PK": f"AI_THREAD#{message['threadId']}",
            "SK": f"MSG#{message['createdAt']}#{message['messageId']}",
            "entityType": "AI_MESSAGE",
            **message,
        })

    for plan in dataset["weeklyPlans"]:
        items.append(weekly_plan_item(plan))
        items.append(weekly_plan_meta_item(plan))
    return items


def restore_backup(athlete_id: str, raw: Any) -> Dict[str, int]:
    """Validate ``raw`` for ``athlete_id`` and write it. Returns restore counts."""
    dataset = parse_and_validate_backup(raw)
    if dataset["athleteId"] != athlete_id:
        raise _format_error(f"Backup athleteId ({dataset['athleteId']}) does not match authenticated user.")

    items = build_restore_items(dataset)
    if items:
        store.batch_write_items(items)
    counts = {name: len(dataset[name]) for name in (*_REQUIRED_ARRAYS, "weeklyPlans")}
    counts["itemsWritten"] = len(items)
    logger.info("[INFO] backup restored athlete=%s items=%d", athlete_id, len(items))
    return counts
