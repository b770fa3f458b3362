"""export_data/lambda_function.py

Lambda API handler for an athlete's data export.

Routes (via API Gateway proxy):
    GET /export                 — Export own data (athlete)
    OPTIONS /export             — CORS preflight

Query parameters:
    mode     full | tidy        JSON layout; both layouts when omitted
    format   json | csv         csv returns one row per entry

The full layout lists entries, comments, coach links, AI threads, AI
messages and weekly plans, and is what POST /restore accepts. The tidy
layout adds relationship tables mapping entries to comment ids and threads
to message ids.

Environment variables:
    TABLE_NAME             default: RollModel
    DYNAMODB_REGION        default: us-east-1
    CORS_ORIGIN            default: *
"""

from __future__ import annotations

import csv
import io
import logging
import re
from typing import Any, Dict, List

from rollmodel_shared import store
from rollmodel_shared.backups import CURRENT_BACKUP_SCHEMA_VERSION
from rollmodel_shared.auth import _authenticate, require_role
from rollmodel_shared.entries import list_athlete_entries
from rollmodel_shared.http_utils import (
    CORS_HEADERS,
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
    _query_params,
    _response,
)
from rollmodel_shared.request_logging import with_request_logging
from rollmodel_shared.serialization import _now_z
from rollmodel_shared.weekly_plans import list_weekly_plans

logger = logging.getLogger()

MODE_VALUES = {"full", "tidy"}
FORMAT_VALUES = {"json", "csv"}

CSV_COLUMNS = [
    "entryId",
    "createdAt",
    "updatedAt",
    "durationMinutes",
    "intensity",
    "rounds",
    "giOrNoGi",
    "tags",
    "position",
    "technique",
    "outcome",
    "problem",
    "cue",
    "sharedNotes",
    "privateNotes",
    "techniqueMentions",
]


def _typed(rows: List[Dict[str, Any]], entity_type: str) -> List[Dict[str, Any]]:
    return [store.strip_keys(r) for r in rows if r.get("entityType") == entity_type]


def collect_export(athlete_id: str) -> Dict[str, Any]:
    entries = list_athlete_entries(athlete_id)
    comments_by_entry = {
        e["entryId"]: _typed(store.query_items(f"ENTRY#{e['entryId']}", "COMMENT#"), "COMMENT")
        for e in entries
    }
    links = _typed(store.query_items(f"USER#{athlete_id}", "COACH#"), "COACH_LINK")
    threads = _typed(store.query_items(f"USER#{athlete_id}", "AI_THREAD#"), "AI_THREAD")
    messages_by_thread = {
        t["threadId"]: _typed(store.query_items(f"AI_THREAD#{t['threadId']}", "MSG#"), "AI_MESSAGE")
        for t in threads
    }
    return {
        "entries": entries,
        "commentsByEntry": comments_by_entry,
        "links": links,
        "aiThreads": threads,
        "messagesByThread": messages_by_thread,
        "weeklyPlans": list_weekly_plans(athlete_id),
    }


def build_export_payload(athlete_id: str, data: Dict[str, Any], mode: str = "") -> Dict[str, Any]:
    comments = [c for group in data["commentsByEntry"].values() for c in group]
    messages = [m for group in data["messagesByThread"].values() for m in group]
    full = {
        "athleteId": athlete_id,
        "entries": data["entries"],
        "comments": comments,
        "links": data["links"],
        "aiThreads": data["aiThreads"],
        "aiMessages": messages,
        "weeklyPlans": data.get("weeklyPlans", []),
    }
    tidy = {
        "athlete": {"athleteId": athlete_id},
        "entries": data["entries"],
        "comments": comments,
        "links": data["links"],
        "aiThreads": data["aiThreads"],
        "aiMessages": messages,
        "weeklyPlans": data.get("weeklyPlans", []),
        "relationships": {
            "entryComments": [
                {"entryId": e["entryId"], "commentIds": [c["commentId"] for c in data["commentsByEntry"].get(e["entryId"], [])]}
                for e in data["entries"]
            ],
            "threadMessages": [
                {"threadId": t["threadId"], "messageIds": [m["messageId"] for m in data["messagesByThread"].get(t["threadId"], [])]}
                for t in data["aiThreads"]
            ],
        },
    }
    payload: Dict[str, Any] = {"schemaVersion": CURRENT_BACKUP_SCHEMA_VERSION, "generatedAt": _now_z()}
    if mode == "full":
        payload["full"] = full
    elif mode == "tidy":
        payload["tidy"] = tidy
    else:
        payload.update({"full": full, "tidy": tidy})
    return payload


def entries_to_csv(entries: List[Dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for entry in entries:
        metrics = entry.get("sessionMetrics") or {}
        structured = entry.get("structured") or {}
        sections = entry.get("sections") or {}
        writer.writerow({
            "entryId": entry.get("entryId", ""),
            "createdAt": entry.get("createdAt", ""),
            "updatedAt": entry.get("updatedAt", ""),
            "durationMinutes": metrics.get("durationMinutes", ""),
            "intensity": metrics.get("intensity", ""),
            "rounds": metrics.get("rounds", ""),
            "giOrNoGi": metrics.get("giOrNoGi", ""),
            "tags": ";".join(metrics.get("tags") or []),
            "position": structured.get("position", ""),
            "technique": structured.get("technique", ""),
            "outcome": structured.get("outcome", ""),
            "problem": structured.get("problem", ""),
            "cue": structured.get("cue", ""),
            "sharedNotes": sections.get("shared", ""),
            "privateNotes": sections.get("private", ""),
            "techniqueMentions": ";".join(entry.get("rawTechniqueMentions") or []),
        })
    return buf.getvalue()


def _csv_response(body: str) -> Dict[str, Any]:
    return {
        "statusCode": 200,
        "headers": {
            "Content-Type": "text/csv; charset=utf-8",
            "Content-Disposition": 'attachment; filename="roll-model-entries.csv"',
            **CORS_HEADERS,
        },
        "body": body,
    }


_EXPORT_PATTERN = re.compile(r"/export$")


@with_request_logging("export_data")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        if not (_EXPORT_PATTERN.search(path) and method == "GET"):
            return _error(404, f"Route not found: {method} {path}")

        require_role(auth, ["athlete"])
        params = _query_params(event)
        mode = (params.get("mode") or "").lower()
        if mode and mode not in MODE_VALUES:
            raise ApiError.invalid("mode must be one of: full, tidy.")
        fmt = (params.get("format") or "json").lower()
        if fmt not in FORMAT_VALUES:
            raise ApiError.invalid("format must be one of: json, csv.")

        if fmt == "csv":
            return _csv_response(entries_to_csv(list_athlete_entries(auth.user_id)))

        data = collect_export(auth.user_id)
        logger.info("[INFO] export athlete=%s entries=%d", auth.user_id, len(data["entries"]))
        return _response(200, build_export_payload(auth.user_id, data, mode))

    except ApiError as exc:
        return _error_from_exception(exc)
