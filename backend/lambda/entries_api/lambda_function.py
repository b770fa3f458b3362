"""entries_api/lambda_function.py

Lambda API handler for Roll Model journal entries.
Creates, searches, updates and deletes training entries and keeps the keyword
index, action-pack index, technique candidates and progress report in step
with every write.

Routes (via API Gateway proxy):
    POST   /entries                               — Create entry (athlete)
    GET    /entries                               — Search own entries (athlete)
    GET    /athletes/{athleteId}/entries          — Search a linked athlete's entries (coach)
    GET    /entries/{entryId}                     — Get entry (owner)
    PUT    /entries/{entryId}                     — Replace editable fields (owner)
    DELETE /entries/{entryId}                     — Delete entry and its index items (owner)
    PUT    /entries/{entryId}/structured-review   — Confirm or correct extracted metadata (owner or linked coach)
    OPTIONS /*                                    — CORS preflight

Auth:
    Cognito authorizer claims, or the `rollmodel_id_token` cookie / bearer
    token verified against the user pool JWKS.

Environment variables:
    TABLE_NAME             default: RollModel
    DYNAMODB_REGION        default: us-east-1
    CORS_ORIGIN            default: *
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from rollmodel_shared import store
from rollmodel_shared.action_pack_index import (
    build_action_pack_delete_keys,
    build_action_pack_index_items,
    query_action_pack_entries,
)
from rollmodel_shared.auth import AuthContext, _authenticate, has_role, require_role
from rollmodel_shared.comments import delete_entry_comments
from rollmodel_shared.entries import (
    CURRENT_ENTRY_SCHEMA_VERSION,
    entry_item,
    entry_key,
    entry_meta_item,
    entry_meta_key,
    list_athlete_entries,
    load_entry,
    sanitize_entry_for_coach,
    sanitize_media_attachments,
)
from rollmodel_shared.entry_payload import CONFIRMABLE_FIELDS, CONFIRMATION_STATUSES, STRUCTURED_FIELDS, parse_entry_payload
from rollmodel_shared.entry_search import parse_entry_search_request, search_entries
from rollmodel_shared.http_utils import (
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
    _query_params,
    _require_json_object,
    _response,
)
from rollmodel_shared.keywords import entry_keyword_items, keyword_index_diff, keyword_key, token_groups
from rollmodel_shared.links import ensure_coach_link
from rollmodel_shared.partners import hydrate_partner_outcomes
from rollmodel_shared.progress_store import recompute_progress_views
from rollmodel_shared.request_logging import with_request_logging
from rollmodel_shared.serialization import _now_z
from rollmodel_shared.session_review import list_recent_one_thing_cues
from rollmodel_shared.structured_extraction import extract_structured_metadata
from rollmodel_shared.techniques import sanitize_technique_mentions, upsert_technique_candidates

logger = logging.getLogger()

MAX_RECENT_ONE_THING_CUES = 20

# Fields a full update replaces; identity and timestamps are kept.
_EDITABLE_FIELDS = (
    "quickAdd",
    "structured",
    "tags",
    "sections",
    "sessionMetrics",
    "sessionContext",
    "templateId",
    "actionPackDraft",
    "actionPackFinal",
    "sessionReviewDraft",
    "sessionReviewFinal",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _compact(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in entry.items() if v is not None}


def _load_owned_entry(auth: AuthContext, entry_id: str) -> Dict[str, Any]:
    entry = load_entry(entry_id)
    if entry.get("athleteId") != auth.user_id:
        raise ApiError.forbidden("User does not have permission for this entry.")
    return entry


def _parse_recent_one_thing_limit(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        parsed = int(value)
    except ValueError:
        raise ApiError.invalid("recentOneThingLimit must be a positive integer.")
    if parsed <= 0:
        raise ApiError.invalid("recentOneThingLimit must be a positive integer.")
    return min(parsed, MAX_RECENT_ONE_THING_CUES)


def _keyword_delete_keys(entry: Dict[str, Any]) -> List[tuple]:
    shared, private_only = token_groups(entry)
    args = (entry["athleteId"], entry["createdAt"], entry["entryId"])
    keys = [keyword_key(args[0], t, args[1], args[2], "shared") for t in shared]
    keys += [keyword_key(args[0], t, args[1], args[2], "private") for t in private_only]
    return keys


def _reindex_action_pack(old_entry: Optional[Dict[str, Any]], new_entry: Dict[str, Any]) -> None:
    if old_entry is not None:
        store.batch_delete_keys(build_action_pack_delete_keys(old_entry))
    store.batch_write_items(build_action_pack_index_items(new_entry))


def _parse_structured_review(payload: Dict[str, Any]) -> Dict[str, Any]:
    structured = payload.get("structured")
    if structured is not None and not isinstance(structured, dict):
        raise ApiError.invalid("structured must be an object when provided.")
    overrides: Dict[str, str] = {}
    for field in STRUCTURED_FIELDS:
        value = (structured or {}).get(field)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ApiError.invalid(f"structured.{field} must be a string.")
        if value.strip():
            overrides[field] = value.strip()

    raw = payload.get("confirmations")
    if raw is not None and not isinstance(raw, list):
        raise ApiError.invalid("confirmations must be an array when provided.")
    confirmations = []
    for index, item in enumerate(raw or []):
        if not isinstance(item, dict):
            raise ApiError.invalid(f"confirmations[{index}] must be an object.")
        field = item.get("field").strip() if isinstance(item.get("field"), str) else ""
        if field not in CONFIRMABLE_FIELDS:
            raise ApiError.invalid(
                f"confirmations[{index}].field must be one of: position, technique, outcome, problem, cue."
            )
        status = item.get("status").strip() if isinstance(item.get("status"), str) else ""
        if status not in CONFIRMATION_STATUSES:
            raise ApiError.invalid(f"confirmations[{index}].status must be confirmed, corrected, or rejected.")
        correction = item.get("correctionValue").strip() if isinstance(item.get("correctionValue"), str) else ""
        if status == "corrected" and not correction:
            raise ApiError.invalid(
                f"confirmations[{index}].correctionValue is required when status is corrected."
            )
        confirmation = {"field": field, "status": status}
        if correction:
            confirmation["correctionValue"] = correction
        if isinstance(item.get("note"), str) and item["note"].strip():
            confirmation["note"] = item["note"].strip()
        confirmations.append(confirmation)

    return {"structured": overrides or None, "confirmations": confirmations}


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _handle_create(auth: AuthContext, event: Dict[str, Any]) -> Dict[str, Any]:
    require_role(auth, ["athlete"])
    payload = parse_entry_payload(event)
    now = _now_z()
    entry_id = str(uuid.uuid4())

    structured, extraction = extract_structured_metadata(payload, now=now, actor_role="athlete")
    entry = _compact({
        "entryId": entry_id,
        "athleteId": auth.user_id,
        "schemaVersion": CURRENT_ENTRY_SCHEMA_VERSION,
        "createdAt": now,
        "updatedAt": now,
        **{field: payload.get(field) for field in _EDITABLE_FIELDS},
        "structured": structured,
        "structuredExtraction": extraction,
        "partnerOutcomes": hydrate_partner_outcomes(auth.user_id, payload.get("partnerOutcomes")),
        "rawTechniqueMentions": sanitize_technique_mentions(payload.get("rawTechniqueMentions")),
        "mediaAttachments": sanitize_media_attachments(payload.get("mediaAttachments")),
    })

    store.put_item(entry_item(entry))
    store.batch_write_items(entry_keyword_items(entry))
    _reindex_action_pack(None, entry)
    upsert_technique_candidates(entry["rawTechniqueMentions"], entry_id, now)
    store.put_item(entry_meta_item(entry))
    recompute_progress_views(auth.user_id)

    logger.info("[INFO] created entry %s for %s", entry_id, auth.user_id)
    return _response(201, {"entry": entry})


def _handle_list(auth: AuthContext, event: Dict[str, Any], requested_athlete_id: Optional[str]) -> Dict[str, Any]:
    require_role(auth, ["athlete", "coach"])
    is_coach_request = bool(
        requested_athlete_id and requested_athlete_id != auth.user_id and has_role(auth, "coach")
    )
    if is_coach_request or not has_role(auth, "athlete"):
        athlete_id = requested_athlete_id
    else:
        athlete_id = auth.user_id
    if not athlete_id:
        raise ApiError.invalid("athleteId is required for coach requests.")
    if is_coach_request:
        ensure_coach_link(auth.user_id, athlete_id)

    params = _query_params(event)
    search_request = parse_entry_search_request(params)
    recent_limit = _parse_recent_one_thing_limit(params.get("recentOneThingLimit"))

    field = search_request.get("actionPackField")
    token = search_request.get("actionPackToken")
    uses_index = bool(field or token or search_request.get("actionPackMinConfidence"))
    if uses_index and not (field and token):
        raise ApiError.invalid("actionPackField and actionPackToken are required together.")

    if uses_index:
        entries = query_action_pack_entries(
            athlete_id, field, token, search_request.get("actionPackMinConfidence")
        )
    else:
        entries = list(reversed(list_athlete_entries(athlete_id)))

    searched = search_entries(entries, search_request)
    body: Dict[str, Any] = {
        "entries": [sanitize_entry_for_coach(e) for e in searched["entries"]] if is_coach_request else searched["entries"],
        "search": searched["meta"],
    }
    if recent_limit:
        body["recentOneThingCues"] = list_recent_one_thing_cues(entries, recent_limit)
    return _response(200, body)


def _handle_get(auth: AuthContext, entry_id: str) -> Dict[str, Any]:
    require_role(auth, ["athlete"])
    return _response(200, {"entry": _load_owned_entry(auth, entry_id)})


def _handle_update(auth: AuthContext, event: Dict[str, Any], entry_id: str) -> Dict[str, Any]:
    require_role(auth, ["athlete"])
    payload = parse_entry_payload(event)
    hydrated = hydrate_partner_outcomes(auth.user_id, payload.get("partnerOutcomes"))
    existing = _load_owned_entry(auth, entry_id)
    now = _now_z()

    updated = {k: v for k, v in existing.items() if k not in _EDITABLE_FIELDS}
    updated.update({field: payload.get(field) for field in _EDITABLE_FIELDS})
    updated.update({
        "schemaVersion": CURRENT_ENTRY_SCHEMA_VERSION,
        "partnerOutcomes": hydrated,
        "rawTechniqueMentions": sanitize_technique_mentions(payload.get("rawTechniqueMentions")),
        "mediaAttachments": sanitize_media_attachments(payload.get("mediaAttachments")),
        "updatedAt": now,
    })
    updated = _compact(updated)

    store.put_item(entry_item(updated))
    deletes, writes = keyword_index_diff(existing, updated)
    store.batch_delete_keys(deletes)
    store.batch_write_items(writes)
    _reindex_action_pack(existing, updated)
    upsert_technique_candidates(updated["rawTechniqueMentions"], entry_id, now)
    recompute_progress_views(auth.user_id)

    return _response(200, {"entry": updated})


def _handle_delete(auth: AuthContext, entry_id: str) -> Dict[str, Any]:
    require_role(auth, ["athlete"])
    entry = _load_owned_entry(auth, entry_id)

    removed_comments = delete_entry_comments(entry_id)
    store.batch_delete_keys(_keyword_delete_keys(entry))
    store.batch_delete_keys(build_action_pack_delete_keys(entry))

    evidence_mirrors = store.query_items(f"ENTRY#{entry_id}", "CHECKOFF_EVIDENCE#")
    store.batch_delete_keys((row["PK"], row["SK"]) for row in evidence_mirrors)

    store.delete_item(*entry_key(entry["athleteId"], entry["createdAt"], entry_id))
    store.delete_item(*entry_meta_key(entry_id))
    recompute_progress_views(auth.user_id)

    logger.info("[INFO] deleted entry %s (%d comments)", entry_id, removed_comments)
    return _no_content()


def _handle_structured_review(auth: AuthContext, event: Dict[str, Any], entry_id: str) -> Dict[str, Any]:
    require_role(auth, ["athlete", "coach"])
    review = _parse_structured_review(_require_json_object(event))
    existing = load_entry(entry_id)

    owner_id = existing["athleteId"]
    acting_as_coach = owner_id != auth.user_id
    if acting_as_coach:
        if not has_role(auth, "coach"):
            raise ApiError.forbidden("User does not have permission for this entry.")
        ensure_coach_link(auth.user_id, owner_id)

    now = _now_z()
    merged = {**(existing.get("structured") or {}), **(review["structured"] or {})}
    structured, extraction = extract_structured_metadata(
        {
            "quickAdd": existing.get("quickAdd"),
            "sections": existing.get("sections"),
            "rawTechniqueMentions": existing.get("rawTechniqueMentions"),
            "structured": merged,
            "structuredMetadataConfirmations": review["confirmations"],
        },
        now=now,
        actor_role="coach" if acting_as_coach else "athlete",
    )
    updated = _compact({
        **existing,
        "schemaVersion": CURRENT_ENTRY_SCHEMA_VERSION,
        "structured": structured,
        "structuredExtraction": extraction,
        "updatedAt": now,
    })

    store.put_item(entry_item(updated))
    deletes, writes = keyword_index_diff(existing, updated)
    store.batch_delete_keys(deletes)
    store.batch_write_items(writes)
    recompute_progress_views(owner_id)

    return _response(200, {"entry": sanitize_entry_for_coach(updated) if acting_as_coach else updated})


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_ENTRIES_PATTERN = re.compile(r"/entries$")
_ATHLETE_ENTRIES_PATTERN = re.compile(r"/athletes/(?P<athleteId>[^/]+)/entries$")
_ENTRY_PATTERN = re.compile(r"/entries/(?P<entryId>[^/]+)$")
_STRUCTURED_REVIEW_PATTERN = re.compile(r"/entries/(?P<entryId>[^/]+)/structured-review$")


@with_request_logging("entries_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        m = _ATHLETE_ENTRIES_PATTERN.search(path)
        if m:
            if method == "GET":
                return _handle_list(auth, event, m.group("athleteId"))
        elif _ENTRIES_PATTERN.search(path):
            if method == "POST":
                return _handle_create(auth, event)
            if method == "GET":
                return _handle_list(auth, event, None)

        m = _STRUCTURED_REVIEW_PATTERN.search(path)
        if m and method == "PUT":
            return _handle_structured_review(auth, event, m.group("entryId"))

        m = _ENTRY_PATTERN.search(path)
        if m and m.group("entryId") != "comments":
            entry_id = m.group("entryId")
            if method == "GET":
                return _handle_get(auth, entry_id)
            if method == "PUT":
                return _handle_update(auth, event, entry_id)
            if method == "DELETE":
                return _handle_delete(auth, entry_id)

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
