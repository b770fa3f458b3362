"""checkoffs_api/lambda_function.py

Lambda API handler for skill checkoffs and the entry evidence behind them.

Routes (via API Gateway proxy):
    GET  /checkoffs                                        — List own checkoffs with evidence (athlete)
    GET  /athletes/{athleteId}/checkoffs                   — List a linked athlete's checkoffs (coach)
    POST /entries/{entryId}/checkoff-evidence              — Record evidence from an entry (owner)
    GET  /entries/{entryId}/checkoff-evidence              — Evidence recorded from an entry (owner)
    PUT  /checkoffs/{checkoffId}/review                    — Review evidence / change status (owner, or coach with ?athleteId=)
    PUT  /athletes/{athleteId}/checkoffs/{checkoffId}/review — Review a linked athlete's checkoff (coach)
    OPTIONS /*                                             — CORS preflight

`checkoffId` is `{skillId}::{evidenceType}` and may arrive URL-encoded.
Evidence is either listed explicitly or derived from the entry's action pack
for a set of `skillIds`.

Environment variables:
    TABLE_NAME             default: RollModel
    DYNAMODB_REGION        default: us-east-1
    CORS_ORIGIN            default: *
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import unquote

from rollmodel_shared.auth import AuthContext, _authenticate, has_role, require_role
from rollmodel_shared.checkoffs import (
    derive_evidence_from_action_pack,
    list_checkoffs,
    list_entry_evidence,
    parse_review_payload,
    parse_upsert_evidence_payload,
    record_evidence,
    review_checkoff,
)
from rollmodel_shared.entries import load_entry
from rollmodel_shared.http_utils import (
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
    _query_params,
    _response,
)
from rollmodel_shared.links import ensure_coach_link
from rollmodel_shared.progress_store import recompute_progress_views
from rollmodel_shared.request_logging import with_request_logging
from rollmodel_shared.serialization import _now_z

logger = logging.getLogger()


def _load_owned_entry(auth: AuthContext, entry_id: str) -> Dict[str, Any]:
    entry = load_entry(entry_id)
    if entry["athleteId"] != auth.user_id:
        raise ApiError.forbidden("User does not have permission for this entry.")
    return entry


def _entry_action_pack(entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    final = entry.get("actionPackFinal")
    if isinstance(final, dict) and isinstance(final.get("actionPack"), dict):
        return final["actionPack"]
    draft = entry.get("actionPackDraft")
    return draft if isinstance(draft, dict) else None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _handle_list(auth: AuthContext, requested_athlete_id: Optional[str]) -> Dict:
    require_role(auth, ["athlete", "coach"])
    coach_mode = bool(requested_athlete_id and requested_athlete_id != auth.user_id and has_role(auth, "coach"))
    athlete_id = requested_athlete_id or auth.user_id
    if coach_mode:
        ensure_coach_link(auth.user_id, athlete_id)
    elif athlete_id != auth.user_id:
        raise ApiError.forbidden("User does not have permission for this action.")
    return _response(200, {"checkoffs": list_checkoffs(athlete_id)})


def _handle_upsert_evidence(auth: AuthContext, event: Dict[str, Any], entry_id: str) -> Dict:
    require_role(auth, ["athlete"])
    payload = parse_upsert_evidence_payload(event)
    entry = _load_owned_entry(auth, entry_id)

    inputs = payload.get("evidence")
    if inputs is None:
        action_pack = _entry_action_pack(entry)
        if action_pack is None:
            raise ApiError.invalid("Entry has no action pack to derive evidence from.")
        inputs = derive_evidence_from_action_pack(action_pack, payload["skillIds"])

    result = record_evidence(auth.user_id, entry_id, inputs, _now_z())
    recompute_progress_views(auth.user_id)
    logger.info("[INFO] recorded %d evidence items from entry %s", len(result["evidence"]), entry_id)
    return _response(200, result)


def _handle_get_evidence(auth: AuthContext, entry_id: str) -> Dict:
    require_role(auth, ["athlete"])
    _load_owned_entry(auth, entry_id)
    return _response(200, {"evidence": list_entry_evidence(entry_id, auth.user_id)})


def _handle_review(auth: AuthContext, event: Dict[str, Any], checkoff_id: str, athlete_id: Optional[str]) -> Dict:
    require_role(auth, ["athlete", "coach"])
    review = parse_review_payload(event)
    target_athlete_id = athlete_id or auth.user_id

    coach_mode = target_athlete_id != auth.user_id
    if coach_mode:
        if not has_role(auth, "coach"):
            raise ApiError.forbidden("User does not have permission for this action.")
        ensure_coach_link(auth.user_id, target_athlete_id)

    result = review_checkoff(
        target_athlete_id,
        checkoff_id,
        review,
        _now_z(),
        reviewed_by=auth.user_id if coach_mode else None,
    )
    recompute_progress_views(target_athlete_id)
    return _response(200, result)


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_CHECKOFFS_PATTERN = re.compile(r"/checkoffs$")
_ATHLETE_CHECKOFFS_PATTERN = re.compile(r"/athletes/(?P<athleteId>[^/]+)/checkoffs$")
_EVIDENCE_PATTERN = re.compile(r"/entries/(?P<entryId>[^/]+)/checkoff-evidence$")
_REVIEW_PATTERN = re.compile(r"/checkoffs/(?P<checkoffId>[^/]+)/review$")
_ATHLETE_REVIEW_PATTERN = re.compile(r"/athletes/(?P<athleteId>[^/]+)/checkoffs/(?P<checkoffId>[^/]+)/review$")


@with_request_logging("checkoffs_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        m = _ATHLETE_REVIEW_PATTERN.search(path)
        if m and method == "PUT":
            return _handle_review(auth, event, unquote(m.group("checkoffId")), m.group("athleteId"))

        m = _REVIEW_PATTERN.search(path)
        if m and method == "PUT":
            athlete_id = _query_params(event).get("athleteId") or None
            return _handle_review(auth, event, unquote(m.group("checkoffId")), athlete_id)

        m = _ATHLETE_CHECKOFFS_PATTERN.search(path)
        if m and method == "GET":
            return _handle_list(auth, m.group("athleteId"))

        if _CHECKOFFS_PATTERN.search(path) and method == "GET":
            return _handle_list(auth, None)

        m = _EVIDENCE_PATTERN.search(path)
        if m:
            if method == "POST":
                return _handle_upsert_evidence(auth, event, m.group("entryId"))
            if method == "GET":
                return _handle_get_evidence(auth, m.group("entryId"))

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
