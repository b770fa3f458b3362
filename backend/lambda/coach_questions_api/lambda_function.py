"""coach_questions_api/lambda_function.py

Lambda API handler for coach-ready question sets.

Routes (via API Gateway proxy):
    GET /coach-questions                                 — Latest set, generated on first use (athlete)
    GET /athletes/{athleteId}/coach-questions            — Latest set for a linked athlete (coach)
    PUT /coach-questions/{questionSetId}                 — Athlete responses or coach edits and note
    OPTIONS /*                                           — CORS preflight

``?regenerate=true`` (or ``1``) on GET builds a fresh set. Only coaches may
send ``questionEdits`` or ``coachNote``.

Environment variables:
    TABLE_NAME                   default: RollModel
    DYNAMODB_REGION              default: us-east-1
    CORS_ORIGIN                  default: *
    OPENAI_API_KEY_PARAMETER     default: /roll-model/openai_api_key
    OPENAI_MODEL                 default: gpt-4.1-mini
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from rollmodel_shared.auth import AuthContext, _authenticate, has_role, require_role
from rollmodel_shared.coach_questions import (
    LOW_QUALITY_SCORE,
    apply_question_set_update,
    get_or_generate_question_set,
    is_coach_edit,
    load_question_set,
    parse_question_set_update,
    parse_regenerate_flag,
    save_question_set,
)
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
from rollmodel_shared.links import ensure_coach_link
from rollmodel_shared.progress_store import resolve_progress_access
from rollmodel_shared.request_logging import with_request_logging
from rollmodel_shared.serialization import _now_z

logger = logging.getLogger()

_ALLOWED_ROLES = ["athlete", "coach"]


def _handle_get(auth: AuthContext, event: Dict[str, Any], athlete_id: Optional[str]) -> Dict:
    require_role(auth, _ALLOWED_ROLES)
    target, acting_as_coach = resolve_progress_access(auth, athlete_id)
    question_set, outcome = get_or_generate_question_set(
        target,
        parse_regenerate_flag(_query_params(event)),
        auth.user_id,
        "coach" if acting_as_coach else "athlete",
        _now_z(),
    )
    return _response(201 if outcome == "created" else 200, {
        "questionSet": question_set,
        "generation": {
            "regenerated": outcome == "regenerated",
            "confidenceLow": question_set["qualitySummary"]["minScore"] < LOW_QUALITY_SCORE,
        },
    })


def _handle_update(auth: AuthContext, event: Dict[str, Any], question_set_id: str) -> Dict:
    require_role(auth, _ALLOWED_ROLES)
    update = parse_question_set_update(_require_json_object(event))
    question_set = load_question_set(question_set_id)

    athlete_id = question_set["athleteId"]
    if athlete_id != auth.user_id:
        if not has_role(auth, "coach"):
            raise ApiError.forbidden("User does not have permission for this athlete.")
        ensure_coach_link(auth.user_id, athlete_id)
    if is_coach_edit(update) and not has_role(auth, "coach"):
        raise ApiError.forbidden("Only coaches can edit generated questions.")

    updated = apply_question_set_update(question_set, update, auth.user_id, _now_z())
    save_question_set(updated)
    logger.info("[INFO] coach questions updated set=%s by=%s", question_set_id, auth.user_id)
    return _response(200, {"questionSet": updated})


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_LATEST_PATTERN = re.compile(r"(?:/athletes/(?P<athleteId>[^/]+))?/coach-questions$")
_SET_PATTERN = re.compile(r"/coach-questions/(?P<questionSetId>[^/]+)$")


@with_request_logging("coach_questions_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        m = _LATEST_PATTERN.search(path)
        if m and method == "GET":
            return _handle_get(auth, event, m.group("athleteId"))

        m = _SET_PATTERN.search(path)
        if m and method == "PUT":
            return _handle_update(auth, event, m.group("questionSetId"))

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
