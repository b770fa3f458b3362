"""weekly_plans_api/lambda_function.py

Lambda API handler for weekly training plans.

Routes (via API Gateway proxy):
    POST /weekly-plans                                     — Build a plan for this or a given week (athlete)
    GET  /weekly-plans                                     — List own plans, newest week first (athlete)
    PUT  /weekly-plans/{planId}                            — Update status, menu items or notes (athlete)
    POST /athletes/{athleteId}/weekly-plans                — Build a plan for a linked athlete (coach)
    GET  /athletes/{athleteId}/weekly-plans                — List a linked athlete's plans (coach)
    PUT  /athletes/{athleteId}/weekly-plans/{planId}       — Review or update a linked athlete's plan (coach)
    OPTIONS /*                                             — CORS preflight

POST accepts an optional body ``{"weekOf": "YYYY-MM-DD"}``; the week is
normalized to its Monday.

Environment variables:
    TABLE_NAME             default: RollModel
    DYNAMODB_REGION        default: us-east-1
    CORS_ORIGIN            default: *
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from rollmodel_shared.auth import AuthContext, _authenticate, require_role
from rollmodel_shared.http_utils import (
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _optional_json_object,
    _path_method,
    _response,
)
from rollmodel_shared.progress_store import resolve_progress_access
from rollmodel_shared.request_logging import with_request_logging
from rollmodel_shared.serialization import _now_z
from rollmodel_shared.weekly_plans import (
    build_and_save_weekly_plan,
    list_weekly_plans,
    parse_build_plan_payload,
    parse_update_plan_payload,
    update_weekly_plan,
)

logger = logging.getLogger()

_ALLOWED_ROLES = ["athlete", "coach"]


def _target(auth: AuthContext, athlete_id: Optional[str]) -> str:
    require_role(auth, _ALLOWED_ROLES)
    target, _ = resolve_progress_access(auth, athlete_id)
    return target


def _handle_build(auth: AuthContext, event: Dict[str, Any], athlete_id: Optional[str]) -> Dict:
    target = _target(auth, athlete_id)
    payload = parse_build_plan_payload(_optional_json_object(event))
    plan = build_and_save_weekly_plan(target, payload.get("weekOf"), _now_z())
    return _response(201, {"plan": plan})


def _handle_list(auth: AuthContext, athlete_id: Optional[str]) -> Dict:
    target = _target(auth, athlete_id)
    return _response(200, {"plans": list_weekly_plans(target)})


def _handle_update(auth: AuthContext, event: Dict[str, Any], athlete_id: Optional[str], plan_id: str) -> Dict:
    target = _target(auth, athlete_id)
    update = parse_update_plan_payload(_optional_json_object(event))
    plan = update_weekly_plan(target, plan_id, update, auth.user_id, _now_z())
    return _response(200, {"plan": plan})


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_COLLECTION_PATTERN = re.compile(r"(?:/athletes/(?P<athleteId>[^/]+))?/weekly-plans$")
_PLAN_PATTERN = re.compile(r"(?:/athletes/(?P<athleteId>[^/]+))?/weekly-plans/(?P<planId>[^/]+)$")


@with_request_logging("weekly_plans_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        m = _COLLECTION_PATTERN.search(path)
        if m:
            if method == "POST":
                return _handle_build(auth, event, m.group("athleteId"))
            if method == "GET":
                return _handle_list(auth, m.group("athleteId"))

        m = _PLAN_PATTERN.search(path)
        if m and method == "PUT":
            return _handle_update(auth, event, m.group("athleteId"), m.group("planId"))

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
