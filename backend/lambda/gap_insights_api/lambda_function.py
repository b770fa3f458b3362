"""gap_insights_api/lambda_function.py

Lambda API handler for training gap insights and gap priorities.

Routes (via API Gateway proxy):
    GET /gap-insights                                    — Own gap report (athlete)
    GET /athletes/{athleteId}/gap-insights               — Linked athlete's gap report (coach)
    PUT /gap-insights/priorities                         — Accept, watch or dismiss gaps (athlete)
    PUT /athletes/{athleteId}/gap-insights/priorities    — Same, for a linked athlete (coach)
    OPTIONS /*                                           — CORS preflight

Report thresholds come from the query string: staleDays, lookbackDays,
repeatFailureWindowDays, repeatFailureMinCount and topN.

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
from rollmodel_shared.gap_insights import (
    build_gap_insights_report,
    list_gap_priorities,
    parse_gap_priorities_payload,
    parse_gap_thresholds,
    save_gap_priorities,
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
from rollmodel_shared.progress_store import list_progress_signals, resolve_progress_access
from rollmodel_shared.request_logging import with_request_logging

logger = logging.getLogger()

_ALLOWED_ROLES = ["athlete", "coach"]


def _handle_report(auth: AuthContext, event: Dict[str, Any], athlete_id: Optional[str]) -> Dict:
    require_role(auth, _ALLOWED_ROLES)
    target, _ = resolve_progress_access(auth, athlete_id)
    thresholds = parse_gap_thresholds(_query_params(event))
    signals = list_progress_signals(target)
    report = build_gap_insights_report(
        target,
        signals["entries"],
        signals["checkoffs"],
        signals["evidence"],
        list_gap_priorities(target),
        thresholds,
    )
    logger.info("[INFO] gap insights athlete=%s gaps=%d", target, report["summary"]["totalGaps"])
    return _response(200, {"report": report})


def _handle_priorities(auth: AuthContext, event: Dict[str, Any], athlete_id: Optional[str]) -> Dict:
    require_role(auth, _ALLOWED_ROLES)
    target, acting_as_coach = resolve_progress_access(auth, athlete_id)
    priorities = parse_gap_priorities_payload(_require_json_object(event))
    saved = save_gap_priorities(target, priorities, auth.user_id, "coach" if acting_as_coach else "athlete")
    return _response(200, {"saved": saved})


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_REPORT_PATTERN = re.compile(r"(?:/athletes/(?P<athleteId>[^/]+))?/gap-insights$")
_PRIORITIES_PATTERN = re.compile(r"(?:/athletes/(?P<athleteId>[^/]+))?/gap-insights/priorities$")


@with_request_logging("gap_insights_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        m = _REPORT_PATTERN.search(path)
        if m and method == "GET":
            return _handle_report(auth, event, m.group("athleteId"))

        m = _PRIORITIES_PATTERN.search(path)
        if m and method == "PUT":
            return _handle_priorities(auth, event, m.group("athleteId"))

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
