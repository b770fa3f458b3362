"""progress_api/lambda_function.py

Lambda API handler for progress views and coach annotations.

Routes (via API Gateway proxy):
    GET  /progress-views                                               — Own report (athlete)
    GET  /athletes/{athleteId}/progress-views                          — Linked athlete's report (coach/admin)
    POST /progress-views/annotations                                   — Create annotation
    PUT  /progress-views/annotations/{annotationId}                    — Create or replace annotation
    POST /athletes/{athleteId}/progress-views/annotations              — Create annotation for athlete (coach/admin)
    PUT  /athletes/{athleteId}/progress-views/annotations/{annotationId} — Replace annotation for athlete (coach/admin)
    OPTIONS /*                                                         — CORS preflight

Every read recomputes the report with the requested filters and stores it
as the athlete's latest report. Annotation writes return 201 when the
annotation is new and 200 when it replaced an existing one.

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
    _path_method,
    _query_params,
    _require_json_object,
    _response,
)
from rollmodel_shared.progress_store import recompute_progress_views, resolve_progress_access, upsert_annotation
from rollmodel_shared.progress_views import parse_annotation_payload, parse_progress_filters
from rollmodel_shared.request_logging import with_request_logging

logger = logging.getLogger()

_ALLOWED_ROLES = ["athlete", "coach", "admin"]


def _handle_get(auth: AuthContext, event: Dict[str, Any], athlete_id: Optional[str]) -> Dict:
    require_role(auth, _ALLOWED_ROLES)
    target, _ = resolve_progress_access(auth, athlete_id)
    filters = parse_progress_filters(_query_params(event))
    return _response(200, {"report": recompute_progress_views(target, filters)})


def _handle_annotation(
    auth: AuthContext,
    event: Dict[str, Any],
    athlete_id: Optional[str],
    annotation_id: Optional[str],
) -> Dict:
    require_role(auth, _ALLOWED_ROLES)
    target, _ = resolve_progress_access(auth, athlete_id)
    payload = parse_annotation_payload(_require_json_object(event))
    annotation, created = upsert_annotation(target, annotation_id, payload, auth.user_id)
    return _response(201 if created else 200, {"annotation": annotation})


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_VIEWS_PATTERN = re.compile(r"(?:/athletes/(?P<athleteId>[^/]+))?/progress-views$")
_ANNOTATIONS_PATTERN = re.compile(
    r"(?:/athletes/(?P<athleteId>[^/]+))?/progress-views/annotations(?:/(?P<annotationId>[^/]+))?$"
)


@with_request_logging("progress_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        m = _VIEWS_PATTERN.search(path)
        if m and method == "GET":
            return _handle_get(auth, event, m.group("athleteId"))

        m = _ANNOTATIONS_PATTERN.search(path)
        if m:
            if method == "POST" and not m.group("annotationId"):
                return _handle_annotation(auth, event, m.group("athleteId"), None)
            if method == "PUT" and m.group("annotationId"):
                return _handle_annotation(auth, event, m.group("athleteId"), m.group("annotationId"))

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
