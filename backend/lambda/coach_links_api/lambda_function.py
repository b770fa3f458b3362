"""coach_links_api/lambda_function.py

Lambda API handler for athlete-to-coach links.

Routes (via API Gateway proxy):
    POST   /links/coach   — Link a coach (athlete), body {"coachId": "..."}
    DELETE /links/coach   — Revoke a coach link (athlete), body {"coachId": "..."}
    OPTIONS /*            — CORS preflight

A revoked link is kept with status `revoked`; linking again reactivates it.

Environment variables:
    TABLE_NAME             default: RollModel
    DYNAMODB_REGION        default: us-east-1
    CORS_ORIGIN            default: *
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict

from rollmodel_shared.auth import _authenticate, require_role
from rollmodel_shared.http_utils import (
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
    _require_json_object,
    _response,
)
from rollmodel_shared.links import link_coach, revoke_coach_link
from rollmodel_shared.request_logging import with_request_logging
from rollmodel_shared.serialization import _now_z

logger = logging.getLogger()

_LINK_PATTERN = re.compile(r"/links/coach$")


def _coach_id(event: Dict[str, Any]) -> str:
    coach_id = _require_json_object(event).get("coachId")
    if not isinstance(coach_id, str) or not coach_id.strip():
        raise ApiError.invalid("coachId is required.")
    return coach_id.strip()


@with_request_logging("coach_links_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        if _LINK_PATTERN.search(path):
            if method == "POST":
                require_role(auth, ["athlete"])
                link = link_coach(auth.user_id, _coach_id(event), _now_z())
                logger.info("[INFO] athlete %s linked coach %s", auth.user_id, link["coachId"])
                return _response(201, {"linked": True, "athleteId": auth.user_id, "coachId": link["coachId"]})
            if method == "DELETE":
                require_role(auth, ["athlete"])
                link = revoke_coach_link(auth.user_id, _coach_id(event), _now_z())
                return _response(200, {
                    "revoked": True,
                    "athleteId": auth.user_id,
                    "coachId": link["coachId"],
                    "status": "revoked",
                })

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
