"""comments_api/lambda_function.py

Lambda API handler for coach comments on entries and checkoffs.

Routes (via API Gateway proxy):
    POST /entries/comments                     — Post comment, target in body (coach)
    POST /entries/{entryId}/comments           — Post comment on an entry (coach)
    POST /checkoffs/{checkoffId}/comments      — Post comment on a checkoff (coach)
    GET  /entries/{entryId}/comments           — List entry comments (owner or linked coach)
    GET  /checkoffs/{checkoffId}/comments      — List checkoff comments (owner or linked coach)
    PUT  /comments/{commentId}                 — Edit comment (authoring coach)
    OPTIONS /*                                 — CORS preflight

The owning athlete only sees comments whose visibility is `visible`; a
linked coach sees every comment on the target.

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
from rollmodel_shared.comments import (
    create_comment,
    list_comments,
    load_comment_meta,
    parse_comment_payload,
    parse_comment_update,
    resolve_target,
    target_athlete_id,
    update_comment,
)
from rollmodel_shared.http_utils import (
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
    _require_json_object,
    _response,
)
from rollmodel_shared.links import ensure_coach_link
from rollmodel_shared.request_logging import with_request_logging

logger = logging.getLogger()


def _handle_post(auth: AuthContext, event: Dict[str, Any], entry_id: Optional[str], checkoff_id: Optional[str]) -> Dict:
    require_role(auth, ["coach"])
    payload = parse_comment_payload(_require_json_object(event))
    target_type, target_id = resolve_target(
        entry_id,
        checkoff_id,
        body_entry_id=payload.get("entryId") if isinstance(payload.get("entryId"), str) else None,
        body_checkoff_id=payload.get("checkoffId") if isinstance(payload.get("checkoffId"), str) else None,
    )
    athlete_id = target_athlete_id(target_type, target_id)
    ensure_coach_link(auth.user_id, athlete_id)

    comment = create_comment(auth.user_id, athlete_id, target_type, target_id, payload)
    logger.info("[INFO] comment %s posted on %s %s", comment["commentId"], target_type, target_id)
    return _response(201, {"comment": comment})


def _handle_list(auth: AuthContext, target_type: str, target_id: str) -> Dict:
    require_role(auth, ["athlete", "coach"])
    athlete_id = target_athlete_id(target_type, target_id)

    athlete_mode = has_role(auth, "athlete") and auth.user_id == athlete_id
    coach_mode = has_role(auth, "coach") and auth.user_id != athlete_id
    if not athlete_mode and not coach_mode:
        raise ApiError.forbidden("User does not have permission for this action.")
    if coach_mode:
        ensure_coach_link(auth.user_id, athlete_id)

    comments = list_comments(target_type, target_id, visible_only=athlete_mode)
    return _response(200, {"comments": comments, "readOnly": athlete_mode})


def _handle_update(auth: AuthContext, event: Dict[str, Any], comment_id: str) -> Dict:
    require_role(auth, ["coach"])
    payload = parse_comment_update(_require_json_object(event))
    meta = load_comment_meta(comment_id)
    ensure_coach_link(auth.user_id, meta["athleteId"])
    return _response(200, {"comment": update_comment(meta, auth.user_id, payload)})


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_BODY_TARGET_PATTERN = re.compile(r"/entries/comments$")
_ENTRY_COMMENTS_PATTERN = re.compile(r"/entries/(?P<entryId>[^/]+)/comments$")
_CHECKOFF_COMMENTS_PATTERN = re.compile(r"/checkoffs/(?P<checkoffId>[^/]+)/comments$")
_COMMENT_PATTERN = re.compile(r"/comments/(?P<commentId>[^/]+)$")


@with_request_logging("comments_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        if _BODY_TARGET_PATTERN.search(path) and method == "POST":
            return _handle_post(auth, event, None, None)

        m = _ENTRY_COMMENTS_PATTERN.search(path)
        if m:
            entry_id = unquote(m.group("entryId"))
            if method == "POST":
                return _handle_post(auth, event, entry_id, None)
            if method == "GET":
                return _handle_list(auth, "entry", entry_id)

        m = _CHECKOFF_COMMENTS_PATTERN.search(path)
        if m:
            checkoff_id = unquote(m.group("checkoffId"))
            if method == "POST":
                return _handle_post(auth, event, None, checkoff_id)
            if method == "GET":
                return _handle_list(auth, "checkoff", checkoff_id)

        m = _COMMENT_PATTERN.search(path)
        if m and method == "PUT":
            return _handle_update(auth, event, m.group("commentId"))

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
