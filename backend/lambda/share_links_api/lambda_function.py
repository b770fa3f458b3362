"""share_links_api/lambda_function.py

Lambda API handler for read-only coach share links.

Routes (via API Gateway proxy):
    POST   /share-links              — Publish a share link (athlete)
    GET    /share-links              — List own share links (athlete)
    DELETE /share-links/{shareId}    — Revoke a share link (athlete)
    GET    /shared/{token}           — Open a shared summary (public, no auth)
    OPTIONS /*                       — CORS preflight

The plaintext token is only returned by POST. Revoked or expired links
answer 410 with SHARE_REVOKED or SHARE_EXPIRED.

Environment variables:
    TABLE_NAME                  default: RollModel
    DYNAMODB_REGION             default: us-east-1
    CORS_ORIGIN                 default: *
    SHARE_TOKEN_SALT            default: (empty)
    SHARE_BASE_URL              default: https://share.invalid
    SHARE_REQUIRE_COACH_REVIEW  default: false
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from rollmodel_shared import config
from rollmodel_shared.auth import AuthContext, _authenticate, require_role
from rollmodel_shared.entries import list_athlete_entries
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
from rollmodel_shared.serialization import _now_z
from rollmodel_shared.sharing import (
    create_share_link,
    list_share_links,
    open_shared_summary,
    parse_create_share_request,
    public_share,
    revoke_share_link,
    share_url,
)

logger = logging.getLogger()


def _source_ip(event: Dict[str, Any]) -> Optional[str]:
    rc = event.get("requestContext") or {}
    return (rc.get("http") or {}).get("sourceIp") or (rc.get("identity") or {}).get("sourceIp")


def _handle_create(auth: AuthContext, event: Dict[str, Any]) -> Dict:
    require_role(auth, ["athlete"])
    now = _now_z()
    request = parse_create_share_request(
        _require_json_object(event), now, enforce_coach_review=config.SHARE_REQUIRE_COACH_REVIEW
    )
    coach_id = request["policy"].get("coachId")
    if coach_id:
        ensure_coach_link(coach_id, auth.user_id)

    share, token = create_share_link(auth.user_id, request, list_athlete_entries(auth.user_id), now)
    logger.info("[INFO] athlete %s published share %s", auth.user_id, share["shareId"])
    return _response(201, {"share": public_share(share), "token": token, "shareUrl": share_url(token)})


def _handle_list(auth: AuthContext) -> Dict:
    require_role(auth, ["athlete"])
    return _response(200, {"shares": list_share_links(auth.user_id, _now_z())})


def _handle_revoke(auth: AuthContext, share_id: str) -> Dict:
    require_role(auth, ["athlete"])
    return _response(200, revoke_share_link(auth.user_id, share_id, _now_z()))


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_SHARED_PATTERN = re.compile(r"/shared/(?P<token>[^/]+)$")
_LINKS_PATTERN = re.compile(r"/share-links(?:/(?P<shareId>[^/]+))?$")


@with_request_logging("share_links_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    try:
        m = _SHARED_PATTERN.search(path)
        if m and method == "GET":
            return _response(200, open_shared_summary(m.group("token"), _now_z(), _source_ip(event)))
    except ApiError as exc:
        return _error_from_exception(exc)

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        m = _LINKS_PATTERN.search(path)
        if m:
            share_id = m.group("shareId")
            if method == "POST" and not share_id:
                return _handle_create(auth, event)
            if method == "GET" and not share_id:
                return _handle_list(auth)
            if method == "DELETE" and share_id:
                return _handle_revoke(auth, share_id)

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
