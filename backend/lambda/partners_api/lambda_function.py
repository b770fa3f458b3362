"""partners_api/lambda_function.py

Lambda API handler for training partner profiles.

Routes (via API Gateway proxy):
    GET    /partners                                   — List own partners (athlete)
    POST   /partners                                   — Create partner (athlete)
    GET    /partners/{partnerId}                       — Get partner (athlete)
    PUT    /partners/{partnerId}                       — Replace partner (athlete)
    DELETE /partners/{partnerId}                       — Delete partner (athlete)
    GET    /athletes/{athleteId}/partners              — Shared partners of a linked athlete (coach)
    GET    /athletes/{athleteId}/partners/{partnerId}  — Shared partner of a linked athlete (coach)
    PUT    /athletes/{athleteId}/partners/{partnerId}  — Update guidance only (coach)
    OPTIONS /*                                         — CORS preflight

Coaches only ever see profiles whose visibility is `shared-with-coach`.

Environment variables:
    TABLE_NAME             default: RollModel
    DYNAMODB_REGION        default: us-east-1
    CORS_ORIGIN            default: *
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Tuple

from rollmodel_shared.auth import AuthContext, _authenticate, has_role, require_role
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
from rollmodel_shared.partners import (
    create_partner,
    delete_partner,
    get_partner,
    list_partners,
    parse_coach_patch,
    parse_partner_payload,
    update_partner,
    update_partner_guidance,
)
from rollmodel_shared.request_logging import with_request_logging

logger = logging.getLogger()


def _resolve(auth: AuthContext, requested_athlete_id: Optional[str]) -> Tuple[str, bool]:
    """Return ``(athleteId, coachMode)`` after checking the coach link."""
    require_role(auth, ["athlete", "coach"])
    coach_mode = bool(requested_athlete_id and requested_athlete_id != auth.user_id and has_role(auth, "coach"))
    athlete_id = requested_athlete_id or auth.user_id
    if coach_mode:
        ensure_coach_link(auth.user_id, athlete_id)
    elif athlete_id != auth.user_id:
        raise ApiError.forbidden("User does not have permission for this action.")
    return athlete_id, coach_mode


def _handle_list(auth: AuthContext, requested_athlete_id: Optional[str]) -> Dict:
    athlete_id, coach_mode = _resolve(auth, requested_athlete_id)
    return _response(200, {"partners": list_partners(athlete_id, shared_only=coach_mode)})


def _handle_create(auth: AuthContext, event: Dict[str, Any]) -> Dict:
    require_role(auth, ["athlete"])
    payload = parse_partner_payload(_require_json_object(event))
    return _response(201, {"partner": create_partner(auth.user_id, payload)})


def _handle_get(auth: AuthContext, requested_athlete_id: Optional[str], partner_id: str) -> Dict:
    athlete_id, coach_mode = _resolve(auth, requested_athlete_id)
    partner = get_partner(athlete_id, partner_id)
    if partner is None or (coach_mode and partner.get("visibility") != "shared-with-coach"):
        raise ApiError.not_found("Partner not found.")
    return _response(200, {"partner": partner})


def _handle_update(auth: AuthContext, event: Dict[str, Any], requested_athlete_id: Optional[str], partner_id: str) -> Dict:
    athlete_id, coach_mode = _resolve(auth, requested_athlete_id)
    existing = get_partner(athlete_id, partner_id)
    if existing is None:
        raise ApiError.not_found("Partner not found.")

    if coach_mode:
        if existing.get("visibility") != "shared-with-coach":
            raise ApiError.forbidden("Partner profile is private.")
        guidance = parse_coach_patch(_require_json_object(event))
        return _response(200, {"partner": update_partner_guidance(existing, guidance)})

    require_role(auth, ["athlete"])
    payload = parse_partner_payload(_require_json_object(event))
    return _response(200, {"partner": update_partner(existing, payload)})


def _handle_delete(auth: AuthContext, partner_id: str) -> Dict:
    require_role(auth, ["athlete"])
    if get_partner(auth.user_id, partner_id) is None:
        raise ApiError.not_found("Partner not found.")
    delete_partner(auth.user_id, partner_id)
    return _no_content()


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_COLLECTION_PATTERN = re.compile(r"(?:/athletes/(?P<athleteId>[^/]+))?/partners$")
_ITEM_PATTERN = re.compile(r"(?:/athletes/(?P<athleteId>[^/]+))?/partners/(?P<partnerId>[^/]+)$")


@with_request_logging("partners_api")
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
            if method == "GET":
                return _handle_list(auth, m.group("athleteId"))
            if method == "POST" and not m.group("athleteId"):
                return _handle_create(auth, event)

        m = _ITEM_PATTERN.search(path)
        if m:
            athlete_id, partner_id = m.group("athleteId"), m.group("partnerId")
            if method == "GET":
                return _handle_get(auth, athlete_id, partner_id)
            if method == "PUT":
                return _handle_update(auth, event, athlete_id, partner_id)
            if method == "DELETE" and not athlete_id:
                return _handle_delete(auth, partner_id)

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
