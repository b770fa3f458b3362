"""rollmodel_shared.partners — Training partner profiles.

Item layout: PK = USER#{athleteId}, SK = PARTNER#{partnerId},
entityType PARTNER_PROFILE. Profiles marked ``shared-with-coach`` are
visible to linked coaches, who may only edit the guidance block.
"""

from __future__ import annotations

import re
import uuid
from typing import Any, Dict, List, Optional

from rollmodel_shared import store
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.serialization import _now_z

PARTNER_PREFIX = "PARTNER#"
VISIBILITY_VALUES = ("private", "shared-with-coach")

_TAG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_tag_list(value: Any, field_path: str) -> List[str]:
    if not isinstance(value, list) or any(not isinstance(t, str) for t in value):
        raise ApiError.invalid(f"{field_path} must be an array of strings.")
    tags: List[str] = []
    for tag in value:
        normalized = tag.strip().lower()
        if not normalized or not _TAG_RE.match(normalized):
            raise ApiError.invalid(f'{field_path} contains invalid tag "{tag}". Use lowercase kebab-case tags.')
        if normalized not in tags:
            tags.append(normalized)
    return tags


def _parse_coach_review(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ApiError.invalid("guidance.coachReview must be an object.")
    if "requiresReview" in value and not isinstance(value["requiresReview"], bool):
        raise ApiError.invalid("guidance.coachReview.requiresReview must be a boolean.")
    for key in ("coachNotes", "reviewedAt"):
        if key in value and not isinstance(value[key], str):
            raise ApiError.invalid(f"guidance.coachReview.{key} must be a string.")

    review: Dict[str, Any] = {"requiresReview": bool(value.get("requiresReview"))}
    for key in ("coachNotes", "reviewedAt"):
        if _clean(value.get(key)):
            review[key] = _clean(value[key])
    return review


def parse_guidance(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ApiError.invalid("guidance must be an object.")
    for key in ("draft", "final"):
        if key in value and not isinstance(value[key], str):
            raise ApiError.invalid(f"guidance.{key} must be a string.")

    guidance: Dict[str, Any] = {k: _clean(value.get(k)) for k in ("draft", "final") if _clean(value.get(k))}
    if "coachReview" in value:
        guidance["coachReview"] = _parse_coach_review(value["coachReview"])
    return guidance or None


def parse_partner_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    display_name = payload.get("displayName")
    if not isinstance(display_name, str) or not display_name.strip():
        raise ApiError.invalid("displayName is required.")
    visibility = payload.get("visibility", "private")
    if visibility not in VISIBILITY_VALUES:
        raise ApiError.invalid("visibility must be one of: private, shared-with-coach.")

    parsed: Dict[str, Any] = {
        "displayName": display_name.strip(),
        "styleTags": normalize_tag_list(payload.get("styleTags"), "styleTags"),
        "visibility": visibility,
    }
    if _clean(payload.get("notes")):
        parsed["notes"] = _clean(payload["notes"])
    guidance = parse_guidance(payload.get("guidance"))
    if guidance:
        parsed["guidance"] = guidance
    return parsed


def parse_coach_patch(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if "guidance" not in payload:
        raise ApiError.invalid("Coach updates only support the guidance field.")
    return parse_guidance(payload["guidance"])


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

def _key(athlete_id: str, partner_id: str) -> tuple:
    return f"USER#{athlete_id}", f"{PARTNER_PREFIX}{partner_id}"


def list_partners(athlete_id: str, shared_only: bool = False) -> List[Dict[str, Any]]:
    rows = store.query_items(f"USER#{athlete_id}", PARTNER_PREFIX, scan_forward=False)
    partners = [store.strip_keys(r) for r in rows if r.get("entityType") == "PARTNER_PROFILE"]
    if shared_only:
        partners = [p for p in partners if p.get("visibility") == "shared-with-coach"]
    return partners


def get_partner(athlete_id: str, partner_id: str) -> Optional[Dict[str, Any]]:
    item = store.get_item(*_key(athlete_id, partner_id))
    if not item or item.get("entityType") != "PARTNER_PROFILE":
        return None
    return store.strip_keys(item)


def put_partner(partner: Dict[str, Any]) -> None:
    pk, sk = _key(partner["athleteId"], partner["partnerId"])
    store.put_item({"PK": pk, "SK": sk, "entityType": "PARTNER_PROFILE", **partner})


def create_partner(athlete_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    now = _now_z()
    partner = {"partnerId": str(uuid.uuid4()), "athleteId": athlete_id, **payload, "createdAt": now, "updatedAt": now}
    put_partner(partner)
    return partner


def update_partner(existing: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    """Athlete update: every editable field is replaced, omitted optionals are cleared."""
    keep = {k: existing[k] for k in ("partnerId", "athleteId", "createdAt")}
    partner = {**keep, **payload, "updatedAt": _now_z()}
    put_partner(partner)
    return partner


def update_partner_guidance(existing: Dict[str, Any], guidance: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    partner = {k: v for k, v in existing.items() if k != "guidance"}
    if guidance:
        partner["guidance"] = guidance
    partner["updatedAt"] = _now_z()
    put_partner(partner)
    return partner


def delete_partner(athlete_id: str, partner_id: str) -> None:
    store.delete_item(*_key(athlete_id, partner_id))


def hydrate_partner_outcomes(athlete_id: str, outcomes: Optional[List[Dict[str, Any]]]) -> Optional[List[Dict[str, Any]]]:
    """Attach display names and fallback style tags from stored profiles.

    Raises INVALID_REQUEST if an outcome references an unknown partner.
    """
    if not outcomes:
        return outcomes

    profiles: Dict[str, Dict[str, Any]] = {}
    for partner_id in dict.fromkeys(o["partnerId"] for o in outcomes):
        profile = get_partner(athlete_id, partner_id)
        if profile is None:
            raise ApiError.invalid(f"partnerOutcomes references unknown partnerId: {partner_id}.")
        profiles[partner_id] = profile

    hydrated = []
    for outcome in outcomes:
        profile = profiles[outcome["partnerId"]]
        hydrated.append({
            **outcome,
            "partnerDisplayName": profile["displayName"],
            "styleTags": outcome.get("styleTags") or profile.get("styleTags", []),
        })
    return hydrated
