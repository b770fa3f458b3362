"""rollmodel_shared.links — Coach/athlete link lookups."""

from __future__ import annotations

from typing import Any, Dict, Optional

from rollmodel_shared import store
from rollmodel_shared.http_utils import ApiError


def coach_link_key(athlete_id: str, coach_id: str) -> tuple:
    return f"USER#{athlete_id}", f"COACH#{coach_id}"


def is_coach_link_active(item: Optional[Dict[str, Any]]) -> bool:
    if not item:
        return False
    status = item.get("status")
    if not isinstance(status, str):
        return True
    return status == "active"


def ensure_coach_link(coach_id: str, athlete_id: str) -> None:
    """Raise FORBIDDEN unless the coach has an active link to the athlete."""
    if not is_coach_link_active(store.get_item(*coach_link_key(athlete_id, coach_id))):
        raise ApiError.forbidden("Coach is not linked to this athlete.")


def link_coach(athlete_id: str, coach_id: str, now: str) -> Dict[str, Any]:
    """Create or reactivate the athlete's link to a coach."""
    pk, sk = coach_link_key(athlete_id, coach_id)
    existing = store.get_item(pk, sk) or {}
    link = {
        "athleteId": athlete_id,
        "coachId": coach_id,
        "status": "active",
        "createdAt": existing.get("createdAt") or now,
        "updatedAt": now,
        "createdBy": existing.get("createdBy") or athlete_id,
    }
    store.put_item({"PK": pk, "SK": sk, "entityType": "COACH_LINK", **link})
    return link


def revoke_coach_link(athlete_id: str, coach_id: str, now: str) -> Dict[str, Any]:
    pk, sk = coach_link_key(athlete_id, coach_id)
    existing = store.get_item(pk, sk)
    if not existing:
        raise ApiError.not_found("Coach link not found.")
    link = {
        "athleteId": athlete_id,
        "coachId": coach_id,
        "status": "revoked",
        "createdAt": existing.get("createdAt") or now,
        "updatedAt": now,
        "createdBy": existing.get("createdBy") or athlete_id,
    }
    store.put_item({"PK": pk, "SK": sk, "entityType": "COACH_LINK", **link})
    return link
