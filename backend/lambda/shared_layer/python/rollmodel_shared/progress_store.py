"""rollmodel_shared.progress_store — Loading progress signals and persisting reports."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from rollmodel_shared import store
from rollmodel_shared.auth import AuthContext
from rollmodel_shared.entries import parse_entry_record
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.links import ensure_coach_link
from rollmodel_shared.progress_views import (
    PROGRESS_ANNOTATION_SK_PREFIX,
    PROGRESS_VIEWS_LATEST_SK,
    build_progress_report,
    parse_annotation_rows,
    parse_progress_filters,
    parse_progress_report,
)
from rollmodel_shared.serialization import _now_z

logger = logging.getLogger(__name__)


def resolve_progress_access(auth: AuthContext, athlete_id: Optional[str]) -> Tuple[str, bool]:
    """Return ``(athleteId, actingAsCoach)`` for a progress request.

    Reading another athlete's progress needs the coach or admin role and an
    active coach link.
    """
    target = athlete_id or auth.user_id
    acting_as_coach = target != auth.user_id
    if acting_as_coach:
        roles = auth.effective_roles
        if "coach" not in roles and "admin" not in roles:
            raise ApiError.forbidden("athleteId path access requires coach or admin role.")
        ensure_coach_link(auth.user_id, target)
    return target, acting_as_coach


def list_progress_signals(athlete_id: str) -> Dict[str, Any]:
    pk = f"USER#{athlete_id}"
    entry_rows = store.query_items(pk, "ENTRY#", scan_forward=False)
    checkoff_rows = store.query_items(pk, "CHECKOFF#SKILL#", scan_forward=False)
    annotation_rows = store.query_items(pk, PROGRESS_ANNOTATION_SK_PREFIX, scan_forward=False)

    return {
        "entries": [parse_entry_record(r) for r in entry_rows if r.get("entityType") == "ENTRY"],
        "checkoffs": [r for r in checkoff_rows if r.get("entityType") == "CHECKOFF"],
        "evidence": [r for r in checkoff_rows if r.get("entityType") == "CHECKOFF_EVIDENCE"],
        "annotations": parse_annotation_rows(annotation_rows),
    }


def load_persisted_report(athlete_id: str) -> Optional[Dict[str, Any]]:
    return parse_progress_report(store.get_item(f"USER#{athlete_id}", PROGRESS_VIEWS_LATEST_SK))


def recompute_progress_views(athlete_id: str, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Rebuild the athlete's report from current signals and store it as LATEST."""
    signals = list_progress_signals(athlete_id)
    report = build_progress_report(
        athlete_id,
        signals["entries"],
        signals["checkoffs"],
        signals["evidence"],
        signals["annotations"],
        filters if filters is not None else parse_progress_filters(None),
    )
    store.put_item({
        "PK": f"USER#{athlete_id}",
        "SK": PROGRESS_VIEWS_LATEST_SK,
        "entityType": "PROGRESS_VIEWS_REPORT",
        **report,
    })
    logger.info(
        "progress views recomputed athlete=%s sessions=%d structured=%d",
        athlete_id,
        report["sourceSummary"]["sessionsConsidered"],
        report["sourceSummary"]["structuredSessions"],
    )
    return report


def upsert_annotation(
    athlete_id: str,
    annotation_id: Optional[str],
    payload: Dict[str, Any],
    actor_id: str,
) -> Tuple[Dict[str, Any], bool]:
    """Create or replace a coach annotation. Returns ``(annotation, created)``."""
    annotation_id = (annotation_id or "").strip() or str(uuid.uuid4())
    pk, sk = f"USER#{athlete_id}", f"{PROGRESS_ANNOTATION_SK_PREFIX}{annotation_id}"

    existing = store.get_item(pk, sk)
    if existing and existing.get("entityType") != "PROGRESS_ANNOTATION":
        raise ApiError.conflict("Annotation ID already exists with a different entity type.")
    if existing and existing.get("athleteId") != athlete_id:
        raise ApiError.forbidden("Annotation does not belong to this athlete.")

    now = _now_z()
    annotation = {
        "annotationId": annotation_id,
        "athleteId": athlete_id,
        **payload,
        "createdAt": (existing or {}).get("createdAt") or now,
        "updatedAt": now,
        "createdBy": (existing or {}).get("createdBy") or actor_id,
        "updatedBy": actor_id,
    }
    store.put_item({"PK": pk, "SK": sk, "entityType": "PROGRESS_ANNOTATION", **annotation})
    recompute_progress_views(athlete_id)
    return annotation, existing is None
