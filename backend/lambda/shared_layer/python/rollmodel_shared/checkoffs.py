"""rollmodel_shared.checkoffs — Skill checkoffs and the evidence that earns them.

Item layout (all under PK = USER#{athleteId}):
    CHECKOFF#SKILL#{skillId}#TYPE#{evidenceType}                                   CHECKOFF
    CHECKOFF#SKILL#{skillId}#TYPE#{evidenceType}#EVIDENCE#{createdAt}#{evidenceId} CHECKOFF_EVIDENCE

Evidence is mirrored under PK = ENTRY#{entryId} so an entry can list the
evidence it produced, and CHECKOFF#{checkoffId}/META points back at the owner.

A checkoff's status follows its confirmed-evidence count against the
per-type minimum in CHECKOFF_MIN_EVIDENCE_POLICY.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Tuple

from rollmodel_shared import store
from rollmodel_shared.action_pack_index import field_confidence
from rollmodel_shared.http_utils import ApiError, _require_json_object

CHECKOFF_MIN_EVIDENCE_POLICY = {
    "hit-in-live-roll": 3,
    "hit-on-equal-or-better-partner": 2,
    "demonstrate-clean-reps": 5,
    "explain-counters-and-recounters": 1,
}
CHECKOFF_STATUSES = ("pending", "earned", "superseded", "revalidated")
MAPPING_STATUSES = ("pending_confirmation", "confirmed", "rejected")
EVIDENCE_QUALITIES = ("insufficient", "adequate", "strong")
CONFIDENCE_LEVELS = ("high", "medium", "low")

_ALLOWED_TRANSITIONS = {
    "pending": {"earned", "superseded"},
    "earned": {"superseded", "revalidated"},
    "superseded": {"revalidated", "pending"},
    "revalidated": {"superseded", "earned"},
}


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def normalize_skill_id(value: str) -> str:
    return value.strip().lower()


def build_checkoff_id(skill_id: str, evidence_type: str) -> str:
    return f"{normalize_skill_id(skill_id)}::{evidence_type}"


def parse_checkoff_id(value: Optional[str]) -> Tuple[str, str]:
    if not value:
        raise ApiError.invalid("checkoffId is required.")
    skill_id, _, evidence_type = value.partition("::")
    if not skill_id or not evidence_type:
        raise ApiError.invalid('checkoffId must use "skillId::evidenceType".')
    return skill_id, evidence_type


def checkoff_sk(skill_id: str, evidence_type: str) -> str:
    return f"CHECKOFF#SKILL#{skill_id}#TYPE#{evidence_type}"


def evidence_prefix(skill_id: str, evidence_type: str) -> str:
    return f"{checkoff_sk(skill_id, evidence_type)}#EVIDENCE#"


def _mapping_for(confidence: str) -> str:
    return "pending_confirmation" if confidence == "low" else "confirmed"


# ---------------------------------------------------------------------------
# Status rules
# ---------------------------------------------------------------------------

def next_checkoff_status(current: Optional[str], confirmed_count: int, min_required: int) -> str:
    if confirmed_count < min_required:
        return "superseded" if current == "superseded" else "pending"
    if current in ("superseded", "revalidated"):
        return "revalidated"
    return "earned"


def is_status_transition_allowed(current: str, target: str) -> bool:
    return current == target or target in _ALLOWED_TRANSITIONS.get(current, set())


def merge_checkoff_from_evidence(
    existing: Optional[Dict[str, Any]],
    athlete_id: str,
    skill_id: str,
    evidence_type: str,
    evidence: List[Dict[str, Any]],
    now: str,
    reviewed_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Recompute a checkoff from its full evidence list.

    Lifecycle timestamps and the last coach review carry over from the
    existing record; earnedAt and revalidatedAt are stamped the first time
    the status reaches them.
    """
    existing = existing or {}
    skill = normalize_skill_id(skill_id)
    min_required = CHECKOFF_MIN_EVIDENCE_POLICY[evidence_type]
    confirmed = sum(1 for e in evidence if e.get("mappingStatus") == "confirmed")
    status = next_checkoff_status(existing.get("status"), confirmed, min_required)

    checkoff: Dict[str, Any] = {
        "checkoffId": build_checkoff_id(skill, evidence_type),
        "athleteId": athlete_id,
        "skillId": skill,
        "evidenceType": evidence_type,
        "status": status,
        "minEvidenceRequired": min_required,
        "confirmedEvidenceCount": confirmed,
        "createdAt": existing.get("createdAt") or now,
        "updatedAt": now,
    }
    for field in ("earnedAt", "supersededAt", "revalidatedAt", "coachReviewedAt", "coachReviewedBy"):
        if existing.get(field):
            checkoff[field] = existing[field]

    if status == "earned" and not existing.get("earnedAt"):
        checkoff["earnedAt"] = now
    if status == "revalidated" and not existing.get("revalidatedAt"):
        checkoff["revalidatedAt"] = now
    if reviewed_by:
        checkoff["coachReviewedBy"] = reviewed_by
        checkoff["coachReviewedAt"] = now
    return checkoff


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def _required_str(value: Any, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ApiError.invalid(message)
    return value.strip()


def _optional_str(value: Any, message: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ApiError.invalid(message)
    return value.strip() or None


def parse_evidence_list(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list) or not raw:
        raise ApiError.invalid("Checkoff payload is invalid: evidence must be a non-empty array.")

    parsed = []
    for index, item in enumerate(raw):
        prefix = f"Checkoff payload is invalid: evidence[{index}]"
        if not isinstance(item, dict):
            raise ApiError.invalid(f"{prefix} must be an object.")

        evidence = {
            "skillId": _required_str(item.get("skillId"), f"{prefix}.skillId must be a non-empty string."),
            "evidenceType": item.get("evidenceType"),
            "statement": _required_str(item.get("statement"), f"{prefix}.statement must be a non-empty string."),
            "confidence": item.get("confidence"),
        }
        if evidence["evidenceType"] not in CHECKOFF_MIN_EVIDENCE_POLICY:
            raise ApiError.invalid(f"{prefix}.evidenceType is unsupported.")
        if evidence["confidence"] not in CONFIDENCE_LEVELS:
            raise ApiError.invalid(f"{prefix}.confidence must be high, medium, or low.")

        source_field = _optional_str(item.get("sourceOutcomeField"), f"{prefix}.sourceOutcomeField must be a string.")
        if source_field:
            evidence["sourceOutcomeField"] = source_field
        mapping = item.get("mappingStatus")
        if mapping is not None:
            if mapping not in MAPPING_STATUSES:
                raise ApiError.invalid(
                    f"{prefix}.mappingStatus must be pending_confirmation, confirmed, or rejected."
                )
            evidence["mappingStatus"] = mapping
        parsed.append(evidence)
    return parsed


def parse_upsert_evidence_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    """Either an explicit `evidence` list or `skillIds` to derive from the entry's action pack."""
    payload = _require_json_object(event)
    if payload.get("evidence") is not None:
        return {"evidence": parse_evidence_list(payload.get("evidence"))}

    skill_ids = payload.get("skillIds")
    if not isinstance(skill_ids, list) or not skill_ids or not all(isinstance(s, str) for s in skill_ids):
        raise ApiError.invalid("Checkoff payload is invalid: provide evidence or skillIds.")
    return {"skillIds": skill_ids}


def derive_evidence_from_action_pack(action_pack: Dict[str, Any], skill_ids: List[str]) -> List[Dict[str, Any]]:
    """Map action pack fields onto evidence types for each skill."""
    skills = list(dict.fromkeys(normalize_skill_id(s) for s in skill_ids if isinstance(s, str) and s.strip()))

    def first(field: str) -> str:
        value = action_pack.get(field)
        if isinstance(value, list):
            return next((v.strip() for v in value if isinstance(v, str) and v.strip()), "")
        return value.strip() if isinstance(value, str) else ""

    sources = (
        ("wins", "hit-in-live-roll"),
        ("drills", "demonstrate-clean-reps"),
        ("positionalRequests", "hit-on-equal-or-better-partner"),
        ("fallbackDecisionGuidance", "explain-counters-and-recounters"),
    )
    collected = []
    for skill_id in skills:
        for field, evidence_type in sources:
            statement = first(field)
            if not statement:
                continue
            confidence = field_confidence(action_pack, field)
            collected.append({
                "skillId": skill_id,
                "evidenceType": evidence_type,
                "statement": statement,
                "confidence": confidence,
                "sourceOutcomeField": field,
                "mappingStatus": _mapping_for(confidence),
            })
    return collected


def parse_review_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    payload = _require_json_object(event)
    prefix = "Checkoff review payload is invalid"

    status = payload.get("status")
    if status is not None and status not in CHECKOFF_STATUSES:
        raise ApiError.invalid(f"{prefix}: status is unsupported.")

    raw = payload.get("evidenceReviews")
    if not isinstance(raw, list):
        raise ApiError.invalid(f"{prefix}: evidenceReviews must be an array.")

    reviews = []
    for index, item in enumerate(raw):
        path = f"{prefix}: evidenceReviews[{index}]"
        if not isinstance(item, dict):
            raise ApiError.invalid(f"{path} must be an object.")
        review = {"evidenceId": _required_str(item.get("evidenceId"), f"{path}.evidenceId must be a non-empty string.")}
        if item.get("mappingStatus") is not None:
            if item["mappingStatus"] not in MAPPING_STATUSES:
                raise ApiError.invalid(f"{path}.mappingStatus is unsupported.")
            review["mappingStatus"] = item["mappingStatus"]
        if item.get("quality") is not None:
            if item["quality"] not in EVIDENCE_QUALITIES:
                raise ApiError.invalid(f"{path}.quality is unsupported.")
            review["quality"] = item["quality"]
        note = _optional_str(item.get("coachNote"), f"{path}.coachNote must be a string.")
        if note:
            review["coachNote"] = note
        reviews.append(review)

    result: Dict[str, Any] = {"evidenceReviews": reviews}
    if status:
        result["status"] = status
    return result


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

def load_checkoff(athlete_id: str, skill_id: str, evidence_type: str) -> Optional[Dict[str, Any]]:
    item = store.get_item(f"USER#{athlete_id}", checkoff_sk(skill_id, evidence_type))
    if item and item.get("entityType") == "CHECKOFF":
        return item
    return None


def list_evidence(athlete_id: str, skill_id: str, evidence_type: str, newest_first: bool = False) -> List[Dict[str, Any]]:
    rows = store.query_items(
        f"USER#{athlete_id}", evidence_prefix(skill_id, evidence_type), scan_forward=not newest_first
    )
    return [row for row in rows if row.get("entityType") == "CHECKOFF_EVIDENCE"]


def save_checkoff(checkoff: Dict[str, Any]) -> None:
    store.put_item({
        "PK": f"USER#{checkoff['athleteId']}",
        "SK": checkoff_sk(checkoff["skillId"], checkoff["evidenceType"]),
        "entityType": "CHECKOFF",
        **checkoff,
    })


def record_evidence(athlete_id: str, entry_id: str, inputs: List[Dict[str, Any]], now: str) -> Dict[str, Any]:
    """Store evidence from one entry and recompute every checkoff it touches."""
    saved: List[Dict[str, Any]] = []
    checkoffs: List[Dict[str, Any]] = []
    for item in inputs:
        skill_id = normalize_skill_id(item["skillId"])
        evidence_type = item["evidenceType"]
        checkoff_id = build_checkoff_id(skill_id, evidence_type)
        evidence = {
            "evidenceId": str(uuid.uuid4()),
            "checkoffId": checkoff_id,
            "athleteId": athlete_id,
            "skillId": skill_id,
            "entryId": entry_id,
            "evidenceType": evidence_type,
            "source": "gpt-structured",
            "statement": item["statement"],
            "confidence": item["confidence"],
            "mappingStatus": item.get("mappingStatus") or _mapping_for(item["confidence"]),
            "createdAt": now,
            "updatedAt": now,
        }
        if item.get("sourceOutcomeField"):
            evidence["sourceOutcomeField"] = item["sourceOutcomeField"]

        store.put_item({
            "PK": f"USER#{athlete_id}",
            "SK": f"{evidence_prefix(skill_id, evidence_type)}{now}#{evidence['evidenceId']}",
            "entityType": "CHECKOFF_EVIDENCE",
            **evidence,
        })
        store.put_item({
            "PK": f"ENTRY#{entry_id}",
            "SK": f"CHECKOFF_EVIDENCE#{athlete_id}#{checkoff_id}#{evidence['evidenceId']}",
            "entityType": "ENTRY_CHECKOFF_EVIDENCE",
            **evidence,
        })

        checkoff = merge_checkoff_from_evidence(
            load_checkoff(athlete_id, skill_id, evidence_type),
            athlete_id,
            skill_id,
            evidence_type,
            list_evidence(athlete_id, skill_id, evidence_type),
            now,
        )
        save_checkoff(checkoff)
        store.put_item({
            "PK": f"CHECKOFF#{checkoff_id}",
            "SK": "META",
            "entityType": "CHECKOFF_META",
            "athleteId": athlete_id,
            "skillId": skill_id,
            "evidenceType": evidence_type,
        })

        saved.append(evidence)
        checkoffs.append(checkoff)

    return {
        "checkoffs": checkoffs,
        "evidence": saved,
        "pendingConfirmationCount": sum(1 for e in saved if e["mappingStatus"] == "pending_confirmation"),
    }


def list_entry_evidence(entry_id: str, athlete_id: str) -> List[Dict[str, Any]]:
    rows = store.query_items(f"ENTRY#{entry_id}", f"CHECKOFF_EVIDENCE#{athlete_id}#", scan_forward=False)
    return [store.strip_keys(row) for row in rows if row.get("entityType") == "ENTRY_CHECKOFF_EVIDENCE"]


def list_checkoffs(athlete_id: str) -> List[Dict[str, Any]]:
    """All checkoffs for an athlete, each with its evidence newest first."""
    rows = store.query_items(f"USER#{athlete_id}", "CHECKOFF#SKILL#")
    checkoffs = [row for row in rows if row.get("entityType") == "CHECKOFF"]
    result = []
    for checkoff in checkoffs:
        evidence = list_evidence(athlete_id, checkoff["skillId"], checkoff["evidenceType"], newest_first=True)
        result.append({
            **store.strip_keys(checkoff),
            "evidence": [store.strip_keys(e) for e in evidence],
        })
    return result


def review_checkoff(
    athlete_id: str,
    checkoff_id: str,
    review: Dict[str, Any],
    now: str,
    reviewed_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply per-evidence reviews and an optional explicit status change."""
    skill_id, evidence_type = parse_checkoff_id(checkoff_id)
    existing = load_checkoff(athlete_id, skill_id, evidence_type)
    if existing is None:
        raise ApiError.not_found("Checkoff not found.")
    if evidence_type not in CHECKOFF_MIN_EVIDENCE_POLICY:
        raise ApiError.invalid(f"Unsupported evidence type: {evidence_type}.")

    target = review.get("status")
    if target and not is_status_transition_allowed(existing["status"], target):
        raise ApiError.invalid(f"Invalid checkoff status transition: {existing['status']} -> {target}.")

    reviews = {r["evidenceId"]: r for r in review.get("evidenceReviews") or []}
    updated: List[Dict[str, Any]] = []
    for row in list_evidence(athlete_id, skill_id, evidence_type):
        change = reviews.get(row.get("evidenceId"))
        if change is None:
            updated.append(row)
            continue
        row = {**row, **{k: v for k, v in change.items() if k != "evidenceId"}, "updatedAt": now}
        store.put_item(row)
        updated.append(row)

    checkoff = merge_checkoff_from_evidence(existing, athlete_id, skill_id, evidence_type, updated, now, reviewed_by)
    if target:
        checkoff["status"] = target
        if target == "superseded":
            checkoff["supersededAt"] = now
        elif target == "revalidated":
            checkoff["revalidatedAt"] = now
    save_checkoff(checkoff)

    return {"checkoff": checkoff, "evidence": [store.strip_keys(e) for e in updated]}
