"""rollmodel_shared.session_review — Post-session review artifacts and one-thing cues."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

MAX_ONE_THING_LENGTH = 140

REVIEW_FIELDS = {"whatWorked", "whatFailed", "whatToAskCoach", "whatToDrillSolo", "oneThing"}
PROMPT_FIELDS = ("whatWorked", "whatFailed", "whatToAskCoach", "whatToDrillSolo")
CONFIDENCE_LEVELS = ("high", "medium", "low")


def _normalize_ws(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip())


def _prompt_items(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    seen: Dict[str, None] = {}
    for item in value:
        if isinstance(item, str):
            normalized = _normalize_ws(item)
            if normalized:
                seen[normalized] = None
    return list(seen)


def _confidence_flags(value: Any) -> List[Dict[str, str]]:
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if not isinstance(item, dict):
            continue
        if item.get("field") not in REVIEW_FIELDS or item.get("confidence") not in CONFIDENCE_LEVELS:
            continue
        flag = {"field": item["field"], "confidence": item["confidence"]}
        note = _normalize_ws(item["note"]) if isinstance(item.get("note"), str) else ""
        if note:
            flag["note"] = note
        out.append(flag)
    return out


def _clip(value: str) -> str:
    if len(value) <= MAX_ONE_THING_LENGTH:
        return value
    clipped = value[:MAX_ONE_THING_LENGTH]
    last_space = clipped.rfind(" ")
    if last_space <= 0:
        return clipped
    return clipped[:last_space].strip()


def normalize_one_thing_cue(value: Any) -> str:
    """First sentence of the cue, list markers stripped, clipped at a word boundary."""
    if not isinstance(value, str):
        return ""
    first_line = re.split(r"\r?\n", value)[0]
    first_line = re.sub(r"^[\-\*\d.\)\s]+", "", first_line)
    sentence = _normalize_ws(re.split(r"[.!?]", first_line)[0])
    if not sentence:
        return ""
    return _clip(sentence)


def _prompt_set(value: Any) -> Dict[str, List[str]]:
    record = value if isinstance(value, dict) else {}
    return {name: _prompt_items(record.get(name)) for name in PROMPT_FIELDS}


def normalize_session_review_artifact(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    prompt_set = _prompt_set(value.get("promptSet"))
    one_thing = normalize_one_thing_cue(value.get("oneThing"))
    if not one_thing:
        for name in ("whatToDrillSolo", "whatFailed", "whatToAskCoach", "whatWorked"):
            if prompt_set[name]:
                one_thing = normalize_one_thing_cue(prompt_set[name][0])
                break
    if not one_thing:
        return None
    return {
        "promptSet": prompt_set,
        "oneThing": one_thing,
        "confidenceFlags": _confidence_flags(value.get("confidenceFlags")),
    }


def normalize_finalized_session_review(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    finalized_at = value.get("finalizedAt")
    if not isinstance(finalized_at, str) or not finalized_at.strip():
        return None
    review = normalize_session_review_artifact(value.get("review"))
    if not review:
        return None

    out: Dict[str, Any] = {"review": review, "finalizedAt": finalized_at.strip()}
    coach_review = value.get("coachReview")
    if isinstance(coach_review, dict):
        normalized: Dict[str, Any] = {"requiresReview": bool(coach_review.get("requiresReview"))}
        notes = coach_review.get("coachNotes")
        if isinstance(notes, str) and _normalize_ws(notes):
            normalized["coachNotes"] = _normalize_ws(notes)
        reviewed_at = coach_review.get("reviewedAt")
        if isinstance(reviewed_at, str) and reviewed_at.strip():
            normalized["reviewedAt"] = reviewed_at.strip()
        out["coachReview"] = normalized
    return out


def extract_entry_one_thing_cue(entry: Dict[str, Any]) -> Optional[str]:
    final = entry.get("sessionReviewFinal") or {}
    cue = normalize_one_thing_cue((final.get("review") or {}).get("oneThing"))
    if cue:
        return cue
    draft = entry.get("sessionReviewDraft") or {}
    return normalize_one_thing_cue(draft.get("oneThing")) or None


def list_recent_one_thing_cues(entries: List[Dict[str, Any]], limit: int = 5) -> List[Dict[str, str]]:
    limit = min(max(int(limit), 1), 20)
    out: List[Dict[str, str]] = []
    for entry in sorted(entries, key=lambda e: e.get("createdAt", ""), reverse=True):
        cue = extract_entry_one_thing_cue(entry)
        if not cue:
            continue
        out.append({"entryId": entry["entryId"], "createdAt": entry["createdAt"], "cue": cue})
        if len(out) >= limit:
            break
    return out
