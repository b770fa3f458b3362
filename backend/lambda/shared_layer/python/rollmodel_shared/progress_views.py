"""rollmodel_shared.progress_views — Progress report aggregation.

Pure functions: callers pass entries, checkoffs, evidence and annotations
already loaded from the table and get back a report with a skill timeline,
a position heatmap and daily outcome trends. Only "structured" sessions
(those with an action pack or session review) feed the heatmap and trends.
"""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.serialization import _now_z, _parse_iso, _to_iso_z

PROGRESS_VIEWS_LATEST_SK = "PROGRESS_VIEWS#LATEST"
PROGRESS_ANNOTATION_SK_PREFIX = "PROGRESS_ANNOTATION#"
ANNOTATION_SCOPES = ("general", "timeline", "position-heatmap", "outcome-trend")
MAX_LOW_CONFIDENCE_FLAGS = 200
MAX_ANNOTATIONS = 50

_CONFIDENCE_RANK = {"high": 3, "medium": 2, "low": 1}

ESCAPE_RE = re.compile(r"\bescape\b|\bescaped\b|\bget out\b|\brecover(ed)?\b", re.IGNORECASE)
GUARD_RE = re.compile(r"\bguard\b|\bretention\b|\bretain\b", re.IGNORECASE)
FAILURE_RE = re.compile(r"\bpass(ed)?\b|\blost\b|\bfail(ed|ure)?\b|\bbroke(n)?\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def _normalize_date(value: Optional[str]) -> Optional[str]:
    if not value or not value.strip():
        return None
    parsed = _parse_iso(value.strip())
    if parsed is None:
        raise ApiError.invalid(f'Invalid ISO datetime "{value.strip()}".')
    return _to_iso_z(parsed)


def parse_progress_filters(query: Optional[Dict[str, str]]) -> Dict[str, Any]:
    query = query or {}
    date_from = _normalize_date(query.get("dateFrom"))
    date_to = _normalize_date(query.get("dateTo"))
    if date_from and date_to and date_from > date_to:
        raise ApiError.invalid("dateFrom must be on or before dateTo.")

    gi = (query.get("giOrNoGi") or "").strip()
    if gi and gi not in ("gi", "no-gi"):
        raise ApiError.invalid('giOrNoGi must be "gi" or "no-gi".')

    filters: Dict[str, Any] = {}
    if date_from:
        filters["dateFrom"] = date_from
    if date_to:
        filters["dateTo"] = date_to
    filters["contextTags"] = [t.strip().lower() for t in (query.get("contextTags") or "").split(",") if t.strip()]
    if gi:
        filters["giOrNoGi"] = gi
    return filters


def _within_range(value: str, filters: Dict[str, Any]) -> bool:
    if filters.get("dateFrom") and value < filters["dateFrom"]:
        return False
    if filters.get("dateTo") and value > filters["dateTo"]:
        return False
    return True


def _entry_matches(entry: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    if not _within_range(entry["createdAt"], filters):
        return False
    metrics = entry.get("sessionMetrics") or {}
    if filters.get("giOrNoGi") and metrics.get("giOrNoGi") != filters["giOrNoGi"]:
        return False
    wanted = filters.get("contextTags") or []
    if not wanted:
        return True
    tags = {t.strip().lower() for t in (entry.get("tags") or []) + (metrics.get("tags") or [])}
    return all(tag in tags for tag in wanted)


# ---------------------------------------------------------------------------
# Per-entry signals
# ---------------------------------------------------------------------------

def _action_pack(entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    final = entry.get("actionPackFinal") or {}
    return final.get("actionPack") or entry.get("actionPackDraft")


def _session_review(entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    final = entry.get("sessionReviewFinal") or {}
    return final.get("review") or entry.get("sessionReviewDraft")


def is_structured_session(entry: Dict[str, Any]) -> bool:
    return bool(_action_pack(entry) or _session_review(entry))


def _action_pack_metric(field: str) -> str:
    if field == "positionalRequests":
        return "position-heatmap"
    if field in ("wins", "leaks", "oneFocus"):
        return "outcome-trend"
    return "timeline"


def low_confidence_flags(entry: Dict[str, Any]) -> List[Dict[str, Any]]:
    flags = []
    sources = (
        ("action-pack", _action_pack(entry), _action_pack_metric),
        (
            "session-review",
            _session_review(entry),
            lambda f: "outcome-trend" if f in ("whatFailed", "whatWorked") else "timeline",
        ),
    )
    for source, artifact, metric_for in sources:
        for flag in (artifact or {}).get("confidenceFlags") or []:
            if flag.get("confidence") != "low":
                continue
            item = {
                "entryId": entry["entryId"],
                "createdAt": entry["createdAt"],
                "source": source,
                "field": flag.get("field"),
                "confidence": "low",
                "metric": metric_for(flag.get("field")),
            }
            if flag.get("note"):
                item["note"] = flag["note"]
            flags.append(item)
    return flags


def outcome_signals(entry: Dict[str, Any]) -> Dict[str, int]:
    pack = _action_pack(entry) or {}
    outcome = ((entry.get("structured") or {}).get("outcome") or "").strip()
    wins = pack.get("wins") or []
    leaks = pack.get("leaks") or []
    everything = wins + leaks + [t for t in (pack.get("oneFocus") or "", outcome) if t]

    escape_successes = sum(1 for t in wins if ESCAPE_RE.search(t))
    escape_mentions = sum(1 for t in everything if ESCAPE_RE.search(t))
    guard_failures = sum(1 for t in leaks if GUARD_RE.search(t) and FAILURE_RE.search(t))
    guard_mentions = sum(1 for t in everything if GUARD_RE.search(t))
    return {
        "escapesSuccesses": escape_successes,
        "escapeAttempts": max(escape_successes, escape_mentions),
        "guardRetentionFailures": guard_failures,
        "guardRetentionObservations": max(guard_failures, guard_mentions),
    }


_RATE_PLACES = Decimal("0.001")


def _rate(numerator: int, denominator: int) -> Optional[float]:
    # Halves round up (0.0625 -> 0.063), not to even.
    if denominator <= 0:
        return None
    return float((Decimal(numerator) / Decimal(denominator)).quantize(_RATE_PLACES, rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def _timeline(checkoffs, evidence, filters) -> List[Dict[str, Any]]:
    by_checkoff: Dict[str, List[Dict[str, Any]]] = {}
    for row in evidence:
        by_checkoff.setdefault(row.get("checkoffId"), []).append(row)

    events = []
    for checkoff in checkoffs:
        if checkoff["status"] == "revalidated":
            event_at = checkoff.get("revalidatedAt") or checkoff["updatedAt"]
        else:
            event_at = checkoff.get("earnedAt") or checkoff["updatedAt"]
        if not _within_range(event_at, filters):
            continue
        related = by_checkoff.get(checkoff["checkoffId"], [])
        ranked = sorted((r.get("confidence") for r in related), key=lambda c: -_CONFIDENCE_RANK.get(c, 0))
        events.append({
            "date": event_at[:10],
            "skillId": checkoff["skillId"],
            "status": checkoff["status"],
            "evidenceCount": checkoff.get("confirmedEvidenceCount", 0),
            "confidence": ranked[0] if ranked else "medium",
            "lowConfidence": any(
                r.get("confidence") == "low" or r.get("mappingStatus") == "pending_confirmation" for r in related
            ),
        })
    events.sort(key=lambda e: (e["date"], e["skillId"]))
    return events


def build_progress_report(
    athlete_id: str,
    entries: List[Dict[str, Any]],
    checkoffs: List[Dict[str, Any]],
    evidence: List[Dict[str, Any]],
    annotations: List[Dict[str, Any]],
    filters: Dict[str, Any],
    generated_at: Optional[str] = None,
) -> Dict[str, Any]:
    filtered = [e for e in entries if _entry_matches(e, filters)]
    structured = [e for e in filtered if is_structured_session(e)]

    flags = [flag for entry in structured for flag in low_confidence_flags(entry)]
    low_by_entry: Dict[str, int] = {}
    for flag in flags:
        low_by_entry[flag["entryId"]] = low_by_entry.get(flag["entryId"], 0) + 1

    positions: Dict[str, Dict[str, Any]] = {}
    days: Dict[str, Dict[str, int]] = {}
    for entry in structured:
        low = low_by_entry.get(entry["entryId"], 0)
        position = (((entry.get("structured") or {}).get("position") or "").strip() or "unspecified").lower()
        cell = positions.setdefault(
            position, {"trainedCount": 0, "lowConfidenceCount": 0, "lastSeenAt": entry["createdAt"]}
        )
        cell["trainedCount"] += 1
        cell["lowConfidenceCount"] += low
        cell["lastSeenAt"] = max(cell["lastSeenAt"], entry["createdAt"])

        day = days.setdefault(entry["createdAt"][:10], {
            "escapesSuccesses": 0,
            "escapeAttempts": 0,
            "guardRetentionFailures": 0,
            "guardRetentionObservations": 0,
            "lowConfidenceCount": 0,
        })
        for key, value in outcome_signals(entry).items():
            day[key] += value
        day["lowConfidenceCount"] += low

    earned = [c for c in checkoffs if c.get("status") in ("earned", "revalidated")]
    events = _timeline(earned, evidence, filters)
    cumulative = []
    seen = set()
    for event in events:
        seen.add(event["skillId"])
        cumulative.append({"date": event["date"], "cumulativeSkills": len(seen)})

    cells = sorted(
        ({"position": p, "neglected": False, **stats} for p, stats in positions.items()),
        key=lambda c: (-c["trainedCount"], c["position"]),
    )
    threshold = max(1, len(structured) // 10) if cells else 0
    for cell in cells:
        cell["neglected"] = cell["trainedCount"] <= threshold

    points = [
        {
            "date": date,
            "escapesSuccessRate": _rate(stats["escapesSuccesses"], stats["escapeAttempts"]),
            "guardRetentionFailureRate": _rate(stats["guardRetentionFailures"], stats["guardRetentionObservations"]),
            **stats,
        }
        for date, stats in sorted(days.items())
    ]

    return {
        "athleteId": athlete_id,
        "generatedAt": generated_at or _now_z(),
        "filters": filters,
        "timeline": {"events": events, "cumulative": cumulative},
        "positionHeatmap": {
            "cells": cells,
            "maxTrainedCount": max((c["trainedCount"] for c in cells), default=0),
            "neglectedThreshold": threshold,
        },
        "outcomeTrends": {"points": points},
        "lowConfidenceFlags": sorted(flags, key=lambda f: f["createdAt"], reverse=True)[:MAX_LOW_CONFIDENCE_FLAGS],
        "coachAnnotations": sorted(annotations, key=lambda a: a["updatedAt"], reverse=True)[:MAX_ANNOTATIONS],
        "sourceSummary": {
            "sessionsConsidered": len(filtered),
            "structuredSessions": len(structured),
            "checkoffsConsidered": len(earned),
        },
    }


# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------

def parse_annotation_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    scope = payload.get("scope")
    if scope not in ANNOTATION_SCOPES:
        raise ApiError.invalid("scope must be one of: general, timeline, position-heatmap, outcome-trend.")
    note = payload.get("note")
    if not isinstance(note, str) or not note.strip():
        raise ApiError.invalid("note must be a non-empty string.")

    result = {"scope": scope, "note": note.strip()}
    for key in ("targetKey", "correction"):
        if key not in payload:
            continue
        value = payload[key]
        if not isinstance(value, str) or not value.strip():
            raise ApiError.invalid(f"{key} must be a non-empty string when provided.")
        result[key] = value.strip()
    return result


_ANNOTATION_REQUIRED = ("annotationId", "athleteId", "note", "createdAt", "updatedAt", "createdBy", "updatedBy")


def parse_annotation_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    annotations = []
    for row in rows:
        if row.get("entityType") != "PROGRESS_ANNOTATION":
            continue
        if row.get("scope") not in ANNOTATION_SCOPES or not all(isinstance(row.get(k), str) for k in _ANNOTATION_REQUIRED):
            continue
        annotation = {k: row[k] for k in _ANNOTATION_REQUIRED}
        annotation["scope"] = row["scope"]
        for key in ("targetKey", "correction"):
            if isinstance(row.get(key), str):
                annotation[key] = row[key]
        annotations.append(annotation)
    return annotations


def parse_progress_report(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row or row.get("entityType") != "PROGRESS_VIEWS_REPORT":
        return None
    if not isinstance(row.get("athleteId"), str) or not isinstance(row.get("generatedAt"), str):
        return None
    if not all(row.get(k) for k in ("filters", "timeline", "positionHeatmap", "outcomeTrends", "sourceSummary")):
        return None
    return {k: v for k, v in row.items() if k not in ("PK", "SK", "entityType")}
