"""rollmodel_shared.gap_insights — Training gap detection and priority overrides.

Three kinds of gap are derived from an athlete's signals:

* ``stale_skill``: a skill with no structured evidence for more than
  ``staleDays``.
* ``not_training``: a skill with missing confirmed evidence on its checkoffs
  and no recent structured appearance within ``lookbackDays``.
* ``repeated_failure``: the same finalized leak logged from the same
  position at least ``repeatFailureMinCount`` times inside
  ``repeatFailureWindowDays``.

Athletes and linked coaches can accept, watch or dismiss a gap. Overrides
live at PK = USER#{athleteId}, SK = GAP_PRIORITY#{gapId}.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional

from rollmodel_shared import store
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.serialization import _iso_ms, _now_z

logger = logging.getLogger(__name__)

GAP_PRIORITY_SK_PREFIX = "GAP_PRIORITY#"
MAX_PRIORITY_UPDATES = 50
PRIORITY_STATUSES = ("accepted", "watch", "dismissed")

DEFAULT_GAP_THRESHOLDS = {
    "staleDays": 30,
    "lookbackDays": 30,
    "repeatFailureWindowDays": 30,
    "repeatFailureMinCount": 2,
    "topN": 10,
}

_THRESHOLD_BOUNDS = {
    "staleDays": (1, 365),
    "lookbackDays": (1, 365),
    "repeatFailureWindowDays": (1, 365),
    "repeatFailureMinCount": (2, 20),
    "topN": (1, 50),
}

_PRIORITY_DELTAS = {"accepted": 120, "watch": 20, "dismissed": -200}
_DAY_MS = 24 * 60 * 60 * 1000
_MAX_SOURCE_LINKS = 5
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


def _normalize(value: str) -> str:
    return _NON_ALNUM.sub("-", value.strip().lower()).strip("-")


def _days_since(value: Optional[str], now_ms: int) -> float:
    """Whole days since ``value``; infinity when it is missing or unparseable."""
    parsed = _iso_ms(value)
    if parsed is None:
        return math.inf
    return max(0, (now_ms - parsed) // _DAY_MS)


def _days_field(days: float) -> Optional[int]:
    return None if math.isinf(days) else int(days)


def _impact(score: int) -> str:
    if score >= 80:
        return "high"
    if score >= 45:
        return "medium"
    return "low"


def _dedupe_links(links: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    deduped = []
    for link in links:
        key = (link.get("entryId"), link.get("evidenceId") or "", link.get("excerpt") or "")
        if key in seen:
            continue
        seen.add(key)
        deduped.append(link)
        if len(deduped) >= _MAX_SOURCE_LINKS:
            break
    return deduped


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def parse_gap_thresholds(query: Optional[Dict[str, str]]) -> Dict[str, int]:
    query = query or {}
    thresholds = {}
    for field, default in DEFAULT_GAP_THRESHOLDS.items():
        low, high = _THRESHOLD_BOUNDS[field]
        raw = (query.get(field) or "").strip()
        if not raw:
            thresholds[field] = default
            continue
        if not raw.isdigit() or not low <= int(raw) <= high:
            raise ApiError.invalid(f"{field} must be an integer between {low} and {high}.")
        thresholds[field] = int(raw)
    return thresholds


def parse_gap_priorities_payload(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Validate an upsert body and return its priority list."""
    candidates = payload.get("priorities")
    if not isinstance(candidates, list) or not candidates:
        raise ApiError.invalid("Gap priority payload is invalid: priorities must be a non-empty array.")

    priorities = []
    for index, candidate in enumerate(candidates):
        prefix = f"Gap priority payload is invalid: priorities[{index}]"
        if not isinstance(candidate, dict):
            raise ApiError.invalid(f"{prefix} must be an object.")
        gap_id = candidate.get("gapId")
        if not isinstance(gap_id, str) or not gap_id.strip():
            raise ApiError.invalid(f"{prefix}.gapId must be a non-empty string.")
        status = candidate.get("status")
        if status not in PRIORITY_STATUSES:
            raise ApiError.invalid(f"{prefix}.status is unsupported.")
        manual = candidate.get("manualPriority")
        if manual is not None and (isinstance(manual, bool) or not isinstance(manual, int) or manual < 1):
            raise ApiError.invalid(f"{prefix}.manualPriority must be a positive integer.")
        note = candidate.get("note")
        if note is not None and not isinstance(note, str):
            raise ApiError.invalid(f"{prefix}.note must be a string.")

        priority: Dict[str, Any] = {"gapId": gap_id.strip(), "status": status}
        if manual is not None:
            priority["manualPriority"] = manual
        if note is not None:
            priority["note"] = note.strip()
        priorities.append(priority)

    if len(priorities) > MAX_PRIORITY_UPDATES:
        raise ApiError.invalid(f"At most {MAX_PRIORITY_UPDATES} priorities can be updated per request.")
    return priorities


def parse_gap_priority_rows(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    priorities = []
    for row in rows:
        if row.get("entityType") != "GAP_PRIORITY":
            continue
        if row.get("status") not in PRIORITY_STATUSES or row.get("updatedByRole") not in ("athlete", "coach"):
            continue
        if not all(isinstance(row.get(k), str) for k in ("gapId", "updatedAt", "updatedBy")):
            continue
        priority = {
            k: row[k] for k in ("gapId", "status", "updatedAt", "updatedBy", "updatedByRole")
        }
        if isinstance(row.get("manualPriority"), int):
            priority["manualPriority"] = row["manualPriority"]
        if isinstance(row.get("note"), str):
            priority["note"] = row["note"]
        priorities.append(priority)
    return priorities


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def _score_stale(days: float, deficit: int) -> int:
    return min(100, _round(min(days, 180) * 1.1 + deficit * 12))


def _score_not_training(days: float, deficit: int, pending: int) -> int:
    return min(100, _round(deficit * 16 + pending * 7 + min(days, 180) * 0.7))


def _score_repeated(count: int, days: float) -> int:
    boost = 25 if days <= 7 else 15 if days <= 14 else 8
    return min(100, _round(count * 22 + boost))


def _apply_priority(item: Dict[str, Any], priorities: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    priority = priorities.get(item["gapId"])
    if not priority:
        return item
    score = item["score"] + _PRIORITY_DELTAS[priority["status"]]
    return {**item, "score": score, "impact": _impact(score), "priority": priority}


def _is_accepted(item: Dict[str, Any]) -> bool:
    return (item.get("priority") or {}).get("status") == "accepted"


def _rank(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order by score then title; accepted gaps keep their manualPriority order among themselves."""
    items = list(items)
    accepted = sorted(
        (i for i in items if _is_accepted(i)),
        key=lambda i: (i["priority"].get("manualPriority", math.inf), -i["score"], i["title"]),
    )
    rest = sorted((i for i in items if not _is_accepted(i)), key=lambda i: (-i["score"], i["title"]))
    return _merge_by_score(accepted, rest)


def _merge_by_score(accepted: List[Dict[str, Any]], rest: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged: List[Dict[str, Any]] = []
    a = r = 0
    while a < len(accepted) and r < len(rest):
        left, right = accepted[a], rest[r]
        if (-left["score"], left["title"]) <= (-right["score"], right["title"]):
            merged.append(left)
            a += 1
        else:
            merged.append(right)
            r += 1
    return merged + accepted[a:] + rest[r:]


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def _final_leaks(entry: Dict[str, Any]) -> Optional[List[Any]]:
    final = entry.get("actionPackFinal")
    pack = final.get("actionPack") if isinstance(final, dict) else None
    leaks = pack.get("leaks") if isinstance(pack, dict) else None
    return leaks if isinstance(leaks, list) else None


def _entry_position(entry: Dict[str, Any]) -> str:
    structured = entry.get("structured")
    position = structured.get("position") if isinstance(structured, dict) else None
    return position.strip() if isinstance(position, str) and position.strip() else "unspecified"


def build_gap_insights_report(
    athlete_id: str,
    entries: List[Dict[str, Any]],
    checkoffs: List[Dict[str, Any]],
    evidence: List[Dict[str, Any]],
    priorities: List[Dict[str, Any]],
    thresholds: Dict[str, int],
    *,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the ranked gap report.

    Only GPT-structured evidence that has not been rejected counts as a
    structured appearance. ``daysSinceLastSeen`` is null for a skill that
    has never appeared.
    """
    now = now or _now_z()
    now_ms = _iso_ms(now) or 0

    evidence_by_skill: Dict[str, List[Dict[str, Any]]] = {}
    skills_by_entry: Dict[str, set] = {}
    for row in evidence:
        if row.get("source") != "gpt-structured" or row.get("mappingStatus") == "rejected":
            continue
        skill_id = row.get("skillId")
        if not isinstance(skill_id, str):
            continue
        evidence_by_skill.setdefault(skill_id, []).append(row)
        skills_by_entry.setdefault(row.get("entryId"), set()).add(skill_id)

    last_seen: Dict[str, str] = {}
    failures: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        entry_id, created_at = entry.get("entryId"), entry.get("createdAt")
        if not isinstance(entry_id, str) or not isinstance(created_at, str) or not entry_id or not created_at:
            continue
        for skill_id in skills_by_entry.get(entry_id, ()):
            last_seen[skill_id] = max(last_seen.get(skill_id, created_at), created_at)

        leaks = _final_leaks(entry)
        if leaks is None:
            continue
        position = _entry_position(entry)
        for leak in leaks:
            if not isinstance(leak, str) or not _normalize(leak):
                continue
            key = f"{_normalize(position)}::{_normalize(leak)}"
            bucket = failures.setdefault(
                key,
                {"position": position, "leak": leak.strip(), "count": 0, "lastSeenAt": created_at, "sources": []},
            )
            bucket["count"] += 1
            bucket["lastSeenAt"] = max(bucket["lastSeenAt"], created_at)
            bucket["sources"].append(
                {"entryId": entry_id, "createdAt": created_at, "position": position, "excerpt": leak.strip()}
            )

    stats: Dict[str, Dict[str, int]] = {}
    for checkoff in checkoffs:
        skill_id = checkoff.get("skillId")
        if not isinstance(skill_id, str):
            continue
        stat = stats.setdefault(skill_id, {"deficit": 0, "pending": 0, "tracks": 0})
        stat["tracks"] += 1
        stat["deficit"] += max(
            0, int(checkoff.get("minEvidenceRequired") or 0) - int(checkoff.get("confirmedEvidenceCount") or 0)
        )
        if checkoff.get("status") == "pending":
            stat["pending"] += 1

    stale: List[Dict[str, Any]] = []
    not_training: List[Dict[str, Any]] = []
    for skill_id in sorted(set(stats) | set(evidence_by_skill)):
        rows = sorted(evidence_by_skill.get(skill_id, []), key=lambda r: r.get("createdAt") or "", reverse=True)
        seen_at = last_seen.get(skill_id) or (rows[0].get("createdAt") if rows else None)
        days = _days_since(seen_at, now_ms)
        stat = stats.get(skill_id, {"deficit": 0, "pending": 0, "tracks": 0})
        links = _dedupe_links(
            {
                "entryId": r.get("entryId"),
                "createdAt": r.get("createdAt"),
                "evidenceId": r.get("evidenceId"),
                "checkoffId": r.get("checkoffId"),
                "skillId": skill_id,
                "excerpt": r.get("statement"),
            }
            for r in rows
        )
        ago = "never" if math.isinf(days) else f"{int(days)} days ago"

        if days > thresholds["staleDays"]:
            score = _score_stale(days, stat["deficit"])
            stale.append({
                "gapId": f"stale-skill:{_normalize(skill_id)}",
                "type": "stale_skill",
                "title": f"Stale skill: {skill_id}",
                "summary": (
                    f"{skill_id} has never appeared in structured training evidence."
                    if math.isinf(days)
                    else f"{skill_id} has not appeared in structured training evidence for {int(days)} days."
                ),
                "score": score,
                "impact": _impact(score),
                "skillId": skill_id,
                "daysSinceLastSeen": _days_field(days),
                "reasons": [
                    f"Last structured appearance: {ago}.",
                    f"Curriculum graph has {stat['tracks']} checkoff track(s) on this skill."
                    if stat["tracks"]
                    else "No active checkoff tracks found; consider defining a checkoff track.",
                ],
                "nextSteps": [
                    f"Add 2 sessions this week with {skill_id} as one-focus and capture GPT-structured evidence.",
                    "Log one drill and one live-roll attempt, then confirm mappings in checkoff review.",
                ],
                "sourceLinks": links,
            })

        if stat["deficit"] > 0 and days > thresholds["lookbackDays"]:
            score = _score_not_training(days, stat["deficit"], stat["pending"])
            not_training.append({
                "gapId": f"not-training:{_normalize(skill_id)}",
                "type": "not_training",
                "title": f"Not currently training: {skill_id}",
                "summary": (
                    f"{skill_id} is under-trained versus checkoff requirements "
                    f"in the last {thresholds['lookbackDays']} days."
                ),
                "score": score,
                "impact": _impact(score),
                "skillId": skill_id,
                "daysSinceLastSeen": _days_field(days),
                "reasons": [
                    f"{stat['deficit']} confirmed evidence item(s) are still missing across active checkoffs.",
                    f"{stat['pending']} checkoff(s) for this skill are still pending.",
                ],
                "nextSteps": [
                    f"Schedule focused reps for {skill_id} and target at least "
                    f"{min(3, stat['deficit'])} confirmed evidence item(s).",
                    "Add explicit one-focus wording in your next journal entry to improve evidence mapping quality.",
                ],
                "sourceLinks": links,
            })

    repeated: List[Dict[str, Any]] = []
    for key, bucket in failures.items():
        days = _days_since(bucket["lastSeenAt"], now_ms)
        if days > thresholds["repeatFailureWindowDays"] or bucket["count"] < thresholds["repeatFailureMinCount"]:
            continue
        score = _score_repeated(bucket["count"], days)
        repeated.append({
            "gapId": f"repeated-failure:{key}",
            "type": "repeated_failure",
            "title": f"Repeated failure from {bucket['position']}",
            "summary": (
                f"\"{bucket['leak']}\" appeared {bucket['count']} times in structured failures "
                f"within the last {thresholds['repeatFailureWindowDays']} days."
            ),
            "score": score,
            "impact": _impact(score),
            "position": bucket["position"],
            "repeatCount": bucket["count"],
            "failureExamples": [bucket["leak"]],
            "reasons": [
                f"Pattern repeated {bucket['count']} times from the same position.",
                f"Most recent occurrence: {int(days)} day(s) ago.",
            ],
            "nextSteps": [
                f"Run 3 constrained rounds starting in {bucket['position']} focused on fixing: {bucket['leak']}.",
                "Track whether the same leak appears in the next two sessions and update your one-focus if needed.",
            ],
            "sourceLinks": _dedupe_links(sorted(bucket["sources"], key=lambda s: s["createdAt"], reverse=True)),
        })

    by_gap = {p["gapId"]: p for p in priorities}
    not_training = _rank(_apply_priority(i, by_gap) for i in not_training)
    stale = _rank(_apply_priority(i, by_gap) for i in stale)
    repeated = _rank(_apply_priority(i, by_gap) for i in repeated)

    top_n = thresholds["topN"]
    ranked = _rank(
        i for i in not_training + stale + repeated if (i.get("priority") or {}).get("status") != "dismissed"
    )[:top_n]
    accepted = [i for i in ranked if _is_accepted(i)]
    weekly_base = accepted or ranked

    return {
        "athleteId": athlete_id,
        "generatedAt": now,
        "thresholds": dict(thresholds),
        "summary": {
            "totalGaps": len(ranked),
            "staleSkillCount": len(stale),
            "repeatedFailureCount": len(repeated),
            "notTrainingCount": len(not_training),
        },
        "sections": {
            "notTraining": not_training[:top_n],
            "staleSkills": stale[:top_n],
            "repeatedFailures": repeated[:top_n],
        },
        "ranked": ranked,
        "weeklyFocus": {
            "headline": (
                "Weekly focus follows accepted gap priorities."
                if accepted
                else "Weekly focus is auto-ranked from highest-impact current gaps."
            ),
            "items": [
                {
                    "gapId": item["gapId"],
                    "title": item["title"],
                    "reason": item["reasons"][0] if item["reasons"] else item["summary"],
                    "nextStep": item["nextSteps"][0],
                }
                for item in weekly_base[:3]
            ],
        },
    }


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def list_gap_priorities(athlete_id: str) -> List[Dict[str, Any]]:
    return parse_gap_priority_rows(store.query_items(f"USER#{athlete_id}", GAP_PRIORITY_SK_PREFIX))


def save_gap_priorities(
    athlete_id: str,
    priorities: List[Dict[str, Any]],
    actor_id: str,
    actor_role: str,
) -> List[Dict[str, Any]]:
    """Write each override, replacing any earlier one for the same gap.

    A gapId repeated within one request keeps its last occurrence.
    """
    now = _now_z()
    saved = []
    items = []
    for priority in {p["gapId"]: p for p in priorities}.values():
        record = {**priority, "updatedAt": now, "updatedBy": actor_id, "updatedByRole": actor_role}
        items.append({
            "PK": f"USER#{athlete_id}",
            "SK": f"{GAP_PRIORITY_SK_PREFIX}{priority['gapId']}",
            "entityType": "GAP_PRIORITY",
            "athleteId": athlete_id,
            **record,
            "createdAt": now,
        })
        saved.append(record)
    store.batch_write_items(items)
    logger.info("gap priorities saved athlete=%s count=%d role=%s", athlete_id, len(saved), actor_role)
    return saved
