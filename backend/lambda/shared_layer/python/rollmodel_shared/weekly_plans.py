"""rollmodel_shared.weekly_plans — Weekly training plans built from recent signals.

A plan picks up to two primary skills from recent action packs, checkoff
status, the active curriculum graph (when one exists) and prior plans, then
derives a drill menu, positional rounds, training constraints and a set of
positional focus cards. Every selection carries an explainability item that
points back at the records it came from.

Item layout:
    USER#{athleteId} / WEEKLY_PLAN#{weekOf}#{planId}    WEEKLY_PLAN
    WEEKLY_PLAN#{planId} / META                         WEEKLY_PLAN_META
"""

from __future__ import annotations

import datetime as dt
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from rollmodel_shared import store
from rollmodel_shared.entries import parse_entry_record
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.serialization import _iso_ms, _parse_iso
from rollmodel_shared.session_review import extract_entry_one_thing_cue

logger = logging.getLogger(__name__)

WEEKLY_PLAN_SK_PREFIX = "WEEKLY_PLAN#"
CURRICULUM_GRAPH_SK = "CURRICULUM_GRAPH#ACTIVE"

PLAN_STATUSES = ("draft", "active", "completed")
ITEM_STATUSES = ("pending", "done", "skipped")
FOCUS_TYPES = ("remediate-weakness", "reinforce-strength", "carry-over")
MENU_FIELDS = ("drills", "positionalRounds", "constraints")

MAX_PRIMARY_SKILLS = 2
MAX_POSITIONAL_FOCUS_CARDS = 4
MAX_ONE_THING_CUES = 3
MAX_MENU_ITEMS = 4

_EPOCH = "1970-01-01T00:00:00.000Z"
_DAY_MS = 24 * 60 * 60 * 1000
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def weekly_plan_key(athlete_id: str, week_of: str, plan_id: str) -> Tuple[str, str]:
    return f"USER#{athlete_id}", f"{WEEKLY_PLAN_SK_PREFIX}{week_of}#{plan_id}"


def weekly_plan_meta_key(plan_id: str) -> Tuple[str, str]:
    return f"WEEKLY_PLAN#{plan_id}", "META"


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _skill_id(value: str) -> str:
    return _NON_ALNUM.sub("-", value.strip().lower()).strip("-") or "general-fundamentals"


def _label_from_skill_id(value: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in value.split("-") if part)


def _truncate(value: str, limit: int = 160) -> str:
    trimmed = value.strip()
    if len(trimmed) <= limit:
        return trimmed
    return trimmed[: max(0, limit - 3)].strip() + "..."


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item.strip()]


def _unique(values: List[str], limit: int = 3) -> List[str]:
    out: List[str] = []
    seen = set()
    for value in values:
        trimmed = value.strip()
        if not trimmed or trimmed.lower() in seen:
            continue
        seen.add(trimmed.lower())
        out.append(trimmed)
        if len(out) >= limit:
            break
    return out


def normalize_week_of(value: str) -> str:
    """Monday (UTC) of the week containing ``value``, as YYYY-MM-DD."""
    parsed = _parse_iso(value)
    if parsed is None:
        raise ApiError.invalid("weekOf must be a valid ISO date.")
    day = parsed.astimezone(dt.timezone.utc).date()
    return (day - dt.timedelta(days=day.weekday())).isoformat()


def _action_pack(entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    pack = (entry.get("actionPackFinal") or {}).get("actionPack") or entry.get("actionPackDraft")
    if not isinstance(pack, dict):
        return None
    return {
        "leaks": _strings(pack.get("leaks")),
        "wins": _strings(pack.get("wins")),
        "oneFocus": pack.get("oneFocus") if isinstance(pack.get("oneFocus"), str) else "",
        "drills": _strings(pack.get("drills")),
        "positionalRequests": _strings(pack.get("positionalRequests")),
        "fallbackDecisionGuidance": (
            pack.get("fallbackDecisionGuidance") if isinstance(pack.get("fallbackDecisionGuidance"), str) else ""
        ),
    }


def _entry_reference(entry: Dict[str, Any], summary: str) -> Dict[str, Any]:
    return {
        "sourceType": "entry-action-pack",
        "sourceId": entry["entryId"],
        "createdAt": entry.get("createdAt"),
        "summary": _truncate(summary, 120),
    }


def _most_recent(references: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if len(references) <= 3:
        return references
    return sorted(references, key=lambda r: r.get("createdAt") or "", reverse=True)[:3]


# ---------------------------------------------------------------------------
# Skill candidates
# ---------------------------------------------------------------------------


class _Candidates:
    """Skill candidates keyed by normalized skill id, in first-seen order."""

    def __init__(self) -> None:
        self.by_id: Dict[str, Dict[str, Any]] = {}

    def add(self, skill: str, label: str, score: int, reason: str, reference: Dict[str, Any]) -> None:
        skill_id = _skill_id(skill)
        candidate = self.by_id.get(skill_id)
        if candidate is None:
            candidate = {
                "skillId": skill_id,
                "label": label.strip() or _label_from_skill_id(skill_id),
                "score": 0,
                "reasons": [],
                "references": [],
            }
            self.by_id[skill_id] = candidate
        candidate["score"] += score
        candidate["reasons"].append(reason)
        if not any(
            r["sourceType"] == reference["sourceType"] and r["sourceId"] == reference["sourceId"]
            for r in candidate["references"]
        ):
            candidate["references"].append(reference)

    def ranked(self) -> List[Dict[str, Any]]:
        return sorted(self.by_id.values(), key=lambda c: (-c["score"], -len(c["references"])))


def _checkoff_score(status: Any) -> int:
    if status == "superseded":
        return 4
    if status == "pending":
        return 3
    if status == "earned":
        return -2
    return -1


def _constraint_from_leaks(leaks: List[str]) -> str:
    lower = [leak.lower() for leak in leaks]

    def mentions(*words: str) -> bool:
        return any(word in leak for leak in lower for word in words)

    if mentions("gas", "tired", "fatigue", "pace"):
        return "Gas tank: keep first two rounds at 70-80% pace and recover through nasal breathing between exchanges."
    if mentions("head", "posture", "chin"):
        return "Head position: establish forehead/chin line before grips, then move hips."
    if mentions("frame", "underhook", "elbow"):
        return "Frames first: win inside frame position before any escape or attack attempt."
    return "Decision speed: within 3 seconds choose attack, recover, or stand-up before stalling in neutral exchanges."


def _menu(values: List[str], prefix: str) -> List[Dict[str, Any]]:
    return [
        {"id": f"{prefix}-{index + 1}", "label": _truncate(value, 140), "status": "pending"}
        for index, value in enumerate(values[:MAX_MENU_ITEMS])
    ]


def _explain(
    out: List[Dict[str, Any]], selection_type: str, value: str, reason: str, references: List[Dict[str, Any]]
) -> None:
    out.append({
        "selectionType": selection_type,
        "selectedValue": value,
        "reason": reason,
        "references": references[:3],
    })


# ---------------------------------------------------------------------------
# Positional focus cards
# ---------------------------------------------------------------------------


def _position_and_context(entry: Dict[str, Any], pack: Dict[str, Any]) -> Tuple[str, str]:
    tags = _strings((entry.get("sessionMetrics") or {}).get("tags"))
    structured_position = (entry.get("structured") or {}).get("position")
    position = (
        (pack["positionalRequests"] or [None])[0]
        or (structured_position if isinstance(structured_position, str) else None)
        or (tags or [None])[0]
        or "mixed-position"
    )
    quick_add = entry.get("quickAdd") or {}
    parts = [quick_add.get("class"), (entry.get("sessionContext") or {}).get("ruleset"), quick_add.get("gym")]
    context = " | ".join(p for p in parts if isinstance(p, str) and p.strip())
    return _truncate(position, 80), _truncate(context or "live rounds", 100)


def _failure_statements(entry: Dict[str, Any], pack: Dict[str, Any]) -> List[str]:
    final_review = (entry.get("sessionReviewFinal") or {}).get("review") or {}
    draft_review = entry.get("sessionReviewDraft") or {}
    return (
        pack["leaks"]
        + _strings((final_review.get("promptSet") or {}).get("whatFailed"))
        + _strings((draft_review.get("promptSet") or {}).get("whatFailed"))
    )


def _aggregate(
    buckets: Dict[str, Dict[str, Any]],
    statement: str,
    entry: Dict[str, Any],
    position: str,
    context: str,
    cue_tokens: List[str],
    kind: str,
) -> None:
    text = _truncate(statement, 120)
    key = _skill_id(text)
    matched = 1 if any(token in text.lower() for token in cue_tokens) else 0
    prefix = "Failure" if kind == "failure" else "Win"
    bucket = buckets.get(key)
    if bucket is None:
        buckets[key] = {
            "key": key,
            "statement": text,
            "count": 1,
            "references": [_entry_reference(entry, f"{prefix}: {text}")],
            "recurringFailures": [text] if kind == "failure" else [],
            "positions": [position] if position else [],
            "contexts": [context] if context else [],
            "lastSeenAt": entry.get("createdAt") or "",
            "oneThingMatches": matched,
        }
        return

    bucket["count"] += 1
    bucket["lastSeenAt"] = max(bucket["lastSeenAt"], entry.get("createdAt") or "")
    bucket["oneThingMatches"] += matched
    if not any(r["sourceId"] == entry["entryId"] for r in bucket["references"]):
        bucket["references"].append(_entry_reference(entry, f"{prefix}: {text}"))
    if kind == "failure":
        bucket["recurringFailures"].append(text)
    if position.strip():
        bucket["positions"].append(position)
    if context.strip():
        bucket["contexts"].append(context)


def _recency_score(last_seen: str, now_ms: int) -> int:
    seen_ms = _iso_ms(last_seen)
    if seen_ms is None:
        return 0
    days = max(0, (now_ms - seen_ms) // _DAY_MS)
    if days <= 7:
        return 2
    if days <= 14:
        return 1
    return 0


def build_positional_focus_cards(
    entries: List[Dict[str, Any]],
    prior_plans: List[Dict[str, Any]],
    one_focuses: List[str],
    primary_skills: List[str],
    now: str,
) -> List[Dict[str, Any]]:
    """Up to two remediation cards, one reinforcement card, or a fallback."""
    now_ms = _iso_ms(now) or 0
    recent = sorted(entries, key=lambda e: e.get("createdAt") or "", reverse=True)[:16]
    cues = _unique([extract_entry_one_thing_cue(e) or "" for e in recent], MAX_ONE_THING_CUES)
    cue_tokens = [t for cue in cues for t in _NON_ALNUM.split(cue.lower()) if len(t) >= 4]

    failures: Dict[str, Dict[str, Any]] = {}
    wins: Dict[str, Dict[str, Any]] = {}
    for entry in recent:
        pack = _action_pack(entry)
        if pack is None:
            continue
        position, context = _position_and_context(entry, pack)
        for statement in _failure_statements(entry, pack):
            _aggregate(failures, statement, entry, position, context, cue_tokens, "failure")
        for statement in pack["wins"]:
            _aggregate(wins, statement, entry, position, context, cue_tokens, "win")

    carry_over = [
        card
        for plan in prior_plans[:2]
        for card in (plan.get("positionalFocus") or {}).get("cards") or []
        if card.get("status") == "pending"
    ]
    carry_counts: Dict[str, int] = {}
    for card in carry_over:
        key = _skill_id(card.get("title") or "")
        carry_counts[key] = carry_counts.get(key, 0) + 1

    def failure_score(bucket: Dict[str, Any]) -> int:
        return (
            bucket["count"] * 3
            + bucket["oneThingMatches"]
            + _recency_score(bucket["lastSeenAt"], now_ms)
            + carry_counts.get(bucket["key"], 0) * 2
        )

    def win_score(bucket: Dict[str, Any]) -> int:
        return bucket["count"] * 2 + _recency_score(bucket["lastSeenAt"], now_ms)

    remediation = sorted(failures.values(), key=lambda b: -failure_score(b))[:2]
    remediation_keys = {b["key"] for b in remediation}
    reinforcement = next(
        (b for b in sorted(wins.values(), key=lambda b: -win_score(b)) if b["key"] not in remediation_keys),
        None,
    )

    cards: List[Dict[str, Any]] = []
    for bucket in remediation:
        carried = carry_counts.get(bucket["key"], 0) > 0
        position = (_unique(bucket["positions"], 1) or [None])[0]
        title = f"Carry over: {bucket['statement']}" if carried else f"Fix: {bucket['statement']}"
        cards.append({
            "id": f"focus-{len(cards) + 1}",
            "title": _truncate(title, 120),
            "focusType": "carry-over" if carried else "remediate-weakness",
            "priority": len(cards) + 1,
            "position": position or "mixed-position",
            "context": (_unique(bucket["contexts"], 1) or ["live rounds"])[0],
            "successCriteria": [
                f"Run 4 positional rounds from {position or 'assigned position'}.",
                "Keep failed outcomes to 1 or fewer per round in at least 3 rounds.",
                "Capture at least 2 successful corrections in the session log.",
            ],
            "rationale": _truncate(
                f"Recurring failures ({bucket['count']}) plus active one-thing cues indicate this is the "
                "highest remediation need this week.",
                180,
            ),
            "linkedOneThingCues": cues,
            "recurringFailures": _unique(bucket["recurringFailures"], 3),
            "references": _most_recent(bucket["references"]),
            "status": "pending",
        })

    if not cards and carry_over:
        carry = carry_over[0]
        cards.append({
            **carry,
            "id": "focus-1",
            "priority": 1,
            "focusType": "carry-over",
            "rationale": _truncate(
                carry.get("rationale") or "Carry-over card kept active because prior weekly focus remained incomplete.",
                180,
            ),
            "linkedOneThingCues": _unique(_strings(carry.get("linkedOneThingCues")) + cues, MAX_ONE_THING_CUES),
            "status": "pending",
        })

    if reinforcement is not None:
        cards.append({
            "id": f"focus-{len(cards) + 1}",
            "title": _truncate(f"Reinforce: {reinforcement['statement']}", 120),
            "focusType": "reinforce-strength",
            "priority": len(cards) + 1,
            "position": (_unique(reinforcement["positions"], 1) or primary_skills[:1] or ["mixed-position"])[0],
            "context": (_unique(reinforcement["contexts"], 1) or ["live rounds"])[0],
            "successCriteria": [
                "Start 3 rounds in this position/context.",
                "Hit the target success sequence at least 2 times under resistance.",
                "Document the trigger and finish details in post-session notes.",
            ],
            "rationale": _truncate(
                f"Recent wins ({reinforcement['count']}) justify reinforcement to preserve strengths while "
                "remediation work is in progress.",
                180,
            ),
            "linkedOneThingCues": cues,
            "recurringFailures": [],
            "references": _most_recent(reinforcement["references"]),
            "status": "pending",
        })

    if not cards:
        cards.append({
            "id": "focus-1",
            "title": f"Reinforce: {(primary_skills or one_focuses or ['base positioning'])[0]}",
            "focusType": "reinforce-strength",
            "priority": 1,
            "position": "mixed-position",
            "context": "live rounds",
            "successCriteria": [
                "Start 3 rounds from the assigned position.",
                "Track 2 successful executions with clean decision timing.",
            ],
            "rationale": "Fallback focus generated because recent logs lacked recurring signal density.",
            "linkedOneThingCues": _unique(one_focuses, MAX_ONE_THING_CUES),
            "recurringFailures": [],
            "references": [],
            "status": "pending",
        })

    return cards[:MAX_POSITIONAL_FOCUS_CARDS]


# ---------------------------------------------------------------------------
# Plan builder
# ---------------------------------------------------------------------------


def build_weekly_plan(
    athlete_id: str,
    entries: List[Dict[str, Any]],
    checkoffs: List[Dict[str, Any]],
    prior_plans: List[Dict[str, Any]],
    week_of: str,
    now: str,
    curriculum_graph: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a new active plan for ``week_of``.

    ``entries`` and ``prior_plans`` are expected newest first.
    """
    explainability: List[Dict[str, Any]] = []
    candidates = _Candidates()
    leaks: List[str] = []
    one_focuses: List[str] = []
    drill_hints: List[str] = []
    positional_hints: List[str] = []
    fallback_hints: List[str] = []

    for entry in entries:
        pack = _action_pack(entry)
        if pack is None:
            continue
        for leak in pack["leaks"]:
            leaks.append(leak)
            candidates.add(leak, leak, 4, "Frequent leak in recent GPT action packs", _entry_reference(entry, leak))
        for win in pack["wins"]:
            candidates.add(win, win, 1, "Recent win to reinforce", _entry_reference(entry, win))
        one_focus = pack["oneFocus"].strip()
        if one_focus:
            one_focuses.append(one_focus)
            candidates.add(
                one_focus, one_focus, 3, "One-focus cue from structured session", _entry_reference(entry, one_focus)
            )
        drill_hints.extend(pack["drills"])
        positional_hints.extend(pack["positionalRequests"])
        if pack["fallbackDecisionGuidance"].strip():
            fallback_hints.append(pack["fallbackDecisionGuidance"].strip())

    for checkoff in checkoffs:
        status = checkoff.get("status")
        candidates.add(
            checkoff["skillId"],
            checkoff["skillId"],
            _checkoff_score(status),
            f"Checkoff status {status}",
            {
                "sourceType": "checkoff",
                "sourceId": checkoff.get("checkoffId"),
                "createdAt": checkoff.get("updatedAt"),
                "summary": (
                    f"Checkoff {status} "
                    f"({checkoff.get('confirmedEvidenceCount', 0)}/{checkoff.get('minEvidenceRequired', 0)})"
                ),
            },
        )

    graph_nodes = (curriculum_graph or {}).get("nodes") or []
    graph_updated_at = (curriculum_graph or {}).get("updatedAt")
    for node in graph_nodes:
        priority = node.get("priority") or 0
        candidates.add(
            node["skillId"],
            node.get("label") or "",
            max(0, priority) * 2,
            f"Curriculum priority {priority}",
            {
                "sourceType": "curriculum-graph",
                "sourceId": node["skillId"],
                "createdAt": graph_updated_at,
                "summary": f"Curriculum graph node: {node.get('label')}",
            },
        )

    for prior in prior_plans:
        incomplete = any(item.get("status") == "pending" for field in MENU_FIELDS for item in prior.get(field) or [])
        for skill in prior.get("primarySkills") or []:
            candidates.add(
                skill,
                skill,
                2 if incomplete else -1,
                "Prior weekly plan has incomplete work"
                if incomplete
                else "Prior weekly plan completed; lower immediate priority",
                {
                    "sourceType": "weekly-plan",
                    "sourceId": prior.get("planId"),
                    "createdAt": prior.get("updatedAt"),
                    "summary": f"Prior week status {prior.get('status')}",
                },
            )

    ranked = candidates.ranked()
    positive = [c for c in ranked if c["score"] > 0]
    chosen = (positive or ranked)[:MAX_PRIMARY_SKILLS] or [
        {
            "skillId": "base-positioning",
            "label": "Base positioning",
            "score": 1,
            "reasons": ["Fallback baseline skill"],
            "references": [],
        }
    ]
    primary_skills = [c["label"].strip() or _label_from_skill_id(c["skillId"]) for c in chosen]
    for candidate in chosen:
        _explain(
            explainability,
            "primary-skill",
            candidate["label"],
            "; ".join(candidate["reasons"][:2]),
            _most_recent(candidate["references"]),
        )

    graph_node = next((n for n in graph_nodes if _skill_id(n["skillId"]) == chosen[0]["skillId"]), None) or {}
    graph_concepts = _strings(graph_node.get("supportingConcepts"))
    graph_constraints = _strings(graph_node.get("conditioningConstraints"))
    latest = entries[0] if entries else None

    supporting_concept = (graph_concepts or one_focuses or ["Win inside position before adding speed."])[0]
    if graph_concepts:
        supporting_refs = [{
            "sourceType": "curriculum-graph",
            "sourceId": graph_node["skillId"],
            "createdAt": graph_updated_at,
            "summary": _truncate(graph_concepts[0], 120),
        }]
    elif latest:
        supporting_refs = [_entry_reference(latest, (one_focuses or [supporting_concept])[0])]
    else:
        supporting_refs = []
    _explain(
        explainability,
        "supporting-concept",
        supporting_concept,
        "Selected from curriculum node concept or most recent one-focus cue.",
        supporting_refs,
    )

    conditioning_constraint = graph_constraints[0] if graph_constraints else _constraint_from_leaks(leaks)
    if graph_constraints:
        constraint_refs = [{
            "sourceType": "curriculum-graph",
            "sourceId": graph_node["skillId"],
            "createdAt": graph_updated_at,
            "summary": _truncate(graph_constraints[0], 120),
        }]
    elif latest:
        constraint_refs = [_entry_reference(latest, (leaks or [conditioning_constraint])[0])]
    else:
        constraint_refs = []
    _explain(
        explainability,
        "conditioning-constraint",
        conditioning_constraint,
        "Constraint tied to conditioning leak patterns or curriculum defaults.",
        constraint_refs,
    )

    def drill_for(candidate: Dict[str, Any]) -> str:
        needle = candidate["skillId"].replace("-", " ")
        return next(
            (hint for hint in drill_hints if needle in hint.lower()),
            f"3 x 2m isolated reps focused on {candidate['label']}.",
        )

    drills = _menu(
        [drill_for(c) for c in chosen] + drill_hints + [f"Decision drill: {focus}" for focus in one_focuses],
        "drill",
    )
    constraints = _menu(
        [conditioning_constraint]
        + [f"Fallback rule: {hint}" for hint in fallback_hints]
        + [f"Coaching cue: {supporting_concept}"],
        "constraint",
    )
    focus_cards = build_positional_focus_cards(entries, prior_plans, one_focuses, primary_skills, now)
    positional_rounds = _menu(
        positional_hints
        + [f"{card['position']}: {card['title']}" for card in focus_cards]
        + [f"2 x 5m positional rounds centered on {c['label']}." for c in chosen],
        "round",
    )

    for drill in drills:
        _explain(
            explainability,
            "drill",
            drill["label"],
            "Drill selected to reinforce top primary skill and one-focus cue.",
            chosen[0]["references"][:2],
        )
    for round_item in positional_rounds:
        refs = []
        for entry in entries[:2]:
            pack = _action_pack(entry) or {}
            refs.append(_entry_reference(entry, (pack.get("positionalRequests") or [round_item["label"]])[0]))
        _explain(
            explainability,
            "positional-round",
            round_item["label"],
            "Positional round aligns to repeated failure positions in structured sessions.",
            refs,
        )
    for card in focus_cards:
        _explain(explainability, "positional-round", card["title"], card["rationale"], card["references"])
    for constraint in constraints:
        _explain(
            explainability,
            "training-constraint",
            constraint["label"],
            "Constraint keeps conditioning and decision-quality aligned to current leaks.",
            constraint_refs,
        )

    return {
        "planId": str(uuid.uuid4()),
        "athleteId": athlete_id,
        "weekOf": normalize_week_of(week_of),
        "generatedAt": now,
        "updatedAt": now,
        "status": "active",
        "primarySkills": primary_skills,
        "supportingConcept": _truncate(supporting_concept, 140),
        "conditioningConstraint": _truncate(conditioning_constraint, 180),
        "drills": drills,
        "positionalRounds": positional_rounds,
        "constraints": constraints,
        "positionalFocus": {"cards": focus_cards, "locked": False, "updatedAt": now},
        "explainability": explainability,
    }


# ---------------------------------------------------------------------------
# Record parsing
# ---------------------------------------------------------------------------


def _item_status(value: Any) -> str:
    return value if value in ITEM_STATUSES else "pending"


def _parse_menu(value: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for index, raw in enumerate(value if isinstance(value, list) else []):
        if not isinstance(raw, dict):
            continue
        label = raw.get("label") if isinstance(raw.get("label"), str) else ""
        if not label.strip():
            continue
        item_id = raw.get("id")
        item: Dict[str, Any] = {
            "id": item_id if isinstance(item_id, str) and item_id.strip() else f"item-{index + 1}",
            "label": label.strip(),
            "status": _item_status(raw.get("status")),
        }
        if isinstance(raw.get("completedAt"), str):
            item["completedAt"] = raw["completedAt"]
        if isinstance(raw.get("coachNote"), str):
            item["coachNote"] = raw["coachNote"]
        out.append(item)
    return out


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _parse_focus_cards(value: Any) -> List[Dict[str, Any]]:
    cards: List[Dict[str, Any]] = []
    for index, raw in enumerate(value if isinstance(value, list) else []):
        if not isinstance(raw, dict):
            continue
        title = _clean_str(raw.get("title"))
        if not title:
            continue
        priority = raw.get("priority")
        if isinstance(priority, bool) or not isinstance(priority, int) or priority <= 0:
            priority = index + 1
        card: Dict[str, Any] = {
            "id": _clean_str(raw.get("id")) or f"focus-{index + 1}",
            "title": title,
            "focusType": raw.get("focusType") if raw.get("focusType") in FOCUS_TYPES else "remediate-weakness",
            "priority": priority,
            "position": _clean_str(raw.get("position")) or "mixed-position",
            "context": _clean_str(raw.get("context")) or "live rounds",
            "successCriteria": _strings(raw.get("successCriteria")),
            "rationale": raw.get("rationale") if isinstance(raw.get("rationale"), str) else "",
            "linkedOneThingCues": _strings(raw.get("linkedOneThingCues")),
            "recurringFailures": _strings(raw.get("recurringFailures")),
            "references": raw.get("references") if isinstance(raw.get("references"), list) else [],
            "status": _item_status(raw.get("status")),
        }
        if _clean_str(raw.get("coachNote")):
            card["coachNote"] = _clean_str(raw.get("coachNote"))
        cards.append(card)
    return cards


def _parse_positional_focus(value: Any, rounds: List[Dict[str, Any]], updated_at: str) -> Dict[str, Any]:
    if isinstance(value, dict):
        cards = _parse_focus_cards(value.get("cards"))
        if cards:
            cards.sort(key=lambda c: c["priority"])
            focus: Dict[str, Any] = {
                "cards": [{**card, "priority": index + 1} for index, card in enumerate(cards)],
                "locked": bool(value.get("locked")),
            }
            for field in ("lockedAt", "lockedBy"):
                if _clean_str(value.get(field)):
                    focus[field] = _clean_str(value.get(field))
            focus["updatedAt"] = _clean_str(value.get("updatedAt")) or _EPOCH
            return focus

    # Plans stored before focus cards existed only have positional rounds.
    cards = []
    for index, round_item in enumerate(rounds[:3]):
        card = {
            "id": f"focus-{index + 1}",
            "title": round_item["label"],
            "focusType": "remediate-weakness",
            "priority": index + 1,
            "position": round_item["label"].split(":")[0].strip() or "mixed-position",
            "context": "live rounds",
            "successCriteria": ["Run 3 rounds from this starting position and log outcomes."],
            "rationale": "Migrated from legacy positional rounds.",
            "linkedOneThingCues": [],
            "recurringFailures": [],
            "references": [],
            "status": round_item["status"],
        }
        if round_item.get("coachNote"):
            card["coachNote"] = round_item["coachNote"]
        cards.append(card)
    return {"cards": cards, "locked": False, "updatedAt": updated_at}


def parse_weekly_plan_record(item: Dict[str, Any]) -> Dict[str, Any]:
    record = store.strip_keys(item)
    updated_at = record.get("updatedAt") if isinstance(record.get("updatedAt"), str) else _EPOCH
    rounds = _parse_menu(record.get("positionalRounds"))
    plan: Dict[str, Any] = {
        "planId": record["planId"] if isinstance(record.get("planId"), str) else str(uuid.uuid4()),
        "athleteId": record.get("athleteId") if isinstance(record.get("athleteId"), str) else "",
        "weekOf": record.get("weekOf") if isinstance(record.get("weekOf"), str) else "",
        "generatedAt": record.get("generatedAt") if isinstance(record.get("generatedAt"), str) else _EPOCH,
        "updatedAt": updated_at,
        "status": record.get("status") if record.get("status") in PLAN_STATUSES else "active",
        "primarySkills": _strings(record.get("primarySkills")),
        "supportingConcept": record.get("supportingConcept") if isinstance(record.get("supportingConcept"), str) else "",
        "conditioningConstraint": (
            record.get("conditioningConstraint") if isinstance(record.get("conditioningConstraint"), str) else ""
        ),
        "drills": _parse_menu(record.get("drills")),
        "positionalRounds": rounds,
        "constraints": _parse_menu(record.get("constraints")),
        "positionalFocus": _parse_positional_focus(record.get("positionalFocus"), rounds, updated_at),
        "explainability": record.get("explainability") if isinstance(record.get("explainability"), list) else [],
    }
    for field in ("coachReview", "completion"):
        if isinstance(record.get(field), dict):
            plan[field] = record[field]
    return plan


def weekly_plan_item(plan: Dict[str, Any]) -> Dict[str, Any]:
    pk, sk = weekly_plan_key(plan["athleteId"], plan["weekOf"], plan["planId"])
    return {"PK": pk, "SK": sk, "entityType": "WEEKLY_PLAN", **plan}


def weekly_plan_meta_item(plan: Dict[str, Any], created_at: Optional[str] = None) -> Dict[str, Any]:
    pk, sk = weekly_plan_meta_key(plan["planId"])
    return {
        "PK": pk,
        "SK": sk,
        "entityType": "WEEKLY_PLAN_META",
        "athleteId": plan["athleteId"],
        "weekOf": plan["weekOf"],
        "createdAt": created_at or plan["generatedAt"],
        "updatedAt": plan["updatedAt"],
    }


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


def _optional_str(value: Any, message: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ApiError.invalid(message)
    return value.strip() or None


def _parse_menu_edits(value: Any, field: str) -> Optional[List[Dict[str, Any]]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ApiError.invalid(f"{field} must be an array.")
    edits = []
    for index, raw in enumerate(value):
        if not isinstance(raw, dict):
            raise ApiError.invalid(f"{field}[{index}] must be an object.")
        item_id = raw.get("id")
        if not isinstance(item_id, str) or not item_id.strip():
            raise ApiError.invalid(f"{field}[{index}].id must be a non-empty string.")
        edit: Dict[str, Any] = {"id": item_id.strip()}
        status = raw.get("status")
        if status is not None:
            if status not in ITEM_STATUSES:
                raise ApiError.invalid(f"{field}[{index}].status must be pending, done, or skipped.")
            edit["status"] = status
        note = _optional_str(raw.get("coachNote"), f"{field}[{index}].coachNote must be a string.")
        if note:
            edit["coachNote"] = note
        edits.append(edit)
    return edits


def parse_build_plan_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    week_of = _optional_str(payload.get("weekOf"), "weekOf must be a string.")
    return {"weekOf": week_of} if week_of else {}


def parse_update_plan_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    update: Dict[str, Any] = {}

    status = payload.get("status")
    if status is not None:
        if status not in PLAN_STATUSES:
            raise ApiError.invalid("weekly plan status must be draft, active, or completed.")
        update["status"] = status

    for field in ("coachReviewNote", "completionNotes", "supportingConcept", "conditioningConstraint"):
        value = _optional_str(payload.get(field), f"{field} must be a string.")
        if value:
            update[field] = value

    skills = payload.get("primarySkills")
    if skills is not None:
        if not isinstance(skills, list) or any(not isinstance(s, str) or not s.strip() for s in skills):
            raise ApiError.invalid("primarySkills must be an array of non-empty strings.")
        update["primarySkills"] = [s.strip() for s in skills]

    for field in MENU_FIELDS:
        edits = _parse_menu_edits(payload.get(field), field)
        if edits is not None:
            update[field] = edits
    return update


def _apply_menu_edits(items: List[Dict[str, Any]], edits: Optional[List[Dict[str, Any]]], now: str) -> List[Dict[str, Any]]:
    if not edits:
        return items
    by_id = {edit["id"]: edit for edit in edits}
    out = []
    for item in items:
        edit = by_id.get(item["id"])
        if edit is None:
            out.append(item)
            continue
        updated = {**item, "status": edit.get("status") or item["status"]}
        if updated["status"] == "done":
            updated["completedAt"] = item.get("completedAt") or now
        if edit.get("coachNote"):
            updated["coachNote"] = edit["coachNote"]
        out.append(updated)
    return out


def apply_plan_update(plan: Dict[str, Any], update: Dict[str, Any], actor_id: str, now: str) -> Dict[str, Any]:
    """Return ``plan`` with a parsed update applied.

    Completing a plan stamps ``completion.completedAt`` once; later updates
    keep the first timestamp.
    """
    updated = dict(plan)
    if update.get("status"):
        updated["status"] = update["status"]
    if update.get("primarySkills"):
        updated["primarySkills"] = update["primarySkills"][:MAX_PRIMARY_SKILLS]
    for field in ("supportingConcept", "conditioningConstraint"):
        if update.get(field):
            updated[field] = update[field]
    for field in MENU_FIELDS:
        updated[field] = _apply_menu_edits(plan.get(field) or [], update.get(field), now)

    if update.get("completionNotes") or update.get("status") == "completed":
        completion = dict(plan.get("completion") or {})
        if update.get("completionNotes"):
            completion["outcomeNotes"] = update["completionNotes"]
        if update.get("status") == "completed":
            completion["completedAt"] = completion.get("completedAt") or now
        updated["completion"] = completion

    if update.get("coachReviewNote"):
        updated["coachReview"] = {"reviewedBy": actor_id, "reviewedAt": now, "notes": update["coachReviewNote"]}

    updated["updatedAt"] = now
    return updated


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def list_weekly_plans(athlete_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Plans newest week first."""
    rows = store.query_items(f"USER#{athlete_id}", WEEKLY_PLAN_SK_PREFIX, scan_forward=False, limit=limit)
    return [parse_weekly_plan_record(r) for r in rows if r.get("entityType") == "WEEKLY_PLAN"]


def _load_curriculum_graph(athlete_id: str) -> Optional[Dict[str, Any]]:
    item = store.get_item(f"USER#{athlete_id}", CURRICULUM_GRAPH_SK)
    if not item or item.get("entityType") != "CURRICULUM_GRAPH" or not isinstance(item.get("nodes"), list):
        return None
    return item


def save_weekly_plan(plan: Dict[str, Any], created_at: Optional[str] = None) -> None:
    store.put_item(weekly_plan_item(plan))
    store.put_item(weekly_plan_meta_item(plan, created_at))


def build_and_save_weekly_plan(athlete_id: str, week_of: Optional[str], now: str) -> Dict[str, Any]:
    week_of = normalize_week_of(week_of or now[:10])
    pk = f"USER#{athlete_id}"
    entries = [
        parse_entry_record(r)
        for r in store.query_items(pk, "ENTRY#", scan_forward=False, limit=40)
        if r.get("entityType") == "ENTRY"
    ]
    checkoffs = [
        r for r in store.query_items(pk, "CHECKOFF#SKILL#", scan_forward=False) if r.get("entityType") == "CHECKOFF"
    ]
    prior_plans = list_weekly_plans(athlete_id, limit=8)

    plan = build_weekly_plan(
        athlete_id,
        entries,
        checkoffs,
        prior_plans,
        week_of,
        now,
        curriculum_graph=_load_curriculum_graph(athlete_id),
    )
    save_weekly_plan(plan)
    logger.info(
        "[INFO] weekly plan built athlete=%s plan=%s weekOf=%s skills=%s",
        athlete_id,
        plan["planId"],
        plan["weekOf"],
        plan["primarySkills"],
    )
    return plan


def load_weekly_plan(athlete_id: str, plan_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return ``(plan, meta)``; 404 when missing, 403 when owned by someone else."""
    meta = store.get_item(*weekly_plan_meta_key(plan_id))
    if (
        not meta
        or meta.get("entityType") != "WEEKLY_PLAN_META"
        or not isinstance(meta.get("athleteId"), str)
        or not isinstance(meta.get("weekOf"), str)
    ):
        raise ApiError.not_found("Weekly plan not found.")
    if meta["athleteId"] != athlete_id:
        raise ApiError.forbidden("User does not have permission for this weekly plan.")

    row = store.get_item(*weekly_plan_key(athlete_id, meta["weekOf"], plan_id))
    if not row or row.get("entityType") != "WEEKLY_PLAN":
        raise ApiError.not_found("Weekly plan not found.")
    return parse_weekly_plan_record(row), meta


def update_weekly_plan(
    athlete_id: str, plan_id: str, update: Dict[str, Any], actor_id: str, now: str
) -> Dict[str, Any]:
    plan, meta = load_weekly_plan(athlete_id, plan_id)
    updated = apply_plan_update(plan, update, actor_id, now)
    created_at = meta.get("createdAt") if isinstance(meta.get("createdAt"), str) else None
    save_weekly_plan(updated, created_at)
    logger.info("[INFO] weekly plan updated athlete=%s plan=%s status=%s", athlete_id, plan_id, updated["status"])
    return updated
