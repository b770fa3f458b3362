"""rollmodel_shared.structured_extraction — Heuristic structured metadata for entries.

Scans the free text of an entry (quick-add notes, shared and private
sections, technique mentions) and proposes values for the five structured
fields: position, technique, outcome, problem and cue. Each proposal is a
suggestion with a confidence level and a review status. Manual structured
values and explicit confirmations from the athlete or coach are folded in
on top of the heuristics, and the final field values are derived from the
resulting suggestion list.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from rollmodel_shared.serialization import _now_z

STRUCTURED_FIELDS = ("position", "technique", "outcome", "problem", "cue")

_I = re.IGNORECASE

POSITION_PATTERNS = [
    (re.compile(r"half\s*guard\s*(bottom|from bottom)?", _I), "half guard bottom", "high"),
    (re.compile(r"half\s*guard\s*(top|from top)", _I), "half guard top", "high"),
    (re.compile(r"closed\s*guard", _I), "closed guard", "high"),
    (re.compile(r"open\s*guard", _I), "open guard", "medium"),
    (re.compile(r"side\s*control\s*(bottom|from bottom)", _I), "side control bottom", "high"),
    (re.compile(r"side\s*control\s*(top|from top)?", _I), "side control top", "medium"),
    (re.compile(r"mount\s*(bottom|from bottom)", _I), "mount bottom", "high"),
    (re.compile(r"mount\s*(top|from top)?", _I), "mount top", "medium"),
    (re.compile(r"back\s*(control|takes?|attacks?)", _I), "back control", "medium"),
    (re.compile(r"turtle", _I), "turtle", "medium"),
    (re.compile(r"de\s*la\s*riva", _I), "de la riva guard", "high"),
    (re.compile(r"single\s*leg\s*x", _I), "single leg x", "high"),
]

TECHNIQUE_PATTERNS = [
    (re.compile(r"knee\s*(cut|slice)", _I), "knee cut pass", "high"),
    (re.compile(r"cross\s*collar\s*choke", _I), "cross collar choke", "high"),
    (re.compile(r"arm\s*bar|juji\s*gatame", _I), "armbar", "high"),
    (re.compile(r"triangle", _I), "triangle choke", "high"),
    (re.compile(r"guillotine", _I), "guillotine", "high"),
    (re.compile(r"kimura", _I), "kimura", "high"),
    (re.compile(r"omoplata", _I), "omoplata", "high"),
    (re.compile(r"single\s*leg", _I), "single leg takedown", "medium"),
    (re.compile(r"double\s*leg", _I), "double leg takedown", "medium"),
    (re.compile(r"hip\s*escape|shrimp", _I), "hip escape", "medium"),
    (re.compile(r"bridge\s*and\s*roll|upa", _I), "upa escape", "medium"),
]

OUTCOME_PATTERNS = [
    (re.compile(r"tapped|submitted|got\s+the\s+tap|finish(ed)?", _I), "submission finish", "high"),
    (re.compile(r"sweep(ed)?", _I), "sweep success", "high"),
    (re.compile(r"pass(ed)?", _I), "guard pass success", "medium"),
    (re.compile(r"escap(ed|e)\s+(mount|side control|back)", _I), "escape success", "high"),
    (re.compile(r"got\s+passed|pass\s+was\s+too\s+easy", _I), "guard passed", "high"),
    (re.compile(r"got\s+swept", _I), "swept", "high"),
    (re.compile(r"stalled|couldn't?\s+finish", _I), "stalled attack", "medium"),
]

CONCEPT_PATTERNS = [
    re.compile(p, _I)
    for p in (
        r"frame(s|ing)?",
        r"underhook(s)?",
        r"inside\s+position",
        r"timing",
        r"distance\s+management",
        r"hip\s+line",
        r"posture",
        r"head\s+position",
        r"base",
    )
]

CONDITIONING_PATTERNS = [
    (re.compile(r"gassed|gas\s+tank|out\s+of\s+breath|cardio", _I), "cardio fatigue"),
    (re.compile(r"forearm(s)?\s+pump|grip\s+fatigue", _I), "grip fatigue"),
    (re.compile(r"slow\s+reaction|late\s+reaction", _I), "reaction speed drop"),
    (re.compile(r"hips?\s+(felt\s+)?heavy", _I), "hip mobility fatigue"),
]

_FAILURE_SNIPPET_RE = re.compile(
    r"(?:couldn't?|failed\s+to|kept\s+getting|kept\s+losing|problem\s+was|issue\s+was|got\s+passed|got\s+swept)"
    r"([^.\n]{0,120})",
    _I,
)
_PROBLEM_RE = re.compile(r"(?:problem|issue|kept\s+getting|kept\s+losing|couldn't?)([^.\n]{3,140})", _I)
_CUE_RE = re.compile(r"(?:cue|focus|remember|one\s+thing|key|next\s+time)\s*[:-]?\s*([^.\n]{3,140})", _I)
_SHORT_CUE_RE = re.compile(r"(pummel\s+first|frame\s+first|elbow\s+knee\s+connection|head\s+position\s+first)", _I)

Pick = Tuple[str, str, Optional[str]]


def normalize_space(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def truncate(value: str, max_len: int = 140) -> str:
    if len(value) <= max_len:
        return value
    return value[: max_len - 1] + "…"


def _normalize_field_value(value: str) -> str:
    return normalize_space(value).lower()


# ---------------------------------------------------------------------------
# Heuristic pickers
# ---------------------------------------------------------------------------

def pick_by_patterns(text: str, patterns) -> Optional[Pick]:
    for pattern, value, confidence in patterns:
        match = pattern.search(text)
        if match:
            return value, confidence, truncate(match.group(0))
    return None


def _pick_technique(text: str, mentions: List[str]) -> Optional[Pick]:
    for mention in mentions:
        cleaned = normalize_space(mention)
        if cleaned:
            return cleaned, "high", truncate(cleaned)
    return pick_by_patterns(text, TECHNIQUE_PATTERNS)


def extract_failures(text: str) -> List[str]:
    values: List[str] = []
    for match in _FAILURE_SNIPPET_RE.finditer(text):
        snippet = normalize_space(re.sub(r"[.,;:]+$", "", match.group(0)))
        if snippet and snippet not in values:
            values.append(snippet)
    return values[:3]


def extract_concepts(text: str) -> List[str]:
    found: List[str] = []
    for pattern in CONCEPT_PATTERNS:
        match = pattern.search(text)
        if match:
            concept = normalize_space(match.group(0).lower())
            if concept not in found:
                found.append(concept)
    return found[:5]


def extract_conditioning_issues(text: str) -> List[str]:
    found = [value for pattern, value in CONDITIONING_PATTERNS if pattern.search(text)]
    return found[:3]


def _extract_problem(text: str, failures: List[str]) -> Optional[Pick]:
    match = _PROBLEM_RE.search(text)
    if match:
        return truncate(normalize_space(match.group(0))), "medium", truncate(match.group(0))
    if failures:
        return failures[0], "medium", truncate(failures[0])
    return None


def _extract_cue(text: str) -> Optional[Pick]:
    match = _CUE_RE.search(text)
    if match and match.group(1):
        return truncate(normalize_space(match.group(1))), "high", truncate(match.group(0))
    short = _SHORT_CUE_RE.search(text)
    if short:
        return normalize_space(short.group(0)), "medium", truncate(short.group(0))
    return None


def _build_suggestion(field: str, pick: Pick, now: str) -> Dict[str, Any]:
    value, confidence, excerpt = pick
    value = normalize_space(value)
    suggestion: Dict[str, Any] = {
        "field": field,
        "value": value,
        "confidence": confidence,
        "status": "suggested",
    }
    if confidence != "low":
        suggestion["confirmationPrompt"] = f"This sounds like {value} for {field}. Confirm?"
    if excerpt:
        suggestion["sourceExcerpt"] = excerpt
    suggestion["updatedAt"] = now
    return suggestion


# ---------------------------------------------------------------------------
# Manual overrides and confirmations
# ---------------------------------------------------------------------------

def _ordered(by_field: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [by_field[f] for f in STRUCTURED_FIELDS if f in by_field]


def apply_structured_overrides(suggestions, structured, now: str, actor_role: str) -> List[Dict[str, Any]]:
    by_field = {s["field"]: s for s in suggestions}
    for field in STRUCTURED_FIELDS:
        manual = (structured.get(field) or "").strip() if isinstance(structured.get(field), str) else ""
        if not manual:
            continue
        existing = by_field.get(field)
        if existing is None:
            by_field[field] = {
                "field": field,
                "value": manual,
                "confidence": "high",
                "status": "corrected",
                "correctionValue": manual,
                "updatedAt": now,
                "updatedByRole": actor_role,
            }
        elif _normalize_field_value(existing["value"]) == _normalize_field_value(manual):
            by_field[field] = {**existing, "status": "confirmed", "updatedAt": now, "updatedByRole": actor_role}
        else:
            by_field[field] = {
                **existing,
                "status": "corrected",
                "correctionValue": manual,
                "updatedAt": now,
                "updatedByRole": actor_role,
            }
    return _ordered(by_field)


def apply_confirmations(suggestions, confirmations, now: str, actor_role: str) -> List[Dict[str, Any]]:
    if not confirmations:
        return suggestions

    by_field = {s["field"]: s for s in suggestions}
    for confirmation in confirmations:
        existing = by_field.get(confirmation.get("field"))
        if existing is None:
            continue

        base = {**existing, "updatedAt": now, "updatedByRole": actor_role}
        note = (confirmation.get("note") or "").strip()
        if note:
            base["note"] = note

        status = confirmation.get("status")
        if status in ("confirmed", "rejected"):
            base.pop("correctionValue", None)
            by_field[existing["field"]] = {**base, "status": status}
            continue

        correction = (confirmation.get("correctionValue") or "").strip()
        if correction:
            by_field[existing["field"]] = {**base, "status": "corrected", "correctionValue": correction}

    return _ordered(by_field)


def _confidence_flags(suggestions) -> List[Dict[str, Any]]:
    flags = []
    for item in suggestions:
        if item["confidence"] == "high":
            continue
        flag = {"field": item["field"], "confidence": item["confidence"]}
        if item.get("note"):
            flag["note"] = item["note"]
        flags.append(flag)
    return flags


def apply_suggestions_to_fields(structured: Optional[Dict[str, Any]], suggestions) -> Optional[Dict[str, Any]]:
    """Merge reviewed suggestions into the structured fields.

    Rejected suggestions never apply. Confirmed and corrected suggestions
    always win; plain suggestions only fill empty fields or replace values
    when their confidence is not low.
    """
    merged = dict(structured or {})
    for suggestion in suggestions:
        status = suggestion["status"]
        if status == "rejected":
            continue
        final = suggestion.get("correctionValue") if status == "corrected" else suggestion.get("value")
        if not final:
            continue
        if not merged.get(suggestion["field"]) or status != "suggested":
            merged[suggestion["field"]] = final
        elif suggestion["confidence"] != "low":
            merged[suggestion["field"]] = final
    return merged or None


def extract_structured_metadata(
    entry: Dict[str, Any],
    *,
    now: Optional[str] = None,
    actor_role: str = "athlete",
) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
    """Return ``(structured, extraction)`` for an entry-shaped payload."""
    now = now or _now_z()
    mentions = entry.get("rawTechniqueMentions") or []
    sections = entry.get("sections") or {}
    quick_add = entry.get("quickAdd") or {}
    text = normalize_space(
        " ".join(
            part
            for part in (quick_add.get("notes"), sections.get("shared"), sections.get("private"), " ".join(mentions))
            if part
        )
    )

    failures = extract_failures(text)
    picks = {
        "position": pick_by_patterns(text, POSITION_PATTERNS),
        "technique": _pick_technique(text, mentions),
        "outcome": pick_by_patterns(text, OUTCOME_PATTERNS),
        "problem": _extract_problem(text, failures),
        "cue": _extract_cue(text),
    }
    suggestions = [_build_suggestion(field, pick, now) for field, pick in picks.items() if pick]

    suggestions = apply_structured_overrides(suggestions, entry.get("structured") or {}, now, actor_role)
    suggestions = apply_confirmations(suggestions, entry.get("structuredMetadataConfirmations"), now, actor_role)
    structured = apply_suggestions_to_fields(entry.get("structured"), suggestions)

    return structured, {
        "generatedAt": now,
        "suggestions": suggestions,
        "concepts": extract_concepts(text),
        "failures": failures,
        "conditioningIssues": extract_conditioning_issues(text),
        "confidenceFlags": _confidence_flags(suggestions),
    }
