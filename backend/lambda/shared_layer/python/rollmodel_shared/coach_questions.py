"""rollmodel_shared.coach_questions — Coach-ready question sets from recent entries.

Signals (unresolved blockers, repeated failures and decision points) are
pulled from the five most recent structured entries. The model is asked for
three questions; whatever it cannot supply is filled from rule-based
questions built on the strongest signals. Each question is scored against a
five-part rubric so low-quality sets can be refreshed.

Item layout:
    USER#{athleteId} / COACH_QUESTION_SET#{generatedAt}#{questionSetId}   COACH_QUESTION_SET
    COACH_QUESTION_SET#{questionSetId} / META                             COACH_QUESTION_META
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from rollmodel_shared import config, openai_client, store
from rollmodel_shared.entries import parse_entry_record
from rollmodel_shared.http_utils import ApiError

logger = logging.getLogger(__name__)

COACH_QUESTION_SET_SK_PREFIX = "COACH_QUESTION_SET#"
COACH_QUESTION_PROMPT_VERSION = 1
SIGNAL_TYPES = ("unresolved_blocker", "repeated_failure", "decision_point")
LOW_QUALITY_SCORE = 70
DUPLICATE_SIMILARITY = 0.65
QUESTIONS_PER_SET = 3

_MAX_SOURCE_ENTRIES = 5
_MIN_SNIPPET = 12
_MAX_SNIPPET = 240

_STOP_WORDS = {
    "the", "a", "an", "and", "or", "to", "of", "for", "in", "on", "with", "at", "from", "that",
    "this", "is", "are", "be", "by", "as", "it", "you", "your", "when", "what", "which", "how",
}
_ACTION_VERBS = (
    "test", "drill", "apply", "adjust", "commit", "track", "measure", "start", "switch", "frame",
    "grip", "posture", "recover", "escape",
)
_DECISION_MARKERS = ("decide", "decision", "hesitate", "choose", "if", "when", "trigger")
_FAILURE_MARKERS = ("stuck", "failed", "couldn't", "cannot", "lost", "problem", "leak")
_TESTABLE = re.compile(r"next|first|second|round|session|measure|track|confirm|result|metric")
_SENTENCE_SPLIT = re.compile(r"[.!?\n]+")
_NON_WORD = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")

_SYSTEM_PROMPT = " ".join([
    "You generate coach-ready questions from athlete journal entries.",
    "Return strict JSON only with shape: ",
    '{"questions":[{"text":string,"signalType":"unresolved_blocker"|"repeated_failure"|"decision_point",'
    '"issueKey":string,"confidence":"high"|"medium"|"low",'
    '"evidence":[{"entryId":string,"createdAt":string,"excerpt":string}]}]}',
    "Rules:",
    "1) Return exactly 3 questions.",
    "2) Prioritize unresolved blockers, repeated failures, and decision points.",
    "3) Questions must be specific, testable in the next 1-2 sessions, and coach-actionable.",
    "4) Keep each question under 200 characters and avoid duplicates.",
    "5) Attach at least one evidence item per question from provided entry IDs only.",
    "6) Do not include markdown or additional keys.",
])

_FILLER_QUESTION = (
    "What concrete change will you test in your next session, and how will you measure whether it worked?"
)
_FILLER_DECISION_QUESTION = (
    "Which coaching cue should you prioritize first next session, and what observable result will indicate progress?"
)


def question_set_key(athlete_id: str, generated_at: str, question_set_id: str) -> Tuple[str, str]:
    return f"USER#{athlete_id}", f"{COACH_QUESTION_SET_SK_PREFIX}{generated_at}#{question_set_id}"


def question_set_meta_key(question_set_id: str) -> Tuple[str, str]:
    return f"{COACH_QUESTION_SET_SK_PREFIX}{question_set_id}", "META"


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _normalize_text(value: str) -> str:
    return _SPACES.sub(" ", _NON_WORD.sub(" ", value.strip().lower())).strip()


def _normalize_key(value: str) -> str:
    return _normalize_text(value).replace(" ", "-").strip("-")


def _clip(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[: limit - 3].rstrip() + "..."


def _as_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _snippet(value: str) -> Optional[str]:
    trimmed = value.strip()
    if len(trimmed) < _MIN_SNIPPET:
        return None
    return _clip(trimmed, _MAX_SNIPPET)


def _tokens(text: str) -> set:
    return {t for t in _normalize_text(text).split(" ") if len(t) >= 3 and t not in _STOP_WORDS}


def jaccard_similarity(a: str, b: str) -> float:
    a_tokens, b_tokens = _tokens(a), _tokens(b)
    if not a_tokens or not b_tokens:
        return 0.0
    shared = len(a_tokens & b_tokens)
    return shared / (len(a_tokens) + len(b_tokens) - shared)


def has_duplicate_questions(texts: List[str]) -> bool:
    return any(
        jaccard_similarity(texts[i], texts[j]) >= DUPLICATE_SIMILARITY
        for i in range(len(texts))
        for j in range(i + 1, len(texts))
    )


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def _entry_signals(entry: Dict[str, Any]) -> List[Tuple[str, str]]:
    structured = entry.get("structured") or {}
    pack = (entry.get("actionPackFinal") or {}).get("actionPack") or {}
    review = (entry.get("sessionReviewFinal") or {}).get("review") or {}

    blockers = [structured.get("problem")]
    blockers += _str_list(pack.get("leaks"))
    blockers += _str_list((review.get("promptSet") or {}).get("whatFailed"))
    for outcome in entry.get("partnerOutcomes") or []:
        if isinstance(outcome, dict):
            blockers += _str_list(outcome.get("whatFailed"))

    signals: List[Tuple[str, str]] = []
    for blocker in blockers:
        snippet = _snippet(_as_str(blocker))
        if snippet:
            signals.append(("unresolved_blocker", snippet))

    shared = _as_str((entry.get("sections") or {}).get("shared"))
    for sentence in _SENTENCE_SPLIT.split(shared):
        trimmed = sentence.strip()
        if not trimmed:
            continue
        lower = trimmed.lower()
        snippet = _snippet(trimmed)
        if snippet and any(marker in lower for marker in _FAILURE_MARKERS):
            signals.append(("unresolved_blocker", snippet))
        if snippet and any(marker in lower for marker in _DECISION_MARKERS):
            signals.append(("decision_point", snippet))

    for decision in (structured.get("cue"), structured.get("constraint"), pack.get("fallbackDecisionGuidance")):
        snippet = _snippet(_as_str(decision))
        if snippet:
            signals.append(("decision_point", snippet))
    return signals


def select_recent_entries(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """The five newest entries that carry structured or finalized AI output."""
    ordered = sorted(entries, key=lambda e: e.get("createdAt") or "", reverse=True)
    picked = [e for e in ordered if e.get("structured") or e.get("actionPackFinal") or e.get("sessionReviewFinal")]
    return picked[:_MAX_SOURCE_ENTRIES]


def _signal_score(signal: Dict[str, Any]) -> int:
    base = {"repeated_failure": 300, "unresolved_blocker": 200}.get(signal["signalType"], 120)
    return base + signal["count"] * 25


def extract_coach_signals(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Group entry signals by type and issue; a blocker seen twice is a repeated failure."""
    grouped: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        for signal_type, excerpt in _entry_signals(entry):
            issue_key = _normalize_key(excerpt)
            if not issue_key:
                continue
            signal = grouped.setdefault(f"{signal_type}:{issue_key}", {
                "issueKey": issue_key,
                "signalType": signal_type,
                "count": 0,
                "latestCreatedAt": entry["createdAt"],
                "evidence": [],
            })
            signal["count"] += 1
            signal["latestCreatedAt"] = max(signal["latestCreatedAt"], entry["createdAt"])
            signal["evidence"].append({
                "entryId": entry["entryId"],
                "createdAt": entry["createdAt"],
                "signalType": signal_type,
                "excerpt": excerpt,
            })

    signals = []
    for signal in grouped.values():
        if signal["signalType"] == "unresolved_blocker" and signal["count"] >= 2:
            signal = {**signal, "signalType": "repeated_failure", "issueKey": f"repeated-{signal['issueKey']}"}
        evidence = []
        seen = set()
        for item in sorted(signal["evidence"], key=lambda e: e["createdAt"], reverse=True):
            if item["entryId"] not in seen:
                seen.add(item["entryId"])
                evidence.append(item)
        signals.append({**signal, "evidence": evidence[:3]})

    signals.sort(key=lambda s: s["latestCreatedAt"], reverse=True)
    signals.sort(key=_signal_score, reverse=True)
    return signals


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


def _fallback_question(signal: Dict[str, Any]) -> Dict[str, Any]:
    exemplar = signal["evidence"][0]["excerpt"] if signal["evidence"] else signal["issueKey"].replace("-", " ")
    quoted = _clip(exemplar, 90)
    if signal["signalType"] == "repeated_failure":
        text = (
            f'The pattern "{quoted}" keeps recurring. What one decision rule will you test first in your next '
            "two rounds to interrupt it?"
        )
    elif signal["signalType"] == "decision_point":
        text = f'When "{quoted}" appears, which cue will trigger your next action, and what result will confirm the cue worked?'
    else:
        text = f'What single adjustment will you test next session to address "{quoted}", and how will you measure if it improved?'
    return {
        "text": text,
        "signalType": signal["signalType"],
        "issueKey": signal["issueKey"],
        "confidence": "high" if signal["count"] >= 2 else "medium",
        "evidence": signal["evidence"],
    }


def _ai_evidence(signal_type: str, value: Any, signals: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    evidence = []
    for item in value if isinstance(value, list) else []:
        if not isinstance(item, dict):
            continue
        entry_id = _as_str(item.get("entryId"))
        created_at = _as_str(item.get("createdAt"))
        excerpt = _snippet(_as_str(item.get("excerpt")))
        if entry_id and created_at and excerpt:
            evidence.append({"entryId": entry_id, "createdAt": created_at, "signalType": signal_type, "excerpt": excerpt})
    if evidence:
        return evidence[:3]
    for signal in signals:
        if signal["signalType"] == signal_type:
            return signal["evidence"][:2]
    return []


def parse_ai_questions(raw: List[Any], signals: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    questions = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        text = _as_str(item.get("text"))
        if not text:
            continue
        signal_type = item.get("signalType") if item.get("signalType") in SIGNAL_TYPES else "unresolved_blocker"
        issue_key = _normalize_key(_as_str(item.get("issueKey"))) or (
            signals[0]["issueKey"] if signals else "unspecified-issue"
        )
        confidence = item.get("confidence") if item.get("confidence") in ("high", "medium", "low") else "medium"
        questions.append({
            "text": text if text.endswith("?") else f"{text}?",
            "signalType": signal_type,
            "issueKey": issue_key,
            "confidence": confidence,
            "evidence": _ai_evidence(signal_type, item.get("evidence"), signals),
        })
    return questions


def _prompt_context(entries: List[Dict[str, Any]]) -> str:
    return json.dumps([
        {
            "entryId": entry["entryId"],
            "createdAt": entry["createdAt"],
            "structured": entry.get("structured"),
            "shared": (entry.get("sections") or {}).get("shared"),
            "actionPackFinal": (entry.get("actionPackFinal") or {}).get("actionPack"),
            "sessionReviewFinal": (entry.get("sessionReviewFinal") or {}).get("review"),
            "partnerOutcomes": [
                {k: o.get(k) for k in ("partnerDisplayName", "whatWorked", "whatFailed")}
                for o in entry.get("partnerOutcomes") or []
                if isinstance(o, dict)
            ],
        }
        for entry in entries
    ], default=str)


def _signal_summary(signals: List[Dict[str, Any]]) -> str:
    return json.dumps([
        {
            "signalType": s["signalType"],
            "issueKey": s["issueKey"],
            "count": s["count"],
            "evidence": [{k: e[k] for k in ("entryId", "createdAt", "excerpt")} for e in s["evidence"]],
        }
        for s in signals[:8]
    ])


def _ai_candidates(entries: List[Dict[str, Any]], signals: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Model-written questions, or nothing when the provider fails."""
    try:
        payload = openai_client.request_json_output([
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": f"Source entries: {_prompt_context(entries)}\nSignal summary: {_signal_summary(signals)}",
            },
        ])
    except (ApiError, ClientError) as exc:
        logger.warning("coach questions using rule-based fallback: %s", exc)
        return []
    questions = payload.get("questions") if isinstance(payload, dict) else None
    if not isinstance(questions, list):
        logger.warning("coach questions using rule-based fallback: payload missing questions array")
        return []
    return parse_ai_questions(questions, signals)


def score_question(question: Dict[str, Any], siblings: List[str]) -> Dict[str, Any]:
    """Rubric scores (1-5 each) and a weighted total out of 100."""
    notes = []
    normalized = _normalize_text(question["text"])

    specific = 5 if 35 <= len(normalized) <= 220 else 2
    if specific < 5:
        notes.append("Question is too short or too long to be specific.")
    testable = 5 if _TESTABLE.search(normalized) else 2
    if testable < 5:
        notes.append("Question lacks a clear test condition.")
    actionable = 5 if any(verb in normalized for verb in _ACTION_VERBS) else 2
    if actionable < 5:
        notes.append("Question does not imply a coach-actionable intervention.")
    evidence_backed = 5 if question.get("evidence") else 1
    if evidence_backed < 5:
        notes.append("Question is missing evidence snippets.")
    duplicate = any(jaccard_similarity(question["text"], s) >= DUPLICATE_SIMILARITY for s in siblings)
    non_duplicative = 1 if duplicate else 5
    if duplicate:
        notes.append("Question is too similar to another generated question.")

    total = (specific * 20 + testable * 20 + actionable * 20 + evidence_backed * 25 + non_duplicative * 15) // 5
    return {
        "specific": specific,
        "testable": testable,
        "coachActionable": actionable,
        "evidenceBacked": evidence_backed,
        "nonDuplicative": non_duplicative,
        "total": total,
        "needsRevision": total < LOW_QUALITY_SCORE,
        "notes": notes,
    }


def _is_duplicate(text: str, questions: List[Dict[str, Any]]) -> bool:
    return any(jaccard_similarity(q["text"], text) >= DUPLICATE_SIMILARITY for q in questions)


def finalize_questions(candidates: List[Dict[str, Any]], signals: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Dedupe, top up to three from signals and fillers, then number and score."""
    picked: List[Dict[str, Any]] = []
    for candidate in candidates:
        if candidate.get("text") and not _is_duplicate(candidate["text"], picked):
            picked.append(candidate)

    for signal in signals:
        if len(picked) >= QUESTIONS_PER_SET:
            break
        fallback = _fallback_question(signal)
        if not _is_duplicate(fallback["text"], picked):
            picked.append(fallback)

    while len(picked) < QUESTIONS_PER_SET:
        if not _is_duplicate(_FILLER_QUESTION, picked):
            filler = (_FILLER_QUESTION, "unresolved_blocker", f"general-improvement-{len(picked) + 1}")
        else:
            filler = (_FILLER_DECISION_QUESTION, "decision_point", f"general-decision-{len(picked) + 1}")
        picked.append({
            "text": filler[0],
            "signalType": filler[1],
            "issueKey": filler[2],
            "confidence": "low",
            "evidence": [],
        })

    top = picked[:QUESTIONS_PER_SET]
    return [
        {
            **question,
            "questionId": str(uuid.uuid4()),
            "priority": index + 1,
            "rubric": score_question(question, [q["text"] for i, q in enumerate(top) if i != index]),
        }
        for index, question in enumerate(top)
    ]


def _quality_summary(questions: List[Dict[str, Any]]) -> Dict[str, Any]:
    totals = [q["rubric"]["total"] for q in questions]
    texts = [q.get("coachEditedText") or q["text"] for q in questions]
    return {
        "averageScore": int(math.floor(sum(totals) / len(totals) + 0.5)) if totals else 0,
        "minScore": min(totals) if totals else 0,
        "hasDuplicates": has_duplicate_questions(texts),
        "lowConfidenceCount": sum(1 for q in questions if q.get("confidence") == "low"),
    }


def generate_question_set(
    athlete_id: str,
    entries: List[Dict[str, Any]],
    now: str,
    generated_by: str,
    generated_by_role: str,
    generation_reason: str,
) -> Dict[str, Any]:
    recent = select_recent_entries(entries)
    signals = extract_coach_signals(recent)
    questions = finalize_questions(_ai_candidates(recent, signals), signals)
    return {
        "questionSetId": str(uuid.uuid4()),
        "athleteId": athlete_id,
        "generatedAt": now,
        "updatedAt": now,
        "sourceEntryIds": [e["entryId"] for e in recent],
        "generationReason": generation_reason,
        "generatedBy": generated_by,
        "generatedByRole": generated_by_role,
        "model": config.OPENAI_MODEL,
        "promptVersion": COACH_QUESTION_PROMPT_VERSION,
        "qualitySummary": _quality_summary(questions),
        "questions": questions,
    }


def rescore_question_set(question_set: Dict[str, Any]) -> Dict[str, Any]:
    """Re-run the rubric against coach-edited text where present."""
    texts = [q.get("coachEditedText") or q["text"] for q in question_set["questions"]]
    questions = [
        {
            **q,
            "rubric": score_question({**q, "text": texts[i]}, [t for j, t in enumerate(texts) if j != i]),
        }
        for i, q in enumerate(question_set["questions"])
    ]
    return {**question_set, "questions": questions, "qualitySummary": _quality_summary(questions)}


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


def parse_regenerate_flag(query: Dict[str, str]) -> bool:
    raw = (query.get("regenerate") or "").strip()
    return raw.lower() == "true" or raw == "1"


def _parse_pairs(value: Any, field: str, value_field: str) -> Optional[List[Tuple[str, str]]]:
    if not isinstance(value, list):
        return None
    pairs = []
    for index, raw in enumerate(value):
        if not isinstance(raw, dict):
            raise ApiError.invalid(f"{field}[{index}] must be an object.")
        question_id = _as_str(raw.get("questionId"))
        text = _as_str(raw.get(value_field))
        if not question_id or not text:
            raise ApiError.invalid(f"{field}[{index}] must include non-empty questionId and {value_field}.")
        pairs.append((question_id, text))
    return pairs


def parse_question_set_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    edits = _parse_pairs(payload.get("questionEdits"), "questionEdits", "text")
    responses = _parse_pairs(payload.get("responses"), "responses", "response")
    coach_note = payload.get("coachNote")
    if edits is None and responses is None and coach_note is None:
        raise ApiError.invalid("At least one of questionEdits, responses, or coachNote must be provided.")
    if coach_note is not None and not isinstance(coach_note, str):
        raise ApiError.invalid("coachNote must be a string when provided.")

    update: Dict[str, Any] = {}
    if edits is not None:
        update["questionEdits"] = dict(edits)
    if responses is not None:
        update["responses"] = dict(responses)
    if coach_note is not None:
        update["coachNote"] = coach_note.strip()
    return update


def is_coach_edit(update: Dict[str, Any]) -> bool:
    return "questionEdits" in update or "coachNote" in update


def apply_question_set_update(
    question_set: Dict[str, Any], update: Dict[str, Any], actor_id: str, now: str
) -> Dict[str, Any]:
    edits = update.get("questionEdits") or {}
    responses = update.get("responses") or {}
    questions = []
    for question in question_set["questions"]:
        question = dict(question)
        if question["questionId"] in edits:
            question["coachEditedText"] = edits[question["questionId"]]
        if question["questionId"] in responses:
            question["athleteResponse"] = responses[question["questionId"]]
        questions.append(question)

    updated = {**question_set, "updatedAt": now, "questions": questions}
    if "coachNote" in update:
        updated["coachNote"] = update["coachNote"]
    if is_coach_edit(update):
        updated["coachEditedAt"] = now
        updated["coachEditedBy"] = actor_id
    return rescore_question_set(updated)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def parse_question_set_record(item: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not item or item.get("entityType") != "COACH_QUESTION_SET":
        return None
    if not all(isinstance(item.get(k), str) for k in ("questionSetId", "athleteId", "generatedAt", "updatedAt")):
        return None
    if not isinstance(item.get("sourceEntryIds"), list) or not isinstance(item.get("questions"), list):
        return None
    return store.strip_keys(item)


def question_set_item(question_set: Dict[str, Any]) -> Dict[str, Any]:
    pk, sk = question_set_key(question_set["athleteId"], question_set["generatedAt"], question_set["questionSetId"])
    return {"PK": pk, "SK": sk, "entityType": "COACH_QUESTION_SET", **question_set}


def question_set_meta_item(question_set: Dict[str, Any]) -> Dict[str, Any]:
    pk, sk = question_set_meta_key(question_set["questionSetId"])
    return {
        "PK": pk,
        "SK": sk,
        "entityType": "COACH_QUESTION_META",
        "questionSetId": question_set["questionSetId"],
        "athleteId": question_set["athleteId"],
        "generatedAt": question_set["generatedAt"],
    }


def latest_question_set(athlete_id: str) -> Optional[Dict[str, Any]]:
    rows = store.query_items(f"USER#{athlete_id}", COACH_QUESTION_SET_SK_PREFIX, scan_forward=False, limit=1)
    return parse_question_set_record(rows[0]) if rows else None


def get_or_generate_question_set(
    athlete_id: str, regenerate: bool, actor_id: str, actor_role: str, now: str
) -> Tuple[Dict[str, Any], str]:
    """Return ``(questionSet, outcome)``; outcome is stored, created or regenerated.

    The latest stored set is returned unless ``regenerate`` is set or none
    exists yet. A regenerated set records whether it replaced a low-quality one.
    """
    latest = latest_question_set(athlete_id)
    if latest and not regenerate:
        return latest, "stored"

    if not regenerate:
        reason = "initial"
    elif latest and latest["qualitySummary"]["minScore"] < LOW_QUALITY_SCORE:
        reason = "low-confidence-refresh"
    else:
        reason = "regenerate"

    entries = [
        parse_entry_record(r)
        for r in store.query_items(f"USER#{athlete_id}", "ENTRY#", scan_forward=False, limit=20)
        if r.get("entityType") == "ENTRY"
    ]
    question_set = generate_question_set(athlete_id, entries, now, actor_id, actor_role, reason)
    store.put_item(question_set_item(question_set))
    store.put_item(question_set_meta_item(question_set))
    logger.info(
        "[INFO] coach questions generated athlete=%s set=%s reason=%s minScore=%d",
        athlete_id,
        question_set["questionSetId"],
        reason,
        question_set["qualitySummary"]["minScore"],
    )
    return question_set, "regenerated" if latest else "created"


def load_question_set(question_set_id: str) -> Dict[str, Any]:
    meta = store.get_item(*question_set_meta_key(question_set_id))
    if not meta or not isinstance(meta.get("athleteId"), str) or not isinstance(meta.get("generatedAt"), str):
        raise ApiError.not_found("Coach question set not found.")
    question_set = parse_question_set_record(
        store.get_item(*question_set_key(meta["athleteId"], meta["generatedAt"], question_set_id))
    )
    if question_set is None:
        raise ApiError.not_found("Coach question set not found.")
    return question_set


def save_question_set(question_set: Dict[str, Any]) -> None:
    store.put_item(question_set_item(question_set))
