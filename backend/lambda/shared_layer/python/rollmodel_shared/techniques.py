"""rollmodel_shared.techniques — Unmapped technique phrase candidates."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from rollmodel_shared import store
from rollmodel_shared.keywords import normalize_token

TECHNIQUE_CANDIDATE_PK = "TECHNIQUE_CANDIDATE"
MAX_EXAMPLE_ENTRY_IDS = 10


def sanitize_technique_mentions(mentions: Optional[Iterable[str]]) -> List[str]:
    cleaned = (m.strip() for m in mentions or [] if isinstance(m, str))
    return list(dict.fromkeys(m for m in cleaned if m))


def build_candidate(
    existing: Optional[Dict[str, Any]], phrase: str, normalized: str, entry_id: str, now: str
) -> Dict[str, Any]:
    existing = existing or {}
    examples = existing.get("exampleEntryIds")
    examples = [e for e in examples if e != entry_id] if isinstance(examples, list) else []
    return {
        "phrase": existing.get("phrase", phrase),
        "normalizedPhrase": normalized,
        "count": int(existing.get("count", 0)) + 1,
        "lastSeenAt": now,
        "exampleEntryIds": (examples + [entry_id])[-MAX_EXAMPLE_ENTRY_IDS:],
        "status": existing.get("status", "unmapped"),
    }


def upsert_technique_candidates(mentions: Optional[Iterable[str]], entry_id: str, now: str) -> None:
    by_normalized: Dict[str, str] = {}
    for mention in sanitize_technique_mentions(mentions):
        normalized = normalize_token(mention)
        if normalized and normalized not in by_normalized:
            by_normalized[normalized] = mention

    for normalized, phrase in by_normalized.items():
        existing = store.get_item(TECHNIQUE_CANDIDATE_PK, normalized)
        candidate = build_candidate(existing, phrase, normalized, entry_id, now)
        store.put_item({
            "PK": TECHNIQUE_CANDIDATE_PK,
            "SK": normalized,
            "entityType": "TECHNIQUE_CANDIDATE",
            **candidate,
        })
