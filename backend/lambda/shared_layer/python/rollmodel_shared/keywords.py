"""rollmodel_shared.keywords — Entry tokenization and the keyword index.

Shared-section tokens are indexed under `USER#{athleteId}`; tokens that only
appear in the private section go under `USER_PRIVATE#{athleteId}` so coach
queries never see them.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Tuple

STOPWORDS = {
    "and", "the", "for", "with", "from", "that", "this", "are", "was", "were", "into", "onto",
    "your", "you", "but", "not", "have", "has", "had", "too", "very", "all", "any",
}

MAX_ENTRY_TOKENS = 30


def normalize_token(value: str) -> str:
    token = re.sub(r"\s+", "-", value.lower().strip())
    token = re.sub(r"[^a-z0-9-]", "", token)
    return re.sub(r"-+", "-", token)


def tokenize_text(text: str) -> List[str]:
    words = re.split(r"\s+", re.sub(r"[^a-z0-9\s]", " ", (text or "").lower()))
    tokens = (normalize_token(w) for w in words)
    return list(dict.fromkeys(t for t in tokens if len(t) >= 3 and t not in STOPWORDS))


def extract_entry_tokens(entry: Dict[str, Any], include_private: bool, max_tokens: int = MAX_ENTRY_TOKENS) -> List[str]:
    sections = entry.get("sections") or {}
    tags = [normalize_token(t) for t in (entry.get("sessionMetrics") or {}).get("tags") or [] if isinstance(t, str)]
    tokens = tags + tokenize_text(sections.get("shared", ""))
    if include_private:
        tokens += tokenize_text(sections.get("private", ""))
    unique = dict.fromkeys(t for t in tokens if len(t) >= 3 and t not in STOPWORDS)
    return list(unique)[:max_tokens]


def token_groups(entry: Dict[str, Any]) -> Tuple[List[str], List[str]]:
    """Return (shared tokens, private-only tokens) for an entry."""
    shared = extract_entry_tokens(entry, include_private=False)
    everything = extract_entry_tokens(entry, include_private=True)
    shared_set = set(shared)
    return shared, [t for t in everything if t not in shared_set]


def keyword_key(athlete_id: str, token: str, created_at: str, entry_id: str, scope: str = "shared") -> Tuple[str, str]:
    prefix = "USER_PRIVATE" if scope == "private" else "USER"
    return f"{prefix}#{athlete_id}", f"KW#{token}#TS#{created_at}#ENTRY#{entry_id}"


def build_keyword_index_items(
    athlete_id: str,
    entry_id: str,
    created_at: str,
    tokens: Iterable[str],
    scope: str = "shared",
) -> List[Dict[str, Any]]:
    items = []
    for token in tokens:
        pk, sk = keyword_key(athlete_id, token, created_at, entry_id, scope)
        items.append({
            "PK": pk,
            "SK": sk,
            "entityType": "KEYWORD_INDEX",
            "visibilityScope": scope,
            "entryId": entry_id,
            "createdAt": created_at,
        })
    return items


def entry_keyword_items(entry: Dict[str, Any]) -> List[Dict[str, Any]]:
    shared, private_only = token_groups(entry)
    args = (entry["athleteId"], entry["entryId"], entry["createdAt"])
    return build_keyword_index_items(*args, shared, "shared") + build_keyword_index_items(*args, private_only, "private")


def keyword_index_diff(
    old_entry: Dict[str, Any], new_entry: Dict[str, Any]
) -> Tuple[List[Tuple[str, str]], List[Dict[str, Any]]]:
    """Keys to delete and items to write when an entry's text changes."""
    athlete_id, entry_id, created_at = new_entry["athleteId"], new_entry["entryId"], new_entry["createdAt"]
    old_shared, old_private = (set(g) for g in token_groups(old_entry))
    new_shared, new_private = token_groups(new_entry)

    deletes = [keyword_key(athlete_id, t, created_at, entry_id, "shared") for t in old_shared - set(new_shared)]
    deletes += [keyword_key(athlete_id, t, created_at, entry_id, "private") for t in old_private - set(new_private)]
    writes = build_keyword_index_items(
        athlete_id, entry_id, created_at, [t for t in new_shared if t not in old_shared], "shared"
    ) + build_keyword_index_items(
        athlete_id, entry_id, created_at, [t for t in new_private if t not in old_private], "private"
    )
    return deletes, writes
