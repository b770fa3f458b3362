"""rollmodel_shared.retrieval — Keyword-driven entry lookup for AI context."""

from __future__ import annotations

from typing import Any, Dict, List

from rollmodel_shared import store
from rollmodel_shared.entries import entry_key, entry_meta_key, parse_entry_record


def query_keyword_matches(athlete_id: str, token: str, limit: int, scope: str = "shared") -> List[Dict[str, str]]:
    """Most recent index hits for one token, newest first."""
    pk = f"USER_PRIVATE#{athlete_id}" if scope == "private" else f"USER#{athlete_id}"
    rows = store.query_items(pk, f"KW#{token}#TS#", scan_forward=False, limit=limit)
    return [{"entryId": str(r.get("entryId")), "createdAt": str(r.get("createdAt"))} for r in rows]


def rank_keyword_matches(match_groups: List[List[Dict[str, str]]], limit: int) -> List[str]:
    """Entry ids ordered by number of matching tokens, then recency."""
    ranked: Dict[str, Dict[str, Any]] = {}
    for group in match_groups:
        for match in group:
            current = ranked.setdefault(match["entryId"], {"count": 0, "createdAt": match["createdAt"]})
            current["count"] += 1
            current["createdAt"] = max(current["createdAt"], match["createdAt"])
    ordered = sorted(ranked.items(), key=lambda kv: (kv[1]["count"], kv[1]["createdAt"]), reverse=True)
    return [entry_id for entry_id, _ in ordered[:limit]]


def batch_get_entries(entry_ids: List[str]) -> List[Dict[str, Any]]:
    """Resolve entries through their META items; unknown ids are skipped."""
    entries = []
    for entry_id in entry_ids:
        meta = store.get_item(*entry_meta_key(entry_id))
        if not meta or not isinstance(meta.get("athleteId"), str) or not isinstance(meta.get("createdAt"), str):
            continue
        item = store.get_item(*entry_key(meta["athleteId"], meta["createdAt"], entry_id))
        if item and item.get("entityType") == "ENTRY":
            entries.append(parse_entry_record(item))
    return entries
