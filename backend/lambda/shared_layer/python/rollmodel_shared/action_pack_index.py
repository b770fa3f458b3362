"""rollmodel_shared.action_pack_index — Per-field token index over finalized action packs.

Item layout:
    PK = USER#{athleteId}
    SK = APF#{field}#{token}#TS#{createdAt}#ENTRY#{entryId}

Only finalized action packs are indexed. Each item carries the field's
confidence so queries can apply a minimum-confidence filter.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from rollmodel_shared import store
from rollmodel_shared.entries import entry_key, parse_entry_record
from rollmodel_shared.keywords import normalize_token, tokenize_text

ACTION_PACK_FIELDS = ("wins", "leaks", "oneFocus", "drills", "positionalRequests", "fallbackDecisionGuidance")
CONFIDENCE_WEIGHT = {"high": 3, "medium": 2, "low": 1}
MAX_FIELD_TOKENS = 24


def _field_values(action_pack: Dict[str, Any], field: str) -> List[str]:
    source = action_pack.get(field)
    if isinstance(source, list):
        return [v for v in source if isinstance(v, str)]
    if isinstance(source, str):
        return [source]
    return []


def field_confidence(action_pack: Dict[str, Any], field: str) -> str:
    for flag in action_pack.get("confidenceFlags") or []:
        if isinstance(flag, dict) and flag.get("field") == field and flag.get("confidence") in CONFIDENCE_WEIGHT:
            return flag["confidence"]
    return "medium"


def _field_tokens(action_pack: Dict[str, Any], field: str) -> List[str]:
    tokens = (normalize_token(t) for v in _field_values(action_pack, field) for t in tokenize_text(v))
    return list(dict.fromkeys(t for t in tokens if len(t) >= 3))[:MAX_FIELD_TOKENS]


def _query_token(value: Optional[str]) -> str:
    if not value:
        return ""
    tokens = tokenize_text(value)
    return normalize_token(tokens[0]) if tokens else normalize_token(value)


def _final_pack(entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    final = entry.get("actionPackFinal")
    if isinstance(final, dict) and isinstance(final.get("actionPack"), dict):
        return final["actionPack"]
    return None


def _index_sk(field: str, token: str, entry: Dict[str, Any]) -> str:
    return f"APF#{field}#{token}#TS#{entry['createdAt']}#ENTRY#{entry['entryId']}"


def build_action_pack_index_items(entry: Dict[str, Any]) -> List[Dict[str, Any]]:
    action_pack = _final_pack(entry)
    if not action_pack:
        return []
    items = []
    for field in ACTION_PACK_FIELDS:
        confidence = field_confidence(action_pack, field)
        for token in _field_tokens(action_pack, field):
            items.append({
                "PK": f"USER#{entry['athleteId']}",
                "SK": _index_sk(field, token, entry),
                "entityType": "ACTION_PACK_INDEX",
                "athleteId": entry["athleteId"],
                "entryId": entry["entryId"],
                "createdAt": entry["createdAt"],
                "finalizedAt": entry["actionPackFinal"].get("finalizedAt"),
                "field": field,
                "token": token,
                "confidence": confidence,
            })
    return items


def build_action_pack_delete_keys(entry: Dict[str, Any]) -> List[Tuple[str, str]]:
    action_pack = _final_pack(entry)
    if not action_pack:
        return []
    return [
        (f"USER#{entry['athleteId']}", _index_sk(field, token, entry))
        for field in ACTION_PACK_FIELDS
        for token in _field_tokens(action_pack, field)
    ]


def query_action_pack_entries(
    athlete_id: str,
    field: Optional[str],
    token: Optional[str],
    min_confidence: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Entries whose finalized action pack mentions `token` in `field`."""
    query_token = _query_token(token)
    if field not in ACTION_PACK_FIELDS or not query_token:
        return []
    min_weight = CONFIDENCE_WEIGHT.get(min_confidence or "", 0)

    indexed = store.query_items(
        f"USER#{athlete_id}",
        f"APF#{field}#{query_token}#TS#",
        scan_forward=False,
        limit=min(limit, 200),
    )
    entries = []
    for item in indexed:
        if item.get("entityType") != "ACTION_PACK_INDEX" or item.get("confidence") not in CONFIDENCE_WEIGHT:
            continue
        if CONFIDENCE_WEIGHT[item["confidence"]] < min_weight:
            continue
        stored = store.get_item(*entry_key(athlete_id, item["createdAt"], item["entryId"]))
        if stored and stored.get("entityType") == "ENTRY":
            entries.append(parse_entry_record(stored))
    return entries
