"""rollmodel_shared.entry_search — In-memory scoring and filtering of journal entries."""

from __future__ import annotations

import functools
import re
import time
from typing import Any, Dict, List, Optional

from rollmodel_shared.serialization import _iso_ms

ENTRY_SEARCH_LATENCY_TARGET_MS = 75
MAX_SEARCH_LIMIT = 200
_DAY_MS = 86_399_999

_TOKEN_SPLIT_RE = re.compile(r"[\s,.;:/\\()\[\]{}'\"`!?+-]+")

_FILTER_KEYS = (
    "dateFrom", "dateTo", "position", "partner", "technique", "outcome",
    "classType", "tag", "giOrNoGi", "minIntensity", "maxIntensity",
)


def _norm(value: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (value or "").strip().lower())


def _count(haystack: str, needle: str) -> int:
    if not haystack or not needle:
        return 0
    return haystack.count(needle)


def _build_index(entry: Dict[str, Any]) -> Dict[str, str]:
    sections = entry.get("sections") or {}
    metrics = entry.get("sessionMetrics") or {}
    media_parts: List[str] = []
    for attachment in entry.get("mediaAttachments") or []:
        media_parts += [attachment.get("title", ""), attachment.get("url", ""), attachment.get("notes", "")]
        media_parts += [f"{c.get('timestamp', '')} {c.get('text', '')}" for c in attachment.get("clipNotes") or []]

    index = {
        "shared": _norm(sections.get("shared")),
        "private": _norm(sections.get("private")),
        "tags": _norm(" ".join(metrics.get("tags") or [])),
        "techniques": _norm(" ".join(entry.get("rawTechniqueMentions") or [])),
        "media": _norm(" ".join(media_parts)),
    }
    index["all"] = " ".join(v for v in index.values() if v)
    return index


def _score(index: Dict[str, str], query: str) -> int:
    q = _norm(query)
    tokens = [t for t in _TOKEN_SPLIT_RE.split(q) if t]
    if not tokens:
        return 0

    score = 0
    for field, weight in (("shared", 18), ("private", 10), ("techniques", 14), ("tags", 10), ("media", 6)):
        if q in index[field]:
            score += weight
    for token in tokens:
        score += _count(index["shared"], token) * 5
        score += _count(index["private"], token) * 3
        score += _count(index["techniques"], token) * 6
        score += _count(index["tags"], token) * 4
        score += _count(index["media"], token) * 2
    return score


def _to_float(value: Optional[str]) -> Optional[float]:
    try:
        return float(value) if value else None
    except ValueError:
        return None


def _matches_structured(entry: Dict[str, Any], request: Dict[str, Any]) -> bool:
    metrics = entry.get("sessionMetrics") or {}
    if request.get("tag") and request["tag"] not in (metrics.get("tags") or []):
        return False
    if request.get("giOrNoGi") and metrics.get("giOrNoGi") != request["giOrNoGi"]:
        return False

    entry_ts = _iso_ms(entry.get("createdAt"))
    if entry_ts is None:
        return False
    from_ts = _iso_ms(request.get("dateFrom"))
    if from_ts is not None and entry_ts < from_ts:
        return False
    to_ts = _iso_ms(request.get("dateTo"))
    if to_ts is not None:
        upper = to_ts + _DAY_MS if len(request["dateTo"]) == 10 else to_ts
        if entry_ts > upper:
            return False

    intensity = metrics.get("intensity", 0)
    low = _to_float(request.get("minIntensity"))
    if low is not None and intensity < low:
        return False
    high = _to_float(request.get("maxIntensity"))
    if high is not None and intensity > high:
        return False
    return True


def _matches_text_filters(index: Dict[str, str], request: Dict[str, Any]) -> bool:
    for key in ("position", "partner", "technique", "outcome", "classType"):
        needle = _norm(request.get(key))
        if needle and needle not in index["all"]:
            return False
    return True


def _compare(request: Dict[str, Any], has_query: bool):
    direction = 1 if request.get("sortDirection") == "asc" else -1
    by_intensity = request.get("sortBy") == "intensity"

    def cmp(a, b) -> int:
        (entry_a, score_a), (entry_b, score_b) = a, b
        if has_query and score_a != score_b:
            return score_b - score_a
        if by_intensity:
            delta = (entry_a.get("sessionMetrics") or {}).get("intensity", 0) - (
                entry_b.get("sessionMetrics") or {}
            ).get("intensity", 0)
        else:
            delta = (entry_a["createdAt"] > entry_b["createdAt"]) - (entry_a["createdAt"] < entry_b["createdAt"])
        if delta:
            return (1 if delta > 0 else -1) * direction
        return (entry_b["createdAt"] > entry_a["createdAt"]) - (entry_b["createdAt"] < entry_a["createdAt"])

    return cmp


def _parse_limit(value: Optional[str]) -> Optional[int]:
    try:
        parsed = int(value) if value else 0
    except ValueError:
        return None
    if parsed <= 0:
        return None
    return min(parsed, MAX_SEARCH_LIMIT)


def search_entries(entries: List[Dict[str, Any]], request: Dict[str, Any]) -> Dict[str, Any]:
    """Filter, score and sort entries. Returns {"entries": [...], "meta": {...}}."""
    started = time.perf_counter()
    query = _norm(request.get("query"))

    scored = []
    for entry in entries:
        index = _build_index(entry)
        score = _score(index, query) if query else 0
        if not _matches_structured(entry, request) or not _matches_text_filters(index, request):
            continue
        if query and score <= 0:
            continue
        scored.append((entry, score))

    scored.sort(key=functools.cmp_to_key(_compare(request, bool(query))))
    limit = _parse_limit(request.get("limit"))
    results = [entry for entry, _ in (scored[:limit] if limit else scored)]

    return {
        "entries": results,
        "meta": {
            "queryApplied": bool(query or any(request.get(k) for k in _FILTER_KEYS)),
            "scannedCount": len(entries),
            "matchedCount": len(scored),
            "latencyMs": round((time.perf_counter() - started) * 1000, 2),
            "latencyTargetMs": ENTRY_SEARCH_LATENCY_TARGET_MS,
        },
    }


def _pick(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def parse_entry_search_request(params: Optional[Dict[str, str]]) -> Dict[str, Any]:
    if not params:
        return {}
    request: Dict[str, Any] = {
        "query": _pick(params.get("q") or params.get("query")),
        "giOrNoGi": params.get("giOrNoGi") if params.get("giOrNoGi") in {"gi", "no-gi"} else None,
        "sortBy": params.get("sortBy") if params.get("sortBy") in {"createdAt", "intensity"} else None,
        "sortDirection": params.get("sortDirection") if params.get("sortDirection") in {"asc", "desc"} else None,
    }
    for key in ("dateFrom", "dateTo", "position", "partner", "technique", "outcome", "classType", "tag",
                "minIntensity", "maxIntensity", "limit"):
        request[key] = _pick(params.get(key))
    request["actionPackField"] = _pick(params.get("actionPackField"))
    request["actionPackToken"] = _pick(params.get("actionPackToken"))
    min_confidence = params.get("actionPackMinConfidence")
    request["actionPackMinConfidence"] = min_confidence if min_confidence in {"high", "medium", "low"} else None
    return {k: v for k, v in request.items() if v is not None}
