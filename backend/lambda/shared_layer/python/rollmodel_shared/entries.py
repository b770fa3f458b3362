"""rollmodel_shared.entries — Journal entry records.

Stored entries carry `schemaVersion`. Records written before versioning are
migrated on read; an unknown version is rejected. Media attachments and
clip notes are sanitized on every read so handlers see one shape.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from rollmodel_shared import store
from rollmodel_shared.http_utils import ApiError

CURRENT_ENTRY_SCHEMA_VERSION = 2

_CLIP_TIMESTAMP_RE = re.compile(r"^(?:\d+:[0-5]\d:[0-5]\d|\d+:[0-5]\d)$")

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def entry_key(athlete_id: str, created_at: str, entry_id: str) -> tuple:
    return f"USER#{athlete_id}", f"ENTRY#{created_at}#{entry_id}"


def entry_meta_key(entry_id: str) -> tuple:
    return f"ENTRY#{entry_id}", "META"


def entry_item(entry: Dict[str, Any]) -> Dict[str, Any]:
    pk, sk = entry_key(entry["athleteId"], entry["createdAt"], entry["entryId"])
    return {"PK": pk, "SK": sk, "entityType": "ENTRY", **entry}


def entry_meta_item(entry: Dict[str, Any]) -> Dict[str, Any]:
    pk, sk = entry_meta_key(entry["entryId"])
    return {
        "PK": pk,
        "SK": sk,
        "entityType": "ENTRY_META",
        "athleteId": entry["athleteId"],
        "createdAt": entry["createdAt"],
    }


# ---------------------------------------------------------------------------
# Media attachments
# ---------------------------------------------------------------------------


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def is_valid_media_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def is_valid_clip_timestamp(value: str) -> bool:
    return bool(_CLIP_TIMESTAMP_RE.match(value.strip()))


def _seconds_to_timestamp(total: int) -> str:
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{total // 60}:{seconds:02d}"


def _parse_clip_note(value: Any) -> Optional[Dict[str, str]]:
    if not isinstance(value, dict):
        return None
    clip_id = _clean(value.get("clipId"))
    text = _clean(value.get("text")) or _clean(value.get("note"))
    start = value.get("startSeconds")
    from_seconds = ""
    if isinstance(start, (int, float)) and not isinstance(start, bool) and start >= 0:
        from_seconds = _seconds_to_timestamp(int(start))
    timestamp = _clean(value.get("timestamp")) or from_seconds or _clean(value.get("label"))
    if not clip_id or not text or not is_valid_clip_timestamp(timestamp):
        return None
    return {"clipId": clip_id, "timestamp": timestamp, "text": text}


def _parse_media_attachment(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    media_id = _clean(value.get("mediaId"))
    title = _clean(value.get("title"))
    url = _clean(value.get("url"))
    notes = _clean(value.get("notes"))
    if not media_id or not title or not is_valid_media_url(url):
        return None
    out: Dict[str, Any] = {"mediaId": media_id, "title": title, "url": url}
    if notes:
        out["notes"] = notes
    clips = value.get("clipNotes")
    out["clipNotes"] = [c for c in map(_parse_clip_note, clips if isinstance(clips, list) else []) if c]
    return out


def is_valid_media_attachments_input(value: Any) -> bool:
    """Strict check used at the request boundary: every attachment and clip must parse."""
    if value is None:
        return True
    if not isinstance(value, list):
        return False
    for attachment in value:
        if _parse_media_attachment(attachment) is None:
            return False
        clips = attachment.get("clipNotes")
        if not isinstance(clips, list):
            return False
        if any(_parse_clip_note(clip) is None for clip in clips):
            return False
    return True


def sanitize_media_attachments(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [a for a in map(_parse_media_attachment, value) if a]


def _sanitize_mentions(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [m for m in value if isinstance(m, str)]


# ---------------------------------------------------------------------------
# Schema versioning
# ---------------------------------------------------------------------------


def normalize_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    version = entry.get("schemaVersion")
    if version is not None and version != CURRENT_ENTRY_SCHEMA_VERSION:
        raise ApiError("UNSUPPORTED_SCHEMA_VERSION", f"Unsupported entry schema version: {version}", 500)
    return {
        **entry,
        "schemaVersion": CURRENT_ENTRY_SCHEMA_VERSION,
        "rawTechniqueMentions": _sanitize_mentions(entry.get("rawTechniqueMentions")),
        "mediaAttachments": sanitize_media_attachments(entry.get("mediaAttachments")),
    }


def parse_entry_record(item: Dict[str, Any]) -> Dict[str, Any]:
    return normalize_entry(store.strip_keys(item))


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def load_entry(entry_id: str) -> Dict[str, Any]:
    """Load an entry through its META item. Raises NOT_FOUND."""
    meta = store.get_item(*entry_meta_key(entry_id))
    if not meta or not isinstance(meta.get("athleteId"), str) or not isinstance(meta.get("createdAt"), str):
        raise ApiError.not_found("Entry not found.")
    item = store.get_item(*entry_key(meta["athleteId"], meta["createdAt"], entry_id))
    if not item or item.get("entityType") != "ENTRY":
        raise ApiError.not_found("Entry not found.")
    return parse_entry_record(item)


def list_athlete_entries(athlete_id: str) -> List[Dict[str, Any]]:
    items = store.query_items(f"USER#{athlete_id}", "ENTRY#")
    return [parse_entry_record(i) for i in items if i.get("entityType") == "ENTRY"]


def sanitize_entry_for_coach(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Coach view: shared notes only, no session context or partner outcomes."""
    out = {k: v for k, v in entry.items() if k not in {"sessionContext", "partnerOutcomes"}}
    out["sections"] = {"shared": (entry.get("sections") or {}).get("shared", "")}
    extraction = entry.get("structuredExtraction")
    if isinstance(extraction, dict):
        keep = ("field", "value", "confidence", "status", "confirmationPrompt", "correctionValue", "updatedByRole", "updatedAt")
        out["structuredExtraction"] = {
            **extraction,
            "suggestions": [
                {k: s[k] for k in keep if s.get(k) is not None}
                for s in extraction.get("suggestions") or []
            ],
            "concepts": [],
            "failures": [],
            "conditioningIssues": [],
        }
    return out
