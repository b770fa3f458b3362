"""rollmodel_shared.saved_searches — Named entry-search presets per athlete.

Item layout: PK = USER#{userId}, SK = SAVED_SEARCH#{id}, entityType SAVED_SEARCH.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from rollmodel_shared import store
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.serialization import _now_z

logger = logging.getLogger(__name__)

SAVED_SEARCH_PREFIX = "SAVED_SEARCH#"
_FILTER_FIELDS = ("query", "tag", "minIntensity", "maxIntensity")
_FLAGS = ("isPinned", "isFavorite")


def _gi(value: Any) -> str:
    return value if value in ("gi", "no-gi") else ""


def _sort_by(value: Any) -> str:
    return "intensity" if value == "intensity" else "createdAt"


def _sort_direction(value: Any) -> str:
    return "asc" if value == "asc" else "desc"


def _key(user_id: str, saved_search_id: str) -> tuple:
    return f"USER#{user_id}", f"{SAVED_SEARCH_PREFIX}{saved_search_id}"


def parse_saved_search_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a create/update body. Filter fields are strings, possibly empty."""
    name = payload.get("name")
    name = name.strip() if isinstance(name, str) else ""
    if not name or any(not isinstance(payload.get(f), str) for f in _FILTER_FIELDS):
        raise ApiError.invalid("Saved search payload is invalid.")
    if any(f in payload and not isinstance(payload[f], bool) for f in _FLAGS):
        raise ApiError.invalid("Saved search payload is invalid.")

    parsed = {
        "name": name,
        **{f: payload[f] for f in _FILTER_FIELDS},
        "giOrNoGi": _gi(payload.get("giOrNoGi")),
        "sortBy": _sort_by(payload.get("sortBy")),
        "sortDirection": _sort_direction(payload.get("sortDirection")),
    }
    parsed.update({f: payload[f] for f in _FLAGS if f in payload})
    return parsed


def parse_saved_search_record(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    record = store.strip_keys(item)
    required = {k: (record.get(k) or "").strip() if isinstance(record.get(k), str) else "" for k in
                ("id", "userId", "name", "createdAt", "updatedAt")}
    if not all(required.values()):
        return None
    parsed = {
        **required,
        **{f: record[f] if isinstance(record.get(f), str) else "" for f in _FILTER_FIELDS},
        "giOrNoGi": _gi(record.get("giOrNoGi")),
        "sortBy": _sort_by(record.get("sortBy")),
        "sortDirection": _sort_direction(record.get("sortDirection")),
    }
    parsed.update({f: record[f] for f in _FLAGS if isinstance(record.get(f), bool)})
    return parsed


def list_saved_searches(user_id: str) -> List[Dict[str, Any]]:
    searches = []
    for item in store.query_items(f"USER#{user_id}", SAVED_SEARCH_PREFIX, scan_forward=False):
        if item.get("entityType") != "SAVED_SEARCH":
            continue
        parsed = parse_saved_search_record(item)
        if parsed is None:
            logger.warning("skipping malformed saved search user=%s sk=%s", user_id, item.get("SK"))
            continue
        searches.append(parsed)
    return searches


def _load(user_id: str, saved_search_id: str) -> Dict[str, Any]:
    item = store.get_item(*_key(user_id, saved_search_id))
    if not item or item.get("entityType") != "SAVED_SEARCH":
        raise ApiError.not_found("Saved search not found.")
    parsed = parse_saved_search_record(item)
    if parsed is None:
        raise ApiError.not_found("Saved search not found.")
    return parsed


def _save(user_id: str, search: Dict[str, Any]) -> None:
    pk, sk = _key(user_id, search["id"])
    store.put_item({"PK": pk, "SK": sk, "entityType": "SAVED_SEARCH", **search})


def create_saved_search(user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    now = _now_z()
    search = {"id": str(uuid.uuid4()), "userId": user_id, **payload, "createdAt": now, "updatedAt": now}
    _save(user_id, search)
    return search


def update_saved_search(user_id: str, saved_search_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the filter fields. Flags omitted from the payload are cleared."""
    existing = _load(user_id, saved_search_id)
    search = {k: v for k, v in existing.items() if k not in _FLAGS}
    search.update(payload)
    search["updatedAt"] = _now_z()
    _save(user_id, search)
    return search


def delete_saved_search(user_id: str, saved_search_id: str) -> None:
    _load(user_id, saved_search_id)
    store.delete_item(*_key(user_id, saved_search_id))
