"""rollmodel_shared.sharing — Read-only coach share links.

An athlete publishes a frozen summary of their structured sessions behind an
unguessable token. Only the SHA-256 hash of the salted token is stored, so
the plaintext token is returned exactly once, at creation.

Item layout:
    USER#{athleteId} / SHARE_LINK#{shareId}                      SHARE_LINK
    SHARE_TOKEN#{tokenHash} / META                               SHARE_TOKEN_MAP
    USER#{athleteId} / SHARE_EVENT#{createdAt}#{shareId}#{id}    SHARE_AUDIT_EVENT

Audit events are also written under GSI1 (GSI1PK = SHARE_EVENT#{eventType})
so they can be listed per event type across athletes.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import logging
import math
import secrets
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from rollmodel_shared import config, store
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.serialization import _iso_ms, _parse_iso, _to_iso_z

logger = logging.getLogger(__name__)

SHARE_PAYLOAD_VERSION = 1
MAX_EXPIRY_HOURS = 24 * 30
DEFAULT_EXPIRY_HOURS = 72

SHARE_FIELD_KEYS = (
    "quickAdd",
    "sections.shared",
    "sessionMetrics",
    "sessionContext",
    "structured",
    "structuredExtraction",
    "actionPack",
    "sessionReview",
    "rawTechniqueMentions",
    "mediaAttachments",
    "partnerOutcomes",
)

DEFAULT_INCLUDE_FIELDS = ("structured", "structuredExtraction", "actionPack", "sessionReview", "sessionMetrics")

SHARE_LINK_PREFIX = "SHARE_LINK#"


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def _field_list(value: Any, field: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ApiError.invalid(f"{field} must be an array.")
    fields: List[str] = []
    for item in value:
        name = _clean(item)
        if name not in SHARE_FIELD_KEYS:
            raise ApiError.invalid(f'{field} contains unsupported field "{item}".')
        if name not in fields:
            fields.append(name)
    return fields


def _entry_ids(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ApiError.invalid("entryIds must be an array of strings when provided.")
    ids: List[str] = []
    for item in value:
        entry_id = _clean(item)
        if not entry_id:
            raise ApiError.invalid("entryIds must not contain empty values.")
        if entry_id not in ids:
            ids.append(entry_id)
    return ids


def _optional_iso(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    raw = _clean(value)
    if not raw:
        raise ApiError.invalid(f"{field} must be a non-empty ISO timestamp when provided.")
    if _parse_iso(raw) is None:
        raise ApiError.invalid(f"{field} must be a valid ISO timestamp.")
    return raw


def _coach_review(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"required": False, "approved": True}
    if not isinstance(value, dict):
        raise ApiError.invalid("coachReview must be an object when provided.")
    review: Dict[str, Any] = {"required": bool(value.get("required")), "approved": bool(value.get("approved"))}
    for key in ("reviewedAt", "reviewedBy", "notes"):
        if _clean(value.get(key)):
            review[key] = _clean(value.get(key))
    return review


def _expires_at(now: str, raw: Any) -> str:
    hours = DEFAULT_EXPIRY_HOURS
    if raw is not None:
        if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
            raise ApiError.invalid("expiresInHours must be a finite number when provided.")
        hours = math.floor(raw)
        if not 1 <= hours <= MAX_EXPIRY_HOURS:
            raise ApiError.invalid(f"expiresInHours must be between 1 and {MAX_EXPIRY_HOURS}.")
    return _to_iso_z(_parse_iso(now) + dt.timedelta(hours=hours))


def parse_create_share_request(
    payload: Dict[str, Any],
    now: str,
    *,
    enforce_coach_review: bool = False,
) -> Dict[str, Any]:
    """Validate a create body into ``{policy, coachReview, expiresAt}``.

    When coach review is required, by the request or by deployment setting,
    the body must carry an approved coachReview.
    """
    visibility = payload.get("visibility", "private")
    if _clean(visibility) != "private":
        raise ApiError.invalid("visibility must be private.")

    include_fields = _field_list(payload.get("includeFields"), "includeFields")
    exclude_fields = _field_list(payload.get("excludeFields"), "excludeFields")
    entry_ids = _entry_ids(payload.get("entryIds"))
    date_from = _optional_iso(payload.get("dateFrom"), "dateFrom")
    date_to = _optional_iso(payload.get("dateTo"), "dateTo")
    skill_id = None
    if payload.get("skillId") is not None:
        skill_id = _clean(payload.get("skillId")).lower()
        if not skill_id:
            raise ApiError.invalid("skillId must be a non-empty string when provided.")
    coach_id = _clean(payload.get("coachId"))
    if date_from and date_to and _iso_ms(date_from) > _iso_ms(date_to):
        raise ApiError.invalid("dateFrom must be earlier than or equal to dateTo.")

    require_review = payload.get("requireCoachReview") is True or enforce_coach_review
    review = _coach_review(payload.get("coachReview"))
    if require_review and not review["approved"]:
        raise ApiError.forbidden("Coach review approval is required before publishing share links.")

    policy: Dict[str, Any] = {
        "visibility": "private",
        "includeFields": include_fields,
        "excludeFields": exclude_fields,
        "includePartnerData": payload.get("includePartnerData") is True,
    }
    if entry_ids:
        policy["entryIds"] = entry_ids
    for key, value in (("dateFrom", date_from), ("dateTo", date_to), ("skillId", skill_id), ("coachId", coach_id)):
        if value:
            policy[key] = value
    policy["requireCoachReview"] = require_review

    review["required"] = require_review
    if require_review:
        review["approved"] = True
        review.setdefault("reviewedAt", now)

    return {"policy": policy, "coachReview": review, "expiresAt": _expires_at(now, payload.get("expiresInHours"))}


# ---------------------------------------------------------------------------
# Summary building
# ---------------------------------------------------------------------------


def _is_structured(entry: Dict[str, Any]) -> bool:
    extraction = entry.get("structuredExtraction") or {}
    final_pack = entry.get("actionPackFinal") or {}
    final_review = entry.get("sessionReviewFinal") or {}
    return bool(
        entry.get("structured")
        or extraction.get("suggestions")
        or final_pack.get("actionPack")
        or entry.get("actionPackDraft")
        or final_review.get("review")
        or entry.get("sessionReviewDraft")
    )


def _top(values: List[str], limit: int = 5) -> List[str]:
    counts = Counter(v.strip() for v in values if isinstance(v, str) and v.strip())
    return [value for value, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]]


def selected_fields(policy: Dict[str, Any]) -> List[str]:
    fields = list(DEFAULT_INCLUDE_FIELDS)
    fields += [f for f in policy.get("includeFields", []) if f not in fields]
    fields = [f for f in fields if f not in policy.get("excludeFields", [])]
    if not policy.get("includePartnerData"):
        fields = [f for f in fields if f != "partnerOutcomes"]
    return fields


def _highlight(entry: Dict[str, Any], fields: List[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {"entryId": entry["entryId"], "createdAt": entry["createdAt"]}
    if "quickAdd" in fields:
        out["quickAdd"] = entry.get("quickAdd")
    if "sections.shared" in fields:
        out["sharedSection"] = (entry.get("sections") or {}).get("shared")
    if "sessionMetrics" in fields:
        out["sessionMetrics"] = entry.get("sessionMetrics")
    for key in ("sessionContext", "structured", "structuredExtraction"):
        if key in fields and entry.get(key):
            out[key] = entry[key]
    if "actionPack" in fields:
        out["actionPack"] = (entry.get("actionPackFinal") or {}).get("actionPack") or entry.get("actionPackDraft")
    if "sessionReview" in fields:
        out["sessionReview"] = (entry.get("sessionReviewFinal") or {}).get("review") or entry.get("sessionReviewDraft")
    for key in ("rawTechniqueMentions", "mediaAttachments", "partnerOutcomes"):
        if key in fields and entry.get(key):
            out[key] = entry[key]
    return out


def _matches_skill(entry: Dict[str, Any], skill_id: str) -> bool:
    structured = entry.get("structured") or {}
    extraction = entry.get("structuredExtraction") or {}
    draft = entry.get("actionPackDraft") or {}
    values = [structured.get(k) for k in ("position", "technique", "outcome", "problem", "cue")]
    values += entry.get("rawTechniqueMentions") or []
    values += (extraction.get("concepts") or []) + (extraction.get("failures") or [])
    for key in ("wins", "leaks", "drills", "positionalRequests"):
        values += draft.get(key) or []
    values.append(draft.get("fallbackDecisionGuidance"))
    return any(skill_id in v.strip().lower() for v in values if isinstance(v, str) and v.strip())


def build_shared_summary(
    share_id: str,
    athlete_id: str,
    generated_at: str,
    policy: Dict[str, Any],
    entries: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """Freeze the scoped structured sessions into a shareable summary.

    Raises INVALID_REQUEST when nothing in scope is structured.
    """
    scoped = entries
    if policy.get("entryIds"):
        scoped = [e for e in scoped if e.get("entryId") in policy["entryIds"]]
    if policy.get("dateFrom"):
        start = _iso_ms(policy["dateFrom"])
        scoped = [e for e in scoped if (_iso_ms(e.get("createdAt")) or 0) >= start]
    if policy.get("dateTo"):
        end = _iso_ms(policy["dateTo"])
        scoped = [e for e in scoped if (_iso_ms(e.get("createdAt")) or 0) <= end]
    if policy.get("skillId"):
        scoped = [e for e in scoped if _matches_skill(e, policy["skillId"])]

    structured = sorted((e for e in scoped if _is_structured(e)), key=lambda e: e["createdAt"], reverse=True)
    if not structured:
        raise ApiError.invalid("No structured session records found for sharing scope.")

    fields = selected_fields(policy)

    def collect(key: str) -> List[str]:
        return [v for e in structured for v in (e.get("structuredExtraction") or {}).get(key) or []]

    scope: Dict[str, Any] = {
        "visibility": "private",
        "includeFields": fields,
        "excludeFields": policy.get("excludeFields", []),
        "includePartnerData": bool(policy.get("includePartnerData")),
    }
    scope.update({k: policy[k] for k in ("dateFrom", "dateTo", "skillId", "coachId") if policy.get(k)})
    scope["readOnly"] = True

    return {
        "summaryId": share_id,
        "athleteId": athlete_id,
        "generatedAt": generated_at,
        "payloadVersion": SHARE_PAYLOAD_VERSION,
        "sourceEntryIds": [e["entryId"] for e in structured],
        "scope": scope,
        "aggregate": {
            "topConcepts": _top(collect("concepts")),
            "recurringFailures": _top(collect("failures")),
            "conditioningIssues": _top(collect("conditioningIssues")),
        },
        "highlights": [_highlight(e, fields) for e in structured],
    }


# ---------------------------------------------------------------------------
# Tokens and keys
# ---------------------------------------------------------------------------


def hash_share_token(token: str, salt: str = "") -> str:
    return hashlib.sha256(f"{salt}:{token}".encode("utf-8")).hexdigest()


def issue_share_token(salt: str = "") -> Tuple[str, str]:
    """Return ``(token, tokenHash)`` for a new link."""
    token = f"{uuid.uuid4()}{secrets.token_hex(12)}"
    return token, hash_share_token(token, salt)


def share_link_key(athlete_id: str, share_id: str) -> tuple:
    return f"USER#{athlete_id}", f"{SHARE_LINK_PREFIX}{share_id}"


def share_token_key(token_hash: str) -> tuple:
    return f"SHARE_TOKEN#{token_hash}", "META"


def is_expired(expires_at: str, now: str) -> bool:
    return (_iso_ms(expires_at) or 0) <= (_iso_ms(now) or 0)


def share_url(token: str) -> str:
    return f"{config.SHARE_BASE_URL.rstrip('/')}/shared/{token}"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def _token_map_item(share: Dict[str, Any]) -> Dict[str, Any]:
    pk, sk = share_token_key(share["tokenHash"])
    item = {
        "PK": pk,
        "SK": sk,
        "entityType": "SHARE_TOKEN_MAP",
        **{k: share[k] for k in ("tokenHash", "shareId", "athleteId", "status", "createdAt", "updatedAt",
                                 "expiresAt", "payloadVersion")},
    }
    if share.get("revokedAt"):
        item["revokedAt"] = share["revokedAt"]
    return item


def _link_item(share: Dict[str, Any]) -> Dict[str, Any]:
    pk, sk = share_link_key(share["athleteId"], share["shareId"])
    return {"PK": pk, "SK": sk, "entityType": "SHARE_LINK", **share}


def audit_event_item(
    share: Dict[str, Any],
    event_type: str,
    now: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    event_id = str(uuid.uuid4())
    event: Dict[str, Any] = {
        "eventId": event_id,
        "shareId": share["shareId"],
        "athleteId": share["athleteId"],
        "eventType": event_type,
        "createdAt": now,
        "payloadVersion": share.get("payloadVersion", SHARE_PAYLOAD_VERSION),
    }
    if details:
        event["details"] = details
    return {
        "PK": f"USER#{share['athleteId']}",
        "SK": f"SHARE_EVENT#{now}#{share['shareId']}#{event_id}",
        "entityType": "SHARE_AUDIT_EVENT",
        **event,
        "GSI1PK": f"SHARE_EVENT#{event_type}",
        "GSI1SK": f"{now}#{share['athleteId']}#{share['shareId']}",
    }


def public_share(share: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: share[k]
        for k in ("shareId", "athleteId", "status", "createdAt", "updatedAt", "expiresAt", "payloadVersion",
                  "policy", "coachReview")
    }


def create_share_link(
    athlete_id: str,
    request: Dict[str, Any],
    entries: List[Dict[str, Any]],
    now: str,
) -> Tuple[Dict[str, Any], str]:
    """Freeze the summary and persist the link. Returns ``(share, token)``."""
    share_id = str(uuid.uuid4())
    summary = build_shared_summary(share_id, athlete_id, now, request["policy"], entries)
    token, token_hash = issue_share_token(config.SHARE_TOKEN_SALT)
    share = {
        "shareId": share_id,
        "athleteId": athlete_id,
        "status": "active",
        "createdAt": now,
        "updatedAt": now,
        "expiresAt": request["expiresAt"],
        "payloadVersion": SHARE_PAYLOAD_VERSION,
        "policy": request["policy"],
        "coachReview": request["coachReview"],
        "tokenHash": token_hash,
        "summary": summary,
    }
    policy = share["policy"]
    store.batch_write_items([
        _link_item(share),
        _token_map_item(share),
        audit_event_item(share, "created", now, {
            "includeFields": policy["includeFields"],
            "excludeFields": policy["excludeFields"],
            "includePartnerData": policy["includePartnerData"],
            "expiresAt": share["expiresAt"],
        }),
    ])
    logger.info("share link created athlete=%s share=%s sessions=%d", athlete_id, share_id,
                len(summary["sourceEntryIds"]))
    return share, token


def list_share_links(athlete_id: str, now: str) -> List[Dict[str, Any]]:
    shares = [
        store.strip_keys(item)
        for item in store.query_items(f"USER#{athlete_id}", SHARE_LINK_PREFIX)
        if item.get("entityType") == "SHARE_LINK"
    ]
    shares.sort(key=lambda s: s.get("createdAt") or "", reverse=True)
    listed = []
    for share in shares:
        policy = share.get("policy") or {}
        listed.append({
            **{k: share.get(k) for k in ("shareId", "status", "createdAt", "updatedAt", "expiresAt", "revokedAt",
                                         "payloadVersion")},
            **{k: policy.get(k) for k in ("visibility", "includePartnerData", "requireCoachReview", "dateFrom",
                                          "dateTo", "skillId", "coachId")},
            "expired": is_expired(share.get("expiresAt") or "", now),
        })
    return listed


def revoke_share_link(athlete_id: str, share_id: str, now: str) -> Dict[str, Any]:
    """Revoke a link. Revoking an already revoked link changes nothing."""
    item = store.get_item(*share_link_key(athlete_id, share_id))
    if not item or item.get("entityType") != "SHARE_LINK":
        raise ApiError.not_found("Share link not found.")
    share = store.strip_keys(item)
    if share.get("status") == "revoked":
        return {
            "revoked": True,
            "shareId": share_id,
            "status": "revoked",
            "revokedAt": share.get("revokedAt") or share.get("updatedAt"),
        }

    share.update({"status": "revoked", "revokedAt": now, "updatedAt": now})
    store.batch_write_items([
        _link_item(share),
        _token_map_item(share),
        audit_event_item(share, "revoked", now, {"revokedAt": now}),
    ])
    logger.info("share link revoked athlete=%s share=%s", athlete_id, share_id)
    return {"revoked": True, "shareId": share_id, "status": "revoked", "revokedAt": now}


def open_shared_summary(token: str, now: str, source_ip: Optional[str] = None) -> Dict[str, Any]:
    """Resolve a public token to its frozen summary and record the access.

    Revoked and expired links raise 410 after recording the denied access.
    """
    token = _clean(token)
    if not token:
        raise ApiError.invalid("share token is required.")
    mapped = store.get_item(*share_token_key(hash_share_token(token, config.SHARE_TOKEN_SALT)))
    if (
        not mapped
        or mapped.get("entityType") != "SHARE_TOKEN_MAP"
        or mapped.get("status") not in ("active", "revoked")
        or not all(_clean(mapped.get(k)) for k in ("shareId", "athleteId", "expiresAt"))
    ):
        raise ApiError.not_found("Share link not found.")

    item = store.get_item(*share_link_key(mapped["athleteId"], mapped["shareId"]))
    if not item or item.get("entityType") != "SHARE_LINK":
        raise ApiError.not_found("Share link not found.")
    share = store.strip_keys(item)

    if share.get("status") == "revoked":
        store.put_item(audit_event_item(share, "access_denied_revoked", now))
        raise ApiError("SHARE_REVOKED", "This share link has been revoked.", 410)
    if is_expired(share["expiresAt"], now):
        store.put_item(audit_event_item(share, "access_denied_expired", now))
        raise ApiError("SHARE_EXPIRED", "This share link has expired.", 410)

    store.put_item(audit_event_item(share, "viewed", now, {"sourceIp": source_ip} if source_ip else None))

    scope = share["summary"]["scope"]
    public_scope = {
        "visibility": share["policy"]["visibility"],
        **{k: scope[k] for k in ("includeFields", "excludeFields", "includePartnerData")},
        **{k: scope[k] for k in ("dateFrom", "dateTo", "skillId", "coachId") if scope.get(k)},
    }
    return {"readOnly": True, "expiresAt": share["expiresAt"], "scope": public_scope, "summary": share["summary"]}
