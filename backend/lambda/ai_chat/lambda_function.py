"""ai_chat/lambda_function.py

Lambda API handler for the Roll Model AI training assistant.
Stores each exchange in a chat thread, gathers recent and keyword-matched
journal entries as context, and asks the OpenAI Responses API for a reply
with structured updates (summary, action pack, optional session review).

Routes (via API Gateway proxy):
    POST /ai/chat    — Send a message (athlete, or coach with context.athleteId)
    OPTIONS /*       — CORS preflight

Request body:
    {
      "message": "...",
      "threadId": "...",                # optional, continues an existing thread
      "context": {
        "athleteId": "...",             # required for coach requests
        "includePrivate": false,        # athletes only
        "entryIds": ["..."],
        "dateRange": {"from": "...", "to": "..."},
        "keywords": ["..."]
      }
    }

Thread items live at USER#{userId} / AI_THREAD#{threadId}; messages at
AI_THREAD#{threadId} / MSG#{createdAt}#{messageId}.

Environment variables:
    TABLE_NAME                  default: RollModel
    OPENAI_API_KEY_PARAMETER    default: /roll-model/openai_api_key
    OPENAI_MODEL                default: gpt-4.1-mini
    OPENAI_API_TIMEOUT_SECONDS  default: 30
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from rollmodel_shared import store
from rollmodel_shared.auth import AuthContext, _authenticate, has_role, require_role
from rollmodel_shared.entries import list_athlete_entries
from rollmodel_shared.http_utils import (
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
    _require_json_object,
    _response,
)
from rollmodel_shared.keywords import normalize_token, tokenize_text
from rollmodel_shared.links import ensure_coach_link
from rollmodel_shared.openai_client import call_openai
from rollmodel_shared.request_logging import with_request_logging
from rollmodel_shared.retrieval import batch_get_entries, query_keyword_matches, rank_keyword_matches
from rollmodel_shared.serialization import _now_z

logger = logging.getLogger()

DEFAULT_ENTRY_LIMIT = 10
KEYWORD_MATCH_LIMIT = 10
KEYWORD_TOKEN_LIMIT = 8
MATCHES_PER_TOKEN = 5
DEFAULT_THREAD_MESSAGE_LIMIT = 20
DEFAULT_THREAD_TITLE = "Training Reflection"

SYSTEM_PROMPT = " ".join([
    "You are Roll Model AI, a scientific, coach-like, practical grappling training assistant.",
    "You must respond as strict JSON only with this exact shape:",
    '{"text": string, "extracted_updates": {"summary": string, "actionPack": {"wins": string[],',
    '"leaks": string[], "oneFocus": string, "drills": string[], "positionalRequests": string[],',
    '"fallbackDecisionGuidance": string, "confidenceFlags": [{"field": string,',
    '"confidence": "high" | "medium" | "low", "note"?: string}]},',
    '"sessionReview"?: {"promptSet": {"whatWorked": string[], "whatFailed": string[],',
    '"whatToAskCoach": string[], "whatToDrillSolo": string[]}, "oneThing": string,',
    '"confidenceFlags": [{"field": string, "confidence": "high" | "medium" | "low", "note"?: string}]},',
    '"coachReview"?: {"requiresReview": boolean, "coachNotes"?: string},',
    '"suggestedFollowUpQuestions": string[]}, "suggested_prompts": string[]}',
    "Do not include markdown. Do not include additional keys.",
])


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _parse_request(event: Dict[str, Any]) -> Dict[str, Any]:
    payload = _require_json_object(event)
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ApiError.invalid("message is required.")
    thread_id = payload.get("threadId")
    if thread_id is not None and (not isinstance(thread_id, str) or not thread_id.strip()):
        raise ApiError.invalid("threadId must be a non-empty string.")
    context = payload.get("context")
    if context is not None and not isinstance(context, dict):
        raise ApiError.invalid("context must be an object.")
    return {"message": message.strip(), "threadId": thread_id, "context": context or {}}


def sanitize_context(auth: AuthContext, context: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve whose entries the chat may read and how much of them.

    Coaches must name the athlete and never receive private sections.
    """
    requested = context.get("athleteId") if isinstance(context.get("athleteId"), str) else None
    coach_mode = bool(requested and requested != auth.user_id and has_role(auth, "coach"))
    if not coach_mode and not has_role(auth, "athlete"):
        raise ApiError.invalid("Coach requests must include context.athleteId.")

    date_range = context.get("dateRange") if isinstance(context.get("dateRange"), dict) else {}
    entry_ids = context.get("entryIds")
    return {
        "athleteId": requested if coach_mode else auth.user_id,
        "coachMode": coach_mode,
        "includePrivate": False if coach_mode else bool(context.get("includePrivate")),
        "entryIds": _str_list(entry_ids) if isinstance(entry_ids, list) else None,
        "from": date_range.get("from") if isinstance(date_range.get("from"), str) else None,
        "to": date_range.get("to") if isinstance(date_range.get("to"), str) else None,
        "keywords": _str_list(context.get("keywords")),
    }


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------

def _create_thread(user_id: str, now: str) -> str:
    thread_id = str(uuid.uuid4())
    store.put_item({
        "PK": f"USER#{user_id}",
        "SK": f"AI_THREAD#{thread_id}",
        "entityType": "AI_THREAD",
        "threadId": thread_id,
        "title": DEFAULT_THREAD_TITLE,
        "createdAt": now,
        "lastActiveAt": now,
    })
    return thread_id


def _touch_thread(user_id: str, thread_id: str, now: str) -> None:
    existing = store.get_item(f"USER#{user_id}", f"AI_THREAD#{thread_id}")
    if not existing:
        raise ApiError.not_found("Thread not found.")
    store.put_item({
        "PK": f"USER#{user_id}",
        "SK": f"AI_THREAD#{thread_id}",
        "entityType": "AI_THREAD",
        "threadId": thread_id,
        "title": existing.get("title") if isinstance(existing.get("title"), str) else DEFAULT_THREAD_TITLE,
        "createdAt": existing.get("createdAt") if isinstance(existing.get("createdAt"), str) else now,
        "lastActiveAt": now,
    })


def _store_message(thread_id: str, role: str, content: str, visibility_scope: str) -> None:
    message_id = str(uuid.uuid4())
    created_at = _now_z()
    store.put_item({
        "PK": f"AI_THREAD#{thread_id}",
        "SK": f"MSG#{created_at}#{message_id}",
        "entityType": "AI_MESSAGE",
        "messageId": message_id,
        "threadId": thread_id,
        "role": role,
        "content": content,
        "visibilityScope": visibility_scope,
        "createdAt": created_at,
    })


def _recent_thread_messages(thread_id: str) -> List[Dict[str, Any]]:
    rows = store.query_items(
        f"AI_THREAD#{thread_id}", "MSG#", scan_forward=False, limit=DEFAULT_THREAD_MESSAGE_LIMIT
    )
    return [store.strip_keys(r) for r in reversed(rows) if r.get("entityType") == "AI_MESSAGE"]


# ---------------------------------------------------------------------------
# Entry context
# ---------------------------------------------------------------------------

def _apply_context_filters(entries: List[Dict[str, Any]], context: Dict[str, Any]) -> List[Dict[str, Any]]:
    out = []
    for entry in entries:
        if context["entryIds"] is not None and entry.get("entryId") not in context["entryIds"]:
            continue
        if context["from"] and entry.get("createdAt", "") < context["from"]:
            continue
        if context["to"] and entry.get("createdAt", "") > context["to"]:
            continue
        out.append(entry)
    return out


def _keyword_entries(context: Dict[str, Any]) -> List[Dict[str, Any]]:
    tokens = list(dict.fromkeys(
        normalize_token(t) for keyword in context["keywords"] for t in tokenize_text(keyword)
    ))[:KEYWORD_TOKEN_LIMIT]
    if not tokens:
        return []
    scopes = ["shared", "private"] if context["includePrivate"] else ["shared"]
    groups = [
        query_keyword_matches(context["athleteId"], token, MATCHES_PER_TOKEN, scope)
        for token in tokens
        for scope in scopes
    ]
    return batch_get_entries(rank_keyword_matches(groups, KEYWORD_MATCH_LIMIT))


def gather_context_entries(context: Dict[str, Any]) -> List[Dict[str, Any]]:
    recent = list(reversed(list_athlete_entries(context["athleteId"])))[:DEFAULT_ENTRY_LIMIT]
    recent = _apply_context_filters(recent, context)[:DEFAULT_ENTRY_LIMIT]
    seen = {e["entryId"] for e in recent}
    keyword = [
        e for e in _apply_context_filters(_keyword_entries(context), context)
        if e["entryId"] not in seen and e.get("athleteId") == context["athleteId"]
    ]
    return recent + keyword


def build_prompt_context(entries: List[Dict[str, Any]], include_private: bool) -> str:
    rows = []
    for entry in entries:
        sections = entry.get("sections") or {}
        rows.append({
            "entryId": entry.get("entryId"),
            "createdAt": entry.get("createdAt"),
            "sections": (
                {"private": sections.get("private", ""), "shared": sections.get("shared", "")}
                if include_private
                else {"shared": sections.get("shared", "")}
            ),
            "sessionMetrics": entry.get("sessionMetrics"),
        })
    return json.dumps(rows, default=str)


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

def _handle_chat(auth: AuthContext, event: Dict[str, Any]) -> Dict:
    require_role(auth, ["athlete", "coach"])
    req = _parse_request(event)
    context = sanitize_context(auth, req["context"])
    if context["coachMode"]:
        ensure_coach_link(auth.user_id, context["athleteId"])

    now = _now_z()
    thread_id = req["threadId"]
    if thread_id:
        _touch_thread(auth.user_id, thread_id, now)
    else:
        thread_id = _create_thread(auth.user_id, now)

    visibility_scope = "private" if context["includePrivate"] else "shared"
    _store_message(thread_id, "user", req["message"], visibility_scope)

    history = "\n".join(f"{m.get('role', '').upper()}: {m.get('content', '')}" for m in _recent_thread_messages(thread_id))
    entries = gather_context_entries(context)
    prompt_context = build_prompt_context(entries, context["includePrivate"])

    reply = call_openai([
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Conversation history:\n{history}\n"
                f"Athlete context data: {prompt_context}. User message: {req['message']}"
            ),
        },
    ])
    _store_message(thread_id, "assistant", reply["text"], visibility_scope)
    logger.info("[INFO] ai chat thread=%s entries=%d", thread_id, len(entries))

    return _response(200, {
        "threadId": thread_id,
        "assistant_text": reply["text"],
        "extracted_updates": reply["extracted_updates"],
        "suggested_prompts": reply["suggested_prompts"],
    })


_CHAT_PATTERN = re.compile(r"/ai/chat$")


@with_request_logging("ai_chat")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        if _CHAT_PATTERN.search(path) and method == "POST":
            return _handle_chat(auth, event)
        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
