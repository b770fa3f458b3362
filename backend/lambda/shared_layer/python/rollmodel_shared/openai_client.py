"""rollmodel_shared.openai_client — OpenAI Responses API calls for AI chat and coach questions.

The API key lives in SSM Parameter Store (SecureString) and is cached for the
life of the execution environment. Every provider failure is surfaced as
AI_PROVIDER_ERROR (502); a missing key is CONFIGURATION_ERROR (500).
"""

from __future__ import annotations

import json
import logging
import ssl
import time
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

import certifi
from botocore.exceptions import ClientError

from rollmodel_shared.aws_clients import _get_ssm
from rollmodel_shared.config import (
    OPENAI_API_BASE_URL,
    OPENAI_API_KEY_PARAMETER,
    OPENAI_API_TIMEOUT_SECONDS,
    OPENAI_MODEL,
)
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.session_review import normalize_session_review_artifact

logger = logging.getLogger(__name__)

_CERT_BUNDLE = certifi.where()
_ACTION_PACK_LISTS = ("wins", "leaks", "drills", "positionalRequests")
_ACTION_PACK_STRINGS = ("oneFocus", "fallbackDecisionGuidance")

_cached_api_key: Optional[str] = None


def _provider_error(message: str) -> ApiError:
    return ApiError("AI_PROVIDER_ERROR", message, 502)


def get_openai_api_key() -> str:
    global _cached_api_key
    if _cached_api_key:
        return _cached_api_key
    try:
        resp = _get_ssm().get_parameter(Name=OPENAI_API_KEY_PARAMETER, WithDecryption=True)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code")
        if code != "ParameterNotFound":
            raise
        resp = {}
    value = (resp.get("Parameter") or {}).get("Value")
    if not value:
        raise ApiError("CONFIGURATION_ERROR", "OpenAI API key is not configured.", 500)
    _cached_api_key = value
    return value


def reset_api_key_cache() -> None:
    global _cached_api_key
    _cached_api_key = None


# ---------------------------------------------------------------------------
# Response contract
# ---------------------------------------------------------------------------

def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _is_action_pack(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    if not all(_is_str_list(value.get(k)) for k in _ACTION_PACK_LISTS):
        return False
    if not all(isinstance(value.get(k), str) for k in _ACTION_PACK_STRINGS):
        return False
    flags = value.get("confidenceFlags")
    if not isinstance(flags, list):
        return False
    return all(
        isinstance(f, dict)
        and isinstance(f.get("field"), str)
        and f.get("confidence") in ("high", "medium", "low")
        and (f.get("note") is None or isinstance(f.get("note"), str))
        for f in flags
    )


def _is_coach_review(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("requiresReview"), bool)
        and all(value.get(k) is None or isinstance(value.get(k), str) for k in ("coachNotes", "reviewedAt"))
    )


def is_ai_extracted_updates(value: Any) -> bool:
    if not isinstance(value, dict) or not isinstance(value.get("summary"), str):
        return False
    if not _is_action_pack(value.get("actionPack")):
        return False
    if "sessionReview" in value and normalize_session_review_artifact(value["sessionReview"]) is None:
        return False
    if "coachReview" in value and not _is_coach_review(value["coachReview"]):
        return False
    return _is_str_list(value.get("suggestedFollowUpQuestions"))


def _output_text(payload: Dict[str, Any]) -> str:
    text = payload.get("output_text")
    if isinstance(text, str) and text.strip():
        return text.strip()
    chunks: List[str] = []
    for item in payload.get("output") or []:
        if not isinstance(item, dict):
            continue
        for block in item.get("content") or []:
            if isinstance(block, dict) and block.get("type") in ("output_text", "text"):
                if isinstance(block.get("text"), str) and block["text"].strip():
                    chunks.append(block["text"].strip())
    return "\n".join(chunks)


# ---------------------------------------------------------------------------
# Call
# ---------------------------------------------------------------------------

def request_json_output(messages: List[Dict[str, str]]) -> Any:
    """Send ``[{role, content}]`` messages and return the model's JSON answer, parsed."""
    api_key = get_openai_api_key()
    body = {
        "model": OPENAI_MODEL,
        "input": [
            {"role": m["role"], "content": [{"type": "input_text", "text": m["content"]}]}
            for m in messages
        ],
    }
    req = urllib.request.Request(
        url=f"{OPENAI_API_BASE_URL.rstrip('/')}/v1/responses",
        method="POST",
        data=json.dumps(body).encode("utf-8"),
        headers={"Authorization": f"Bearer {api_key}", "content-type": "application/json"},
    )
    context = ssl.create_default_context(cafile=_CERT_BUNDLE)
    started = time.perf_counter()
    try:
        with urllib.request.urlopen(req, timeout=OPENAI_API_TIMEOUT_SECONDS, context=context) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        logger.warning("openai responses request failed status=%s", exc.code)
        raise _provider_error("Failed to generate assistant response.") from exc
    except TimeoutError as exc:
        logger.warning("openai responses request timed out after %ss", OPENAI_API_TIMEOUT_SECONDS)
        raise _provider_error("Failed to generate assistant response.") from exc
    except urllib.error.URLError as exc:
        logger.warning("openai responses request failed reason=%s", exc.reason)
        raise _provider_error("Failed to generate assistant response.") from exc
    logger.info("openai responses call model=%s latency_ms=%d", OPENAI_MODEL, int((time.perf_counter() - started) * 1000))

    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise _provider_error("Failed to generate assistant response.") from exc
    output = _output_text(envelope) if isinstance(envelope, dict) else ""
    if not output:
        raise _provider_error("AI provider returned an empty response.")

    try:
        return json.loads(output)
    except json.JSONDecodeError as exc:
        raise _provider_error("AI provider response could not be parsed.") from exc


def call_openai(messages: List[Dict[str, str]]) -> Dict[str, Any]:
    """Send chat messages and return the validated reply.

    The reply is ``{"text", "extracted_updates", "suggested_prompts"}``; a
    session review inside extracted_updates comes back normalized.
    """
    parsed = request_json_output(messages)
    if (
        not isinstance(parsed, dict)
        or not isinstance(parsed.get("text"), str)
        or not is_ai_extracted_updates(parsed.get("extracted_updates"))
        or not _is_str_list(parsed.get("suggested_prompts"))
    ):
        raise _provider_error("AI response format was invalid.")

    updates = dict(parsed["extracted_updates"])
    if "sessionReview" in updates:
        updates["sessionReview"] = normalize_session_review_artifact(updates["sessionReview"])
    return {
        "text": parsed["text"],
        "extracted_updates": updates,
        "suggested_prompts": parsed["suggested_prompts"],
    }
