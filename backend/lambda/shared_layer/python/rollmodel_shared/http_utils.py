"""rollmodel_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope, the ApiError taxonomy and request parsing used by
all Roll Model API Lambda functions.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, Optional, Tuple

from rollmodel_shared.config import CORS_ORIGIN

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": CORS_ORIGIN,
    "Access-Control-Allow-Headers": "Content-Type,Authorization,Cookie,X-Correlation-Id",
    "Access-Control-Allow-Methods": "GET,POST,PUT,PATCH,DELETE,OPTIONS",
}

_DEFAULT_CODES = {
    400: "INVALID_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    500: "INTERNAL_SERVER_ERROR",
    502: "AI_PROVIDER_ERROR",
}


class ApiError(Exception):
    """Application error carrying an error code and HTTP status."""

    def __init__(self, code: str, message: str, status_code: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    @classmethod
    def invalid(cls, message: str) -> "ApiError":
        return cls("INVALID_REQUEST", message, 400)

    @classmethod
    def forbidden(cls, message: str) -> "ApiError":
        return cls("FORBIDDEN", message, 403)

    @classmethod
    def not_found(cls, message: str) -> "ApiError":
        return cls("NOT_FOUND", message, 404)

    @classmethod
    def conflict(cls, message: str) -> "ApiError":
        return cls("CONFLICT", message, 409)


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            **CORS_HEADERS,
        },
        "body": json.dumps(body, default=str),
    }


def _no_content() -> Dict[str, Any]:
    return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}


def _error(status_code: int, message: str, code: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        code: Error code; defaults from the status code.
        **extra: Additional fields merged into the response payload.
    """
    payload: Dict[str, Any] = {
        "success": False,
        "error": {
            "code": code or _DEFAULT_CODES.get(status_code, "INTERNAL_SERVER_ERROR"),
            "message": message,
        },
    }
    if extra:
        payload.update(extra)
    return _response(status_code, payload)


def _error_from_exception(exc: Exception) -> Dict[str, Any]:
    """Convert an exception raised by a handler into an error response."""
    if isinstance(exc, ApiError):
        return _error(exc.status_code, exc.message, exc.code)
    logger.exception("unhandled error: %s", exc)
    return _error(500, "An unexpected error occurred.", "INTERNAL_SERVER_ERROR")


def _raw_body(event: Dict[str, Any]) -> Optional[str]:
    raw = event.get("body")
    if raw is None:
        return None
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    return raw


def _parse_body(event: Dict[str, Any]) -> Any:
    """Parse JSON body from API Gateway event (handles base64).

    Returns None when the body is not valid JSON.
    """
    raw = _raw_body(event) or "{}"
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


def _require_json_object(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parse a JSON object body, raising INVALID_REQUEST on anything else."""
    raw = _raw_body(event)
    if not raw:
        raise ApiError.invalid("Request body is required.")
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        raise ApiError.invalid("Request body must be valid JSON.")
    if not isinstance(parsed, dict):
        raise ApiError.invalid("Request body must be a JSON object.")
    return parsed


def _optional_json_object(event: Dict[str, Any]) -> Dict[str, Any]:
    """Like ``_require_json_object`` but a missing body reads as ``{}``."""
    if not _raw_body(event):
        return {}
    return _require_json_object(event)


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from an API Gateway v1 or v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path


def _query_params(event: Dict[str, Any]) -> Dict[str, str]:
    qs = event.get("queryStringParameters") or {}
    return {k: v for k, v in qs.items() if isinstance(v, str)}


def _path_params(event: Dict[str, Any]) -> Dict[str, str]:
    params = event.get("pathParameters") or {}
    return {k: v for k, v in params.items() if isinstance(v, str) and v}
