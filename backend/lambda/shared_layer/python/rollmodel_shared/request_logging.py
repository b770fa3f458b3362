"""rollmodel_shared.request_logging — Structured per-request logging.

`with_request_logging(name)` wraps a Lambda handler and writes one JSON line
for the start of the request and one for its outcome, tagged with routing,
tracing and caller identity fields.
"""

from __future__ import annotations

import datetime as dt
import functools
import json
import logging
import os
import re
import time
from typing import Any, Callable, Dict, Optional

from rollmodel_shared.auth import parse_groups
from rollmodel_shared.http_utils import _error_from_exception, _path_method

logger = logging.getLogger()

Handler = Callable[[Dict[str, Any], Any], Dict[str, Any]]


def _header(headers: Optional[Dict[str, Any]], name: str) -> Optional[str]:
    target = name.lower()
    for key, value in (headers or {}).items():
        if key.lower() == target and isinstance(value, str) and value.strip():
            return value
    return None


def _trace_id() -> Optional[str]:
    raw = os.environ.get("_X_AMZN_TRACE_ID")
    if not raw:
        return None
    match = re.search(r"Root=([^;]+)", raw)
    return match.group(1) if match else raw


def _identity(event: Dict[str, Any]) -> Dict[str, Any]:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = authorizer.get("claims") or (authorizer.get("jwt") or {}).get("claims")
    if not isinstance(claims, dict):
        return {}
    roles = list(dict.fromkeys(parse_groups(claims.get("cognito:groups"))))
    out: Dict[str, Any] = {"userId": claims.get("sub"), "userRole": claims.get("custom:role")}
    if roles:
        out["userRoles"] = roles
    return out


def _log_base(handler_name: str, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    rc = event.get("requestContext") or {}
    method, path = _path_method(event)
    route = rc.get("resourcePath") or event.get("resource") or event.get("routeKey") or path
    request_id = rc.get("requestId")
    lambda_request_id = getattr(context, "aws_request_id", None)
    correlation_id = (
        _header(event.get("headers"), "x-correlation-id")
        or _header(event.get("headers"), "x-request-id")
        or request_id
        or lambda_request_id
    )
    base: Dict[str, Any] = {
        "handler": handler_name,
        "route": route,
        "path": path,
        "method": method,
        "stage": rc.get("stage"),
        "requestId": request_id,
        "lambdaRequestId": lambda_request_id,
        "correlationId": correlation_id,
        "traceId": _trace_id(),
    }
    base.update(_identity(event))
    return {k: v for k, v in base.items() if v is not None}


def _emit(level: int, payload: Dict[str, Any]) -> None:
    entry = {
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        "level": logging.getLevelName(level),
        **payload,
    }
    logger.log(level, "[REQUEST] %s", json.dumps(entry, sort_keys=True, default=str))


def _error_details(result: Dict[str, Any]) -> Dict[str, Any]:
    try:
        parsed = json.loads(result.get("body") or "")
    except (json.JSONDecodeError, TypeError):
        return {}
    error = parsed.get("error") if isinstance(parsed, dict) else None
    if not isinstance(error, dict):
        return {}
    return {"errorCode": error.get("code"), "errorMessage": error.get("message")}


def with_request_logging(handler_name: str) -> Callable[[Handler], Handler]:
    """Decorate a lambda_handler with start/outcome request logging.

    Exceptions escaping the handler are logged and answered with a 500
    INTERNAL_SERVER_ERROR response.
    """

    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        def wrapped(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
            started = time.perf_counter()
            base = _log_base(handler_name, event or {}, context)
            _emit(logging.INFO, {"event": "request.start", "outcome": "start", **base})

            try:
                result = handler(event, context)
            except Exception as exc:
                _emit(
                    logging.ERROR,
                    {
                        "event": "request.error",
                        "outcome": "exception",
                        "latencyMs": int((time.perf_counter() - started) * 1000),
                        "errorName": type(exc).__name__,
                        "errorMessage": str(exc),
                        **base,
                    },
                )
                return _error_from_exception(exc)

            status_code = int(result.get("statusCode") or 200)
            is_error = status_code >= 400
            payload: Dict[str, Any] = {
                "event": "request.error" if is_error else "request.success",
                "outcome": "error" if is_error else "success",
                "statusCode": status_code,
                "latencyMs": int((time.perf_counter() - started) * 1000),
                **base,
            }
            if is_error:
                payload.update(_error_details(result))
            if status_code >= 500:
                level = logging.ERROR
            elif is_error:
                level = logging.WARNING
            else:
                level = logging.INFO
            _emit(level, payload)
            return result

        return wrapped

    return decorator
