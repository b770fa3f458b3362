"""restore_data/lambda_function.py

Lambda API handler that restores an athlete's own JSON backup.

Routes (via API Gateway proxy):
    POST /restore               — Restore a full backup export (athlete)
    OPTIONS /restore            — CORS preflight

The body is the envelope returned by ``GET /export`` (``mode=full`` or the
default layout). A schema version other than the current backup version is
rejected with INCOMPATIBLE_BACKUP_SCHEMA; any other validation failure is
INVALID_BACKUP_FORMAT. Nothing is written unless the whole backup validates.
Progress views are recomputed after the write.

Environment variables:
    TABLE_NAME             default: RollModel
    DYNAMODB_REGION        default: us-east-1
    CORS_ORIGIN            default: *
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict

from rollmodel_shared.auth import _authenticate, require_role
from rollmodel_shared.backups import restore_backup
from rollmodel_shared.http_utils import (
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
    _require_json_object,
    _response,
)
from rollmodel_shared.progress_store import recompute_progress_views
from rollmodel_shared.request_logging import with_request_logging

logger = logging.getLogger()

_RESTORE_PATTERN = re.compile(r"/restore$")


@with_request_logging("restore_data")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        if not (_RESTORE_PATTERN.search(path) and method == "POST"):
            return _error(404, f"Route not found: {method} {path}")

        require_role(auth, ["athlete"])
        counts = restore_backup(auth.user_id, _require_json_object(event))
        recompute_progress_views(auth.user_id)
        logger.info("[INFO] restore complete athlete=%s entries=%d", auth.user_id, counts["entries"])
        return _response(200, {"restored": True, "athleteId": auth.user_id, "counts": counts})

    except ApiError as exc:
        return _error_from_exception(exc)
