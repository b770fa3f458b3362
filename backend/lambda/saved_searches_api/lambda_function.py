"""saved_searches_api/lambda_function.py

Lambda API handler for an athlete's saved entry searches.

Routes (via API Gateway proxy):
    GET    /saved-searches                    — List saved searches
    POST   /saved-searches                    — Create saved search
    PUT    /saved-searches/{savedSearchId}    — Replace saved search
    DELETE /saved-searches/{savedSearchId}    — Delete saved search
    OPTIONS /*                                — CORS preflight

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
from rollmodel_shared.http_utils import (
    ApiError,
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
    _require_json_object,
    _response,
)
from rollmodel_shared.request_logging import with_request_logging
from rollmodel_shared.saved_searches import (
    create_saved_search,
    delete_saved_search,
    list_saved_searches,
    parse_saved_search_payload,
    update_saved_search,
)

logger = logging.getLogger()

_COLLECTION_PATTERN = re.compile(r"/saved-searches$")
_ITEM_PATTERN = re.compile(r"/saved-searches/(?P<savedSearchId>[^/]+)$")


@with_request_logging("saved_searches_api")
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _no_content()

    auth, auth_error = _authenticate(event)
    if auth_error:
        return auth_error

    try:
        require_role(auth, ["athlete"])

        if _COLLECTION_PATTERN.search(path):
            if method == "GET":
                return _response(200, {"savedSearches": list_saved_searches(auth.user_id)})
            if method == "POST":
                payload = parse_saved_search_payload(_require_json_object(event))
                return _response(201, {"savedSearch": create_saved_search(auth.user_id, payload)})

        m = _ITEM_PATTERN.search(path)
        if m:
            saved_search_id = m.group("savedSearchId")
            if method == "PUT":
                payload = parse_saved_search_payload(_require_json_object(event))
                return _response(200, {"savedSearch": update_saved_search(auth.user_id, saved_search_id, payload)})
            if method == "DELETE":
                delete_saved_search(auth.user_id, saved_search_id)
                return _no_content()

        return _error(404, f"Route not found: {method} {path}")

    except ApiError as exc:
        return _error_from_exception(exc)
