"""rollmodel_shared.config — Environment configuration and logging setup."""

from __future__ import annotations

import logging
import os

__all__ = [
    "COGNITO_CLIENT_ID",
    "COGNITO_USER_POOL_ID",
    "CORS_ORIGIN",
    "DYNAMODB_REGION",
    "ID_TOKEN_COOKIE",
    "OPENAI_API_BASE_URL",
    "OPENAI_API_KEY_PARAMETER",
    "OPENAI_API_TIMEOUT_SECONDS",
    "OPENAI_MODEL",
    "SHARE_BASE_URL",
    "SHARE_REQUIRE_COACH_REVIEW",
    "SHARE_TOKEN_SALT",
    "SSM_REGION",
    "TABLE_NAME",
    "logger",
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

TABLE_NAME = os.environ.get("TABLE_NAME", "RollModel")
DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", os.environ.get("AWS_REGION", "us-east-1"))
SSM_REGION = os.environ.get("SSM_REGION", DYNAMODB_REGION)
COGNITO_USER_POOL_ID = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID = os.environ.get("COGNITO_CLIENT_ID", "")
ID_TOKEN_COOKIE = os.environ.get("ID_TOKEN_COOKIE", "rollmodel_id_token")
CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")

OPENAI_API_KEY_PARAMETER = os.environ.get("OPENAI_API_KEY_PARAMETER", "/roll-model/openai_api_key")
OPENAI_API_BASE_URL = os.environ.get("OPENAI_API_BASE_URL", "https://api.openai.com")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4.1-mini")
OPENAI_API_TIMEOUT_SECONDS = int(os.environ.get("OPENAI_API_TIMEOUT_SECONDS", "30"))

SHARE_TOKEN_SALT = os.environ.get("SHARE_TOKEN_SALT", "")
SHARE_BASE_URL = os.environ.get("SHARE_BASE_URL", "").strip() or "https://share.invalid"
SHARE_REQUIRE_COACH_REVIEW = os.environ.get("SHARE_REQUIRE_COACH_REVIEW", "").strip().lower() in ("1", "true", "yes")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
