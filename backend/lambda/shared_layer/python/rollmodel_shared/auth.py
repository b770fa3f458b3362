"""rollmodel_shared.auth — Caller identity and role checks.

Identity comes from the API Gateway Cognito authorizer claims
(`requestContext.authorizer.claims`, or `.jwt.claims` on HTTP APIs). When the
route is not fronted by an authorizer, the Cognito ID token is read from the
`Authorization: Bearer` header or the `rollmodel_id_token` cookie and
verified as an RS256 JWT against the user pool JWKS.

Roles are `athlete`, `coach` and `admin`, taken from `custom:role` and
`cognito:groups`. The primary role is the highest of admin, coach, athlete.

Requires environment variables (token fallback only):
    COGNITO_USER_POOL_ID   — e.g. us-east-1_AbCdEfGhI
    COGNITO_CLIENT_ID      — app client id used as the token audience
"""

from __future__ import annotations

import json
import logging
import ssl
import time
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import certifi
import jwt
from jwt.algorithms import RSAAlgorithm

from rollmodel_shared import config
from rollmodel_shared.http_utils import ApiError, _error

logger = logging.getLogger(__name__)

ROLES = ("athlete", "coach", "admin")

_CERT_BUNDLE = certifi.where()

# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------

_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL: float = 3600.0


@dataclass
class AuthContext:
    user_id: str
    role: str
    roles: List[str] = field(default_factory=list)

    @property
    def effective_roles(self) -> List[str]:
        return self.roles or [self.role]


def _header(event: Dict[str, Any], name: str) -> str:
    target = name.lower()
    for key, value in (event.get("headers") or {}).items():
        if key.lower() == target and isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    """Extract the ID token from a bearer header or cookie."""
    authorization = _header(event, "authorization")
    if authorization.lower().startswith("bearer "):
        token = authorization[len("bearer ") :].strip()
        if token:
            return token

    cookie_parts: List[str] = []
    cookie_header = _header(event, "cookie")
    if cookie_header:
        cookie_parts.extend(part.strip() for part in cookie_header.split(";") if part.strip())
    event_cookies = event.get("cookies") or []
    if isinstance(event_cookies, list):
        cookie_parts.extend(part.strip() for part in event_cookies if isinstance(part, str) and part.strip())

    prefix = f"{config.ID_TOKEN_COOKIE}="
    for part in cookie_parts:
        if part.startswith(prefix):
            return part[len(prefix) :]
    return None


def _get_jwks() -> Dict[str, Any]:
    """Fetch (and cache) Cognito User Pool JWKS."""
    global _jwks_cache, _jwks_fetched_at
    now = time.time()
    if _jwks_cache and (now - _jwks_fetched_at) < _JWKS_TTL:
        return _jwks_cache

    if not config.COGNITO_USER_POOL_ID:
        raise ValueError("COGNITO_USER_POOL_ID not set")

    region = config.COGNITO_USER_POOL_ID.split("_")[0]
    url = (
        f"https://cognito-idp.{region}.amazonaws.com/"
        f"{config.COGNITO_USER_POOL_ID}/.well-known/jwks.json"
    )
    context = ssl.create_default_context(cafile=_CERT_BUNDLE)
    with urllib.request.urlopen(url, timeout=5, context=context) as resp:
        data = json.loads(resp.read())

    _jwks_cache = {
        key_data["kid"]: RSAAlgorithm.from_jwk(json.dumps(key_data))
        for key_data in data.get("keys", [])
    }
    _jwks_fetched_at = now
    return _jwks_cache


def _verify_token(token: str) -> Dict[str, Any]:
    """Verify a Cognito JWT (RS256). Returns decoded claims dict."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise ValueError(f"Invalid token header: {exc}") from exc

    alg = header.get("alg", "RS256")
    if alg != "RS256":
        raise ValueError(f"Unexpected token algorithm: {alg}")

    key = _get_jwks().get(header.get("kid"))
    if key is None:
        raise ValueError("Token key ID not found in JWKS")

    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=config.COGNITO_CLIENT_ID,
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Token has expired. Please sign in again.")
    except jwt.InvalidAudienceError:
        raise ValueError("Token audience mismatch.")
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc


def _authorizer_claims(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = authorizer.get("claims")
    if isinstance(claims, dict):
        return claims
    jwt_claims = (authorizer.get("jwt") or {}).get("claims")
    if isinstance(jwt_claims, dict):
        return jwt_claims
    return None


def parse_groups(raw: Any) -> List[str]:
    """Parse a cognito:groups claim (JSON array, list or comma separated)."""
    if isinstance(raw, list):
        values: Iterable[Any] = raw
    elif isinstance(raw, str):
        trimmed = raw.strip()
        if not trimmed:
            return []
        values = trimmed.split(",")
        if trimmed.startswith("["):
            try:
                parsed = json.loads(trimmed)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                values = parsed
    else:
        return []
    return [v.strip().lower() for v in values if isinstance(v, str) and v.strip()]


def _roles_from_claims(claims: Dict[str, Any]) -> List[str]:
    roles: List[str] = []
    role_claim = claims.get("custom:role")
    if role_claim:
        if role_claim not in ROLES:
            raise ApiError("INVALID_ROLE", "User role is invalid.", 403)
        roles.append(role_claim)

    groups = parse_groups(claims.get("cognito:groups"))
    for role in ("admin", "coach", "athlete"):
        if role in groups and role not in roles:
            roles.append(role)

    if not roles:
        raise ApiError("UNAUTHORIZED", "Missing authentication claims.", 401)
    return roles


def _primary_role(roles: List[str]) -> str:
    if "admin" in roles:
        return "admin"
    if "coach" in roles:
        return "coach"
    return "athlete"


def get_auth_context(event: Dict[str, Any]) -> AuthContext:
    """Resolve the caller identity, raising ApiError on failure."""
    claims = _authorizer_claims(event)
    if claims is None:
        token = _extract_token(event)
        if token:
            try:
                claims = _verify_token(token)
            except ValueError as exc:
                raise ApiError("UNAUTHORIZED", str(exc), 401)

    user_id = (claims or {}).get("sub")
    if not claims or not user_id:
        raise ApiError("UNAUTHORIZED", "Missing authentication claims.", 401)

    roles = _roles_from_claims(claims)
    return AuthContext(user_id=str(user_id), role=_primary_role(roles), roles=roles)


def _authenticate(event: Dict[str, Any]) -> Tuple[Optional[AuthContext], Optional[Dict[str, Any]]]:
    """Authenticate a request.

    Returns (auth, None) on success or (None, error_response) on failure.
    """
    try:
        return get_auth_context(event), None
    except ApiError as exc:
        return None, _error(exc.status_code, exc.message, exc.code)


def require_role(auth: AuthContext, allowed: Iterable[str]) -> None:
    if not any(role in auth.effective_roles for role in allowed):
        raise ApiError.forbidden("User does not have permission for this action.")


def has_role(auth: AuthContext, role: str) -> bool:
    return role in auth.effective_roles
