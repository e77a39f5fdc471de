from __future__ import annotations

import hmac
import os

from flask import g, request

from settlement.errors import AuthorizationError
from settlement.extensions import db
from settlement.models import User
from settlement.utils.jwt_utils import decode_token, get_bearer_token


class Unauthenticated(AuthorizationError):
    code = "UNAUTHORIZED"
    http_status = 401


def current_user() -> User | None:
    cached = getattr(g, "_auth_user", None)
    if cached is not None:
        return cached
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, uid)
    if user is None or not bool(user.is_active):
        return None
    g._auth_user = user
    g.auth_user_id = int(user.id)
    return user


def reset_request_user() -> None:
    # `g` lives on the app context, which can outlive a single request.
    g.pop("_auth_user", None)
    g.pop("auth_user_id", None)


def require_user() -> User:
    user = current_user()
    if user is None:
        raise Unauthenticated("Unauthorized")
    return user


def require_admin() -> User:
    user = require_user()
    if not user.is_admin:
        raise AuthorizationError("Admin required", code="ADMIN_REQUIRED")
    return user


def has_service_token() -> bool:
    expected = (os.getenv("RISK_SERVICE_TOKEN") or "").strip()
    if not expected:
        return False
    supplied = (request.headers.get("X-Service-Token") or "").strip()
    return bool(supplied) and hmac.compare_digest(supplied, expected)


def require_admin_or_service() -> User | None:
    """Admin bearer token, or the shared service token for internal callers."""
    if has_service_token():
        return None
    return require_admin()


def actor_for(user: User | None) -> dict:
    if user is None:
        return {"type": "service", "id": None}
    role = "admin" if user.is_admin else "user"
    return {"type": role, "id": int(user.id)}
