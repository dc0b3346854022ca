from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import azure.functions as func
from sqlalchemy import func as sa_func

from services.crm_rbac import normalize_role
from services.dedupe_errors import AccessDenied, Unauthorized
from shared.config import get_setting
from shared.db import User, WorkspaceMember


@dataclass
class CRMActor:
    user_id: str
    email: str
    full_name: Optional[str] = None


def _normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(raw: str) -> Optional[bytes]:
    value = str(raw or "").strip()
    if not value:
        return None
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (binascii.Error, ValueError):
        return None


def _auth_session_secret() -> str:
    for key in (
        "AUTH_SESSION_SECRET",
        "APP_SESSION_SECRET",
        "JWT_SECRET",
        "SECRET_KEY",
    ):
        value = str(get_setting(key) or "").strip()
        if value:
            return value
    return ""


def _auth_session_ttl_seconds() -> int:
    raw = str(get_setting("AUTH_SESSION_TTL_SECONDS") or "").strip()
    try:
        parsed = int(raw) if raw else 12 * 60 * 60
    except ValueError:
        parsed = 12 * 60 * 60
    return max(15 * 60, min(7 * 24 * 60 * 60, parsed))


def _extract_auth_session_token(req: func.HttpRequest, body: Optional[dict] = None) -> str:
    body = body or {}
    headers = req.headers or {}
    auth_header = str(headers.get("Authorization") or headers.get("authorization") or "").strip()
    if auth_header:
        parts = auth_header.split(" ", 1)
        if len(parts) == 2 and parts[0].strip().lower() == "bearer":
            token = parts[1].strip()
            if token:
                return token
    query_token = req.params.get("auth_token")
    if isinstance(query_token, str) and query_token.strip():
        return query_token.strip()
    body_token = body.get("auth_token") or body.get("authToken")
    if isinstance(body_token, str) and body_token.strip():
        return body_token.strip()
    return ""


def issue_auth_session_token(
    email: str,
    *,
    ttl_seconds: Optional[int] = None,
) -> Tuple[Optional[str], Optional[str]]:
    normalized_email = _normalize_email(email)
    if not normalized_email:
        return None, None
    secret = _auth_session_secret()
    if not secret:
        return None, None
    expires_in = ttl_seconds if isinstance(ttl_seconds, int) and ttl_seconds > 0 else _auth_session_ttl_seconds()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    payload: Dict[str, Any] = {
        "email": normalized_email,
        "exp": int(expires_at.timestamp()),
    }
    payload_bytes = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()
    token = f"{_b64url_encode(payload_bytes)}.{_b64url_encode(digest)}"
    return token, expires_at.isoformat()


def _verify_auth_session_token(token: str) -> Optional[Dict[str, Any]]:
    raw = str(token or "").strip()
    if "." not in raw:
        return None
    payload_part, sig_part = raw.split(".", 1)
    payload_bytes = _b64url_decode(payload_part)
    sig_bytes = _b64url_decode(sig_part)
    if not payload_bytes or not sig_bytes:
        return None
    secret = _auth_session_secret()
    if not secret:
        return None
    expected = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, sig_bytes):
        return None
    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        exp_ts = int(payload.get("exp") or 0)
    except (TypeError, ValueError):
        return None
    if exp_ts <= int(datetime.now(timezone.utc).timestamp()):
        return None
    email = _normalize_email(payload.get("email"))
    if not email:
        return None
    payload["email"] = email
    return payload


def _resolve_actor_for_email(db, email: str) -> Optional[CRMActor]:
    normalized_email = _normalize_email(email)
    if not normalized_email:
        return None
    user = (
        db.query(User)
        .filter(sa_func.lower(sa_func.trim(User.email)) == normalized_email)
        .order_by(User.id.asc())
        .first()
    )
    if not user:
        return None
    return CRMActor(user_id=str(user.id), email=normalized_email, full_name=user.full_name)


def resolve_actor_from_session(db, req: func.HttpRequest, body: Optional[dict] = None) -> CRMActor:
    claims = _verify_auth_session_token(_extract_auth_session_token(req, body))
    if not claims:
        raise Unauthorized("A valid session token is required")
    actor = _resolve_actor_for_email(db, claims.get("email"))
    if not actor:
        raise Unauthorized("Session user no longer exists")
    return actor


def get_workspace_role(db, actor: CRMActor, workspace_id: str) -> Optional[str]:
    membership = (
        db.query(WorkspaceMember)
        .filter(WorkspaceMember.workspace_id == workspace_id)
        .filter(WorkspaceMember.user_id == actor.user_id)
        .one_or_none()
    )
    if not membership:
        return None
    return normalize_role(membership.role)


def require_workspace_member(db, actor: CRMActor, workspace_id: str) -> str:
    role = get_workspace_role(db, actor, workspace_id)
    if not role:
        raise AccessDenied("You are not a member of this workspace")
    return role
