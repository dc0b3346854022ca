from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

import azure.functions as func

from crm_shared import CRMActor, require_workspace_member, resolve_actor_from_session
from services.dedupe_errors import AccessDenied, DedupeError

logger = logging.getLogger(__name__)


def _json(data: Dict[str, Any], *, status_code: int, cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data, default=str),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )


def _error(
    *,
    cors: Dict[str, str],
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> func.HttpResponse:
    payload = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return _json(payload, status_code=status_code, cors=cors)


def error_response(exc: DedupeError, cors: Dict[str, str]) -> func.HttpResponse:
    return _json(exc.to_payload(), status_code=exc.status_code, cors=cors)


def unexpected_error(cors: Dict[str, str], message: str, exc: Exception) -> func.HttpResponse:
    return _error(cors=cors, status_code=500, message=message, code="internal_error", details=str(exc))


def parse_json_body(req: func.HttpRequest) -> dict:
    try:
        body = req.get_json()
    except ValueError:
        body = None
    return body if isinstance(body, dict) else {}


def route_param(req: func.HttpRequest, name: str) -> str:
    return str((req.route_params or {}).get(name) or "").strip()


def authenticate(db, req: func.HttpRequest, body: Optional[dict] = None) -> CRMActor:
    return resolve_actor_from_session(db, req, body)


def authorize(
    db,
    actor: CRMActor,
    workspace_id: str,
    permission: Callable[[str], bool],
    *,
    action: str = "perform this action",
) -> str:
    """Check membership of workspace_id and the role permission; returns the role."""
    role = require_workspace_member(db, actor, workspace_id)
    if not permission(role):
        logger.info("User %s (%s) may not %s in workspace %s", actor.user_id, role, action, workspace_id)
        raise AccessDenied(f"Your role ({role}) cannot {action}")
    return role
