import logging

import azure.functions as func

from duplicates_shared import _json, authenticate, authorize, error_response, parse_json_body, route_param, unexpected_error
from schemas.duplicates_schema import parse_resolve_payload
from services.candidate_store import candidate_to_dict, get_candidate, resolve_candidate
from services.crm_rbac import can_resolve_duplicates
from services.dedupe_errors import DedupeError
from shared.db import SessionLocal

logger = logging.getLogger(__name__)


def handle_duplicate_resolve(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    candidate_id = route_param(req, "duplicate_id")
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor = authenticate(db, req, body)
        status = parse_resolve_payload(body)
        candidate = get_candidate(db, candidate_id)
        authorize(db, actor, candidate.workspace_id, can_resolve_duplicates, action="resolve duplicates")
        candidate = resolve_candidate(db, candidate.id, status, actor.user_id)
        db.commit()
        logger.info("Duplicate %s marked %s by %s", candidate.id, status, actor.user_id)
        payload = {
            "success": True,
            "message": f"Duplicate marked as {status}",
            "duplicate_id": candidate.id,
            "status": status,
            "duplicate": candidate_to_dict(candidate),
        }
    except DedupeError as exc:
        return error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.exception("Failed to resolve duplicate %s", candidate_id)
        return unexpected_error(cors, "Failed to resolve duplicate", exc)
    finally:
        db.close()

    return _json(payload, status_code=200, cors=cors)
