import logging

import azure.functions as func

from duplicates_shared import _json, authenticate, authorize, error_response, parse_json_body, route_param, unexpected_error
from schemas.duplicates_schema import parse_merge_payload
from services.candidate_store import get_candidate
from services.crm_rbac import can_merge_duplicates
from services.dedupe_errors import DedupeError
from services.merge_executor import merge
from shared.db import SessionLocal

logger = logging.getLogger(__name__)


def handle_duplicate_merge(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    candidate_id = route_param(req, "duplicate_id")
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor = authenticate(db, req, body)
        params = parse_merge_payload(body)
        candidate = get_candidate(db, candidate_id)
        authorize(db, actor, candidate.workspace_id, can_merge_duplicates, action="merge duplicates")
        result = merge(
            db,
            candidate.id,
            params["keep_id"],
            params["merge_id"],
            params["merged_data"],
            performed_by=actor.user_id,
            workspace_id=candidate.workspace_id,
        )
        payload = {
            "success": result.success,
            "message": f"{result.entity_type.capitalize()}s merged successfully",
            "kept_id": result.kept_id,
            "merged_id": result.merged_id,
            "entity_type": result.entity_type,
            "candidate_status": result.candidate_status,
            "repointed": result.repointed,
        }
    except DedupeError as exc:
        db.rollback()
        return error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.exception("Failed to merge duplicate %s", candidate_id)
        return unexpected_error(cors, "Failed to merge duplicates", exc)
    finally:
        db.close()

    return _json(payload, status_code=200, cors=cors)
