import logging

import azure.functions as func

from duplicates_shared import _json, authenticate, authorize, error_response, unexpected_error
from schemas.duplicates_schema import (
    normalize_entity_type,
    normalize_status_filter,
    parse_limit,
    parse_min_score,
    parse_offset,
    require_workspace_id,
)
from services.candidate_store import candidate_to_dict, get_duplicate_stats, list_candidates
from services.crm_rbac import can_view_duplicates
from services.dedupe_errors import DedupeError
from shared.config import get_dedupe_settings
from shared.db import SessionLocal

logger = logging.getLogger(__name__)


def handle_duplicates_list(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    db = SessionLocal()
    try:
        actor = authenticate(db, req)
        workspace_id = require_workspace_id(req.params.get("workspace_id"))
        entity_type = normalize_entity_type(req.params.get("entity_type"))
        status = normalize_status_filter(req.params.get("status"))
        min_score = parse_min_score(req.params.get("min_score"))
        limit = parse_limit(req.params.get("limit"), maximum=get_dedupe_settings()["max_page_size"])
        offset = parse_offset(req.params.get("offset"))
        authorize(db, actor, workspace_id, can_view_duplicates, action="view duplicates")

        rows, total = list_candidates(
            db,
            workspace_id,
            entity_type=entity_type,
            status=status,
            min_score=min_score,
            limit=limit,
            offset=offset,
        )
        payload = {
            "duplicates": [candidate_to_dict(row) for row in rows],
            "total": total,
            "workspace_id": workspace_id,
            "filters": {
                "entity_type": entity_type,
                "status": status,
                "min_score": min_score,
            },
            "pagination": {
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(rows) < total,
            },
        }
    except DedupeError as exc:
        return error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Failed to list duplicates")
        return unexpected_error(cors, "Failed to fetch duplicates", exc)
    finally:
        db.close()

    return _json(payload, status_code=200, cors=cors)


def handle_duplicates_stats(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    db = SessionLocal()
    try:
        actor = authenticate(db, req)
        workspace_id = require_workspace_id(req.params.get("workspace_id"))
        entity_type = normalize_entity_type(req.params.get("entity_type"))
        authorize(db, actor, workspace_id, can_view_duplicates, action="view duplicates")
        stats = get_duplicate_stats(db, workspace_id, entity_type)
    except DedupeError as exc:
        return error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Failed to compute duplicate stats")
        return unexpected_error(cors, "Failed to fetch duplicate statistics", exc)
    finally:
        db.close()

    return _json(
        {"stats": stats, "workspace_id": workspace_id, "entity_type": entity_type or "all"},
        status_code=200,
        cors=cors,
    )
