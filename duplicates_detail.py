import logging

import azure.functions as func

from duplicates_shared import _json, authenticate, authorize, error_response, route_param, unexpected_error
from repository.entities_repo import get_entity_pair
from services.candidate_store import candidate_to_dict, get_candidate
from services.crm_rbac import can_view_duplicates
from services.dedupe_errors import DedupeError, InvalidInput
from services.duplicate_detector import get_detection_run, run_to_dict
from shared.db import SessionLocal

logger = logging.getLogger(__name__)


def handle_duplicate_detail(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    candidate_id = route_param(req, "duplicate_id")
    db = SessionLocal()
    try:
        actor = authenticate(db, req)
        if not candidate_id:
            raise InvalidInput("duplicate id is required")
        candidate = get_candidate(db, candidate_id)
        authorize(db, actor, candidate.workspace_id, can_view_duplicates, action="view duplicates")
        entities = get_entity_pair(db, candidate.entity_type, candidate.entity_id_1, candidate.entity_id_2)
        payload = {"duplicate": candidate_to_dict(candidate), **entities}
    except DedupeError as exc:
        return error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Failed to load duplicate %s", candidate_id)
        return unexpected_error(cors, "Failed to fetch duplicate", exc)
    finally:
        db.close()

    return _json(payload, status_code=200, cors=cors)


def handle_detection_run_detail(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    run_id = route_param(req, "run_id")
    db = SessionLocal()
    try:
        actor = authenticate(db, req)
        run = get_detection_run(db, run_id)
        authorize(db, actor, run.workspace_id, can_view_duplicates, action="view detection runs")
        payload = {"run": run_to_dict(run)}
    except DedupeError as exc:
        return error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Failed to load detection run %s", run_id)
        return unexpected_error(cors, "Failed to fetch detection run", exc)
    finally:
        db.close()

    return _json(payload, status_code=200, cors=cors)
