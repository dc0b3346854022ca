import logging

import azure.functions as func
from azure.core.exceptions import AzureError

from duplicates_shared import _error, _json, authenticate, authorize, error_response, parse_json_body, unexpected_error
from schemas.duplicates_schema import parse_detect_payload
from services.crm_rbac import can_run_detection
from services.dedupe_errors import DedupeError
from services.detection_queue import QueueConfigError, enqueue_detection_run
from services.duplicate_detector import create_detection_run, run_detection, run_to_dict
from shared.config import get_dedupe_settings
from shared.db import SessionLocal

logger = logging.getLogger(__name__)


def handle_duplicates_detect(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req)
    settings = get_dedupe_settings()
    db = SessionLocal()
    try:
        actor = authenticate(db, req, body)
        params = parse_detect_payload(body, default_threshold=settings["threshold"])
        authorize(db, actor, params["workspace_id"], can_run_detection, action="run duplicate detection")

        run = create_detection_run(
            db,
            params["workspace_id"],
            entity_type=params["entity_type"],
            threshold=params["threshold"],
            triggered_by=actor.user_id,
        )
        mode = settings["detection_mode"]
        if mode == "queue":
            try:
                enqueue_detection_run(run.id, run.workspace_id)
            except (QueueConfigError, AzureError) as exc:
                logger.warning("Could not queue detection run %s, running inline: %s", run.id, exc)
                mode = "inline"

        payload = {
            "success": True,
            "run_id": run.id,
            "workspace_id": params["workspace_id"],
            "entity_type": params["entity_type"] or "all",
            "threshold": params["threshold"],
            "mode": mode,
        }
        if mode == "inline":
            run = run_detection(db, run.id)
            if run.status == "failed":
                return _error(
                    cors=cors,
                    status_code=500,
                    message="Duplicate detection failed",
                    code="detection_failed",
                    details={"run_id": run.id, "error": run.error},
                )
            payload["summary"] = run_to_dict(run)
            payload["message"] = (
                f"Duplicate detection finished: {run.candidates_created} new, "
                f"{run.candidates_updated} updated candidates"
            )
        else:
            payload["message"] = "Duplicate detection queued"
    except DedupeError as exc:
        return error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Failed to start duplicate detection")
        return unexpected_error(cors, "Failed to start duplicate detection", exc)
    finally:
        db.close()

    return _json(payload, status_code=202, cors=cors)
