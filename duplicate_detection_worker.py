from __future__ import annotations

import logging

import azure.functions as func

from function_app import app
from services.detection_queue import parse_queue_message
from services.dedupe_errors import NotFound
from services.duplicate_detector import run_detection
from shared.config import get_dedupe_settings
from shared.db import SessionLocal

logger = logging.getLogger(__name__)

_QUEUE_NAME = get_dedupe_settings()["queue_name"]


def process_detection_message(raw: str) -> None:
    payload = parse_queue_message(raw)
    run_id = payload.get("runId")
    if not run_id:
        logger.error("Detection queue message missing runId: %s", raw)
        return

    db = SessionLocal()
    try:
        run = run_detection(db, run_id)
        logger.info(
            "Detection run %s finished with status %s (%s created, %s updated)",
            run.id,
            run.status,
            run.candidates_created,
            run.candidates_updated,
        )
    except NotFound:
        logger.error("Detection run %s no longer exists", run_id)
    finally:
        db.close()


@app.function_name(name="ProcessDuplicateDetection")
@app.queue_trigger(
    arg_name="msg",
    queue_name=_QUEUE_NAME,
    connection="AzureWebJobsStorage",
)
def process_duplicate_detection(msg: func.QueueMessage) -> None:
    raw = msg.get_body().decode("utf-8") if msg else "{}"
    process_detection_message(raw)
