import json
import logging

import azure.functions as func
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from function_app import app
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


@app.function_name(name="HealthApi")
@app.route(route="health", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def health_api(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Health check database probe failed: %s", exc)
        database = "unavailable"
    finally:
        db.close()

    status_code = 200 if database == "ok" else 503
    return func.HttpResponse(
        json.dumps({"status": "ok" if status_code == 200 else "degraded", "database": database}),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )
