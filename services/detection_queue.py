from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from azure.core.exceptions import ResourceExistsError
from azure.storage.queue import QueueClient, QueueServiceClient, TextBase64EncodePolicy

from shared.config import get_dedupe_settings, get_storage_connection_string

logger = logging.getLogger(__name__)

_QUEUE_SERVICE: Optional[QueueServiceClient] = None


class QueueConfigError(RuntimeError):
    pass


def _service() -> QueueServiceClient:
    global _QUEUE_SERVICE
    if _QUEUE_SERVICE is None:
        conn = get_storage_connection_string()
        if not conn:
            raise QueueConfigError("AZURE_STORAGE_CONNECTION_STRING (or AzureWebJobsStorage) is required")
        _QUEUE_SERVICE = QueueServiceClient.from_connection_string(conn)
    return _QUEUE_SERVICE


def _queue_client() -> QueueClient:
    # The Functions queue trigger expects base64 message bodies by default.
    client = _service().get_queue_client(
        get_dedupe_settings()["queue_name"],
        message_encode_policy=TextBase64EncodePolicy(),
    )
    try:
        client.create_queue()
    except ResourceExistsError:
        pass
    return client


def build_detection_message(run_id: str, workspace_id: str) -> str:
    return json.dumps(
        {
            "runId": run_id,
            "workspaceId": workspace_id,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
    )


def enqueue_detection_run(run_id: str, workspace_id: str) -> str:
    _queue_client().send_message(build_detection_message(run_id, workspace_id))
    logger.info("Queued duplicate detection run %s for workspace %s", run_id, workspace_id)
    return run_id


def parse_queue_message(raw: str) -> Dict[str, Any]:
    try:
        payload = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}
