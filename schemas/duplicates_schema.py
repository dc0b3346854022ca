from __future__ import annotations

import re
from typing import Any, Dict, Optional

from services.dedupe_errors import InvalidInput
from shared.db import CANDIDATE_STATUSES, ENTITY_TYPES

RESOLVE_STATUSES = {"not_duplicate", "ignored"}


def _normalize_enum(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    return re.sub(r"[\s-]+", "_", normalized)


def _require_str(payload: Dict[str, Any], field: str) -> str:
    value = payload.get(field)
    text = str(value).strip() if value is not None else ""
    if not text:
        raise InvalidInput(f"{field} is required")
    return text


def require_workspace_id(value: Optional[Any]) -> str:
    text = str(value or "").strip()
    if not text:
        raise InvalidInput("workspace_id is required")
    return text


def normalize_entity_type(value: Optional[Any]) -> Optional[str]:
    """None (or "all") means both pools."""
    normalized = _normalize_enum(value)
    if not normalized or normalized == "all":
        return None
    if normalized not in ENTITY_TYPES:
        raise InvalidInput(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
    return normalized


def normalize_status_filter(value: Optional[Any]) -> Optional[str]:
    normalized = _normalize_enum(value)
    if not normalized or normalized == "all":
        return None
    if normalized not in CANDIDATE_STATUSES:
        raise InvalidInput("Invalid status filter")
    return normalized


def _parse_number(value: Any, field: str, *, minimum: float, maximum: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"{field} must be a number") from exc
    if number < minimum or number > maximum:
        raise InvalidInput(f"{field} must be between {minimum:g} and {maximum:g}")
    return number


def parse_threshold(value: Optional[Any], default: float) -> float:
    if value is None or value == "":
        return default
    return _parse_number(value, "threshold", minimum=0, maximum=100)


def parse_min_score(value: Optional[Any]) -> Optional[float]:
    if value is None or value == "":
        return None
    return _parse_number(value, "min_score", minimum=0, maximum=100)


def parse_limit(value: Optional[Any], *, default: int = 50, maximum: int = 100) -> int:
    if value is None or value == "":
        return default
    try:
        limit = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput("limit must be an integer") from exc
    return max(1, min(maximum, limit))


def parse_offset(value: Optional[Any]) -> int:
    if value is None or value == "":
        return 0
    try:
        offset = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput("offset must be an integer") from exc
    if offset < 0:
        raise InvalidInput("offset must be zero or greater")
    return offset


def parse_resolve_payload(payload: Dict[str, Any]) -> str:
    status = _normalize_enum(payload.get("status"))
    if status not in RESOLVE_STATUSES:
        raise InvalidInput('Invalid status. Must be "not_duplicate" or "ignored"')
    return status


def parse_merge_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    keep_id = _require_str(payload, "keep_id")
    merge_id = _require_str(payload, "merge_id")
    merged_data = payload.get("merged_data")
    if merged_data is None:
        merged_data = {}
    if not isinstance(merged_data, dict):
        raise InvalidInput("merged_data must be an object")
    return {"keep_id": keep_id, "merge_id": merge_id, "merged_data": merged_data}


def parse_detect_payload(payload: Dict[str, Any], *, default_threshold: float) -> Dict[str, Any]:
    return {
        "workspace_id": require_workspace_id(payload.get("workspace_id")),
        "entity_type": normalize_entity_type(payload.get("entity_type")),
        "threshold": parse_threshold(payload.get("threshold"), default_threshold),
    }
