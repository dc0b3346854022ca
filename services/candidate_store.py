from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func as sa_func, update
from sqlalchemy.exc import IntegrityError

from services.dedupe_errors import InvalidInput, InvalidPair, InvalidState, NotFound
from shared.db import DETECTION_METHODS, ENTITY_TYPES, DuplicateCandidate, utc_now

logger = logging.getLogger(__name__)

DISMISSED_STATUSES = ("not_duplicate", "ignored")


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def canonical_pair(id1: Any, id2: Any) -> Tuple[str, str]:
    left = str(id1 or "").strip()
    right = str(id2 or "").strip()
    if not left or not right:
        raise InvalidInput("both entity ids are required")
    if left == right:
        raise InvalidInput("an entity cannot be a duplicate of itself")
    return (left, right) if left < right else (right, left)


def candidate_to_dict(candidate: DuplicateCandidate) -> dict:
    return {
        "id": candidate.id,
        "workspace_id": candidate.workspace_id,
        "entity_type": candidate.entity_type,
        "entity_id_1": candidate.entity_id_1,
        "entity_id_2": candidate.entity_id_2,
        "similarity_score": candidate.similarity_score,
        "matching_fields": list(candidate.matching_fields or []),
        "field_similarities": dict(candidate.field_similarities or {}),
        "detection_method": candidate.detection_method,
        "detected_at": _format_dt(candidate.detected_at),
        "status": candidate.status,
        "resolved_by": candidate.resolved_by,
        "resolved_at": _format_dt(candidate.resolved_at),
        "merged_into": candidate.merged_into,
    }


def _validate_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    workspace_id = str(payload.get("workspace_id") or "").strip()
    if not workspace_id:
        raise InvalidInput("workspace_id is required")
    entity_type = str(payload.get("entity_type") or "").strip().lower()
    if entity_type not in ENTITY_TYPES:
        raise InvalidInput(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
    entity_id_1, entity_id_2 = canonical_pair(payload.get("entity_id_1"), payload.get("entity_id_2"))
    try:
        score = float(payload.get("similarity_score"))
    except (TypeError, ValueError) as exc:
        raise InvalidInput("similarity_score must be a number") from exc
    if score < 0 or score > 100:
        raise InvalidInput("similarity_score must be between 0 and 100")
    method = str(payload.get("detection_method") or "composite").strip().lower()
    if method not in DETECTION_METHODS:
        raise InvalidInput(f"detection_method must be one of: {', '.join(DETECTION_METHODS)}")
    return {
        "workspace_id": workspace_id,
        "entity_type": entity_type,
        "entity_id_1": entity_id_1,
        "entity_id_2": entity_id_2,
        "similarity_score": score,
        "matching_fields": sorted(set(payload.get("matching_fields") or [])),
        "field_similarities": dict(payload.get("field_similarities") or {}),
        "detection_method": method,
    }


def _find_pair(db, values: Dict[str, Any], statuses: Optional[Tuple[str, ...]] = None) -> List[DuplicateCandidate]:
    query = db.query(DuplicateCandidate).filter(
        DuplicateCandidate.workspace_id == values["workspace_id"],
        DuplicateCandidate.entity_type == values["entity_type"],
        DuplicateCandidate.entity_id_1 == values["entity_id_1"],
        DuplicateCandidate.entity_id_2 == values["entity_id_2"],
    )
    if statuses:
        query = query.filter(DuplicateCandidate.status.in_(statuses))
    return query.order_by(DuplicateCandidate.detected_at.desc()).all()


def _refresh_pending(candidate: DuplicateCandidate, values: Dict[str, Any]) -> DuplicateCandidate:
    candidate.similarity_score = values["similarity_score"]
    candidate.matching_fields = values["matching_fields"]
    candidate.field_similarities = values["field_similarities"]
    candidate.detection_method = values["detection_method"]
    candidate.detected_at = utc_now()
    return candidate


def upsert_candidate(
    db,
    payload: Dict[str, Any],
    *,
    rescan_dismissed: bool = False,
) -> Tuple[Optional[DuplicateCandidate], bool]:
    """
    Insert a pending candidate for the pair or refresh the pending one.

    Returns (candidate, created). A pair that was merged, or dismissed while
    rescan_dismissed is off, is left untouched and (None, False) is returned.
    """
    values = _validate_payload(payload)
    existing = _find_pair(db, values)
    pending = [row for row in existing if row.status == "pending"]
    if pending:
        return _refresh_pending(pending[0], values), False
    if any(row.status == "merged" for row in existing):
        return None, False
    if not rescan_dismissed and any(row.status in DISMISSED_STATUSES for row in existing):
        return None, False

    candidate = DuplicateCandidate(status="pending", detected_at=utc_now(), **values)
    savepoint = db.begin_nested()
    try:
        db.add(candidate)
        db.flush()
        savepoint.commit()
        return candidate, True
    except IntegrityError:
        # Lost a race with a concurrent insert of the same pending pair.
        savepoint.rollback()
        logger.info(
            "Pending candidate for %s/%s already inserted concurrently; updating instead",
            values["entity_id_1"],
            values["entity_id_2"],
        )
        pending = _find_pair(db, values, statuses=("pending",))
        if not pending:
            raise
        return _refresh_pending(pending[0], values), False


def list_candidates(
    db,
    workspace_id: str,
    *,
    entity_type: Optional[str] = None,
    status: Optional[str] = None,
    min_score: Optional[float] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[DuplicateCandidate], int]:
    """Highest score first, then most recently detected, then id."""
    query = db.query(DuplicateCandidate).filter(DuplicateCandidate.workspace_id == workspace_id)
    if entity_type:
        query = query.filter(DuplicateCandidate.entity_type == entity_type)
    if status:
        query = query.filter(DuplicateCandidate.status == status)
    if min_score is not None:
        query = query.filter(DuplicateCandidate.similarity_score >= min_score)
    total = query.count()
    safe_limit = max(1, int(limit or 50))
    safe_offset = max(0, int(offset or 0))
    rows = (
        query.order_by(
            DuplicateCandidate.similarity_score.desc(),
            DuplicateCandidate.detected_at.desc(),
            DuplicateCandidate.id.asc(),
        )
        .offset(safe_offset)
        .limit(safe_limit)
        .all()
    )
    return rows, total


def get_candidate(db, candidate_id: str, *, workspace_id: Optional[str] = None, for_update: bool = False) -> DuplicateCandidate:
    query = db.query(DuplicateCandidate).filter(DuplicateCandidate.id == str(candidate_id or ""))
    if workspace_id:
        query = query.filter(DuplicateCandidate.workspace_id == workspace_id)
    if for_update:
        query = query.with_for_update()
    candidate = query.one_or_none()
    if not candidate:
        raise NotFound("Duplicate candidate not found")
    return candidate


def _transition(db, candidate: DuplicateCandidate, values: Dict[str, Any]) -> DuplicateCandidate:
    result = db.execute(
        update(DuplicateCandidate)
        .where(DuplicateCandidate.id == candidate.id)
        .where(DuplicateCandidate.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(candidate)
        raise InvalidState(f"Duplicate candidate is already {candidate.status}")
    db.refresh(candidate)
    return candidate


def resolve_candidate(db, candidate_id: str, status: str, resolved_by: Optional[str]) -> DuplicateCandidate:
    normalized = str(status or "").strip().lower()
    if normalized not in DISMISSED_STATUSES:
        raise InvalidInput('status must be "not_duplicate" or "ignored"')
    candidate = get_candidate(db, candidate_id)
    if candidate.status != "pending":
        raise InvalidState(f"Duplicate candidate is already {candidate.status}")
    return _transition(
        db,
        candidate,
        {"status": normalized, "resolved_by": resolved_by, "resolved_at": utc_now()},
    )


def mark_merged(db, candidate_id: str, kept_id: str, resolved_by: Optional[str]) -> DuplicateCandidate:
    candidate = get_candidate(db, candidate_id)
    if kept_id not in (candidate.entity_id_1, candidate.entity_id_2):
        raise InvalidPair("kept entity is not part of this duplicate candidate")
    if candidate.status != "pending":
        raise InvalidState(f"Duplicate candidate is already {candidate.status}")
    return _transition(
        db,
        candidate,
        {
            "status": "merged",
            "merged_into": kept_id,
            "resolved_by": resolved_by,
            "resolved_at": utc_now(),
        },
    )


def get_duplicate_stats(db, workspace_id: str, entity_type: Optional[str] = None) -> dict:
    def _count(status: str):
        return sa_func.coalesce(sa_func.sum(case((DuplicateCandidate.status == status, 1), else_=0)), 0)

    query = db.query(
        _count("pending"),
        _count("merged"),
        _count("not_duplicate"),
        _count("ignored"),
        sa_func.count(DuplicateCandidate.id),
        sa_func.avg(DuplicateCandidate.similarity_score),
        sa_func.max(DuplicateCandidate.similarity_score),
    ).filter(DuplicateCandidate.workspace_id == workspace_id)
    if entity_type:
        query = query.filter(DuplicateCandidate.entity_type == entity_type)
    pending, merged, not_duplicate, ignored, total, avg_score, max_score = query.one()
    return {
        "pending_count": int(pending or 0),
        "merged_count": int(merged or 0),
        "not_duplicate_count": int(not_duplicate or 0),
        "ignored_count": int(ignored or 0),
        "total_detected": int(total or 0),
        "avg_similarity_score": round(float(avg_score), 2) if avg_score is not None else 0,
        "highest_similarity": float(max_score) if max_score is not None else 0,
    }
