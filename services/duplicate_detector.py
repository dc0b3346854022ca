"""
Workspace-wide duplicate scan.

Every active entity of a type is compared with every other active entity of
the same type in the workspace, so a pass is O(n^2) in the pool size. The
pool is streamed from the database in keyset-paginated chunks and never held
in memory whole: each source chunk is compared within itself and then against
the rest of the pool, re-streamed from the id after the chunk. A chunk's
candidate upserts are committed together, so a scan that is stopped by its
deadline (or fails midway) leaves every committed candidate valid and a rerun
simply picks up the remaining pairs again.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional


from repository.entities_repo import iter_active_entities
from services.candidate_store import upsert_candidate
from services.dedupe_errors import InvalidInput, NotFound
from services.similarity import detection_method_for, score
from shared.config import get_dedupe_settings
from shared.db import ENTITY_TYPES, DetectionRun, utc_now

logger = logging.getLogger(__name__)


@dataclass
class PoolSummary:
    entity_type: str
    entities_scanned: int = 0
    pairs_compared: int = 0
    candidates_created: int = 0
    candidates_updated: int = 0
    candidates_skipped: int = 0


@dataclass
class DetectionSummary:
    workspace_id: str
    threshold: float
    pools: Dict[str, PoolSummary] = field(default_factory=dict)
    timed_out: bool = False

    def _total(self, name: str) -> int:
        return sum(getattr(pool, name) for pool in self.pools.values())

    @property
    def entities_scanned(self) -> int:
        return self._total("entities_scanned")

    @property
    def pairs_compared(self) -> int:
        return self._total("pairs_compared")

    @property
    def candidates_created(self) -> int:
        return self._total("candidates_created")

    @property
    def candidates_updated(self) -> int:
        return self._total("candidates_updated")

    @property
    def candidates_skipped(self) -> int:
        return self._total("candidates_skipped")

    def to_dict(self) -> dict:
        return {
            "workspace_id": self.workspace_id,
            "threshold": self.threshold,
            "timed_out": self.timed_out,
            "entities_scanned": self.entities_scanned,
            "pairs_compared": self.pairs_compared,
            "candidates_created": self.candidates_created,
            "candidates_updated": self.candidates_updated,
            "candidates_skipped": self.candidates_skipped,
            "pools": {name: asdict(pool) for name, pool in self.pools.items()},
        }


def normalize_threshold(value) -> float:
    try:
        threshold = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput("threshold must be a number between 0 and 100") from exc
    if threshold < 0 or threshold > 100:
        raise InvalidInput("threshold must be a number between 0 and 100")
    return threshold


def _entity_types(entity_type: Optional[str]) -> List[str]:
    if entity_type is None or entity_type == "":
        return list(ENTITY_TYPES)
    normalized = str(entity_type).strip().lower()
    if normalized not in ENTITY_TYPES:
        raise InvalidInput(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
    return [normalized]


def _deadline_passed(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _compare(
    db,
    summary: PoolSummary,
    workspace_id: str,
    entity_a: dict,
    entity_b: dict,
    threshold: float,
    rescan_dismissed: bool,
) -> None:
    entity_type = summary.entity_type
    summary.pairs_compared += 1
    result = score(entity_a, entity_b, entity_type)
    if result.percentage < threshold:
        return
    candidate, created = upsert_candidate(
        db,
        {
            "workspace_id": workspace_id,
            "entity_type": entity_type,
            "entity_id_1": entity_a["id"],
            "entity_id_2": entity_b["id"],
            "similarity_score": result.percentage,
            "matching_fields": result.matching_fields,
            "field_similarities": result.breakdown,
            "detection_method": detection_method_for(entity_type, result.matching_fields),
        },
        rescan_dismissed=rescan_dismissed,
    )
    if candidate is None:
        summary.candidates_skipped += 1
    elif created:
        summary.candidates_created += 1
    else:
        summary.candidates_updated += 1


def _scan_pool(
    db,
    workspace_id: str,
    entity_type: str,
    threshold: float,
    *,
    batch_size: int,
    deadline: Optional[float],
    rescan_dismissed: bool,
) -> tuple:
    summary = PoolSummary(entity_type=entity_type)

    for chunk in iter_active_entities(db, workspace_id, entity_type, batch_size=batch_size):
        if _deadline_passed(deadline):
            logger.warning(
                "Duplicate scan for workspace %s (%s) hit its deadline after %s pairs",
                workspace_id,
                entity_type,
                summary.pairs_compared,
            )
            return summary, True
        summary.entities_scanned += len(chunk)

        # Only pairs (i, j) with j > i in id order; each unordered pair is scored once.
        for index, entity_a in enumerate(chunk):
            for entity_b in chunk[index + 1:]:
                _compare(db, summary, workspace_id, entity_a, entity_b, threshold, rescan_dismissed)
        tail_chunks = iter_active_entities(
            db,
            workspace_id,
            entity_type,
            batch_size=batch_size,
            after_id=chunk[-1]["id"],
        )
        for tail in tail_chunks:
            for entity_a in chunk:
                for entity_b in tail:
                    _compare(db, summary, workspace_id, entity_a, entity_b, threshold, rescan_dismissed)
        db.commit()
    return summary, False


def detect(
    db,
    workspace_id: str,
    entity_type: Optional[str] = None,
    threshold=80,
    *,
    batch_size: Optional[int] = None,
    deadline: Optional[float] = None,
    rescan_dismissed: Optional[bool] = None,
) -> DetectionSummary:
    """
    Scan the workspace and upsert a pending candidate for every same-type pair
    scoring at or above threshold. Without entity_type both pools are scanned,
    each on its own; accounts are never compared with contacts.
    """
    if not workspace_id:
        raise InvalidInput("workspace_id is required")
    threshold_value = normalize_threshold(threshold)
    types = _entity_types(entity_type)
    settings = get_dedupe_settings()
    size = max(1, int(batch_size or settings["batch_size"]))
    rescan = settings["rescan_dismissed"] if rescan_dismissed is None else bool(rescan_dismissed)

    summary = DetectionSummary(workspace_id=workspace_id, threshold=threshold_value)
    for current_type in types:
        pool_summary, timed_out = _scan_pool(
            db,
            workspace_id,
            current_type,
            threshold_value,
            batch_size=size,
            deadline=deadline,
            rescan_dismissed=rescan,
        )
        summary.pools[current_type] = pool_summary
        if timed_out:
            summary.timed_out = True
            break

    logger.info(
        "Duplicate scan for workspace %s: %s entities, %s pairs, %s created, %s updated, timed_out=%s",
        workspace_id,
        summary.entities_scanned,
        summary.pairs_compared,
        summary.candidates_created,
        summary.candidates_updated,
        summary.timed_out,
    )
    return summary


def create_detection_run(
    db,
    workspace_id: str,
    *,
    entity_type: Optional[str] = None,
    threshold=80,
    triggered_by: Optional[str] = None,
) -> DetectionRun:
    types = _entity_types(entity_type)
    run = DetectionRun(
        workspace_id=workspace_id,
        entity_type=types[0] if len(types) == 1 else None,
        threshold=normalize_threshold(threshold),
        status="queued",
        triggered_by=triggered_by,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def get_detection_run(db, run_id: str, *, workspace_id: Optional[str] = None) -> DetectionRun:
    query = db.query(DetectionRun).filter(DetectionRun.id == str(run_id or ""))
    if workspace_id:
        query = query.filter(DetectionRun.workspace_id == workspace_id)
    run = query.one_or_none()
    if not run:
        raise NotFound("Detection run not found")
    return run


def run_detection(db, run_id: str, *, deadline: Optional[float] = None) -> DetectionRun:
    """Execute a queued run, recording its outcome on the run row."""
    run = get_detection_run(db, run_id)
    if run.status not in {"queued", "running"}:
        logger.info("Detection run %s already %s; skipping", run.id, run.status)
        return run

    if deadline is None:
        deadline = time.monotonic() + get_dedupe_settings()["timeout_seconds"]
    run.status = "running"
    run.started_at = utc_now()
    db.commit()

    try:
        summary = detect(
            db,
            run.workspace_id,
            run.entity_type,
            run.threshold,
            deadline=deadline,
        )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.exception("Detection run %s failed", run.id)
        run = get_detection_run(db, run_id)
        run.status = "failed"
        run.error = str(exc)
        run.finished_at = utc_now()
        db.commit()
        return run

    run.status = "completed"
    run.entities_scanned = summary.entities_scanned
    run.pairs_compared = summary.pairs_compared
    run.candidates_created = summary.candidates_created
    run.candidates_updated = summary.candidates_updated
    run.timed_out = summary.timed_out
    run.finished_at = utc_now()
    db.commit()
    return run


def run_to_dict(run: DetectionRun) -> dict:
    return {
        "id": run.id,
        "workspace_id": run.workspace_id,
        "entity_type": run.entity_type,
        "threshold": run.threshold,
        "status": run.status,
        "triggered_by": run.triggered_by,
        "entities_scanned": run.entities_scanned,
        "pairs_compared": run.pairs_compared,
        "candidates_created": run.candidates_created,
        "candidates_updated": run.candidates_updated,
        "timed_out": bool(run.timed_out),
        "error": run.error,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }
