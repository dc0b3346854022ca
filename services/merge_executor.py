"""
Merge one duplicate entity into another.

All mutations run in the caller's session transaction: field updates on the
kept entity, repointing of every row that references the merged entity, and
the delete. Row locks (SELECT ... FOR UPDATE where the dialect supports it)
serialize concurrent merges touching the same rows. Marking the candidate
merged and writing the audit row happen inside a SAVEPOINT after the delete;
a failure there is logged and leaves the merge itself in place.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func as sa_func, or_, update
from sqlalchemy.exc import SQLAlchemyError

from repository.entities_repo import MERGEABLE_FIELDS, entity_to_dict, get_entity
from services.candidate_store import get_candidate, mark_merged
from services.dedupe_errors import (
    DedupeError,
    DeleteFailed,
    DependencyUpdateFailed,
    InvalidInput,
    InvalidPair,
    InvalidState,
    NotFound,
)
from shared.db import (
    Account,
    Activity,
    Contact,
    DuplicateCandidate,
    DuplicateMergeAudit,
    Task,
    utc_now,
)

logger = logging.getLogger(__name__)


class MergeStepKind(str, enum.Enum):
    APPLY_FIELDS = "apply_fields"
    REPOINT = "repoint"
    CLEAR_SELF_REFERENCE = "clear_self_reference"
    DROP_STALE_CANDIDATES = "drop_stale_candidates"
    DELETE_ENTITY = "delete_entity"
    MARK_MERGED = "mark_merged"


@dataclass
class MergeStep:
    kind: MergeStepKind
    target: str
    rows: int = 0

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "target": self.target, "rows": self.rows}


@dataclass
class MergeResult:
    success: bool
    kept_id: str
    merged_id: str
    entity_type: str
    candidate_status: str
    repointed: Dict[str, int] = field(default_factory=dict)
    steps: List[MergeStep] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "kept_id": self.kept_id,
            "merged_id": self.merged_id,
            "entity_type": self.entity_type,
            "candidate_status": self.candidate_status,
            "repointed": dict(self.repointed),
            "steps": [step.to_dict() for step in self.steps],
        }


# (model, column) pairs that may reference an entity of each type.
REFERENCES = {
    "account": [
        (Contact, "account_id"),
        (Activity, "account_id"),
        (Task, "account_id"),
        (Account, "parent_account_id"),
    ],
    "contact": [
        (Activity, "contact_id"),
        (Task, "contact_id"),
        (Contact, "reports_to_id"),
    ],
}


# merged_data fields that reference another entity, and the type they reference.
REFERENCE_FIELDS = {
    "account": {"parent_account_id": "account"},
    "contact": {"account_id": "account", "reports_to_id": "contact"},
}


def _reference_name(model, column: str) -> str:
    return f"{model.__tablename__}.{column}"


def _validate_merged_data(entity_type: str, merged_data: Any, keep_id: str, merge_id: str) -> Dict[str, Any]:
    if merged_data is None:
        return {}
    if not isinstance(merged_data, dict):
        raise InvalidInput("merged_data must be an object")
    allowed = MERGEABLE_FIELDS[entity_type]
    unknown = sorted(key for key in merged_data if key not in allowed)
    if unknown:
        raise InvalidInput("merged_data contains fields that cannot be merged", details={"fields": unknown})
    reference_field = "parent_account_id" if entity_type == "account" else "reports_to_id"
    if str(merged_data.get(reference_field) or "").strip() in {keep_id, merge_id}:
        raise InvalidInput(f"{reference_field} cannot point at either merged entity")
    if entity_type == "account" and "name" in merged_data and not str(merged_data.get("name") or "").strip():
        raise InvalidInput("name cannot be blank")
    return dict(merged_data)


def _check_reference_targets(db, entity_type: str, fields: Dict[str, Any], workspace_id: str) -> None:
    for name, target_type in REFERENCE_FIELDS[entity_type].items():
        if name not in fields:
            continue
        value = str(fields[name] or "").strip()
        if not value:
            fields[name] = None
            continue
        if get_entity(db, target_type, value, workspace_id=workspace_id) is None:
            raise InvalidInput(
                f"{name} does not reference a {target_type} in this workspace",
                details={"field": name, "value": value},
            )
        fields[name] = value


def _repoint(db, entity_type: str, keep_id: str, merge_id: str, steps: List[MergeStep]) -> Dict[str, int]:
    repointed: Dict[str, int] = {}
    for model, column_name in REFERENCES[entity_type]:
        column = getattr(model, column_name)
        name = _reference_name(model, column_name)
        result = db.execute(
            update(model)
            .where(column == merge_id)
            .values({column_name: keep_id})
            .execution_options(synchronize_session=False)
        )
        repointed[name] = result.rowcount or 0
        steps.append(MergeStep(MergeStepKind.REPOINT, name, repointed[name]))

        if model.__tablename__ == ("accounts" if entity_type == "account" else "contacts"):
            # The kept row may have pointed at the merged one; it cannot point at itself.
            cleared = db.execute(
                update(model)
                .where(model.id == keep_id)
                .where(column == keep_id)
                .values({column_name: None})
                .execution_options(synchronize_session=False)
            )
            if cleared.rowcount:
                steps.append(MergeStep(MergeStepKind.CLEAR_SELF_REFERENCE, name, cleared.rowcount))
    return repointed


def _drop_stale_candidates(db, candidate: DuplicateCandidate, merge_id: str, steps: List[MergeStep]) -> None:
    result = db.execute(
        delete(DuplicateCandidate)
        .where(DuplicateCandidate.workspace_id == candidate.workspace_id)
        .where(DuplicateCandidate.entity_type == candidate.entity_type)
        .where(DuplicateCandidate.status == "pending")
        .where(DuplicateCandidate.id != candidate.id)
        .where(or_(DuplicateCandidate.entity_id_1 == merge_id, DuplicateCandidate.entity_id_2 == merge_id))
        .execution_options(synchronize_session=False)
    )
    steps.append(MergeStep(MergeStepKind.DROP_STALE_CANDIDATES, DuplicateCandidate.__tablename__, result.rowcount or 0))


def _remaining_references(db, entity_type: str, merge_id: str) -> Dict[str, int]:
    remaining = {}
    for model, column_name in REFERENCES[entity_type]:
        count = db.query(sa_func.count()).select_from(model).filter(getattr(model, column_name) == merge_id).scalar()
        if count:
            remaining[_reference_name(model, column_name)] = count
    return remaining


def _refresh_account_counts(db, account: Account) -> None:
    account.contact_count = db.query(sa_func.count(Contact.id)).filter(Contact.account_id == account.id).scalar() or 0
    account.activity_count = db.query(sa_func.count(Activity.id)).filter(Activity.account_id == account.id).scalar() or 0


def _finalize(
    db,
    candidate: DuplicateCandidate,
    keep_id: str,
    merge_id: str,
    merged_data: Dict[str, Any],
    performed_by: Optional[str],
    kept_before: dict,
    kept_after: dict,
    merged_snapshot: dict,
    steps: List[MergeStep],
) -> str:
    savepoint = db.begin_nested()
    try:
        mark_merged(db, candidate.id, keep_id, performed_by)
        mark_step = MergeStep(MergeStepKind.MARK_MERGED, DuplicateCandidate.__tablename__, 1)
        db.add(
            DuplicateMergeAudit(
                workspace_id=candidate.workspace_id,
                candidate_id=candidate.id,
                entity_type=candidate.entity_type,
                kept_id=keep_id,
                merged_id=merge_id,
                merged_data=merged_data,
                kept_before=kept_before,
                kept_after=kept_after,
                merged_snapshot=merged_snapshot,
                steps=[step.to_dict() for step in steps + [mark_step]],
                performed_by=performed_by,
            )
        )
        db.flush()
        savepoint.commit()
        steps.append(mark_step)
        return "merged"
    except (SQLAlchemyError, DedupeError) as exc:
        savepoint.rollback()
        logger.warning(
            "Merged %s into %s but could not record candidate %s as merged: %s",
            merge_id,
            keep_id,
            candidate.id,
            exc,
        )
        return "pending"


def merge(
    db,
    candidate_id: str,
    keep_id: str,
    merge_id: str,
    merged_data: Optional[Dict[str, Any]] = None,
    performed_by: Optional[str] = None,
    workspace_id: Optional[str] = None,
) -> MergeResult:
    """
    Fold merge_id into keep_id for a pending candidate and commit.

    Everything is validated before the first write. On a repoint or delete
    failure the session is rolled back and nothing changes.
    """
    keep_id = str(keep_id or "").strip()
    merge_id = str(merge_id or "").strip()
    if not keep_id or not merge_id:
        raise InvalidInput("keep_id and merge_id are required")
    if keep_id == merge_id:
        raise InvalidPair("keep_id and merge_id must be different")

    candidate = get_candidate(db, candidate_id, workspace_id=workspace_id, for_update=True)
    if candidate.status != "pending":
        raise InvalidState(f"Duplicate candidate is already {candidate.status}")
    if {keep_id, merge_id} != {candidate.entity_id_1, candidate.entity_id_2}:
        raise InvalidPair("keep_id and merge_id must match the duplicate candidate's entities")

    entity_type = candidate.entity_type
    fields = _validate_merged_data(entity_type, merged_data, keep_id, merge_id)
    keep = get_entity(db, entity_type, keep_id, workspace_id=candidate.workspace_id, for_update=True)
    merged = get_entity(db, entity_type, merge_id, workspace_id=candidate.workspace_id, for_update=True)
    if keep is None or merged is None:
        raise NotFound(f"{entity_type.capitalize()} to merge was not found")
    _check_reference_targets(db, entity_type, fields, candidate.workspace_id)

    steps: List[MergeStep] = []
    kept_before = entity_to_dict(entity_type, keep)
    merged_snapshot = entity_to_dict(entity_type, merged)

    try:
        for name, value in fields.items():
            setattr(keep, name, value)
        keep.updated_at = utc_now()
        db.flush()
        steps.append(MergeStep(MergeStepKind.APPLY_FIELDS, entity_type, len(fields)))

        repointed = _repoint(db, entity_type, keep_id, merge_id, steps)
        _drop_stale_candidates(db, candidate, merge_id, steps)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to update records that reference %s %s", entity_type, merge_id)
        raise DependencyUpdateFailed(f"Failed to update related records for {entity_type}", details=str(exc)) from exc

    remaining = _remaining_references(db, entity_type, merge_id)
    if remaining:
        db.rollback()
        raise DeleteFailed(f"{entity_type.capitalize()} {merge_id} is still referenced", details=remaining)

    try:
        db.delete(merged)
        if entity_type == "account":
            _refresh_account_counts(db, keep)
        db.flush()
        steps.append(MergeStep(MergeStepKind.DELETE_ENTITY, entity_type, 1))
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to delete merged %s %s", entity_type, merge_id)
        raise DeleteFailed(f"Failed to delete merged {entity_type}", details=str(exc)) from exc

    db.refresh(keep)
    kept_after = entity_to_dict(entity_type, keep)
    candidate_status = _finalize(
        db,
        candidate,
        keep_id,
        merge_id,
        fields,
        performed_by,
        kept_before,
        kept_after,
        merged_snapshot,
        steps,
    )
    db.commit()

    logger.info(
        "Merged %s %s into %s (candidate %s, repointed %s)",
        entity_type,
        merge_id,
        keep_id,
        candidate.id,
        repointed,
    )
    return MergeResult(
        success=True,
        kept_id=keep_id,
        merged_id=merge_id,
        entity_type=entity_type,
        candidate_status=candidate_status,
        repointed=repointed,
        steps=steps,
    )
