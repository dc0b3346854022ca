from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterator, List, Optional

from sqlalchemy import or_

from shared.db import Account, Contact

ACCOUNT_INACTIVE_STATUSES = {"archived", "merged", "duplicate"}
CONTACT_INACTIVE_STATUSES = {"archived"}

ENTITY_MODELS = {
    "account": Account,
    "contact": Contact,
}

# Fields a merge may copy onto the kept entity.
MERGEABLE_FIELDS = {
    "account": {
        "name",
        "domain",
        "website",
        "email",
        "phone",
        "industry",
        "description",
        "headquarters_city",
        "headquarters_country",
        "linkedin_url",
        "status",
        "parent_account_id",
        "owner_id",
    },
    "contact": {
        "account_id",
        "reports_to_id",
        "first_name",
        "last_name",
        "email",
        "phone",
        "job_title",
        "city",
        "linkedin_url",
        "status",
        "owner_id",
    },
}


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def account_to_dict(account: Account) -> dict:
    return {
        "id": account.id,
        "entity_type": "account",
        "workspace_id": account.workspace_id,
        "name": account.name,
        "domain": account.domain,
        "website": account.website,
        "email": account.email,
        "phone": account.phone,
        "industry": account.industry,
        "description": account.description,
        "headquarters_city": account.headquarters_city,
        "headquarters_country": account.headquarters_country,
        "linkedin_url": account.linkedin_url,
        "status": account.status,
        "parent_account_id": account.parent_account_id,
        "owner_id": account.owner_id,
        "contact_count": account.contact_count,
        "activity_count": account.activity_count,
        "created_at": _format_dt(account.created_at),
        "updated_at": _format_dt(account.updated_at),
    }


def contact_to_dict(contact: Contact, *, include_account: bool = False) -> dict:
    data = {
        "id": contact.id,
        "entity_type": "contact",
        "workspace_id": contact.workspace_id,
        "account_id": contact.account_id,
        "reports_to_id": contact.reports_to_id,
        "first_name": contact.first_name,
        "last_name": contact.last_name,
        "email": contact.email,
        "phone": contact.phone,
        "job_title": contact.job_title,
        "city": contact.city,
        "linkedin_url": contact.linkedin_url,
        "status": contact.status,
        "owner_id": contact.owner_id,
        "created_at": _format_dt(contact.created_at),
        "updated_at": _format_dt(contact.updated_at),
    }
    if include_account:
        account = contact.account
        data["account"] = (
            {"id": account.id, "name": account.name, "domain": account.domain} if account else None
        )
    return data


def entity_to_dict(entity_type: str, entity) -> Optional[dict]:
    if entity is None:
        return None
    if entity_type == "account":
        return account_to_dict(entity)
    return contact_to_dict(entity, include_account=True)


def get_entity(db, entity_type: str, entity_id: str, *, workspace_id: Optional[str] = None, for_update: bool = False):
    model = ENTITY_MODELS[entity_type]
    query = db.query(model).filter(model.id == entity_id)
    if workspace_id:
        query = query.filter(model.workspace_id == workspace_id)
    if for_update:
        query = query.with_for_update()
    return query.one_or_none()


def get_entity_pair(db, entity_type: str, entity_id_1: str, entity_id_2: str) -> Dict[str, Optional[dict]]:
    model = ENTITY_MODELS[entity_type]
    rows = db.query(model).filter(model.id.in_([entity_id_1, entity_id_2])).all()
    by_id = {row.id: row for row in rows}
    return {
        "entity1": entity_to_dict(entity_type, by_id.get(entity_id_1)),
        "entity2": entity_to_dict(entity_type, by_id.get(entity_id_2)),
    }


def _active_filter(entity_type: str):
    model = ENTITY_MODELS[entity_type]
    inactive = ACCOUNT_INACTIVE_STATUSES if entity_type == "account" else CONTACT_INACTIVE_STATUSES
    return or_(model.status.is_(None), model.status.notin_(sorted(inactive)))


def iter_active_entities(
    db,
    workspace_id: str,
    entity_type: str,
    *,
    batch_size: int = 100,
    after_id: Optional[str] = None,
) -> Iterator[List[dict]]:
    """
    Yield the workspace's active entities with id > after_id in chunks,
    keyset-paginated on id.
    Rows are shaped to plain dicts so a long scan does not pin ORM instances.
    """
    model = ENTITY_MODELS[entity_type]
    to_dict = account_to_dict if entity_type == "account" else contact_to_dict
    last_id = after_id
    while True:
        query = (
            db.query(model)
            .filter(model.workspace_id == workspace_id)
            .filter(_active_filter(entity_type))
        )
        if last_id is not None:
            query = query.filter(model.id > last_id)
        rows = query.order_by(model.id.asc()).limit(batch_size).all()
        if not rows:
            return
        last_id = rows[-1].id
        yield [to_dict(row) for row in rows]
        if len(rows) < batch_size:
            return
