from __future__ import annotations

WORKSPACE_ROLES = ["admin", "sales_manager", "ae", "sdr", "viewer"]

_ROLE_ALIASES = {
    "owner": "admin",
    "administrator": "admin",
    "manager": "sales_manager",
    "lead": "sales_manager",
    "account_executive": "ae",
    "member": "ae",
    "user": "ae",
    "read_only": "viewer",
    "readonly": "viewer",
    "guest": "viewer",
}


def normalize_role(raw_role: str | None) -> str:
    role = str(raw_role or "").strip().lower().replace(" ", "_").replace("-", "_")
    role = _ROLE_ALIASES.get(role, role)
    if role in WORKSPACE_ROLES:
        return role
    # Unknown roles get the least privilege.
    return "viewer"


def can_manage_all(role: str) -> bool:
    return role in {"admin", "sales_manager"}


def can_view_duplicates(role: str) -> bool:
    return role in WORKSPACE_ROLES


def can_run_detection(role: str) -> bool:
    return role in {"admin", "sales_manager", "ae", "sdr"}


def can_resolve_duplicates(role: str) -> bool:
    return role in {"admin", "sales_manager", "ae", "sdr"}


def can_merge_duplicates(role: str) -> bool:
    return role in {"admin", "sales_manager", "ae"}
