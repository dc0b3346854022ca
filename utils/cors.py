from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

import azure.functions as func

from shared.config import get_setting

DEFAULT_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    "x-workspace-id",
]

_TRUTHY = {"1", "true", "yes", "y"}
_FALSY = {"0", "false", "no", "n"}


@dataclass
class CorsSettings:
    allowed_origins: List[str]
    allow_credentials: bool
    allow_localhost: bool


def _parse_origins(raw: str) -> List[str]:
    """Split comma-separated origins; a lone wildcard wins."""
    origins: List[str] = []
    for origin in raw.split(","):
        cleaned = origin.strip().rstrip("/")
        if not cleaned:
            continue
        if cleaned == "*":
            return ["*"]
        origins.append(cleaned)
    return origins


def _env_flag(names: Iterable[str], default: bool = False) -> bool:
    for name in names:
        raw = get_setting(name)
        if raw is None:
            continue
        lowered = str(raw).strip().lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
    return default


def load_cors_settings() -> CorsSettings:
    # Accept both legacy Azure settings (CORS/CORSCredentials) and ALLOWED_ORIGINS.
    raw = (
        get_setting("ALLOWED_ORIGINS")
        or get_setting("CORS")
        or get_setting("CORS_ORIGIN")
        or get_setting("CORS_ALLOWED_ORIGINS")
        or "*"
    )
    return CorsSettings(
        allowed_origins=_parse_origins(raw),
        allow_credentials=_env_flag(["CORS_ALLOW_CREDENTIALS", "CORS_CREDENTIALS", "CORSCredentials"]),
        allow_localhost=_env_flag(["CORS_ALLOW_LOCALHOST", "ALLOW_LOCALHOST_CORS"], default=True),
    )


def _split_origin(value: str, *, default_scheme: Optional[str] = None) -> Tuple[Optional[str], Optional[str], Optional[int]]:
    text = str(value or "").strip().rstrip("/")
    if not text:
        return None, None, None
    has_scheme = "://" in text
    if not has_scheme and default_scheme:
        text = f"{default_scheme}://{text}"
    parsed = urlparse(text)
    host = (parsed.hostname or "").lower()
    if not host:
        return None, None, None
    try:
        port = parsed.port
    except ValueError:
        return None, None, None
    scheme = (parsed.scheme or "").lower() if has_scheme else None
    return scheme, host, port


def _effective_port(scheme: Optional[str], port: Optional[int]) -> Optional[int]:
    if port is not None:
        return port
    return {"https": 443, "http": 80}.get(scheme or "")


def _is_local_origin(origin: Optional[str]) -> bool:
    _, host, _ = _split_origin(origin or "", default_scheme="https")
    return host in {"localhost", "127.0.0.1"}


def _origin_matches(origin: Optional[str], allowed_origin: str) -> bool:
    """
    Compare a request Origin with one allow-list entry. Hosts are compared
    case-insensitively; "*.example.com" covers subdomains; scheme and port
    are only enforced when the entry spells them out.
    """
    if not origin or not allowed_origin:
        return False
    if allowed_origin == "*":
        return True

    origin_scheme, origin_host, origin_port = _split_origin(origin, default_scheme="https")
    allowed_scheme, allowed_host, allowed_port = _split_origin(allowed_origin, default_scheme="https")
    if not origin_host or not allowed_host:
        return False
    if allowed_scheme and origin_scheme and allowed_scheme != origin_scheme:
        return False
    if allowed_port is not None and _effective_port(origin_scheme, origin_port) != _effective_port(allowed_scheme, allowed_port):
        return False
    if allowed_host.startswith("*."):
        suffix = allowed_host[2:]
        return origin_host == suffix or origin_host.endswith(f".{suffix}")
    return origin_host == allowed_host


def _allow_headers(req: func.HttpRequest) -> str:
    """Known application headers plus whatever the browser preflight asked for."""
    requested = req.headers.get("Access-Control-Request-Headers", "")
    merged: Dict[str, str] = {name.lower(): name for name in DEFAULT_ALLOWED_HEADERS}
    for name in requested.split(","):
        cleaned = name.strip()
        if cleaned:
            merged.setdefault(cleaned.lower(), cleaned)
    return ", ".join(merged.values())


def build_cors_headers(
    req: func.HttpRequest,
    allowed_methods: Iterable[str],
    settings: Optional[CorsSettings] = None,
) -> Dict[str, str]:
    """Return CORS headers for the request origin if allowed."""
    settings = settings or load_cors_settings()
    origin = req.headers.get("origin") or req.headers.get("Origin")
    seen: Set[str] = set()
    methods_list: List[str] = []
    for method in allowed_methods:
        normalized = method.strip().upper()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        methods_list.append(normalized)
    if "OPTIONS" not in seen:
        methods_list.append("OPTIONS")

    headers: Dict[str, str] = {"Vary": "Origin"}
    allow_all = "*" in settings.allowed_origins or not settings.allowed_origins
    origin_allowed = allow_all or any(_origin_matches(origin, entry) for entry in settings.allowed_origins)
    if not origin_allowed and settings.allow_localhost and _is_local_origin(origin):
        origin_allowed = True
    if not origin_allowed:
        return headers

    if settings.allow_credentials and origin:
        # Browsers reject "*" together with credentials.
        allow_origin = origin
    else:
        allow_origin = "*" if allow_all else (origin or "*")
    headers.update(
        {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Methods": ", ".join(methods_list),
            "Access-Control-Allow-Headers": _allow_headers(req),
        }
    )
    if settings.allow_credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
