"""
Similarity scoring for duplicate accounts and contacts.

Each scorable field carries a weight in points. Only fields populated on
both sides enter the denominator, so a missing value never counts against
a pair; the final score is the earned share of the available points,
expressed as 0-100.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from rapidfuzz import fuzz

from services.dedupe_errors import InvalidInput
from shared.db import ENTITY_TYPES, Account, Contact

ACCOUNT_WEIGHTS = {
    "domain": 40,
    "name": 30,
    "email_domain": 20,
    "city": 10,
}

CONTACT_WEIGHTS = {
    "email": 50,
    "name": 30,
    "linkedin": 20,
    "account": 10,
}

NAME_MATCH_THRESHOLD = 0.8
CITY_MATCH_THRESHOLD = 0.9

COMPANY_SUFFIXES = {
    "inc",
    "incorporated",
    "corp",
    "corporation",
    "co",
    "company",
    "llc",
    "ltd",
    "limited",
    "plc",
    "gmbh",
    "sa",
    "ag",
    "bv",
    "pty",
}

_PROTOCOL_RE = re.compile(r"^https?://")
_PUNCT_RE = re.compile(r"[^\w\s]+")
_SPACE_RE = re.compile(r"\s+")


@dataclass
class SimilarityResult:
    score: float
    max_score: float
    percentage: float
    breakdown: Dict[str, int] = field(default_factory=dict)
    matching_fields: List[str] = field(default_factory=list)


def normalize_domain(domain: Optional[str]) -> str:
    """Lowercase and strip protocol, leading www. and a trailing slash."""
    if not domain:
        return ""
    value = str(domain).strip().lower()
    value = _PROTOCOL_RE.sub("", value)
    if value.startswith("www."):
        value = value[4:]
    if value.endswith("/"):
        value = value[:-1]
    return value.strip()


def extract_email_domain(email: Optional[str]) -> str:
    if not email:
        return ""
    parts = str(email).split("@")
    if len(parts) != 2 or not parts[0].strip():
        return ""
    return normalize_domain(parts[1])


def _collapse(value: Optional[str]) -> str:
    return _SPACE_RE.sub(" ", str(value or "").strip().lower())


def normalize_company_name(value: Optional[str]) -> str:
    tokens = _collapse(_PUNCT_RE.sub(" ", str(value or ""))).split()
    stripped = list(tokens)
    while stripped and stripped[-1] in COMPANY_SUFFIXES:
        stripped.pop()
    return " ".join(stripped or tokens)


def normalize_person_name(value: Optional[str]) -> str:
    return _collapse(_PUNCT_RE.sub(" ", str(value or "")))


def fuzzy_match(str1: Optional[str], str2: Optional[str]) -> float:
    """Token-set similarity in 0..1; word order and extra tokens are tolerated."""
    if not str1 or not str2:
        return 0.0
    normalized1 = _collapse(str1)
    normalized2 = _collapse(str2)
    if not normalized1 or not normalized2:
        return 0.0
    if normalized1 == normalized2:
        return 1.0
    return fuzz.token_set_ratio(normalized1, normalized2) / 100.0


def _field(entity: Any, name: str) -> Any:
    if isinstance(entity, Mapping):
        value = entity.get(name)
    else:
        value = getattr(entity, name, None)
    if isinstance(value, str):
        value = value.strip()
    return value or None


def _declared_type(entity: Any) -> Optional[str]:
    if isinstance(entity, Account):
        return "account"
    if isinstance(entity, Contact):
        return "contact"
    if isinstance(entity, Mapping):
        raw = entity.get("entity_type")
        return str(raw).strip().lower() if raw else None
    return None


def _account_domain(entity: Any) -> str:
    domain = normalize_domain(_field(entity, "domain"))
    if domain:
        return domain
    website = normalize_domain(_field(entity, "website"))
    return website.split("/", 1)[0] if website else ""


def _account_city(entity: Any) -> Optional[str]:
    return _field(entity, "headquarters_city") or _field(entity, "city")


def _contact_full_name(entity: Any) -> str:
    parts = [_field(entity, "first_name"), _field(entity, "last_name")]
    full_name = " ".join(str(part) for part in parts if part)
    return normalize_person_name(full_name or _field(entity, "full_name"))


def _finish(score: float, max_score: float, breakdown: Dict[str, int], matching_fields: List[str]) -> SimilarityResult:
    percentage = (score / max_score) * 100 if max_score > 0 else 0.0
    percentage = max(0.0, min(100.0, round(percentage, 2)))
    return SimilarityResult(
        score=round(score, 4),
        max_score=max_score,
        percentage=percentage,
        breakdown=breakdown,
        matching_fields=matching_fields,
    )


def calculate_account_similarity(account1: Any, account2: Any) -> SimilarityResult:
    score = 0.0
    max_score = 0.0
    breakdown: Dict[str, int] = {}
    matching_fields: List[str] = []

    domain1, domain2 = _account_domain(account1), _account_domain(account2)
    if domain1 and domain2:
        max_score += ACCOUNT_WEIGHTS["domain"]
        if domain1 == domain2:
            score += ACCOUNT_WEIGHTS["domain"]
            breakdown["domain_score"] = 100
            matching_fields.append("domain")
        else:
            breakdown["domain_score"] = 0

    name1 = normalize_company_name(_field(account1, "name"))
    name2 = normalize_company_name(_field(account2, "name"))
    if name1 and name2:
        max_score += ACCOUNT_WEIGHTS["name"]
        similarity = fuzzy_match(name1, name2)
        score += ACCOUNT_WEIGHTS["name"] * similarity
        breakdown["name_score"] = round(similarity * 100)
        if similarity >= NAME_MATCH_THRESHOLD:
            matching_fields.append("name")

    email_domain1 = extract_email_domain(_field(account1, "email"))
    email_domain2 = extract_email_domain(_field(account2, "email"))
    if email_domain1 and email_domain2:
        max_score += ACCOUNT_WEIGHTS["email_domain"]
        if email_domain1 == email_domain2:
            score += ACCOUNT_WEIGHTS["email_domain"]
            breakdown["email_score"] = 100
            matching_fields.append("email_domain")
        else:
            breakdown["email_score"] = 0

    city1, city2 = _account_city(account1), _account_city(account2)
    if city1 and city2:
        max_score += ACCOUNT_WEIGHTS["city"]
        similarity = fuzzy_match(city1, city2)
        if similarity >= CITY_MATCH_THRESHOLD:
            score += ACCOUNT_WEIGHTS["city"]
            breakdown["city_score"] = 100
            matching_fields.append("city")
        else:
            breakdown["city_score"] = round(similarity * 100)

    return _finish(score, max_score, breakdown, matching_fields)


def calculate_contact_similarity(contact1: Any, contact2: Any) -> SimilarityResult:
    score = 0.0
    max_score = 0.0
    breakdown: Dict[str, int] = {}
    matching_fields: List[str] = []

    email1 = str(_field(contact1, "email") or "").lower()
    email2 = str(_field(contact2, "email") or "").lower()
    if email1 and email2:
        max_score += CONTACT_WEIGHTS["email"]
        if email1 == email2:
            score += CONTACT_WEIGHTS["email"]
            breakdown["email_score"] = 100
            matching_fields.append("email")
        else:
            breakdown["email_score"] = 0

    name1, name2 = _contact_full_name(contact1), _contact_full_name(contact2)
    if name1 and name2:
        max_score += CONTACT_WEIGHTS["name"]
        similarity = fuzzy_match(name1, name2)
        score += CONTACT_WEIGHTS["name"] * similarity
        breakdown["name_score"] = round(similarity * 100)
        if similarity >= NAME_MATCH_THRESHOLD:
            matching_fields.append("name")

    linkedin1 = normalize_domain(_field(contact1, "linkedin_url"))
    linkedin2 = normalize_domain(_field(contact2, "linkedin_url"))
    if linkedin1 and linkedin2:
        max_score += CONTACT_WEIGHTS["linkedin"]
        if linkedin1 == linkedin2:
            score += CONTACT_WEIGHTS["linkedin"]
            breakdown["linkedin_score"] = 100
            matching_fields.append("linkedin")
        else:
            breakdown["linkedin_score"] = 0

    account1, account2 = _field(contact1, "account_id"), _field(contact2, "account_id")
    if account1 and account2:
        max_score += CONTACT_WEIGHTS["account"]
        if str(account1) == str(account2):
            score += CONTACT_WEIGHTS["account"]
            breakdown["account_score"] = 100
            matching_fields.append("account")
        else:
            breakdown["account_score"] = 0

    return _finish(score, max_score, breakdown, matching_fields)


def score(entity_a: Any, entity_b: Any, entity_type: str) -> SimilarityResult:
    normalized_type = str(entity_type or "").strip().lower()
    if normalized_type not in ENTITY_TYPES:
        raise InvalidInput(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
    if entity_a is None or entity_b is None:
        raise InvalidInput("both entities are required for scoring")
    for entity in (entity_a, entity_b):
        declared = _declared_type(entity)
        if declared and declared != normalized_type:
            raise InvalidInput(f"cannot score a {declared} as a {normalized_type}")
    if normalized_type == "account":
        return calculate_account_similarity(entity_a, entity_b)
    return calculate_contact_similarity(entity_a, entity_b)


def detection_method_for(entity_type: str, matching_fields: List[str]) -> str:
    primary = "domain" if entity_type == "account" else "email"
    if primary in matching_fields:
        return "domain_match" if entity_type == "account" else "email_match"
    if "name" in matching_fields:
        return "fuzzy_name"
    return "composite"
