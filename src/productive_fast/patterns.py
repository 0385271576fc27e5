"""
Classify raw query strings into a Productive entity kind.

Detection is purely syntactic: it looks at the shape of the string and never
touches the store or the API.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

PERSON = "person"
PROJECT = "project"
SERVICE = "service"
COMPANY = "company"
DEAL = "deal"

ENTITY_KINDS = (PERSON, PROJECT, SERVICE, COMPANY, DEAL)

CONFIDENCE_HIGH = "high"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEAL_NUMBER_PATTERN = re.compile(r"^(DEAL|D)-(\d+)$", re.IGNORECASE)
PROJECT_NUMBER_PATTERN = re.compile(r"^([A-Za-z]+)-(\d+)$")
NUMERIC_ID_PATTERN = re.compile(r"^\d+$")


@dataclass(frozen=True)
class Detection:
    """Result of pattern detection."""

    kind: str
    pattern: str
    confidence: str

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.kind,
            "pattern": self.pattern,
            "confidence": self.confidence,
        }


def is_numeric_id(value: str) -> bool:
    """A bare positive integer is already a resolved ID."""
    return bool(NUMERIC_ID_PATTERN.match(value))


def is_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def is_deal_number(value: str) -> bool:
    return bool(DEAL_NUMBER_PATTERN.match(value))


def is_project_number(value: str) -> bool:
    return bool(PROJECT_NUMBER_PATTERN.match(value)) and not is_deal_number(value)


def normalize_project_number(value: str) -> str:
    """Productive numbers projects as PRJ-<n>; accept the short P-<n> form."""
    upper = value.strip().upper()
    if upper.startswith("P-"):
        return "PRJ-" + upper[2:]
    return upper


def normalize_deal_number(value: str) -> str:
    upper = value.strip().upper()
    if upper.startswith("DEAL-"):
        return "D-" + upper[5:]
    return upper


def detect(query: str) -> Detection | None:
    """
    Detect the entity kind a query most likely refers to.

    Rules, first match wins:
    - email address -> person (high)
    - DEAL-<n> or D-<n> -> deal (high)
    - <LETTERS>-<n> -> project (high)
    - bare integer or anything else -> None
    """
    value = query.strip()
    if not value or is_numeric_id(value):
        return None

    if is_email(value):
        return Detection(PERSON, "email", CONFIDENCE_HIGH)

    if is_deal_number(value):
        return Detection(DEAL, "deal_number", CONFIDENCE_HIGH)

    if PROJECT_NUMBER_PATTERN.match(value):
        return Detection(PROJECT, "project_number", CONFIDENCE_HIGH)

    return None
