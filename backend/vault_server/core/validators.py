"""
Input format checks shared by the service layer and the API models.
"""

from __future__ import annotations

import re

ALIAS_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]{1,63}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
TEMPLATE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.:-]{0,63}$")

MAX_NAME_LENGTH = 255


def normalize(value: str) -> str:
    return value.strip().lower()


def is_valid_alias(value: str) -> bool:
    return bool(ALIAS_PATTERN.match(value)) and "@" not in value and not value.startswith(":")


def is_valid_email(value: str) -> bool:
    return len(value) <= 320 and bool(EMAIL_PATTERN.match(value))


def is_valid_name(value: str) -> bool:
    return 0 < len(value.strip()) <= MAX_NAME_LENGTH


def is_valid_template_name(value: str) -> bool:
    return bool(TEMPLATE_NAME_PATTERN.match(value))
