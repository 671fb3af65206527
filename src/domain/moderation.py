# src/domain/moderation.py

import re

from src.domain.exceptions import ValidationFailedError


EMAIL_PATTERN = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
URL_OR_SOCIAL_PATTERN = re.compile(
    r"(https?://|www\.|\.com|\.de|\.net|\.io|instagram|whatsapp|telegram|t\.me)",
    re.IGNORECASE,
)
PHONE_PATTERN = re.compile(r"(\+?\d[\d\s().-]{7,}\d)")
LONG_DIGIT_RUN_PATTERN = re.compile(r"\d{8,}")

_PATTERNS = (
    EMAIL_PATTERN,
    URL_OR_SOCIAL_PATTERN,
    PHONE_PATTERN,
    LONG_DIGIT_RUN_PATTERN,
)


def contains_contact_info(text: str | None) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for pattern in _PATTERNS)


def assert_no_contact_info(text: str | None) -> None:
    # Negotiation must stay on the platform.
    if contains_contact_info(text):
        raise ValidationFailedError(
            "Please keep communication on the platform. Don't share contact info."
        )


def normalize_optional_text(value: str | None, max_length: int = 255) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    return value[:max_length]
