"""
Input sanitisation and field rules shared by the request models
"""
import re
from typing import Optional

from lessonpulse.config import ALL_GRADES

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
# Letters in any script, spaces, apostrophes, dots and hyphens
PERSON_NAME_RE = re.compile(r"^[^\W\d_]+(?:[\s'.\-]+[^\W\d_]+)*\.?$")
SCHOOL_NAME_RE = re.compile(r"^[\w\s'.\-&,()]+$")

SUSPICIOUS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"javascript:", r"<script", r"on\w+\s*=", r"expression\s*\(", r"<iframe", r"<object", r"<embed")
]


def sanitize_text(value: Optional[str]) -> Optional[str]:
    """Strip markup-ish fragments from free text"""
    if value is None:
        return None
    value = re.sub(r"[<>]", "", value)
    value = re.sub(r"javascript:", "", value, flags=re.IGNORECASE)
    value = re.sub(r"on\w+\s*=", "", value, flags=re.IGNORECASE)
    value = re.sub(r"expression\s*\(", "", value, flags=re.IGNORECASE)
    return value.strip()


def contains_suspicious_content(value: str) -> bool:
    return any(p.search(value) for p in SUSPICIOUS_PATTERNS)


def clean_text(value: Optional[str], max_length: int = 1000) -> Optional[str]:
    """Reject script payloads and oversize text, return the sanitised value"""
    if value is None:
        return None
    if contains_suspicious_content(value):
        raise ValueError("Text contains disallowed content")
    if len(value) > max_length:
        raise ValueError(f"Text must be at most {max_length} characters")
    cleaned = sanitize_text(value)
    return cleaned or None


def validate_email(value: str) -> str:
    value = value.strip().lower()
    if len(value) > 254 or not EMAIL_RE.match(value):
        raise ValueError("Invalid email address")
    return value


def validate_person_name(value: str) -> str:
    value = " ".join(value.split())
    if not 2 <= len(value) <= 50 or not PERSON_NAME_RE.match(value):
        raise ValueError("Name must be 2-50 letters and may contain spaces, apostrophes, dots or hyphens")
    return value


def validate_school_name(value: str) -> str:
    value = " ".join(value.split())
    if not 2 <= len(value) <= 100 or not SCHOOL_NAME_RE.match(value):
        raise ValueError("Invalid school name")
    return value


def validate_grade(value: str) -> str:
    value = str(value).strip()
    if value not in ALL_GRADES:
        raise ValueError(f"Grade must be one of {', '.join(ALL_GRADES)}")
    return value
