"""
Client fingerprint parsing and weighted comparison used to bind sessions to a device
"""
import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional

from lessonpulse.config import FINGERPRINT_WARN_THRESHOLD, FINGERPRINT_REVOKE_THRESHOLD

logger = logging.getLogger(__name__)

FINGERPRINT_HEADER = "X-Client-Fingerprint"

# (field, points, group weight)
WEIGHTS = [
    ("user_agent", 3, 5),
    ("platform", 2, 5),
    ("language", 1, 5),
    ("screen_resolution", 1, 5),
    ("timezone", 1, 5),
    ("color_depth", 1, 5),
    ("cookies_enabled", 1, 3),
    ("touch_support", 1, 3),
    ("hardware_concurrency", 2, 3),
    ("canvas", 3, 4),
    ("webgl", 2, 2),
]
FIELDS = {name for name, _, _ in WEIGHTS}


def parse_fingerprint(raw: Optional[str], user_agent: Optional[str] = None,
                      accept_language: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Decode the fingerprint header (plain or base64 JSON).
    Returns None when the client sent nothing usable; unknown keys are dropped.
    """
    if not raw:
        return None

    data = None
    for candidate in (raw, _b64decode(raw)):
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
            break
        except (ValueError, TypeError):
            continue

    if not isinstance(data, dict):
        logger.debug("Ignoring malformed client fingerprint")
        return None

    fingerprint = {key: value for key, value in data.items() if key in FIELDS}
    if user_agent and not fingerprint.get("user_agent"):
        fingerprint["user_agent"] = user_agent
    if accept_language and not fingerprint.get("language"):
        fingerprint["language"] = accept_language.split(",")[0].strip()
    return fingerprint


def _b64decode(raw: str) -> Optional[str]:
    try:
        return base64.b64decode(raw, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


def score_fingerprint(stored: Dict[str, Any], current: Optional[Dict[str, Any]]) -> float:
    """
    Weighted share of the stored components the current request reproduces,
    0.0 (nothing matches) to 1.0. Components the client never reported at
    login are left out of both sides; an unavailable WebGL renderer still
    counts against the score.
    """
    current = current or {}
    score = 0
    total = 0
    for name, points, weight in WEIGHTS:
        stored_value = stored.get(name)
        if stored_value is None:
            continue
        total += points * weight
        if name == "webgl" and stored_value == "unavailable":
            continue
        if stored_value == current.get(name):
            score += points * weight
    return score / total if total else 1.0


def risk_level(score: float) -> str:
    if score >= FINGERPRINT_WARN_THRESHOLD:
        return "low"
    if score >= FINGERPRINT_REVOKE_THRESHOLD:
        return "medium"
    return "high"
