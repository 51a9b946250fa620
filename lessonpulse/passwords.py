"""
Password hashing and strength rules (bcrypt)
"""
import bcrypt
import re
import logging
from typing import List

from lessonpulse.config import BCRYPT_ROUNDS

logger = logging.getLogger(__name__)

BCRYPT_HASH_RE = re.compile(r"^\$2[aby]\$\d{2}\$.{53}$")


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """Hash a password using bcrypt"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """Check a password against a stored bcrypt hash. Never raises."""
    if not password or not hashed:
        return False

    hashed = hashed.strip()
    if len(hashed) != 60 or not BCRYPT_HASH_RE.match(hashed):
        logger.warning("Stored password hash has an invalid bcrypt format")
        return False

    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        return False


def validate_password_strength(password: str) -> List[str]:
    """Return the unmet password rules; an empty list means the password is strong enough."""
    problems = []
    if len(password) < 8:
        problems.append("Password must be at least 8 characters long")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        problems.append("Password must contain at least one number")
    return problems
