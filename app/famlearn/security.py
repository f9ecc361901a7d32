import re
import secrets

from flask import Request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.famlearn.constants import COMMON_PASSWORDS, PARENTAL_CODE_ALPHABET, PARENTAL_CODE_LENGTH

_REPEATED_CHARS = re.compile(r"(.)\1{2,}")


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header or JSON body."""
    token = req.headers.get("X-CSRF-Token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str | None, password: str) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def validate_password_strength(password: str, *, min_length: int = 6) -> tuple[list[str], int]:
    """
    Returns (errors, score). Score runs 0-5, one point per character class
    plus one for length >= 12; it is informational and never blocks.
    """
    errors: list[str] = []
    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters long.")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common; choose something less guessable.")
    if _REPEATED_CHARS.search(password):
        errors.append("Password must not repeat the same character three or more times in a row.")

    score = 0
    if re.search(r"[a-z]", password):
        score += 1
    if re.search(r"[A-Z]", password):
        score += 1
    if re.search(r"\d", password):
        score += 1
    if re.search(r"[^A-Za-z0-9]", password):
        score += 1
    if len(password) >= 12:
        score += 1
    return errors, score


def generate_parental_code() -> str:
    return "".join(secrets.choice(PARENTAL_CODE_ALPHABET) for _ in range(PARENTAL_CODE_LENGTH))
