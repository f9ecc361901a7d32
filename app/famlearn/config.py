import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    login_max_failed_attempts: int
    login_lockout_minutes: int
    family_max_members: int
    default_timezone: str
    password_min_length: int
    unlock_expiry_hours: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from e


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///famlearn.db"),
        login_max_failed_attempts=_getenv_int("LOGIN_MAX_FAILED_ATTEMPTS", 5),
        login_lockout_minutes=_getenv_int("LOGIN_LOCKOUT_MINUTES", 15),
        family_max_members=_getenv_int("FAMILY_MAX_MEMBERS", 10),
        default_timezone=_getenv("DEFAULT_TIMEZONE", "Australia/Brisbane"),
        password_min_length=_getenv_int("PASSWORD_MIN_LENGTH", 6),
        unlock_expiry_hours=_getenv_int("UNLOCK_EXPIRY_HOURS", 24),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOGIN_MAX_FAILED_ATTEMPTS": s.login_max_failed_attempts,
        "LOGIN_LOCKOUT_MINUTES": s.login_lockout_minutes,
        "FAMILY_MAX_MEMBERS": s.family_max_members,
        "DEFAULT_TIMEZONE": s.default_timezone,
        "PASSWORD_MIN_LENGTH": s.password_min_length,
        "UNLOCK_EXPIRY_HOURS": s.unlock_expiry_hours,
        # security defaults
        "SESSION_COOKIE_NAME": "family-learning-session",
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "JSON_SORT_KEYS": False,
    }
