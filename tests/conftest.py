import pytest

from app.famlearn import create_app
from app.famlearn.constants import Role
from app.famlearn.db import session_scope
from app.famlearn.models import Base, Family, User
from app.famlearn.security import hash_password

PASSWORD = "Garden-Path7"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in (
        "LOGIN_MAX_FAILED_ATTEMPTS",
        "LOGIN_LOCKOUT_MINUTES",
        "FAMILY_MAX_MEMBERS",
        "UNLOCK_EXPIRY_HOURS",
        "PASSWORD_MIN_LENGTH",
        "DEFAULT_TIMEZONE",
    ):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def people(app):
    """
    Two families (F1, F2), each with a parent and a student, plus an admin.
    Returns username -> user id.
    """
    with session_scope(app) as s:
        f1 = Family(name="F1")
        f2 = Family(name="F2")
        s.add_all([f1, f2])
        s.flush()

        def _user(username, role, family=None, **extra):
            u = User(
                username=username,
                password_hash=hash_password(PASSWORD),
                display_name=username.title(),
                role=role,
                is_active=True,
                family_id=family.id if family else None,
                **extra,
            )
            s.add(u)
            return u

        users = [
            _user("admin", Role.ADMIN),
            _user("parent1", Role.PARENT, f1),
            _user("student1", Role.STUDENT, f1, year_level=4, birth_year=2016, parental_code="ABC234"),
            _user("parent2", Role.PARENT, f2),
            _user("student2", Role.STUDENT, f2, year_level=6, birth_year=2014, parental_code="XYZ789"),
        ]
        s.flush()
        ids = {u.username: u.id for u in users}
        ids["F1"] = f1.id
        ids["F2"] = f2.id
    return ids


@pytest.fixture()
def login(client):
    """Log a user in and return headers carrying the session CSRF token."""

    def _login(username, password=PASSWORD):
        r = client.post("/auth/login", json={"username": username, "password": password})
        assert r.status_code == 200, r.json
        return {"X-CSRF-Token": r.json["csrf_token"]}

    return _login


@pytest.fixture()
def unlock_rules(app, people):
    """A global rule set: MATHS 60-79 -> 10 min, 80-100 -> 20 (+10 at 100), daily cap 60."""
    from app.famlearn.modules.ipad_unlock.models import UnlockConfiguration

    rules = [
        {
            "subject": "MATHS",
            "score_thresholds": [
                {"min_score": 60, "max_score": 79, "base_minutes": 10, "bonus_minutes": 0},
                {"min_score": 80, "max_score": 100, "base_minutes": 20, "bonus_minutes": 10},
            ],
            "daily_limit": 60,
        },
        {
            "subject": "ENGLISH",
            "score_thresholds": [{"min_score": 70, "max_score": 100, "base_minutes": 15, "bonus_minutes": 5}],
        },
    ]
    with session_scope(app) as s:
        config = UnlockConfiguration(name="Default", rules=rules, is_active=True, family_id=None)
        s.add(config)
        s.flush()
        config_id = config.id
    return config_id
