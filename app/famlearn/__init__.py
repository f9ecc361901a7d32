import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from app.famlearn.auth import CSRF_EXEMPT_ENDPOINTS, bp as auth_bp, load_current_user
from app.famlearn.config import load_config
from app.famlearn.db import init_db, teardown_db_session
from app.famlearn.login_attempts import LoginAttemptTracker
from app.famlearn.modules.exercises.api import bp as exercises_bp
from app.famlearn.modules.families.api import bp as families_bp
from app.famlearn.modules.homework.api import bp as homework_bp
from app.famlearn.modules.ipad_unlock.api import bp as ipad_unlock_bp
from app.famlearn.modules.mistakes.api import bp as mistakes_bp
from app.famlearn.modules.users.api import bp as users_bp
from app.famlearn.modules.vocabulary.api import bp as vocabulary_bp
from app.famlearn.routes import bp as routes_bp
from app.famlearn.security import ensure_csrf_token, validate_csrf

_PROBE_PATHS = ("/health", "/healthz")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=7)
    app.json.sort_keys = app.config["JSON_SORT_KEYS"]

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # One tracker per app; gunicorn workers each hold their own.
    app.extensions["login_attempts"] = LoginAttemptTracker(
        max_failed_attempts=app.config["LOGIN_MAX_FAILED_ATTEMPTS"],
        lockout_duration=timedelta(minutes=app.config["LOGIN_LOCKOUT_MINUTES"]),
    )

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(users_bp, url_prefix="/api")
    app.register_blueprint(families_bp, url_prefix="/api")
    app.register_blueprint(vocabulary_bp, url_prefix="/api/vocabulary")
    app.register_blueprint(exercises_bp, url_prefix="/api/exercises")
    app.register_blueprint(homework_bp, url_prefix="/api/homework")
    app.register_blueprint(mistakes_bp, url_prefix="/api/mistakes")
    app.register_blueprint(ipad_unlock_bp, url_prefix="/api/ipad-unlock")

    def _load_user_wrapper():
        if request.path.startswith(_PROBE_PATHS):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_PROBE_PATHS):
            return None
        ensure_csrf_token()
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if request.endpoint in CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF token missing or invalid."}), 400
        return None

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"error": e.description or e.name}), e.code

    @app.errorhandler(401)
    def _err_401(e):  # type: ignore[no-redef]
        return jsonify({"error": "Authentication required."}), 401

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
            return jsonify({"error": f"Permission denied: {missing} required.", "missing_permission": missing}), 403
        return jsonify({"error": "Permission denied."}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not found."}), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal server error."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
