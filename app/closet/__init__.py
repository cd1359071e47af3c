import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv

from app.closet.config import load_config
from app.closet.db import init_db, teardown_db_session
from app.closet.models import Base  # noqa: F401  (registers every table before blueprints import stores)
from app.closet.errors import ClosetError
from app.closet.routes import bp as routes_bp
from app.closet.auth import bp as auth_bp, load_current_user
from app.closet.services import init_services
from app.closet.modules.moderation.admin import bp as moderation_bp
from app.closet.modules.listings.routes import bp as listings_bp
from app.closet.modules.social.routes import bp as social_bp
from app.closet.modules.notifications.routes import bp as notifications_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = False
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")

    from app.closet.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout/token endpoints establish the session in the first place.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF token missing or invalid.", "code": "csrf"}), 400

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
        import os
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                for key in ("sqlalchemy_engine", "notifications_engine"):
                    engine = app.extensions.get(key)
                    if engine:
                        engine.dispose()
                app.logger.info("Disposed DB engines after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    init_services(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(moderation_bp, url_prefix="/admin/moderation")
    app.register_blueprint(listings_bp)
    app.register_blueprint(social_bp)
    app.register_blueprint(notifications_bp, url_prefix="/notifications")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(ClosetError)
    def _err_closet(e: ClosetError):  # type: ignore[no-redef]
        level = logging.ERROR if e.status_code >= 500 else logging.INFO
        app.logger.log(
            level, "%s on %s %s (request_id=%s): %s", e.code, request.method, request.path, getattr(g, "request_id", None), e.message
        )
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not found.", "code": "not_found"}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "Method not allowed.", "code": "method_not_allowed"}), 405

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal server error.", "code": "internal"}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
