import logging
import os
from datetime import timedelta
from importlib import import_module

from dotenv import load_dotenv
from flask import Flask, g, jsonify, render_template, request, session

from app.erp.admin import bp as admin_bp
from app.erp.api import NotFound
from app.erp.auth import bp as auth_bp, load_current_user
from app.erp.config import load_config
from app.erp.db import init_db, teardown_db_session
from app.erp.modules import MODULES
from app.erp.routes import bp as routes_bp

logger = logging.getLogger(__name__)

_UNTRACKED_PREFIXES = ("/static/", "/health", "/healthz")


def _wants_json() -> bool:
    return "/api/" in request.path


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))


def create_app(config: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    if config:
        app.config.update(config)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    _configure_logging(str(app.config.get("LOG_LEVEL") or "INFO").upper())

    from app.erp.rbac import user_has_permission
    from app.erp.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("cell")
    def _cell_filter(value) -> str:
        if value is None:
            return "-"
        if isinstance(value, bool):
            return "yes" if value else "no"
        if hasattr(value, "strftime"):
            return value.strftime("%Y-%m-%d %H:%M") if hasattr(value, "hour") else value.strftime("%Y-%m-%d")
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                logger.warning("CSRF check failed path=%s request_id=%s", request.path, getattr(g, "request_id", None))
                if _wants_json():
                    return jsonify({"success": False, "error": "CSRF token missing or invalid."}), 400
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

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

    if hasattr(os, "register_at_fork"):

        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    for entry in MODULES:
        module_admin = import_module(f"app.erp.modules.{entry.key}.admin")
        app.register_blueprint(module_admin.bp, url_prefix=entry.url_prefix)

    def _load_user_wrapper():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    # Runs ahead of the CSRF guard so request_id is set for its log line.
    app.before_request_funcs.setdefault(None, []).insert(0, _load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(400)
    def _err_400(e):
        if _wants_json():
            return jsonify({"success": False, "error": getattr(e, "description", None) or "Bad request"}), 400
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"success": False, "error": "Permission denied", "missing_permission": missing}), 403
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):
        if _wants_json():
            return jsonify({"success": False, "error": getattr(e, "description", None) or "Not found"}), 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(NotFound)
    def _err_not_found(e):
        if _wants_json():
            return jsonify({"success": False, "error": str(e) or "Not found"}), 404
        return render_template("errors/404.html", message=str(e)), 404

    @app.errorhandler(500)
    def _err_500(e):
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"success": False, "error": "Internal server error"}), 500
        return render_template("errors/500.html"), 500

    logger.info("create_app() complete; %d modules registered", len(MODULES))
    return app
