import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import inspect as sa_inspect

from app.pharmaqa.config import load_config
from app.pharmaqa.models import Base  # noqa: F401  (registers every table)
from app.pharmaqa.db import init_db, teardown_db_session
from app.pharmaqa.routes import bp as routes_bp
from app.pharmaqa.auth import bp as auth_bp, load_current_user
from app.pharmaqa.modules.compliance_review.admin import bp as compliance_review_bp
from app.pharmaqa.modules.compliance_review.workflow import init_review

# Tables the review workflow cannot run without, and the columns it writes.
_REQUIRED_SCHEMA = {
    "vendor_documents": ("status", "blockchain_tx", "content_fingerprint", "signature_json", "reviewed_by"),
    "audit_events": ("actor_identity", "details", "changes_json"),
    "master_standards": ("status", "min_purity_pct"),
    "purchase_orders": ("quantity", "batch_number"),
    "ledger_anchors": ("token", "previous_token"),
}


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("app.pharmaqa").setLevel(level)
    logging.getLogger("pharmaqa.operator").setLevel(logging.INFO)
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # JSON API only
    _configure_logging(app)

    # CSRF protection (minimal)
    from app.pharmaqa.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/logout)
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "csrf_failed", "message": "CSRF token missing or invalid."}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    if app.config.get("LEDGER_BACKEND") == "http" and not app.config.get("LEDGER_URL"):
        raise RuntimeError("LEDGER_URL is required when LEDGER_BACKEND=http.")

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

    # Storage config check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    init_review(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(compliance_review_bp, url_prefix="/api/reviews")

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        engine = app.extensions["sqlalchemy_engine"]
        insp = sa_inspect(engine)
        for table, cols in _REQUIRED_SCHEMA.items():
            if not insp.has_table(table):
                missing.append(f"{table} (table)")
                continue
            present = {c["name"] for c in insp.get_columns(table)}
            missing.extend(f"{table}.{c}" for c in cols if c not in present)

        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok"):
            return None
        # Re-check once tables may have been created since boot.
        _run_schema_health_check()
        if app.config.get("_schema_health_ok") or request.path.startswith(("/health", "/healthz")):
            return None
        return jsonify({"error": "schema_out_of_date", "missing": app.config.get("_schema_health_missing") or []}), 500

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Unexpected server error."}), 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not_found", "message": "Not found."}), 404

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
