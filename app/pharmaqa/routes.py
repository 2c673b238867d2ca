from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including schema health."""
    ok = bool(current_app.config.get("_schema_health_ok", True))
    body = {"ok": ok}
    if not ok:
        body["missing"] = current_app.config.get("_schema_health_missing") or []
    return body, (200 if ok else 503)


@bp.get("/healthz")
def healthz():
    """
    Fast liveness check for container probes. No DB access, minimal overhead.
    """
    return "ok", 200
