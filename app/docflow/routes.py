from flask import Blueprint, current_app
from sqlalchemy import text

from app.docflow.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including database reachability."""
    db_ok = True
    try:
        db_session().execute(text("SELECT 1"))
    except Exception:
        current_app.logger.exception("Health check: database unreachable")
        db_ok = False
    return {"ok": db_ok, "db": db_ok}, (200 if db_ok else 503)


@bp.get("/healthz")
def healthz():
    """
    Fast liveness check. No DB access, minimal overhead.
    """
    return "ok", 200
