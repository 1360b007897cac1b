from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.docflow.audit import entry_to_dict
from app.docflow.db import db_session
from app.docflow.errors import ValidationError, WorkflowError
from app.docflow.models import User
from app.docflow.modules.versioning import workflow
from app.docflow.modules.versioning.models import Document
from app.docflow.modules.versioning.service import VersioningService
from app.docflow.rbac import require_permission

bp = Blueprint("versioning", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # RBAC decorator should prevent this.
        raise RuntimeError("No current user")
    return u


def _service() -> VersioningService:
    return VersioningService(db_session(), notifier=current_app.extensions["docflow_notifier"])


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _text(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    raise ValidationError(f"{key} must be a string.")


def _document_to_dict(d: Document, *, with_published: bool = False, published: Any = None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": d.id,
        "key": d.key,
        "title": d.title,
        "created_by_user_id": d.created_by_user_id,
        "created_at": d.created_at.isoformat() if d.created_at else None,
    }
    if with_published:
        out["published_version"] = published.to_dict() if published is not None else None
    return out


@bp.errorhandler(WorkflowError)
def _workflow_error(e: WorkflowError):
    current_app.logger.info(
        "Workflow request rejected: %s (%s) request_id=%s", e.code, e.message, getattr(g, "request_id", None)
    )
    return jsonify(e.to_dict()), e.http_status


# -- documents -------------------------------------------------------------


@bp.get("/documents")
@require_permission("docs.view")
def list_documents():
    svc = _service()
    docs = svc.list_documents()
    return jsonify({"ok": True, "documents": [_document_to_dict(d, with_published=True, published=svc.store.get_published(d.id)) for d in docs]})


@bp.post("/documents")
@require_permission("docs.create")
def create_document():
    u = _current_user()
    data = _payload()
    svc = _service()
    d = svc.create_document(_text(data, "key") or "", _text(data, "title") or "", u.id, content=data.get("content"))
    return jsonify({"ok": True, "document": _document_to_dict(d), "versions": [v.to_dict() for v in svc.get_version_history(d.id)]}), 201


@bp.get("/documents/<int:document_id>")
@require_permission("docs.view")
def document_detail(document_id: int):
    svc = _service()
    d = svc.get_document(document_id)
    return jsonify({"ok": True, "document": _document_to_dict(d, with_published=True, published=svc.get_published_version(d.id))})


@bp.get("/documents/<int:document_id>/versions")
@require_permission("docs.view")
def version_history(document_id: int):
    include_content = (request.args.get("content") or "").strip() in ("1", "true")
    versions = _service().get_version_history(document_id)
    return jsonify({"ok": True, "versions": [v.to_dict(include_content=include_content) for v in versions]})


@bp.post("/documents/<int:document_id>/versions")
@require_permission("docs.create")
def create_draft(document_id: int):
    u = _current_user()
    data = _payload()
    if "content" not in data:
        raise ValidationError("content is required.")
    v = _service().create_draft(document_id, data["content"], u.id)
    return jsonify({"ok": True, "version": v.to_dict()}), 201


@bp.post("/documents/<int:document_id>/rollback")
@require_permission("docs.rollback")
def rollback(document_id: int):
    u = _current_user()
    data = _payload()
    target = data.get("target_version_id")
    if not isinstance(target, int) or isinstance(target, bool):
        raise ValidationError("target_version_id must be an integer.")
    v = _service().rollback_to_version(document_id, target, _text(data, "reason") or "", u.id)
    return jsonify({"ok": True, "version": v.to_dict()}), 201


@bp.get("/documents/<int:document_id>/audit")
@require_permission("docs.view")
def document_audit(document_id: int):
    entries = _service().get_document_audit_trail(document_id)
    return jsonify({"ok": True, "entries": [entry_to_dict(e) for e in entries]})


# -- versions --------------------------------------------------------------


@bp.get("/versions/<int:version_id>")
@require_permission("docs.view")
def version_detail(version_id: int):
    svc = _service()
    v = svc.get_version(version_id)
    review = svc.get_latest_review(version_id)
    return jsonify(
        {
            "ok": True,
            "version": v.to_dict(),
            "allowed_events": workflow.allowed_events(v.status),
            "terminal": workflow.is_terminal(v.status),
            "latest_review": entry_to_dict(review) if review is not None else None,
        }
    )


@bp.get("/versions/<int:version_id>/audit")
@require_permission("docs.view")
def version_audit(version_id: int):
    entries = _service().get_audit_trail(version_id)
    return jsonify({"ok": True, "entries": [entry_to_dict(e) for e in entries]})


@bp.post("/versions/<int:version_id>/submit")
@require_permission("docs.submit")
def submit(version_id: int):
    u = _current_user()
    data = _payload()
    v = _service().submit_for_review(version_id, _text(data, "notes"), actor_id=u.id)
    return jsonify({"ok": True, "version": v.to_dict()})


@bp.post("/versions/<int:version_id>/approve")
@require_permission("docs.review")
def approve(version_id: int):
    u = _current_user()
    data = _payload()
    v = _service().approve_version(version_id, u.id, _text(data, "comments"))
    return jsonify({"ok": True, "version": v.to_dict()})


@bp.post("/versions/<int:version_id>/request-changes")
@require_permission("docs.review")
def request_changes(version_id: int):
    u = _current_user()
    data = _payload()
    v = _service().request_changes(version_id, u.id, _text(data, "changes") or "", data.get("inline_comments"))
    return jsonify({"ok": True, "version": v.to_dict()})


@bp.post("/versions/<int:version_id>/resubmit")
@require_permission("docs.submit")
def resubmit(version_id: int):
    u = _current_user()
    data = _payload()
    if "content" not in data:
        raise ValidationError("content is required.")
    v = _service().resubmit(version_id, data["content"], _text(data, "notes"), actor_id=u.id)
    return jsonify({"ok": True, "version": v.to_dict()}), 201


@bp.post("/versions/<int:version_id>/publish")
@require_permission("docs.publish")
def publish(version_id: int):
    u = _current_user()
    data = _payload()
    v = _service().publish_version(
        version_id,
        u.id,
        release_type=(_text(data, "release_type") or "minor").strip().lower(),
        change_summary=_text(data, "change_summary"),
    )
    return jsonify({"ok": True, "version": v.to_dict()})
