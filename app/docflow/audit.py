from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.docflow.models import AuditEntry
from app.docflow.utils import utcnow


def _current_request_id() -> str | None:
    # Outside a request (scripts, tests driving the service directly) there is no g.
    from flask import g, has_app_context

    if not has_app_context():
        return None
    return getattr(g, "request_id", None)


def record_transition(
    s: Session,
    *,
    version_id: int,
    document_id: int,
    event: str,
    from_status: str | None,
    to_status: str,
    actor_id: int | None,
    comments: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEntry:
    """
    Append-only audit entry helper.

    The entry joins the caller's transaction; it is committed (or rolled back)
    together with the status change it describes.
    """
    entry = AuditEntry(
        version_id=version_id,
        document_id=document_id,
        event=event,
        from_status=from_status,
        to_status=to_status,
        actor_user_id=actor_id,
        created_at=utcnow(),
        comments=(comments or "").strip() or None,
        metadata_json=metadata or None,
        request_id=request_id or _current_request_id(),
    )
    s.add(entry)
    s.flush()
    return entry


def entries_for_version(s: Session, version_id: int) -> list[AuditEntry]:
    stmt = select(AuditEntry).where(AuditEntry.version_id == version_id).order_by(AuditEntry.id.asc())
    return list(s.scalars(stmt))


def entries_for_document(s: Session, document_id: int) -> list[AuditEntry]:
    stmt = select(AuditEntry).where(AuditEntry.document_id == document_id).order_by(AuditEntry.id.asc())
    return list(s.scalars(stmt))


def latest_review_entry(s: Session, version_id: int) -> AuditEntry | None:
    """Most recent approve/request_changes entry: the authoritative answer to 'who reviewed this and why'."""
    stmt = (
        select(AuditEntry)
        .where(AuditEntry.version_id == version_id, AuditEntry.event.in_(("approve", "request_changes")))
        .order_by(AuditEntry.id.desc())
        .limit(1)
    )
    return s.scalars(stmt).first()


def entry_to_dict(e: AuditEntry) -> dict[str, Any]:
    return {
        "id": e.id,
        "version_id": e.version_id,
        "document_id": e.document_id,
        "event": e.event,
        "from_status": e.from_status,
        "to_status": e.to_status,
        "actor_id": e.actor_user_id,
        "timestamp": e.created_at.isoformat() if e.created_at else None,
        "comments": e.comments,
        "metadata": e.metadata_json,
        "request_id": e.request_id,
    }
