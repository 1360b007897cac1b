"""
Read-only consistency checks over stored versions and their audit trail.

The database indexes already forbid the per-document violations; these checks
exist for data restored from backups or migrated from elsewhere.
"""
from __future__ import annotations

from dataclasses import dataclass
from itertools import groupby

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.docflow.models import AuditEntry
from app.docflow.modules.versioning.models import DocumentVersion
from app.docflow.modules.versioning.workflow import ACTIVE_STATUSES, PUBLISHED


@dataclass(frozen=True)
class Violation:
    kind: str
    document_id: int
    version_id: int | None
    message: str


def _multiple(s: Session, statuses: tuple[str, ...], kind: str, label: str) -> list[Violation]:
    stmt = (
        select(DocumentVersion.document_id, func.count(DocumentVersion.id))
        .where(DocumentVersion.status.in_(statuses))
        .group_by(DocumentVersion.document_id)
        .having(func.count(DocumentVersion.id) > 1)
    )
    return [
        Violation(kind, document_id, None, f"{n} {label} versions (at most one allowed)")
        for document_id, n in s.execute(stmt)
    ]


def _audit_chain(s: Session) -> list[Violation]:
    out: list[Violation] = []
    statuses = dict(s.execute(select(DocumentVersion.id, DocumentVersion.status)).all())
    docs = dict(s.execute(select(DocumentVersion.id, DocumentVersion.document_id)).all())

    entries = s.scalars(select(AuditEntry).order_by(AuditEntry.version_id.asc(), AuditEntry.id.asc()))
    seen: set[int] = set()
    for version_id, group in groupby(entries, key=lambda e: e.version_id):
        seen.add(version_id)
        previous: str | None = None
        last: AuditEntry | None = None
        for e in group:
            if e.from_status != previous:
                out.append(
                    Violation(
                        "audit_gap",
                        e.document_id,
                        version_id,
                        f"audit entry {e.id} starts from {e.from_status!r} but the version was {previous!r}",
                    )
                )
            previous = e.to_status
            last = e
        if last is not None and version_id in statuses and statuses[version_id] != last.to_status:
            out.append(
                Violation(
                    "status_drift",
                    last.document_id,
                    version_id,
                    f"status is {statuses[version_id]!r} but the last audit entry says {last.to_status!r}",
                )
            )

    for version_id in sorted(set(statuses) - seen):
        out.append(Violation("unaudited", docs[version_id], version_id, "version has no audit entries"))
    return out


def find_violations(s: Session) -> list[Violation]:
    out = _multiple(s, (PUBLISHED,), "multiple_published", "published")
    out += _multiple(s, ACTIVE_STATUSES, "multiple_active", "draft/pending_review")
    out += _audit_chain(s)
    return sorted(out, key=lambda v: (v.document_id, v.version_id or 0, v.kind))
