"""
Version Store: persistence for documents and their versions.

Pure data access. The only rule enforced here is the one the schema also
enforces (a single draft/pending_review version per document); every other
decision belongs to the workflow state machine and the service.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.docflow.errors import ConflictError, NotFoundError
from app.docflow.modules.versioning.models import Document, DocumentVersion
from app.docflow.modules.versioning.workflow import ACTIVE_STATUSES, DRAFT, PUBLISHED
from app.docflow.utils import content_digest, utcnow


class VersionStore:
    def __init__(self, s: Session) -> None:
        self.s = s

    # -- documents ---------------------------------------------------------

    def create_document(self, *, key: str, title: str, created_by_user_id: int) -> Document:
        if self.get_document_by_key(key) is not None:
            raise ConflictError(f"Document key {key!r} already exists.", details={"key": key})
        d = Document(key=key, title=title, created_by_user_id=created_by_user_id, created_at=utcnow())
        self.s.add(d)
        try:
            self.s.flush()
        except IntegrityError as e:
            raise ConflictError(f"Document key {key!r} already exists.", details={"key": key}) from e
        return d

    def get_document(self, document_id: int) -> Document:
        d = self.s.get(Document, document_id)
        if d is None:
            raise NotFoundError(f"Document {document_id} not found.", details={"document_id": document_id})
        return d

    def get_document_by_key(self, key: str) -> Document | None:
        return self.s.scalars(select(Document).where(Document.key == key)).one_or_none()

    def list_documents(self) -> list[Document]:
        return list(self.s.scalars(select(Document).order_by(Document.key.asc())))

    def lock_document(self, document_id: int) -> Document:
        """
        Per-document serialization point (row lock on Postgres).
        SQLite has no FOR UPDATE; it serializes writers on its own.
        """
        stmt = select(Document).where(Document.id == document_id).with_for_update()
        d = self.s.scalars(stmt).one_or_none()
        if d is None:
            raise NotFoundError(f"Document {document_id} not found.", details={"document_id": document_id})
        return d

    # -- versions ----------------------------------------------------------

    def get_by_id(self, version_id: int) -> DocumentVersion:
        v = self.s.get(DocumentVersion, version_id)
        if v is None:
            raise NotFoundError(f"Version {version_id} not found.", details={"version_id": version_id})
        return v

    def get_history(self, document_id: int) -> list[DocumentVersion]:
        """Newest first. Always a fresh query; callers re-call it to see later changes."""
        stmt = (
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.sequence_number.desc())
            .execution_options(populate_existing=True)
        )
        return list(self.s.scalars(stmt))

    def get_published(self, document_id: int) -> DocumentVersion | None:
        stmt = (
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id, DocumentVersion.status == PUBLISHED)
            .execution_options(populate_existing=True)
        )
        return self.s.scalars(stmt).first()

    def get_active(self, document_id: int) -> DocumentVersion | None:
        """The document's single in-progress (draft or pending_review) version, if any."""
        stmt = (
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id, DocumentVersion.status.in_(ACTIVE_STATUSES))
            .execution_options(populate_existing=True)
        )
        return self.s.scalars(stmt).first()

    def get_revision_of(self, version_id: int) -> DocumentVersion | None:
        """The version created by resubmitting ``version_id``, if it was resubmitted."""
        stmt = (
            select(DocumentVersion)
            .where(DocumentVersion.revises_version_id == version_id)
            .order_by(DocumentVersion.sequence_number.asc())
            .execution_options(populate_existing=True)
        )
        return self.s.scalars(stmt).first()

    def latest_version_label(self, document_id: int) -> str | None:
        stmt = (
            select(DocumentVersion.version_label)
            .where(DocumentVersion.document_id == document_id, DocumentVersion.version_label.is_not(None))
            .order_by(DocumentVersion.published_at.desc(), DocumentVersion.id.desc())
            .limit(1)
        )
        return self.s.scalars(stmt).first()

    def next_sequence_number(self, document_id: int) -> int:
        current = self.s.scalar(
            select(func.max(DocumentVersion.sequence_number)).where(DocumentVersion.document_id == document_id)
        )
        return (current or 0) + 1

    def create_version(
        self,
        document_id: int,
        content: Any,
        author_id: int,
        supersedes_version_id: int | None = None,
        *,
        revises_version_id: int | None = None,
    ) -> DocumentVersion:
        self.get_document(document_id)
        active = self.get_active(document_id)
        if active is not None:
            raise ConflictError(
                f"Document {document_id} already has version {active.sequence_number} in {active.status}; "
                "finish or abandon it before starting another.",
                details={"document_id": document_id, "active_version_id": active.id, "status": active.status},
            )

        v = DocumentVersion(
            document_id=document_id,
            sequence_number=self.next_sequence_number(document_id),
            content=content,
            content_digest=content_digest(content),
            status=DRAFT,
            author_id=author_id,
            created_at=utcnow(),
            supersedes_version_id=supersedes_version_id,
            revises_version_id=revises_version_id,
        )
        self.s.add(v)
        try:
            self.s.flush()
        except IntegrityError as e:
            # Lost a race for the sequence number or the active-line slot.
            raise ConflictError(
                f"Document {document_id} changed concurrently; reload and retry.",
                details={"document_id": document_id},
            ) from e
        return v

    def apply_transition(self, version_id: int, fields: dict[str, Any], expected_status: str) -> DocumentVersion:
        """
        Conditional update: applies ``fields`` only while the stored status still
        equals ``expected_status``.
        """
        stmt = (
            update(DocumentVersion)
            .where(DocumentVersion.id == version_id, DocumentVersion.status == expected_status)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        res = self.s.execute(stmt)
        if res.rowcount != 1:
            current = self.s.scalar(select(DocumentVersion.status).where(DocumentVersion.id == version_id))
            if current is None:
                raise NotFoundError(f"Version {version_id} not found.", details={"version_id": version_id})
            raise ConflictError(
                f"Version {version_id} is now '{current}' (expected '{expected_status}'); "
                "someone else changed it. Reload and retry.",
                details={"version_id": version_id, "expected_status": expected_status, "status": current},
            )
        return self.s.get(DocumentVersion, version_id, populate_existing=True)  # type: ignore[return-value]
