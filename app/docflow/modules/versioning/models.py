from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.docflow.models import Base, JSONType
from app.docflow.utils import utcnow

_PUBLISHED_ONLY = text("status = 'published'")
_ACTIVE_ONLY = text("status IN ('draft', 'pending_review')")


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # e.g. "benefits-manual"
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    # No cascade: versions are retained indefinitely and block document deletion.
    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        lazy="select",
        order_by="DocumentVersion.sequence_number.desc()",
        passive_deletes="all",
    )


class DocumentVersion(Base):
    """
    Immutable content snapshot plus workflow metadata.

    ``content`` is write-once and ``status`` is set once at construction; later
    status changes go through VersionStore.apply_transition (a conditional UPDATE),
    never through attribute assignment.
    """

    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "sequence_number", name="uq_document_versions_sequence"),
        Index(
            "uq_document_versions_one_published",
            "document_id",
            unique=True,
            sqlite_where=_PUBLISHED_ONLY,
            postgresql_where=_PUBLISHED_ONLY,
        ),
        Index(
            "uq_document_versions_one_active",
            "document_id",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
        Index("idx_document_versions_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    content: Mapped[Any] = mapped_column(JSONType, nullable=True)
    content_digest: Mapped[str] = mapped_column(String(64), nullable=False)

    # draft, pending_review, changes_requested, approved, published, archived
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    author_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    # Cached from the latest review entry in audit_entries.
    reviewer_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    review_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    inline_comments: Mapped[Any] = mapped_column(JSONType, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    published_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    version_label: Mapped[str | None] = mapped_column(String(32), nullable=True)  # "1.2.0", set on publish
    change_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    supersedes_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_versions.id", ondelete="RESTRICT"),
        nullable=True,
    )  # set by rollback
    revises_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_versions.id", ondelete="RESTRICT"),
        nullable=True,
    )  # set by resubmit

    document: Mapped[Document] = relationship(
        "Document",
        back_populates="versions",
        lazy="selectin",
    )

    @validates("content", "content_digest", "status")
    def _write_once(self, key: str, value: Any) -> Any:
        if getattr(self, key) is not None:
            raise AttributeError(f"DocumentVersion.{key} is write-once; create a new version or use the workflow service.")
        return value

    def to_dict(self, *, include_content: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "document_id": self.document_id,
            "sequence_number": self.sequence_number,
            "status": self.status,
            "content_digest": self.content_digest,
            "author_id": self.author_id,
            "created_at": _iso(self.created_at),
            "reviewer_id": self.reviewer_id,
            "review_comments": self.review_comments,
            "inline_comments": self.inline_comments,
            "reviewed_at": _iso(self.reviewed_at),
            "published_by_id": self.published_by_id,
            "published_at": _iso(self.published_at),
            "version_label": self.version_label,
            "change_summary": self.change_summary,
            "archived_at": _iso(self.archived_at),
            "supersedes_version_id": self.supersedes_version_id,
            "revises_version_id": self.revises_version_id,
        }
        if include_content:
            out["content"] = self.content
        return out


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
