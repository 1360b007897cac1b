"""
Versioning service: the public contract of the editorial workflow.

Each mutating operation is one unit of work: the store change(s) and their
audit entries commit together or not at all. Notifications go out only after
the commit.
"""
from __future__ import annotations

import copy
import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.docflow import audit, notifications
from app.docflow.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from app.docflow.models import AuditEntry
from app.docflow.modules.versioning import workflow
from app.docflow.modules.versioning.models import Document, DocumentVersion
from app.docflow.modules.versioning.store import VersionStore
from app.docflow.notifications import Notifier, NullNotifier, WorkflowEvent
from app.docflow.utils import content_digest, ensure_json_value, utcnow

logger = logging.getLogger(__name__)


def normalize_document_key(key: str) -> str:
    return "-".join((key or "").strip().lower().split())


class VersioningService:
    def __init__(self, s: Session, *, notifier: Notifier | None = None) -> None:
        self.s = s
        self.store = VersionStore(s)
        self.notifier = notifier or NullNotifier()

    @contextmanager
    def _unit_of_work(self) -> Generator[list[WorkflowEvent], None, None]:
        pending: list[WorkflowEvent] = []
        try:
            yield pending
            self.s.commit()
        except IntegrityError as e:
            self.s.rollback()
            raise ConflictError("The change conflicts with a concurrent update; reload and retry.") from e
        except Exception:
            self.s.rollback()
            raise
        for ev in pending:
            logger.info(
                "version transition committed: event=%s document_id=%s version_id=%s %s->%s actor_id=%s",
                ev.name,
                ev.document_id,
                ev.version_id,
                ev.from_status,
                ev.to_status,
                ev.actor_id,
            )
            try:
                self.notifier.notify(ev)
            except Exception:
                # Already committed; a failed delivery must not read as a failed transition.
                logger.exception("Notification delivery failed (event=%s version_id=%s)", ev.name, ev.version_id)

    def _record(
        self,
        pending: list[WorkflowEvent],
        v: DocumentVersion,
        *,
        event: str,
        notify_as: str | None,
        from_status: str | None,
        actor_id: int | None,
        comments: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        entry = audit.record_transition(
            self.s,
            version_id=v.id,
            document_id=v.document_id,
            event=event,
            from_status=from_status,
            to_status=v.status,
            actor_id=actor_id,
            comments=comments,
            metadata=metadata,
        )
        if notify_as:
            pending.append(
                WorkflowEvent(
                    name=notify_as,
                    document_id=v.document_id,
                    version_id=v.id,
                    actor_id=actor_id,
                    from_status=from_status,
                    to_status=v.status,
                    occurred_at=entry.created_at,
                    comments=entry.comments,
                    metadata=dict(metadata or {}),
                )
            )
        return entry

    # -- reads -------------------------------------------------------------

    def list_documents(self) -> list[Document]:
        return self.store.list_documents()

    def get_document(self, document_id: int) -> Document:
        return self.store.get_document(document_id)

    def get_version(self, version_id: int) -> DocumentVersion:
        return self.store.get_by_id(version_id)

    def get_version_history(self, document_id: int) -> list[DocumentVersion]:
        self.store.get_document(document_id)
        return self.store.get_history(document_id)

    def get_published_version(self, document_id: int) -> DocumentVersion | None:
        self.store.get_document(document_id)
        return self.store.get_published(document_id)

    def get_audit_trail(self, version_id: int) -> list[AuditEntry]:
        self.store.get_by_id(version_id)
        return audit.entries_for_version(self.s, version_id)

    def get_latest_review(self, version_id: int) -> AuditEntry | None:
        """Who last approved or requested changes on this version, and why (read from the audit trail)."""
        self.store.get_by_id(version_id)
        return audit.latest_review_entry(self.s, version_id)

    def get_document_audit_trail(self, document_id: int) -> list[AuditEntry]:
        self.store.get_document(document_id)
        return audit.entries_for_document(self.s, document_id)

    # -- authoring ---------------------------------------------------------

    def create_document(self, key: str, title: str, owner_id: int, content: Any = None) -> Document:
        """Create a document; when ``content`` is given its first draft is created too."""
        key = normalize_document_key(key)
        title = (title or "").strip()
        if not key or not title:
            raise ValidationError("Document key and title are required.")
        if content is not None:
            ensure_json_value(content, field="content")

        with self._unit_of_work() as pending:
            d = self.store.create_document(key=key, title=title, created_by_user_id=owner_id)
            if content is not None:
                v = self.store.create_version(d.id, content, owner_id)
                self._record(
                    pending,
                    v,
                    event=workflow.CREATE,
                    notify_as=notifications.CREATED,
                    from_status=None,
                    actor_id=owner_id,
                )
        return d

    def create_draft(self, document_id: int, content: Any, author_id: int) -> DocumentVersion:
        ensure_json_value(content, field="content")
        with self._unit_of_work() as pending:
            v = self.store.create_version(document_id, content, author_id)
            self._record(
                pending,
                v,
                event=workflow.CREATE,
                notify_as=notifications.CREATED,
                from_status=None,
                actor_id=author_id,
            )
        return v

    # -- review workflow ---------------------------------------------------

    def submit_for_review(self, version_id: int, notes: str | None = None, *, actor_id: int | None = None) -> DocumentVersion:
        with self._unit_of_work() as pending:
            v = self.store.get_by_id(version_id)
            if v.status == workflow.PENDING_REVIEW:
                return v
            t = workflow.check_submit(v)
            actor = actor_id if actor_id is not None else v.author_id

            from_status = v.status
            v = self.store.apply_transition(v.id, {"status": t.to_status}, expected_status=from_status)
            self._record(
                pending,
                v,
                event=t.event,
                notify_as=notifications.SUBMITTED,
                from_status=from_status,
                actor_id=actor,
                comments=notes,
            )
        return v

    def approve_version(self, version_id: int, reviewer_id: int, comments: str | None = None) -> DocumentVersion:
        with self._unit_of_work() as pending:
            v = self.store.get_by_id(version_id)
            workflow.check_reviewer(v, reviewer_id)
            if v.status == workflow.APPROVED and v.reviewer_id == reviewer_id:
                return v
            t = workflow.check_approve(v, reviewer_id)

            from_status = v.status
            v = self.store.apply_transition(
                v.id,
                {
                    "status": t.to_status,
                    "reviewer_id": reviewer_id,
                    "review_comments": (comments or "").strip() or None,
                    "reviewed_at": utcnow(),
                },
                expected_status=from_status,
            )
            self._record(
                pending,
                v,
                event=t.event,
                notify_as=notifications.APPROVED,
                from_status=from_status,
                actor_id=reviewer_id,
                comments=comments,
            )
        return v

    def request_changes(
        self,
        version_id: int,
        reviewer_id: int,
        changes: str,
        inline_comments: Any = None,
    ) -> DocumentVersion:
        if inline_comments is not None:
            ensure_json_value(inline_comments, field="inline_comments")

        with self._unit_of_work() as pending:
            v = self.store.get_by_id(version_id)
            if v.status == workflow.CHANGES_REQUESTED and v.reviewer_id == reviewer_id:
                return v
            t = workflow.check_request_changes(v, changes)

            from_status = v.status
            v = self.store.apply_transition(
                v.id,
                {
                    "status": t.to_status,
                    "reviewer_id": reviewer_id,
                    "review_comments": changes.strip(),
                    "inline_comments": inline_comments,
                    "reviewed_at": utcnow(),
                },
                expected_status=from_status,
            )
            self._record(
                pending,
                v,
                event=t.event,
                notify_as=notifications.CHANGES_REQUESTED,
                from_status=from_status,
                actor_id=reviewer_id,
                comments=changes,
                metadata={"inline_comments": inline_comments} if inline_comments is not None else None,
            )
        return v

    def resubmit(
        self,
        version_id: int,
        content: Any,
        notes: str | None = None,
        *,
        actor_id: int | None = None,
    ) -> DocumentVersion:
        """
        Send revised content back to review.

        Content is write-once, so the revision becomes a new version linked to the
        reviewed one by ``revises_version_id``; the reviewed version keeps its
        changes_requested record. Returns the new version (pending_review).
        """
        ensure_json_value(content, field="content")
        digest = content_digest(content)

        with self._unit_of_work() as pending:
            v = self.store.get_by_id(version_id)
            active = self.store.get_active(v.document_id)
            if (
                active is not None
                and active.revises_version_id == v.id
                and active.content_digest == digest
                and active.status == workflow.PENDING_REVIEW
            ):
                return active
            t = workflow.check_resubmit(v, content, digest)
            revision = self.store.get_revision_of(v.id)
            if revision is not None:
                # A review decision is answered once; later changes start from a new draft.
                raise InvalidTransitionError(
                    workflow.RESUBMIT,
                    v.status,
                    version_id=v.id,
                    reason=f"already resubmitted as version {revision.sequence_number}",
                )
            actor = actor_id if actor_id is not None else v.author_id
            link = {"revises_version_id": v.id}

            revision = self.store.create_version(v.document_id, content, actor, revises_version_id=v.id)
            self._record(
                pending,
                revision,
                event=workflow.REVISE,
                notify_as=None,
                from_status=None,
                actor_id=actor,
                metadata=link,
            )
            revision = self.store.apply_transition(revision.id, {"status": t.to_status}, expected_status=workflow.DRAFT)
            self._record(
                pending,
                revision,
                event=t.event,
                notify_as=notifications.SUBMITTED,
                from_status=workflow.DRAFT,
                actor_id=actor,
                comments=notes,
                metadata={**link, "review_comments": v.review_comments},
            )
        return revision

    def publish_version(
        self,
        version_id: int,
        publisher_id: int,
        *,
        release_type: str = "minor",
        change_summary: str | None = None,
    ) -> DocumentVersion:
        with self._unit_of_work() as pending:
            v = self.store.get_by_id(version_id)
            if v.status == workflow.PUBLISHED:
                return v
            t = workflow.check_publish(v)

            self.store.lock_document(v.document_id)
            label = workflow.next_version_label(self.store.latest_version_label(v.document_id), release_type)
            now = utcnow()

            previous = self.store.get_published(v.document_id)
            if previous is not None:
                sup = workflow.check_supersede(previous)
                previous = self.store.apply_transition(
                    previous.id,
                    {"status": sup.to_status, "archived_at": now},
                    expected_status=previous.status,
                )
                self._record(
                    pending,
                    previous,
                    event=sup.event,
                    notify_as=notifications.ARCHIVED,
                    from_status=workflow.PUBLISHED,
                    actor_id=publisher_id,
                    metadata={"superseded_by_version_id": v.id},
                )

            from_status = v.status
            v = self.store.apply_transition(
                v.id,
                {
                    "status": t.to_status,
                    "published_by_id": publisher_id,
                    "published_at": now,
                    "version_label": label,
                    "change_summary": (change_summary or "").strip() or None,
                },
                expected_status=from_status,
            )
            self._record(
                pending,
                v,
                event=t.event,
                notify_as=notifications.PUBLISHED,
                from_status=from_status,
                actor_id=publisher_id,
                comments=change_summary,
                metadata={
                    "version_label": label,
                    "release_type": release_type,
                    "archived_version_id": previous.id if previous is not None else None,
                },
            )
        return v

    def rollback_to_version(self, document_id: int, target_version_id: int, reason: str, user_id: int) -> DocumentVersion:
        """
        Start a new draft carrying the target's content. The target and the
        currently published version are left untouched.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rollback requires a reason.")

        with self._unit_of_work() as pending:
            self.store.get_document(document_id)
            try:
                target = self.store.get_by_id(target_version_id)
            except NotFoundError:
                raise NotFoundError(
                    f"Version {target_version_id} not found in document {document_id}.",
                    details={"version_id": target_version_id, "document_id": document_id},
                ) from None
            workflow.check_rollback(target, document_id)

            active = self.store.get_active(document_id)
            if (
                active is not None
                and active.status == workflow.DRAFT
                and active.supersedes_version_id == target.id
                and active.author_id == user_id
            ):
                return active

            v = self.store.create_version(
                document_id,
                copy.deepcopy(target.content),
                user_id,
                supersedes_version_id=target.id,
            )
            self._record(
                pending,
                v,
                event=workflow.ROLLBACK,
                notify_as=notifications.ROLLED_BACK,
                from_status=None,
                actor_id=user_id,
                comments=reason,
                metadata={
                    "target_version_id": target.id,
                    "target_sequence_number": target.sequence_number,
                    "target_status": target.status,
                },
            )
        return v
