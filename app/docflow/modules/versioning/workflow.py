"""
Workflow state machine for document versions.

    draft ──submit──> pending_review ──approve──────────> approved ──publish──> published
                           │                                                     │
                           └──request_changes──> changes_requested               └─(system) supersede──> archived
                                                       │
                                                       └──resubmit──> pending_review (as a new version)

Pure rules: nothing here touches the database. Guards raise the typed errors
from ``app.docflow.errors``; the service decides what to persist.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from app.docflow.errors import InvalidTransitionError, NotFoundError, SelfReviewError, ValidationError
from app.docflow.utils import is_blank_content

DRAFT = "draft"
PENDING_REVIEW = "pending_review"
CHANGES_REQUESTED = "changes_requested"
APPROVED = "approved"
PUBLISHED = "published"
ARCHIVED = "archived"

STATUSES = (DRAFT, PENDING_REVIEW, CHANGES_REQUESTED, APPROVED, PUBLISHED, ARCHIVED)

# A document has a single line of in-progress work.
ACTIVE_STATUSES = (DRAFT, PENDING_REVIEW)

# Events that move an existing version.
SUBMIT = "submit"
APPROVE = "approve"
REQUEST_CHANGES = "request_changes"
RESUBMIT = "resubmit"
PUBLISH = "publish"
SUPERSEDE = "supersede"

# Events that create a new version (always in draft).
CREATE = "create"
ROLLBACK = "rollback"
REVISE = "revise"

RELEASE_TYPES = ("major", "minor", "patch")


@dataclass(frozen=True)
class Transition:
    from_status: str
    event: str
    to_status: str
    guard: str | None = None
    system: bool = False


TRANSITIONS: tuple[Transition, ...] = (
    Transition(DRAFT, SUBMIT, PENDING_REVIEW, guard="content non-empty"),
    Transition(PENDING_REVIEW, APPROVE, APPROVED, guard="reviewer is not the author"),
    Transition(PENDING_REVIEW, REQUEST_CHANGES, CHANGES_REQUESTED, guard="comments non-empty"),
    Transition(CHANGES_REQUESTED, RESUBMIT, PENDING_REVIEW, guard="content changed since last review; once per review"),
    Transition(APPROVED, PUBLISH, PUBLISHED, guard="previous published version archived first"),
    Transition(PUBLISHED, SUPERSEDE, ARCHIVED, system=True),
)

_BY_KEY = {(t.from_status, t.event): t for t in TRANSITIONS}


class VersionLike(Protocol):
    id: Any
    document_id: Any
    status: str
    content: Any
    content_digest: str
    author_id: Any


def allowed_events(status: str, *, include_system: bool = False) -> list[str]:
    return [t.event for t in TRANSITIONS if t.from_status == status and (include_system or not t.system)]


def is_terminal(status: str) -> bool:
    """Archived versions accept no further events (they stay readable)."""
    return not any(t.from_status == status for t in TRANSITIONS)


def resolve(status: str, event: str, *, version_id: Any = None) -> Transition:
    t = _BY_KEY.get((status, event))
    if t is None:
        raise InvalidTransitionError(event, status, version_id=version_id)
    return t


def check_submit(version: VersionLike) -> Transition:
    t = resolve(version.status, SUBMIT, version_id=version.id)
    if is_blank_content(version.content):
        raise ValidationError("Cannot submit for review: content is empty.")
    return t


def check_reviewer(version: VersionLike, reviewer_id: Any) -> None:
    # Self-review is a policy violation whatever the current status is.
    if reviewer_id == version.author_id:
        raise SelfReviewError(
            "Reviewer cannot approve their own version.",
            details={"version_id": version.id, "reviewer_id": reviewer_id},
        )


def check_approve(version: VersionLike, reviewer_id: Any) -> Transition:
    check_reviewer(version, reviewer_id)
    return resolve(version.status, APPROVE, version_id=version.id)


def check_request_changes(version: VersionLike, changes: str | None) -> Transition:
    t = resolve(version.status, REQUEST_CHANGES, version_id=version.id)
    if not (changes or "").strip():
        raise ValidationError("Requesting changes requires comments describing the changes.")
    return t


def check_resubmit(version: VersionLike, new_content: Any, new_digest: str) -> Transition:
    t = resolve(version.status, RESUBMIT, version_id=version.id)
    if is_blank_content(new_content):
        raise ValidationError("Cannot resubmit: content is empty.")
    if new_digest == version.content_digest:
        raise ValidationError("Cannot resubmit: content has not changed since the last review.")
    return t


def check_publish(version: VersionLike) -> Transition:
    return resolve(version.status, PUBLISH, version_id=version.id)


def check_supersede(version: VersionLike) -> Transition:
    return resolve(version.status, SUPERSEDE, version_id=version.id)


def check_rollback(target: VersionLike, document_id: Any) -> None:
    """Any version of the document may be a rollback target; it is only read, never moved."""
    if target.document_id != document_id:
        raise NotFoundError(
            f"Version {target.id} does not belong to document {document_id}.",
            details={"version_id": target.id, "document_id": document_id},
        )


def next_version_label(current: str | None, release_type: str = "minor") -> str:
    """
    Semantic label assigned at publish.

    - first publication: "1.0.0" whatever the release type
    - "major": 1.4.2 -> 2.0.0
    - "minor": 1.4.2 -> 1.5.0
    - "patch": 1.4.2 -> 1.4.3
    """
    if release_type not in RELEASE_TYPES:
        raise ValidationError(f"Invalid release type {release_type!r}. Must be one of: {', '.join(RELEASE_TYPES)}")
    cur = (current or "").strip()
    if not cur:
        return "1.0.0"
    parts = cur.split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Unsupported version label: {current!r}")
    major, minor, patch = (int(p) for p in parts)
    if release_type == "major":
        return f"{major + 1}.0.0"
    if release_type == "minor":
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"
