import pytest
from werkzeug.security import generate_password_hash

from app.docflow import create_app
from app.docflow.db import session_scope
from app.docflow.errors import ConflictError, NotFoundError
from app.docflow.models import Base, User
from app.docflow.modules.versioning import integrity
from app.docflow.modules.versioning.models import DocumentVersion
from app.docflow.modules.versioning.service import VersioningService
from app.docflow.modules.versioning.store import VersionStore
from app.docflow.utils import content_digest


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFY_BACKEND", "none")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        s.add_all(
            [
                User(email="author@example.com", password_hash=generate_password_hash("pw"), is_active=True),
                User(email="reviewer@example.com", password_hash=generate_password_hash("pw"), is_active=True),
            ]
        )
    return app


@pytest.fixture()
def s(app):
    s = app.extensions["sqlalchemy_sessionmaker"]()
    yield s
    s.close()


@pytest.fixture()
def author_id(s):
    return s.query(User).filter(User.email == "author@example.com").one().id


@pytest.fixture()
def reviewer_id(s):
    return s.query(User).filter(User.email == "reviewer@example.com").one().id


def test_create_and_fetch_document(s, author_id):
    store = VersionStore(s)
    d = store.create_document(key="sop-001", title="SOP 001", created_by_user_id=author_id)
    s.commit()

    assert store.get_document(d.id).title == "SOP 001"
    assert store.get_document_by_key("sop-001").id == d.id
    assert store.get_document_by_key("nope") is None
    with pytest.raises(NotFoundError):
        store.get_document(d.id + 1)
    with pytest.raises(ConflictError):
        store.create_document(key="sop-001", title="Dup", created_by_user_id=author_id)


def test_create_version_assigns_sequence_and_digest(s, author_id):
    store = VersionStore(s)
    d = store.create_document(key="sop-002", title="SOP 002", created_by_user_id=author_id)
    v = store.create_version(d.id, {"b": 2, "a": 1}, author_id)
    s.commit()

    assert v.sequence_number == 1
    assert v.status == "draft"
    assert v.content_digest == content_digest({"a": 1, "b": 2})
    assert store.get_active(d.id).id == v.id
    assert store.next_sequence_number(d.id) == 2
    assert store.get_published(d.id) is None

    with pytest.raises(ConflictError):
        store.create_version(d.id, "second", author_id)


def test_create_version_for_missing_document(s, author_id):
    with pytest.raises(NotFoundError):
        VersionStore(s).create_version(12345, "x", author_id)


def test_apply_transition_is_conditional_on_status(s, author_id):
    store = VersionStore(s)
    d = store.create_document(key="sop-003", title="SOP 003", created_by_user_id=author_id)
    v = store.create_version(d.id, "body", author_id)
    s.commit()

    v = store.apply_transition(v.id, {"status": "pending_review"}, expected_status="draft")
    assert v.status == "pending_review"
    s.commit()

    with pytest.raises(ConflictError) as exc:
        store.apply_transition(v.id, {"status": "pending_review"}, expected_status="draft")
    assert exc.value.details["status"] == "pending_review"
    s.rollback()

    with pytest.raises(NotFoundError):
        store.apply_transition(99999, {"status": "approved"}, expected_status="pending_review")
    s.rollback()

    # A failed transition leaves the row alone.
    assert store.get_by_id(v.id).status == "pending_review"


def test_history_and_latest_label(s, author_id, reviewer_id):
    svc = VersioningService(s)
    d = svc.create_document("sop-004", "SOP 004", author_id, content="v1")
    v1 = svc.get_version_history(d.id)[0]
    svc.submit_for_review(v1.id)
    svc.approve_version(v1.id, reviewer_id)
    svc.publish_version(v1.id, reviewer_id)
    v2 = svc.create_draft(d.id, "v2", author_id)

    store = VersionStore(s)
    assert [v.id for v in store.get_history(d.id)] == [v2.id, v1.id]
    assert store.latest_version_label(d.id) == "1.0.0"
    assert store.get_published(d.id).id == v1.id
    assert store.get_active(d.id).id == v2.id
    assert [x.key for x in store.list_documents()] == ["sop-004"]


def test_integrity_report_is_clean_for_service_written_data(s, author_id, reviewer_id):
    svc = VersioningService(s)
    d = svc.create_document("sop-005", "SOP 005", author_id, content="v1")
    v1 = svc.get_version_history(d.id)[0]
    svc.submit_for_review(v1.id)
    svc.request_changes(v1.id, reviewer_id, "expand")
    v2 = svc.resubmit(v1.id, "v1 expanded")
    svc.approve_version(v2.id, reviewer_id)
    svc.publish_version(v2.id, reviewer_id)
    v3 = svc.create_draft(d.id, "v3", author_id)
    svc.submit_for_review(v3.id)
    svc.approve_version(v3.id, reviewer_id)
    svc.publish_version(v3.id, reviewer_id)
    svc.rollback_to_version(d.id, v2.id, "v3 regressed", author_id)

    assert integrity.find_violations(s) == []


def test_integrity_report_flags_unaudited_and_drifted_versions(s, author_id, reviewer_id):
    svc = VersioningService(s)
    d = svc.create_document("sop-006", "SOP 006", author_id, content="v1")
    v1 = svc.get_version_history(d.id)[0]

    # Status changed behind the service's back: no audit entry.
    VersionStore(s).apply_transition(v1.id, {"status": "changes_requested"}, expected_status="draft")
    s.add(
        DocumentVersion(
            document_id=d.id,
            sequence_number=2,
            content="manual",
            content_digest=content_digest("manual"),
            status="draft",
            author_id=author_id,
        )
    )
    s.commit()

    kinds = {(v.kind, v.version_id) for v in integrity.find_violations(s)}
    assert ("status_drift", v1.id) in kinds
    assert any(kind == "unaudited" for kind, _ in kinds)
