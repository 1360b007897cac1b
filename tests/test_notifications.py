import io
import json
import logging
import urllib.error

import pytest
from werkzeug.security import generate_password_hash

from app.docflow import create_app, notifications
from app.docflow.db import session_scope
from app.docflow.errors import InvalidTransitionError
from app.docflow.models import Base, User
from app.docflow.modules.versioning.service import VersioningService
from app.docflow.notifications import (
    LogNotifier,
    NotificationError,
    Notifier,
    NullNotifier,
    WebhookNotifier,
    WorkflowEvent,
    notifier_from_config,
)
from app.docflow.utils import utcnow


class CollectingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


class FailingNotifier(Notifier):
    def notify(self, event):
        raise NotificationError("mail server down")


class BrokenNotifier(Notifier):
    """Raises something other than NotificationError on the first event it sees, then records the rest."""

    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)
        if len(self.events) == 1:
            raise ValueError("unexpected payload")


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
def ids(s):
    return {u.email.split("@")[0]: u.id for u in s.query(User).all()}


def _event(**kw):
    base = dict(
        name=notifications.SUBMITTED,
        document_id=1,
        version_id=2,
        actor_id=3,
        from_status="draft",
        to_status="pending_review",
        occurred_at=utcnow(),
    )
    base.update(kw)
    return WorkflowEvent(**base)


def test_events_are_emitted_after_each_committed_transition(s, ids):
    n = CollectingNotifier()
    svc = VersioningService(s, notifier=n)
    d = svc.create_document("policy", "Policy", ids["author"], content="v1")
    v1 = svc.get_version_history(d.id)[0]
    svc.submit_for_review(v1.id)
    svc.approve_version(v1.id, ids["reviewer"])
    svc.publish_version(v1.id, ids["reviewer"])

    v2 = svc.create_draft(d.id, "v2", ids["author"])
    svc.submit_for_review(v2.id)
    svc.request_changes(v2.id, ids["reviewer"], "shorter please")
    v3 = svc.resubmit(v2.id, "v2 short")
    svc.approve_version(v3.id, ids["reviewer"])
    svc.publish_version(v3.id, ids["reviewer"])
    svc.rollback_to_version(d.id, v1.id, "prefer v1", ids["author"])

    assert [e.name for e in n.events] == [
        "created",
        "submitted",
        "approved",
        "published",
        "created",
        "submitted",
        "changes_requested",
        "submitted",
        "approved",
        "archived",
        "published",
        "rolled_back",
    ]
    archived = n.events[9]
    assert (archived.version_id, archived.from_status, archived.to_status) == (v1.id, "published", "archived")
    assert n.events[6].comments == "shorter please"


def test_no_event_for_failed_or_idempotent_calls(s, ids):
    n = CollectingNotifier()
    svc = VersioningService(s, notifier=n)
    d = svc.create_document("policy", "Policy", ids["author"], content="v1")
    v = svc.get_version_history(d.id)[0]
    n.events.clear()

    with pytest.raises(InvalidTransitionError):
        svc.publish_version(v.id, ids["reviewer"])
    svc.submit_for_review(v.id)
    svc.submit_for_review(v.id)
    assert [e.name for e in n.events] == ["submitted"]


def test_notification_failure_does_not_undo_the_transition(s, ids, caplog):
    svc = VersioningService(s, notifier=FailingNotifier())
    d = svc.create_document("policy", "Policy", ids["author"], content="v1")
    v = svc.get_version_history(d.id)[0]

    with caplog.at_level(logging.ERROR, logger="app.docflow.modules.versioning.service"):
        v = svc.submit_for_review(v.id)
    assert v.status == "pending_review"
    s.expire_all()
    assert svc.get_version(v.id).status == "pending_review"
    assert "Notification delivery failed" in caplog.text


def test_event_to_dict_is_json_ready():
    ev = _event(metadata={"version_label": "1.0.0"})
    out = ev.to_dict()
    assert out["event"] == "submitted"
    assert out["metadata"] == {"version_label": "1.0.0"}
    json.dumps(out)


def test_notifier_from_config():
    assert isinstance(notifier_from_config({}), LogNotifier)
    assert isinstance(notifier_from_config({"NOTIFY_BACKEND": "none"}), NullNotifier)
    wh = notifier_from_config(
        {"NOTIFY_BACKEND": "webhook", "NOTIFY_WEBHOOK_URL": "https://hooks.example.com/x", "NOTIFY_TIMEOUT_SECONDS": 3}
    )
    assert isinstance(wh, WebhookNotifier)
    assert wh.timeout_seconds == 3
    with pytest.raises(NotificationError):
        notifier_from_config({"NOTIFY_BACKEND": "webhook"})


class _Resp:
    def __init__(self, body=b"{}"):
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_webhook_posts_event_json(monkeypatch):
    sent = []

    def fake_urlopen(req, timeout=None):
        sent.append((req.full_url, req.get_method(), json.loads(req.data), timeout))
        return _Resp()

    monkeypatch.setattr(notifications.urllib.request, "urlopen", fake_urlopen)
    WebhookNotifier(url="https://hooks.example.com/x", timeout_seconds=4).notify(_event())

    assert len(sent) == 1
    url, method, body, timeout = sent[0]
    assert (url, method, timeout) == ("https://hooks.example.com/x", "POST", 4)
    assert body["event"] == "submitted"
    assert body["version_id"] == 2


def test_webhook_retries_server_errors_then_gives_up(monkeypatch):
    calls = []

    def fake_urlopen(req, timeout=None):
        calls.append(1)
        raise urllib.error.HTTPError(req.full_url, 503, "unavailable", {}, io.BytesIO(b""))

    monkeypatch.setattr(notifications.urllib.request, "urlopen", fake_urlopen)
    monkeypatch.setattr(notifications.time, "sleep", lambda _s: None)

    with pytest.raises(NotificationError):
        WebhookNotifier(url="https://hooks.example.com/x", retries=2).notify(_event())
    assert len(calls) == 3


def test_webhook_does_not_retry_client_errors(monkeypatch):
    calls = []

    def fake_urlopen(req, timeout=None):
        calls.append(1)
        raise urllib.error.HTTPError(req.full_url, 400, "bad request", {}, io.BytesIO(b""))

    monkeypatch.setattr(notifications.urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(NotificationError):
        WebhookNotifier(url="https://hooks.example.com/x").notify(_event())
    assert len(calls) == 1


def test_unexpected_notifier_error_is_logged_and_later_events_still_go_out(s, ids, caplog):
    svc = VersioningService(s)
    d = svc.create_document("policy", "Policy", ids["author"], content="v1")
    v1 = svc.get_version_history(d.id)[0]
    svc.submit_for_review(v1.id)
    svc.approve_version(v1.id, ids["reviewer"])
    svc.publish_version(v1.id, ids["reviewer"])
    v2 = svc.create_draft(d.id, "v2", ids["author"])
    svc.submit_for_review(v2.id)
    svc.approve_version(v2.id, ids["reviewer"])

    n = BrokenNotifier()
    svc.notifier = n
    with caplog.at_level(logging.ERROR, logger="app.docflow.modules.versioning.service"):
        v2 = svc.publish_version(v2.id, ids["reviewer"])

    assert v2.status == "published"
    assert [e.name for e in n.events] == ["archived", "published"]
    assert "Notification delivery failed" in caplog.text
    s.expire_all()
    assert svc.get_version(v1.id).status == "archived"


def test_webhook_with_malformed_url_raises_notification_error(monkeypatch):
    monkeypatch.setattr(notifications.time, "sleep", lambda _s: pytest.fail("no backoff for a bad URL"))
    with pytest.raises(NotificationError):
        WebhookNotifier(url="hooks.example.com/x").notify(_event())


def test_malformed_webhook_url_does_not_fail_the_transition(s, ids):
    svc = VersioningService(s, notifier=WebhookNotifier(url="hooks.example.com/x", retries=0))
    d = svc.create_document("policy", "Policy", ids["author"], content="v1")
    v = svc.get_version_history(d.id)[0]
    assert svc.submit_for_review(v.id).status == "pending_review"


@pytest.mark.parametrize("url", ["hooks.example.com/x", "ftp://hooks.example.com/x", "https://"])
def test_notifier_from_config_rejects_non_http_urls(url):
    with pytest.raises(NotificationError):
        notifier_from_config({"NOTIFY_BACKEND": "webhook", "NOTIFY_WEBHOOK_URL": url})


def test_webhook_backs_off_only_between_attempts(monkeypatch):
    sleeps = []

    def fake_urlopen(req, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(notifications.urllib.request, "urlopen", fake_urlopen)
    monkeypatch.setattr(notifications.time, "sleep", sleeps.append)

    with pytest.raises(NotificationError):
        WebhookNotifier(url="https://hooks.example.com/x", retries=2).notify(_event())
    assert sleeps == [1, 2]
