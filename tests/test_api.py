import pytest
from werkzeug.security import generate_password_hash

from app.docflow import auth, create_app
from app.docflow.db import session_scope
from app.docflow.models import Base, Permission, Role, User

ROLE_PERMS = {
    "admin": ("docs.view", "docs.create", "docs.submit", "docs.review", "docs.publish", "docs.rollback"),
    "author": ("docs.view", "docs.create", "docs.submit"),
    "reviewer": ("docs.view", "docs.review"),
    "publisher": ("docs.view", "docs.publish", "docs.rollback"),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFY_BACKEND", "none")
    auth._login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=key) for key in ROLE_PERMS["admin"]}
        s.add_all(perms.values())
        for role_key, keys in ROLE_PERMS.items():
            r = Role(key=role_key, name=role_key.title())
            r.permissions.extend(perms[k] for k in keys)
            u = User(email=f"{role_key}@example.com", password_hash=generate_password_hash("pw"), is_active=True)
            u.roles.append(r)
            s.add_all([r, u])
    return app


def _login(app, who):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": f"{who}@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["ok"] is True
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrf_token"]
    return c


def _create_doc(client, key="handbook", content=None):
    r = client.post("/api/documents", json={"key": key, "title": "Handbook", "content": content or {"body": "v1"}})
    assert r.status_code == 201, r.json
    return r.json["document"], r.json["versions"][0]


def test_api_requires_login(app):
    c = app.test_client()
    r = c.get("/api/documents")
    assert r.status_code == 401
    assert r.json["error"] == "unauthenticated"


def test_api_requires_csrf_token_for_writes(app):
    c = _login(app, "author")
    del c.environ_base["HTTP_X_CSRF_TOKEN"]
    r = c.post("/api/documents", json={"key": "k", "title": "T"})
    assert r.status_code == 400
    assert r.json["error"] == "csrf"


def test_api_enforces_permissions(app):
    reviewer = _login(app, "reviewer")
    r = reviewer.post("/api/documents", json={"key": "k", "title": "T"})
    assert r.status_code == 403
    assert r.json["error"] == "forbidden"


def test_review_and_publish_through_the_api(app):
    author = _login(app, "author")
    reviewer = _login(app, "reviewer")
    publisher = _login(app, "publisher")

    doc, v = _create_doc(author)
    assert v["status"] == "draft"
    assert v["sequence_number"] == 1

    r = author.post(f"/api/versions/{v['id']}/submit", json={"notes": "ready"})
    assert r.status_code == 200
    assert r.json["version"]["status"] == "pending_review"

    r = reviewer.post(f"/api/versions/{v['id']}/approve", json={"comments": "looks right"})
    assert r.status_code == 200
    assert r.json["version"]["status"] == "approved"

    r = author.get(f"/api/versions/{v['id']}")
    assert r.json["allowed_events"] == ["publish"]
    assert r.json["terminal"] is False
    review = r.json["latest_review"]
    assert review["event"] == "approve"
    assert review["comments"] == "looks right"
    assert review["actor_id"] == r.json["version"]["reviewer_id"]

    r = publisher.post(f"/api/versions/{v['id']}/publish", json={"release_type": "major", "change_summary": "first"})
    assert r.status_code == 200
    assert r.json["version"]["status"] == "published"
    assert r.json["version"]["version_label"] == "1.0.0"

    r = author.get(f"/api/documents/{doc['id']}")
    assert r.status_code == 200
    assert r.json["document"]["published_version"]["id"] == v["id"]

    r = author.get("/api/documents")
    assert [d["key"] for d in r.json["documents"]] == ["handbook"]

    r = author.get(f"/api/versions/{v['id']}/audit")
    assert [e["event"] for e in r.json["entries"]] == ["create", "submit", "approve", "publish"]
    assert r.json["entries"][2]["comments"] == "looks right"


def test_request_changes_and_resubmit_through_the_api(app):
    author = _login(app, "author")
    reviewer = _login(app, "reviewer")

    doc, v = _create_doc(author)
    author.post(f"/api/versions/{v['id']}/submit")

    r = reviewer.post(f"/api/versions/{v['id']}/request-changes", json={"changes": ""})
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"

    r = reviewer.post(
        f"/api/versions/{v['id']}/request-changes",
        json={"changes": "fix typo", "inline_comments": [{"line": 3, "note": "teh"}]},
    )
    assert r.status_code == 200
    assert r.json["version"]["status"] == "changes_requested"
    assert r.json["version"]["inline_comments"] == [{"line": 3, "note": "teh"}]

    r = author.post(f"/api/versions/{v['id']}/resubmit", json={"content": {"body": "v1 fixed"}})
    assert r.status_code == 201
    revision = r.json["version"]
    assert revision["status"] == "pending_review"
    assert revision["revises_version_id"] == v["id"]

    r = author.get(f"/api/documents/{doc['id']}/versions")
    assert [x["id"] for x in r.json["versions"]] == [revision["id"], v["id"]]
    assert "content" not in r.json["versions"][0]
    r = author.get(f"/api/documents/{doc['id']}/versions?content=1")
    assert r.json["versions"][0]["content"] == {"body": "v1 fixed"}


def test_self_approval_is_forbidden(app):
    admin = _login(app, "admin")
    _, v = _create_doc(admin)
    admin.post(f"/api/versions/{v['id']}/submit")

    r = admin.post(f"/api/versions/{v['id']}/approve")
    assert r.status_code == 403
    assert r.json["error"] == "self_review"

    r = admin.get(f"/api/versions/{v['id']}")
    assert r.json["version"]["status"] == "pending_review"
    assert r.json["latest_review"] is None
    assert r.json["allowed_events"] == ["approve", "request_changes"]


def test_publishing_a_draft_is_an_invalid_transition(app):
    author = _login(app, "author")
    publisher = _login(app, "publisher")
    _, v = _create_doc(author)

    r = publisher.post(f"/api/versions/{v['id']}/publish")
    assert r.status_code == 409
    assert r.json["error"] == "invalid_transition"
    assert r.json["details"]["status"] == "draft"

    r = author.get(f"/api/versions/{v['id']}/audit")
    assert [e["event"] for e in r.json["entries"]] == ["create"]


def test_second_draft_conflicts(app):
    author = _login(app, "author")
    doc, _ = _create_doc(author)

    r = author.post(f"/api/documents/{doc['id']}/versions", json={"content": {"body": "other"}})
    assert r.status_code == 409
    assert r.json["error"] == "conflict"

    r = author.post(f"/api/documents/{doc['id']}/versions", json={})
    assert r.status_code == 400


def test_rollback_through_the_api(app):
    author = _login(app, "author")
    reviewer = _login(app, "reviewer")
    publisher = _login(app, "publisher")

    doc, v1 = _create_doc(author)
    author.post(f"/api/versions/{v1['id']}/submit")
    reviewer.post(f"/api/versions/{v1['id']}/approve")
    publisher.post(f"/api/versions/{v1['id']}/publish")

    r = author.post(f"/api/documents/{doc['id']}/versions", json={"content": {"body": "v2 broken"}})
    v2 = r.json["version"]
    author.post(f"/api/versions/{v2['id']}/submit")
    reviewer.post(f"/api/versions/{v2['id']}/request-changes", json={"changes": "broken"})

    r = publisher.post(f"/api/documents/{doc['id']}/rollback", json={"target_version_id": "1"})
    assert r.status_code == 400

    r = publisher.post(f"/api/documents/{doc['id']}/rollback", json={"target_version_id": v1["id"]})
    assert r.status_code == 400  # reason required

    r = publisher.post(
        f"/api/documents/{doc['id']}/rollback",
        json={"target_version_id": v1["id"], "reason": "v2 is broken"},
    )
    assert r.status_code == 201
    v3 = r.json["version"]
    assert v3["status"] == "draft"
    assert v3["supersedes_version_id"] == v1["id"]
    assert v3["content"] == {"body": "v1"}

    r = author.get(f"/api/versions/{v1['id']}")
    assert r.json["version"]["status"] == "published"

    r = author.get(f"/api/documents/{doc['id']}/audit")
    assert [e["event"] for e in r.json["entries"]][-1] == "rollback"


def test_unknown_ids_return_json_404(app):
    author = _login(app, "author")
    r = author.get("/api/versions/9999")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"

    r = author.get("/api/documents/9999/versions")
    assert r.status_code == 404

    r = author.get("/api/nothing-here")
    assert r.status_code == 404
    assert r.json["ok"] is False
