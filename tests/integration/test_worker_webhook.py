from fastapi.testclient import TestClient

from portfolio_api.routes import worker

SCHEDULER_SECRET = "scheduler-secret"

TRIGGER = {"kind": "publish_blog_post", "groupId": "post-1", "notify": True, "topic": "blog_posts"}


def test_worker_rejects_missing_secret(make_app):
    client = TestClient(make_app(worker))

    response = client.post("/worker/publish", json=TRIGGER)

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid scheduler secret"


def test_worker_rejects_wrong_secret(make_app):
    client = TestClient(make_app(worker))

    response = client.post("/worker/publish", json=TRIGGER, headers={"X-Scheduler-Secret": "nope"})

    assert response.status_code == 401


def test_worker_disabled_without_secret(make_app, container, test_settings):
    container.settings = test_settings.model_copy(update={"SCHEDULER_WEBHOOK_SECRET": None})
    client = TestClient(make_app(worker))

    response = client.post("/worker/publish", json=TRIGGER, headers={"X-Scheduler-Secret": "anything"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Worker webhook disabled"


def test_worker_rejects_unknown_kind(make_app):
    client = TestClient(make_app(worker))

    response = client.post(
        "/worker/publish",
        json={**TRIGGER, "kind": "delete_everything"},
        headers={"X-Scheduler-Secret": SCHEDULER_SECRET},
    )

    assert response.status_code == 400


def test_worker_missing_post_is_404(make_app):
    client = TestClient(make_app(worker))

    response = client.post(
        "/worker/publish",
        json={**TRIGGER, "groupId": "does-not-exist"},
        headers={"X-Scheduler-Secret": SCHEDULER_SECRET},
    )

    assert response.status_code == 404
    assert response.json() == {"error": "Blog post not found"}


def test_worker_checks_secret_before_validating_body(make_app):
    client = TestClient(make_app(worker))

    malformed = client.post("/worker/publish", content=b"{not json", headers={"X-Scheduler-Secret": "nope"})
    incomplete = client.post("/worker/publish", json={"kind": "publish_blog_post"})

    assert malformed.status_code == 401
    assert incomplete.status_code == 401
    assert incomplete.json()["detail"] == "Invalid scheduler secret"


def test_worker_validates_body_once_authenticated(make_app):
    client = TestClient(make_app(worker))
    headers = {"X-Scheduler-Secret": SCHEDULER_SECRET}

    malformed = client.post("/worker/publish", content=b"{not json", headers=headers)
    incomplete = client.post("/worker/publish", json={"kind": "publish_blog_post"}, headers=headers)

    assert malformed.status_code == 400
    assert incomplete.status_code == 422
