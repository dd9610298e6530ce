from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from notifier.main import app
from notifier.services.linking import LinkingService, get_linking_service
from notifier.services.repository import PendingLinkState


@pytest.fixture
def link_client(repository, mailer, clock) -> TestClient:
    service = LinkingService(repository, mailer, max_attempts=5, clock=clock)
    app.dependency_overrides[get_linking_service] = lambda: service

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def test_request_then_verify(link_client: TestClient, repository, mailer) -> None:
    response = link_client.post("/api/link/request", json={"email": "dana@example.com", "channel_id": 4242})
    assert response.status_code == 200
    assert response.json() == {"ok": True}

    response = link_client.post(
        "/api/link/verify-code",
        json={"email": "dana@example.com", "channel_id": "4242", "code": mailer.last_code},
    )
    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert repository.identities["dana@example.com"]["channel_id"] == "4242"


def test_request_for_already_linked_email_still_answers_ok(link_client: TestClient, repository, mailer) -> None:
    repository.identities["dana@example.com"] = {"email": "dana@example.com", "channel_id": "1", "verified": True}
    response = link_client.post("/api/link/request", json={"email": "dana@example.com", "channel_id": "1"})
    assert response.status_code == 200
    assert response.json()["ok"] is True


@pytest.mark.parametrize(
    "body",
    [{}, {"email": "dana"}, {"email": "dana@example.com"}, {"email": "dana@example.com", "channel_id": "x1"}],
)
def test_request_rejects_bad_shape(link_client: TestClient, body) -> None:
    response = link_client.post("/api/link/request", json=body)
    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "invalid input"}


def test_non_object_body_is_invalid_input(link_client: TestClient) -> None:
    response = link_client.post("/api/link/request", content=b"[1, 2]", headers={"content-type": "application/json"})
    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "invalid input"}


def test_mail_failure_is_internal_error(link_client: TestClient, mailer) -> None:
    mailer.fail = True
    response = link_client.post("/api/link/request", json={"email": "dana@example.com", "channel_id": "1"})
    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "internal"}


def test_verify_failure_reasons(link_client: TestClient, repository, mailer, clock) -> None:
    body = {"email": "dana@example.com", "channel_id": "7"}

    response = link_client.post("/api/link/verify-code", json={**body, "code": "123456"})
    assert response.status_code == 400
    assert response.json()["error"] == "no pending request"

    response = link_client.post("/api/link/verify-code", json={**body, "code": "12345"})
    assert response.json()["error"] == "invalid input"

    link_client.post("/api/link/request", json=body)
    wrong = f"{(int(mailer.last_code) + 1) % 1_000_000:06d}"
    errors = [link_client.post("/api/link/verify-code", json={**body, "code": wrong}).json()["error"] for _ in range(5)]
    assert errors == ["invalid code"] * 5

    response = link_client.post("/api/link/verify-code", json={**body, "code": mailer.last_code})
    assert response.status_code == 400
    assert response.json()["error"] == "locked"

    link_client.post("/api/link/request", json=body)
    clock.advance(minutes=11)
    response = link_client.post("/api/link/verify-code", json={**body, "code": mailer.last_code})
    assert response.json()["error"] == "expired"
    assert repository.pending_links[-1].state is PendingLinkState.EXPIRED


def test_verify_database_failure_is_internal_error(link_client: TestClient, repository, mailer) -> None:
    body = {"email": "dana@example.com", "channel_id": "7"}
    link_client.post("/api/link/request", json=body)
    repository.fail_commit = True

    response = link_client.post("/api/link/verify-code", json={**body, "code": mailer.last_code})
    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "internal"}
    assert repository.pending_links[0].state is PendingLinkState.PENDING
