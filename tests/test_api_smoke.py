import json

import pytest
from fastapi.testclient import TestClient

from conftest import auth_headers, make_settings
from examprep.core.container import build_container
from examprep.main import create_app
from examprep.stores.memory import MemoryStore


def make_client(clock, **overrides):
    container = build_container(make_settings(**overrides), store=MemoryStore(), clock=clock)
    return TestClient(create_app(container)), container


def start(client, user_id, count=4):
    r = client.post("/v1/tests", headers=auth_headers(user_id), json={"count": count})
    assert r.status_code == 201, r.text
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_mock_login_token_works(client):
    r = client.post("/v1/auth/mock-login", json={"user_id": "tester", "email": "t@example.com", "name": "Tess"})
    assert r.status_code == 200
    token = r.json()["access_token"]

    r = client.get("/v1/users/me/settings", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert r.json()["email"] == "t@example.com"
    assert r.json()["name"] == "Tess"


def test_requests_without_valid_token_are_rejected(client):
    r = client.get("/v1/tests")
    assert r.status_code == 401
    assert r.json()["error"]["type"] == "unauthorized"

    r = client.get("/v1/tests", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_take_and_abandon_test(client):
    hdr = auth_headers("student")
    test = start(client, "student")
    assert test["status"] == "created"
    assert len(test["questions"]) == 4

    for q, choice in zip(test["questions"][:3], ["B", "B", "A"]):
        r = client.post(f"/v1/tests/{test['id']}/answers", headers=hdr,
                        json={"question_id": q["id"], "choice": choice})
        assert r.status_code == 200
        assert r.json()["correct"] == (choice == "B")
        assert r.json()["explanation"]

    r = client.post(f"/v1/tests/{test['id']}/abandon", headers=hdr)
    assert r.status_code == 200
    assert r.json()["score"] == 67
    assert r.json()["answered"] == 3 and r.json()["correct"] == 2
    assert r.json()["already_completed"] is False

    r = client.get("/v1/performance/stats", headers=hdr)
    assert r.json()["total_tests"] == 1
    assert r.json()["average_score"] == 67
    assert r.json()["study_streak_days"] == 1
    assert r.json()["total_questions_answered"] == 3

    r = client.get("/v1/performance/categories", headers=hdr)
    assert sum(c["total"] for c in r.json()) == 3
    assert sum(c["correct"] for c in r.json()) == 2

    r = client.get("/v1/tests", headers=hdr)
    assert [(t["id"], t["status"], t["score"]) for t in r.json()] == [(test["id"], "completed", 67)]


def test_complete_then_answer_conflicts(client):
    hdr = auth_headers("student")
    test = start(client, "student")

    r = client.post(f"/v1/tests/{test['id']}/complete", headers=hdr, json={"score": 50})
    assert r.status_code == 200 and r.json()["score"] == 50

    r = client.post(f"/v1/tests/{test['id']}/complete", headers=hdr, json={"score": 90})
    assert r.status_code == 200
    assert r.json()["score"] == 50 and r.json()["already_completed"] is True

    r = client.post(f"/v1/tests/{test['id']}/answers", headers=hdr,
                    json={"question_id": test["questions"][0]["id"], "choice": "B"})
    assert r.status_code == 409
    assert r.json()["error"]["type"] == "already_completed"
    assert r.json()["error"]["details"]["score"] == 50


def test_bad_payloads(client):
    hdr = auth_headers("student")
    test = start(client, "student")

    r = client.post(f"/v1/tests/{test['id']}/complete", headers=hdr, json={"score": "abc"})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "validation_error"

    r = client.post(f"/v1/tests/{test['id']}/complete", headers=hdr, json={"score": 150})
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "validation_failed"


def test_other_users_test_is_not_found(client):
    test = start(client, "owner")
    r = client.get(f"/v1/tests/{test['id']}", headers=auth_headers("intruder"))
    assert r.status_code == 404
    assert r.json()["error"]["type"] == "not_found"


def test_free_tier_quota_and_upgrade(client):
    hdr = auth_headers("free-user")
    start(client, "free-user")
    start(client, "free-user")

    r = client.post("/v1/tests", headers=hdr, json={"count": 4})
    assert r.status_code == 403
    error = r.json()["error"]
    assert error["type"] == "quota_exceeded"
    assert error["details"] == {"resource": "tests", "used": 2, "limit": 2, "is_subscribed": False}
    assert "Upgrade to Pro" in error["message"]

    r = client.post("/v1/subscription/checkout", headers=hdr)
    assert "mock-checkout?user=free-user" in r.json()["url"]

    event = {"type": "checkout.session.completed",
             "data": {"object": {"customer": "cus_42", "metadata": {"userId": "free-user"}}}}
    r = client.post("/v1/webhooks/billing", content=json.dumps(event))
    assert r.status_code == 200
    assert r.json() == {"received": True, "outcome": "applied"}

    r = client.get("/v1/subscription/status", headers=hdr)
    assert r.json()["plan"] == "pro"
    assert r.json()["tests_limit"] == "unlimited"
    assert r.json()["stripe_customer_id"] == "cus_42"

    assert start(client, "free-user")["status"] == "created"

    r = client.post("/v1/subscription/portal", headers=hdr)
    assert "mock-portal?customer=cus_42" in r.json()["url"]


def test_billing_webhook_edge_cases(client):
    r = client.post("/v1/webhooks/billing", content=b"not json")
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_webhook"

    event = {"type": "customer.subscription.deleted", "data": {"object": {"customer": "cus_unknown"}}}
    r = client.post("/v1/webhooks/billing", content=json.dumps(event))
    assert r.status_code == 200
    assert r.json()["outcome"] == "unmatched"

    event = {"type": "invoice.paid", "data": {"object": {"customer": "cus_unknown"}}}
    assert client.post("/v1/webhooks/billing", content=json.dumps(event)).json()["outcome"] == "ignored"


def test_portal_without_billing_account(client):
    r = client.post("/v1/subscription/portal", headers=auth_headers("nobody"))
    assert r.status_code == 400


IDENTITY_EVENT = {
    "type": "user.created",
    "data": {"id": "idp_1", "first_name": "Nina", "last_name": "Ortiz",
             "email_addresses": [{"email_address": "nina@example.com"}]},
}


def test_identity_webhook_creates_user(client, container):
    r = client.post("/v1/webhooks/identity", json=IDENTITY_EVENT)
    assert r.status_code == 200
    assert r.json() == {"received": True, "user_id": "idp_1"}

    user = container.store.get_user("idp_1")
    assert user.email == "nina@example.com"
    assert user.name == "Nina Ortiz"

    r = client.post("/v1/webhooks/identity", json={"type": "user.updated", "data": {"id": "idp_1"}})
    assert r.json()["user_id"] is None


def test_identity_webhook_checks_secret(clock):
    client, container = make_client(clock, IDENTITY_WEBHOOK_SECRET="hook-secret")

    r = client.post("/v1/webhooks/identity", json=IDENTITY_EVENT, headers={"X-Webhook-Secret": "wrong"})
    assert r.status_code == 400
    assert container.store.get_user("idp_1") is None

    r = client.post("/v1/webhooks/identity", json=IDENTITY_EVENT, headers={"X-Webhook-Secret": "hook-secret"})
    assert r.status_code == 200


def test_upload_and_generate(client, container):
    hdr = auth_headers("uploader")
    r = client.post("/v1/uploads", headers=hdr,
                    files={"file": ("cardiac.txt", b"Heart failure management notes", "text/plain")})
    assert r.status_code == 201, r.text
    upload = r.json()
    assert upload["status"] == "ready"
    assert upload["content_preview"] == "Heart failure management notes"

    r = client.get("/v1/uploads/entitlement", headers=hdr)
    assert r.json() == {"allowed": True, "used": 1, "limit": 5, "is_subscribed": False}

    r = client.post(f"/v1/uploads/{upload['id']}/tests", headers=hdr, json={"count": 8})
    assert r.status_code == 201
    assert r.json()["upload_id"] == upload["id"]
    assert len(r.json()["questions"]) == 8

    r = client.get("/v1/uploads", headers=hdr)
    assert r.json()["total"] == 1

    r = client.delete(f"/v1/uploads/{upload['id']}", headers=hdr)
    assert r.json() == {"success": True}
    assert client.get(f"/v1/uploads/{upload['id']}", headers=hdr).status_code == 404


def test_upload_rejects_unsupported_type(client):
    r = client.post("/v1/uploads", headers=auth_headers("uploader"),
                    files={"file": ("slides.key", b"data", "application/octet-stream")})
    assert r.status_code == 400
    assert r.json()["error"]["details"] == {"field": "file"}


def test_settings_roundtrip(client):
    hdr = auth_headers("settings-user")
    r = client.get("/v1/users/me/settings", headers=hdr)
    assert r.json()["preferences"] == {"timer_enabled": True, "show_rationales_immediately": True}

    r = client.post("/v1/users/me/settings", headers=hdr,
                    json={"name": "Sam", "preferences": {"timer_enabled": False, "show_rationales_immediately": True}})
    assert r.status_code == 200
    assert r.json()["name"] == "Sam"
    assert r.json()["preferences"]["timer_enabled"] is False

    r = client.post("/v1/users/me/settings", headers=hdr, json={"name": "   "})
    assert r.status_code == 400


def test_rate_limit_headers_and_refusal(clock):
    client, _ = make_client(clock, RATE_LIMIT_AUTHENTICATED_PER_WINDOW=2)
    hdr = auth_headers("busy")

    r = client.get("/v1/performance/stats", headers=hdr)
    assert r.headers["X-RateLimit-Remaining"] == "1"
    client.get("/v1/performance/stats", headers=hdr)

    r = client.get("/v1/performance/stats", headers=hdr)
    assert r.status_code == 429
    assert r.json()["error"]["type"] == "rate_limited"
    assert int(r.headers["Retry-After"]) > 0


@pytest.mark.parametrize("path", ["/v1/tests/entitlement", "/v1/uploads/entitlement"])
def test_entitlement_endpoints(client, path):
    r = client.get(path, headers=auth_headers("fresh"))
    assert r.status_code == 200
    assert r.json()["allowed"] is True and r.json()["used"] == 0


def test_cron_delete_expired_requires_secret(clock):
    client, container = make_client(clock, CRON_SECRET="cron-secret")
    container.uploads.upload("free", "old.txt", b"old")
    clock.advance(days=40)

    assert client.post("/v1/cron/delete-expired").status_code == 401
    r = client.post("/v1/cron/delete-expired", headers={"Authorization": "Bearer cron-secret"})
    assert r.status_code == 200
    assert r.json() == {"success": True, "deleted": 1}
