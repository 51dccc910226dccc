import json
from datetime import datetime, timedelta, timezone

import models
import webhook_worker
from conftest import STAFF_ID, TestingSessionLocal, auth_headers
from webhook_service import verify_signature


def create_webhook(client, festival_id, events=("wallet.topup",), **extra):
    body = {"name": "Accounting", "url": "https://hooks.example.com/in", "events": list(events)}
    body.update(extra)
    return client.post(f"/api/v1/festivals/{festival_id}/webhooks", json=body, headers=auth_headers())


def fund_wallet(client, festival_id, amount=10):
    wallet = client.post(
        f"/api/v1/me/wallets/{festival_id}", headers=auth_headers("attendee-1", "attendee")
    ).json()
    client.post(
        f"/api/v1/wallets/{wallet['id']}/topup", json={"amount": amount}, headers=auth_headers(STAFF_ID, "staff")
    )
    return wallet


def test_create_webhook_returns_secret_once(client, festival):
    response = create_webhook(client, festival.id)

    assert response.status_code == 201
    created = response.json()
    assert created["secret"].startswith("whsec_")
    assert created["is_active"] is True

    fetched = client.get(f"/api/v1/webhooks/{created['id']}", headers=auth_headers()).json()
    assert "secret" not in fetched
    listed = client.get(f"/api/v1/festivals/{festival.id}/webhooks", headers=auth_headers()).json()
    assert [w["id"] for w in listed] == [created["id"]]


def test_create_webhook_validation(client, festival):
    assert create_webhook(client, festival.id, events=["nope"]).json()["code"] == "INVALID_EVENT"
    assert create_webhook(client, festival.id, events=[]).status_code == 422
    assert create_webhook(client, festival.id, url="not a url").status_code == 422
    assert create_webhook(client, "missing").status_code == 404


def test_staff_cannot_manage_webhooks(client, festival):
    response = client.get(f"/api/v1/festivals/{festival.id}/webhooks", headers=auth_headers(STAFF_ID, "staff"))

    assert response.status_code == 403


def test_update_regenerate_and_delete(client, festival):
    webhook = create_webhook(client, festival.id).json()
    url = f"/api/v1/webhooks/{webhook['id']}"

    response = client.patch(url, json={"events": ["refund.processed"], "is_active": False}, headers=auth_headers())
    assert response.json()["events"] == ["refund.processed"]
    assert response.json()["is_active"] is False
    assert response.json()["name"] == "Accounting"

    secret = client.post(f"{url}/regenerate-secret", headers=auth_headers()).json()["secret"]
    assert secret.startswith("whsec_")
    assert secret != webhook["secret"]

    assert client.delete(url, headers=auth_headers()).status_code == 204
    assert client.get(url, headers=auth_headers()).status_code == 404


def test_test_endpoint_sends_signed_ping(client, festival, webhook_requests):
    webhook = create_webhook(client, festival.id).json()

    response = client.post(f"/api/v1/webhooks/{webhook['id']}/test", json={}, headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["status_code"] == 200
    request = webhook_requests[0]
    assert request.headers["X-Webhook-Event"] == "test.ping"
    assert verify_signature(request.content.decode(), request.headers["X-Webhook-Signature"], webhook["secret"])


def test_failed_delivery_is_logged_and_retried(client, festival, webhook_requests, webhook_status):
    webhook = create_webhook(client, festival.id).json()
    webhook_status["code"] = 500
    fund_wallet(client, festival.id)

    deliveries = client.get(f"/api/v1/webhooks/{webhook['id']}/deliveries", headers=auth_headers()).json()
    assert deliveries["meta"]["total"] == 1
    delivery = deliveries["data"][0]
    assert delivery["status"] == "RETRYING"
    assert delivery["attempt_count"] == 1
    assert delivery["last_error"] == "HTTP 500"
    assert delivery["next_retry_at"] is not None

    attempts = client.get(f"/api/v1/webhook-deliveries/{delivery['id']}/attempts", headers=auth_headers()).json()
    assert [(a["attempt_number"], a["success"], a["status_code"]) for a in attempts] == [(1, False, 500)]

    webhook_status["code"] = 200
    response = client.post(f"/api/v1/webhook-deliveries/{delivery['id']}/retry", headers=auth_headers())
    assert response.status_code == 200
    assert response.json()["status"] == "DELIVERED"

    response = client.post(f"/api/v1/webhook-deliveries/{delivery['id']}/retry", headers=auth_headers())
    assert response.status_code == 400
    assert response.json()["code"] == "DELIVERY_ALREADY_DELIVERED"

    assert json.loads(webhook_requests[-1].content)["event"] == "wallet.topup"


def test_inactive_webhook_receives_nothing(client, festival, webhook_requests):
    webhook = create_webhook(client, festival.id).json()
    client.patch(f"/api/v1/webhooks/{webhook['id']}", json={"is_active": False}, headers=auth_headers())

    fund_wallet(client, festival.id)

    assert webhook_requests == []


def test_unknown_delivery(client, db_session):
    response = client.get("/api/v1/webhook-deliveries/missing/attempts", headers=auth_headers())

    assert response.status_code == 404


def test_worker_processes_due_retries(client, festival, db_session, webhook_sender, webhook_status):
    webhook = create_webhook(client, festival.id).json()
    webhook_status["code"] = 502
    fund_wallet(client, festival.id)

    delivery = db_session.query(models.WebhookDelivery).filter_by(webhook_id=webhook["id"]).one()
    assert delivery.status == "RETRYING"
    delivery.next_retry_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db_session.commit()

    webhook_status["code"] = 200
    processed = webhook_worker.run_once(TestingSessionLocal, sender=webhook_sender)

    assert processed == 1
    db_session.expire_all()
    delivery = db_session.query(models.WebhookDelivery).filter_by(webhook_id=webhook["id"]).one()
    assert delivery.status == "DELIVERED"
    assert delivery.attempt_count == 2


def test_worker_uses_configured_batch_size(client, festival, db_session, webhook_sender, webhook_status, monkeypatch):
    webhook = create_webhook(client, festival.id).json()
    webhook_status["code"] = 502
    fund_wallet(client, festival.id)
    delivery = db_session.query(models.WebhookDelivery).filter_by(webhook_id=webhook["id"]).one()
    delivery.next_retry_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db_session.commit()

    monkeypatch.setattr(webhook_worker.config, "WEBHOOK_RETRY_BATCH_SIZE", 0)
    assert webhook_worker.run_once(TestingSessionLocal, sender=webhook_sender) == 0

    monkeypatch.setattr(webhook_worker.config, "WEBHOOK_RETRY_BATCH_SIZE", 10)
    assert webhook_worker.run_once(TestingSessionLocal, sender=webhook_sender) == 1
