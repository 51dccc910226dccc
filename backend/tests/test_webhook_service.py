import json
import time
from unittest.mock import MagicMock

import httpx
import pytest

import models
import schemas
from errors import BadRequestError, DeliveryAlreadyDeliveredError, NotFoundError
from webhook_service import (
    SendResult,
    WebhookSender,
    WebhookService,
    calculate_backoff,
    generate_secret,
    generate_signature,
    verify_signature,
)

SECRET = "whsec_" + "ab" * 32
PAYLOAD = '{"id":"evt-1","event":"wallet.topup","data":{"amount":10}}'


def make_webhook(**overrides) -> models.Webhook:
    values = {
        "id": "hook-1",
        "festival_id": "fest-1",
        "name": "Accounting",
        "url": "https://hooks.example.com/festival",
        "secret": SECRET,
        "events": ["wallet.topup"],
        "is_active": True,
        "max_retries": 3,
        "failure_count": 2,
    }
    values.update(overrides)
    return models.Webhook(**values)


def make_delivery(**overrides) -> models.WebhookDelivery:
    values = {
        "id": "delivery-1",
        "webhook_id": "hook-1",
        "festival_id": "fest-1",
        "event": "wallet.topup",
        "event_id": "evt-1",
        "payload": PAYLOAD,
        "signature": "",
        "status": "PENDING",
        "attempt_count": 0,
        "max_attempts": 3,
    }
    values.update(overrides)
    return models.WebhookDelivery(**values)


@pytest.fixture
def repo():
    return MagicMock()


@pytest.fixture
def sender():
    sender = MagicMock()
    sender.send.return_value = SendResult(True, 200, "ok", 12)
    return sender


@pytest.fixture
def service(repo, sender):
    return WebhookService(repo, sender=sender, default_max_retries=5)


def test_signature_round_trip():
    now = int(time.time())
    header = generate_signature(PAYLOAD, SECRET, now)

    assert header.startswith(f"t={now},v1=")
    assert len(header.split("v1=")[1]) == 64
    assert verify_signature(PAYLOAD, header, SECRET)


@pytest.mark.parametrize(
    "payload, secret",
    [
        (PAYLOAD.replace("10", "1000"), SECRET),
        (PAYLOAD, "whsec_other"),
    ],
)
def test_signature_rejects_tampering(payload, secret):
    header = generate_signature(PAYLOAD, SECRET, int(time.time()))

    assert not verify_signature(payload, header, secret)


def test_signature_rejects_stale_timestamp():
    timestamp = int(time.time()) - 600
    header = generate_signature(PAYLOAD, SECRET, timestamp)

    assert not verify_signature(PAYLOAD, header, SECRET, tolerance_seconds=300)
    assert verify_signature(PAYLOAD, header, SECRET, tolerance_seconds=900)


def test_signature_rejects_future_timestamp():
    now = 1_700_000_000
    header = generate_signature(PAYLOAD, SECRET, now + 3600)

    assert not verify_signature(PAYLOAD, header, SECRET, now=now)
    assert verify_signature(PAYLOAD, generate_signature(PAYLOAD, SECRET, now + 60), SECRET, now=now)


@pytest.mark.parametrize("header", ["", "garbage", "t=abc,v1=00", "v1=abcdef", "t=123"])
def test_signature_rejects_malformed_header(header):
    assert not verify_signature(PAYLOAD, header, SECRET)


@pytest.mark.parametrize(
    "attempt, low, high",
    [
        (1, 10.0, 11.0),
        (2, 20.0, 22.0),
        (3, 40.0, 44.0),
        (5, 160.0, 176.0),
        (6, 300.0, 300.0),
        (12, 300.0, 300.0),
    ],
)
def test_backoff_bounds(attempt, low, high):
    for _ in range(20):
        assert low <= calculate_backoff(attempt) <= high


def test_generate_secret_format():
    secret = generate_secret()

    assert secret.startswith("whsec_")
    assert len(secret) == len("whsec_") + 64
    assert secret != generate_secret()


def test_create_webhook_rejects_unknown_event(service, repo):
    req = schemas.WebhookCreate(name="x", url="https://example.com/hook", events=["wallet.topup", "party.started"])

    with pytest.raises(BadRequestError, match="party.started"):
        service.create_webhook("fest-1", req)
    repo.create_webhook.assert_not_called()


def test_create_webhook_generates_secret_and_defaults(service, repo):
    req = schemas.WebhookCreate(
        name="Accounting", url="https://example.com/hook", events=["wallet.topup", "wallet.topup", "refund.processed"]
    )

    webhook = service.create_webhook("fest-1", req)

    assert webhook.secret.startswith("whsec_")
    assert webhook.events == ["wallet.topup", "refund.processed"]
    assert webhook.max_retries == 5
    assert webhook.is_active is True
    repo.create_webhook.assert_called_once_with(webhook)


def test_process_delivery_success_resets_failures(service, repo, sender):
    webhook = make_webhook()
    delivery = make_delivery()
    repo.get_delivery_by_id.return_value = delivery
    repo.get_webhook_by_id.return_value = webhook

    service.process_delivery("delivery-1")

    assert delivery.status == "DELIVERED"
    assert delivery.delivered_at is not None
    assert delivery.attempt_count == 1
    assert webhook.failure_count == 0
    assert verify_signature(PAYLOAD, delivery.signature, SECRET)
    attempt = repo.create_attempt.call_args[0][0]
    assert attempt.attempt_number == 1
    assert attempt.success is True
    assert attempt.status_code == 200


def test_process_delivery_failure_schedules_retry(service, repo, sender):
    sender.send.return_value = SendResult(False, 503, "busy", 40, "HTTP 503")
    delivery = make_delivery()
    repo.get_delivery_by_id.return_value = delivery
    repo.get_webhook_by_id.return_value = make_webhook()

    service.process_delivery("delivery-1")

    assert delivery.status == "RETRYING"
    assert delivery.attempt_count == 1
    assert delivery.next_retry_at is not None
    assert delivery.last_error == "HTTP 503"


def test_process_delivery_fails_after_max_attempts(service, repo, sender):
    sender.send.return_value = SendResult(False, None, None, 5, "connection refused")
    webhook = make_webhook(failure_count=2)
    delivery = make_delivery(attempt_count=2, max_attempts=3, status="RETRYING")
    repo.get_delivery_by_id.return_value = delivery
    repo.get_webhook_by_id.return_value = webhook

    service.process_delivery("delivery-1")

    assert delivery.status == "FAILED"
    assert delivery.attempt_count == 3
    assert delivery.next_retry_at is None
    assert webhook.failure_count == 3


@pytest.mark.parametrize(
    "webhook, error",
    [
        (None, "webhook not found"),
        (make_webhook(is_active=False), "webhook is not active"),
    ],
)
def test_process_delivery_without_usable_webhook(service, repo, sender, webhook, error):
    delivery = make_delivery()
    repo.get_delivery_by_id.return_value = delivery
    repo.get_webhook_by_id.return_value = webhook

    service.process_delivery("delivery-1")

    assert delivery.status == "FAILED"
    assert delivery.last_error == error
    sender.send.assert_not_called()


def test_process_delivery_unknown(service, repo):
    repo.get_delivery_by_id.return_value = None

    with pytest.raises(NotFoundError):
        service.process_delivery("missing")


def test_retry_delivery_rejects_delivered(service, repo):
    repo.get_delivery_by_id.return_value = make_delivery(status="DELIVERED")

    with pytest.raises(DeliveryAlreadyDeliveredError):
        service.retry_delivery("delivery-1")


def test_retry_delivery_resets_and_sends(service, repo, sender):
    delivery = make_delivery(status="FAILED", attempt_count=3, last_error="HTTP 500")
    repo.get_delivery_by_id.return_value = delivery
    repo.get_webhook_by_id.return_value = make_webhook()

    service.retry_delivery("delivery-1")

    assert delivery.status == "DELIVERED"
    assert delivery.attempt_count == 1
    assert delivery.last_error is None


def test_dispatch_event_creates_one_delivery_per_webhook(service, repo, sender):
    repo.get_active_webhooks_for_event.return_value = [make_webhook(id="hook-1"), make_webhook(id="hook-2")]

    deliveries = service.dispatch_event("fest-1", "wallet.topup", {"amount": 10})

    assert [d.webhook_id for d in deliveries] == ["hook-1", "hook-2"]
    assert deliveries[0].event_id == deliveries[1].event_id
    body = json.loads(deliveries[0].payload)
    assert body["event"] == "wallet.topup"
    assert body["festival_id"] == "fest-1"
    assert body["data"] == {"amount": 10}
    assert sender.send.call_count == 2


def test_dispatch_event_without_subscribers(service, repo, sender):
    repo.get_active_webhooks_for_event.return_value = []

    assert service.dispatch_event("fest-1", "ticket.sold", {}) == []
    repo.create_delivery.assert_not_called()


def test_process_retry_deliveries(service, repo):
    due = [make_delivery(id="d-1", status="RETRYING"), make_delivery(id="d-2", status="RETRYING")]
    repo.get_deliveries_for_retry.return_value = due
    repo.get_delivery_by_id.side_effect = lambda delivery_id: next(d for d in due if d.id == delivery_id)
    repo.get_webhook_by_id.return_value = make_webhook()

    assert service.process_retry_deliveries(limit=10) == 2
    assert [d.status for d in due] == ["DELIVERED", "DELIVERED"]


def test_test_webhook_sends_signed_ping(service, repo, sender):
    repo.get_webhook_by_id.return_value = make_webhook()

    result = service.test_webhook("hook-1")

    assert result.success
    url, payload, signature, event, _ = sender.send.call_args[0]
    assert url == "https://hooks.example.com/festival"
    assert event == "test.ping"
    assert json.loads(payload)["data"]["test"] is True
    assert verify_signature(payload, signature, SECRET)
    repo.create_delivery.assert_not_called()


# Sender over a mocked transport


def test_sender_sets_webhook_headers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    sender = WebhookSender(client=httpx.Client(transport=httpx.MockTransport(handler)))
    result = sender.send("https://example.com/hook", PAYLOAD, "t=1,v1=abc", "wallet.topup", "evt-1")

    assert result.success
    assert result.status_code == 204
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Webhook-Signature"] == "t=1,v1=abc"
    assert request.headers["X-Webhook-Event"] == "wallet.topup"
    assert request.headers["X-Webhook-ID"] == "evt-1"
    assert request.content == PAYLOAD.encode()


def test_sender_reports_http_errors():
    sender = WebhookSender(
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")))
    )

    result = sender.send("https://example.com/hook", PAYLOAD, "sig", "wallet.topup", "evt-1")

    assert not result.success
    assert result.status_code == 500
    assert result.response_body == "boom"
    assert result.error == "HTTP 500"


def test_sender_reports_connection_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    sender = WebhookSender(client=httpx.Client(transport=httpx.MockTransport(handler)))

    result = sender.send("https://example.com/hook", PAYLOAD, "sig", "wallet.topup", "evt-1")

    assert not result.success
    assert result.status_code is None
    assert "connection refused" in result.error
