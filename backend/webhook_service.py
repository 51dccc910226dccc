import json
import logging
import random
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

import config
import models
import schemas
from database import page_bounds
from errors import BadRequestError, DeliveryAlreadyDeliveredError, NotFoundError
from security import sign_value, verify_signed_value

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "ticket.sold",
    "ticket.scanned",
    "ticket.transferred",
    "wallet.topup",
    "wallet.transaction",
    "refund.requested",
    "refund.processed",
    "festival.updated",
    "lineup.changed",
    "test.ping",
)

SECRET_PREFIX = "whsec_"
SIGNATURE_TOLERANCE_SECONDS = 300
RESPONSE_BODY_LIMIT = 10 * 1024

BACKOFF_BASE_SECONDS = 10.0
BACKOFF_MAX_SECONDS = 300.0
BACKOFF_MULTIPLIER = 2.0


def generate_secret() -> str:
    return SECRET_PREFIX + secrets.token_hex(32)


def generate_signature(payload: str, secret: str, timestamp: int) -> str:
    """Signature header value ``t=<unix>,v1=<hex>``.

    The HMAC-SHA256 covers ``"<unix>.<payload>"`` so a receiver can reject
    replayed bodies by checking the timestamp.
    """
    digest = sign_value(f"{timestamp}.{payload}", secret)
    return f"t={timestamp},v1={digest}"


def verify_signature(
    payload: str,
    header: str,
    secret: str,
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[int] = None,
) -> bool:
    parts = {}
    for item in header.split(","):
        key, sep, value = item.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    try:
        timestamp = int(parts["t"])
        signature = parts["v1"]
    except (KeyError, ValueError):
        return False

    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        return False
    return verify_signed_value(f"{timestamp}.{payload}", signature, secret)


def calculate_backoff(
    attempt: int,
    base_seconds: float = BACKOFF_BASE_SECONDS,
    max_seconds: float = BACKOFF_MAX_SECONDS,
    multiplier: float = BACKOFF_MULTIPLIER,
) -> float:
    delay = base_seconds * multiplier ** max(attempt - 1, 0)
    # up to 10% jitter so failing endpoints are not retried in lockstep
    delay += delay * 0.1 * random.random()
    return min(delay, max_seconds)


def build_payload(event_id: str, event: str, festival_id: str, data: dict, timestamp: int) -> str:
    body = {
        "id": event_id,
        "event": event,
        "festival_id": festival_id,
        "timestamp": datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(),
        "data": data,
    }
    return json.dumps(body, default=str)


@dataclass
class SendResult:
    success: bool
    status_code: Optional[int]
    response_body: Optional[str]
    response_time_ms: int
    error: Optional[str] = None


class WebhookSender:
    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = config.WEBHOOK_TIMEOUT_SECONDS):
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, url: str, payload: str, signature: str, event: str, event_id: str) -> SendResult:
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": signature,
            "X-Webhook-Event": event,
            "X-Webhook-ID": event_id,
        }
        started = time.perf_counter()
        try:
            response = self.client.post(url, content=payload.encode("utf-8"), headers=headers)
        except httpx.HTTPError as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            return SendResult(False, None, None, elapsed, str(exc) or exc.__class__.__name__)

        elapsed = int((time.perf_counter() - started) * 1000)
        success = 200 <= response.status_code < 300
        return SendResult(
            success=success,
            status_code=response.status_code,
            response_body=response.text[:RESPONSE_BODY_LIMIT],
            response_time_ms=elapsed,
            error=None if success else f"HTTP {response.status_code}",
        )

    def close(self) -> None:
        self.client.close()


@lru_cache
def get_webhook_sender() -> WebhookSender:
    return WebhookSender()


def close_webhook_sender() -> None:
    if get_webhook_sender.cache_info().currsize:
        get_webhook_sender().close()
        get_webhook_sender.cache_clear()


class WebhookRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_webhook(self, webhook: models.Webhook) -> None:
        self.db.add(webhook)
        self.db.commit()
        self.db.refresh(webhook)

    def get_webhook_by_id(self, webhook_id: str) -> models.Webhook | None:
        return self.db.query(models.Webhook).filter(models.Webhook.id == webhook_id).first()

    def get_webhooks_by_festival(self, festival_id: str) -> list[models.Webhook]:
        return (
            self.db.query(models.Webhook)
            .filter(models.Webhook.festival_id == festival_id)
            .order_by(models.Webhook.created_at.asc())
            .all()
        )

    def get_active_webhooks_for_event(self, festival_id: str, event: str) -> list[models.Webhook]:
        webhooks = (
            self.db.query(models.Webhook)
            .filter(models.Webhook.festival_id == festival_id, models.Webhook.is_active.is_(True))
            .all()
        )
        # events is a JSON list, filtered here to stay portable across backends
        return [w for w in webhooks if event in (w.events or [])]

    def update_webhook(self, webhook: models.Webhook) -> None:
        self.db.add(webhook)
        self.db.commit()
        self.db.refresh(webhook)

    def delete_webhook(self, webhook: models.Webhook) -> None:
        delivery_ids = self.db.query(models.WebhookDelivery.id).filter(
            models.WebhookDelivery.webhook_id == webhook.id
        )
        self.db.query(models.WebhookDeliveryAttempt).filter(
            models.WebhookDeliveryAttempt.delivery_id.in_(delivery_ids.scalar_subquery())
        ).delete(synchronize_session=False)
        self.db.query(models.WebhookDelivery).filter(
            models.WebhookDelivery.webhook_id == webhook.id
        ).delete(synchronize_session=False)
        self.db.delete(webhook)
        self.db.commit()

    def create_delivery(self, delivery: models.WebhookDelivery) -> None:
        self.db.add(delivery)
        self.db.commit()
        self.db.refresh(delivery)

    def get_delivery_by_id(self, delivery_id: str) -> models.WebhookDelivery | None:
        return self.db.query(models.WebhookDelivery).filter(models.WebhookDelivery.id == delivery_id).first()

    def update_delivery(self, delivery: models.WebhookDelivery) -> None:
        self.db.add(delivery)
        self.db.commit()
        self.db.refresh(delivery)

    def get_deliveries_by_webhook(
        self, webhook_id: str, offset: int, limit: int
    ) -> tuple[list[models.WebhookDelivery], int]:
        query = self.db.query(models.WebhookDelivery).filter(models.WebhookDelivery.webhook_id == webhook_id)
        total = query.count()
        deliveries = query.order_by(models.WebhookDelivery.created_at.desc()).offset(offset).limit(limit).all()
        return deliveries, total

    def get_deliveries_for_retry(self, now: datetime, limit: int) -> list[models.WebhookDelivery]:
        return (
            self.db.query(models.WebhookDelivery)
            .filter(
                models.WebhookDelivery.status == models.DELIVERY_RETRYING,
                models.WebhookDelivery.next_retry_at <= now,
            )
            .order_by(models.WebhookDelivery.next_retry_at.asc())
            .limit(limit)
            .all()
        )

    def create_attempt(self, attempt: models.WebhookDeliveryAttempt) -> None:
        self.db.add(attempt)
        self.db.commit()

    def get_attempts_by_delivery(self, delivery_id: str) -> list[models.WebhookDeliveryAttempt]:
        return (
            self.db.query(models.WebhookDeliveryAttempt)
            .filter(models.WebhookDeliveryAttempt.delivery_id == delivery_id)
            .order_by(models.WebhookDeliveryAttempt.attempt_number.asc())
            .all()
        )

    def delete_deliveries_before(self, cutoff: datetime) -> int:
        old_ids = self.db.query(models.WebhookDelivery.id).filter(models.WebhookDelivery.created_at < cutoff)
        self.db.query(models.WebhookDeliveryAttempt).filter(
            models.WebhookDeliveryAttempt.delivery_id.in_(old_ids.scalar_subquery())
        ).delete(synchronize_session=False)
        deleted = (
            self.db.query(models.WebhookDelivery)
            .filter(models.WebhookDelivery.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted


class WebhookService:
    def __init__(
        self,
        repo: WebhookRepository,
        sender: Optional[WebhookSender] = None,
        default_max_retries: int = config.WEBHOOK_MAX_RETRIES,
    ):
        self.repo = repo
        self.sender = sender or get_webhook_sender()
        self.default_max_retries = default_max_retries

    @staticmethod
    def _validate_events(events: list[str]) -> None:
        unknown = [e for e in events if e not in EVENT_TYPES]
        if unknown:
            raise BadRequestError(f"unknown event type: {', '.join(unknown)}", code="INVALID_EVENT")

    def create_webhook(self, festival_id: str, req: schemas.WebhookCreate) -> models.Webhook:
        self._validate_events(req.events)
        webhook = models.Webhook(
            id=models.new_id(),
            festival_id=festival_id,
            name=req.name,
            url=str(req.url),
            secret=generate_secret(),
            events=list(dict.fromkeys(req.events)),
            is_active=True,
            max_retries=req.max_retries or self.default_max_retries,
            failure_count=0,
        )
        self.repo.create_webhook(webhook)
        logger.info("Webhook created id=%s festival_id=%s events=%s", webhook.id, festival_id, webhook.events)
        return webhook

    def get_webhook(self, webhook_id: str) -> models.Webhook:
        webhook = self.repo.get_webhook_by_id(webhook_id)
        if webhook is None:
            raise NotFoundError("Webhook not found")
        return webhook

    def list_webhooks(self, festival_id: str) -> list[models.Webhook]:
        return self.repo.get_webhooks_by_festival(festival_id)

    def update_webhook(self, webhook_id: str, req: schemas.WebhookUpdate) -> models.Webhook:
        webhook = self.get_webhook(webhook_id)
        changes = req.model_dump(exclude_unset=True, exclude_none=True)
        if "events" in changes:
            self._validate_events(changes["events"])
            changes["events"] = list(dict.fromkeys(changes["events"]))
        if "url" in changes:
            changes["url"] = str(req.url)
        if changes.get("is_active"):
            webhook.failure_count = 0
        for field, value in changes.items():
            setattr(webhook, field, value)
        self.repo.update_webhook(webhook)
        return webhook

    def delete_webhook(self, webhook_id: str) -> None:
        webhook = self.get_webhook(webhook_id)
        self.repo.delete_webhook(webhook)
        logger.info("Webhook deleted id=%s", webhook_id)

    def regenerate_secret(self, webhook_id: str) -> str:
        webhook = self.get_webhook(webhook_id)
        webhook.secret = generate_secret()
        self.repo.update_webhook(webhook)
        logger.info("Webhook secret regenerated id=%s", webhook_id)
        return webhook.secret

    # Delivery

    def dispatch_event(self, festival_id: str, event: str, data: dict) -> list[models.WebhookDelivery]:
        self._validate_events([event])
        webhooks = self.repo.get_active_webhooks_for_event(festival_id, event)
        if not webhooks:
            logger.debug("No webhooks subscribed event=%s festival_id=%s", event, festival_id)
            return []

        logger.info("Dispatching event=%s festival_id=%s webhooks=%s", event, festival_id, len(webhooks))
        event_id = models.new_id()
        timestamp = int(time.time())
        deliveries = []
        for webhook in webhooks:
            payload = build_payload(event_id, event, festival_id, data, timestamp)
            delivery = models.WebhookDelivery(
                id=models.new_id(),
                webhook_id=webhook.id,
                festival_id=festival_id,
                event=event,
                event_id=event_id,
                payload=payload,
                signature=generate_signature(payload, webhook.secret, timestamp),
                status=models.DELIVERY_PENDING,
                attempt_count=0,
                max_attempts=webhook.max_retries or self.default_max_retries,
            )
            self.repo.create_delivery(delivery)
            self._deliver(delivery, webhook)
            deliveries.append(delivery)
        return deliveries

    def process_delivery(self, delivery_id: str) -> models.WebhookDelivery:
        delivery = self.repo.get_delivery_by_id(delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery not found")

        webhook = self.repo.get_webhook_by_id(delivery.webhook_id)
        if webhook is None:
            self._mark_failed(delivery, "webhook not found")
            return delivery
        if not webhook.is_active:
            self._mark_failed(delivery, "webhook is not active")
            return delivery

        self._deliver(delivery, webhook)
        return delivery

    def _mark_failed(self, delivery: models.WebhookDelivery, error: str) -> None:
        delivery.status = models.DELIVERY_FAILED
        delivery.last_error = error
        delivery.next_retry_at = None
        self.repo.update_delivery(delivery)
        logger.error("Webhook delivery failed id=%s error=%s", delivery.id, error)

    def _deliver(self, delivery: models.WebhookDelivery, webhook: models.Webhook) -> None:
        # re-signed on every attempt so late retries stay within the receiver's tolerance
        delivery.signature = generate_signature(delivery.payload, webhook.secret, int(time.time()))
        result = self.sender.send(webhook.url, delivery.payload, delivery.signature, delivery.event, delivery.event_id)

        attempt_number = (delivery.attempt_count or 0) + 1
        self.repo.create_attempt(
            models.WebhookDeliveryAttempt(
                id=models.new_id(),
                delivery_id=delivery.id,
                attempt_number=attempt_number,
                status_code=result.status_code,
                response_body=result.response_body,
                response_time_ms=result.response_time_ms,
                success=result.success,
                error=result.error,
            )
        )

        now = datetime.now(timezone.utc)
        delivery.attempt_count = attempt_number
        if result.success:
            delivery.status = models.DELIVERY_DELIVERED
            delivery.delivered_at = now
            delivery.next_retry_at = None
            delivery.last_error = None
            webhook.failure_count = 0
            logger.info("Webhook delivered id=%s webhook_id=%s attempt=%s", delivery.id, webhook.id, attempt_number)
        else:
            delivery.last_error = result.error or "unknown error"
            if attempt_number >= delivery.max_attempts:
                delivery.status = models.DELIVERY_FAILED
                delivery.next_retry_at = None
                webhook.failure_count = (webhook.failure_count or 0) + 1
                logger.error(
                    "Webhook delivery failed id=%s webhook_id=%s after %s attempts: %s",
                    delivery.id,
                    webhook.id,
                    attempt_number,
                    delivery.last_error,
                )
            else:
                delivery.status = models.DELIVERY_RETRYING
                delivery.next_retry_at = now + timedelta(seconds=calculate_backoff(attempt_number))
                logger.warning(
                    "Webhook delivery id=%s attempt %s/%s failed: %s",
                    delivery.id,
                    attempt_number,
                    delivery.max_attempts,
                    delivery.last_error,
                )

        self.repo.update_delivery(delivery)
        self.repo.update_webhook(webhook)

    def process_retry_deliveries(self, limit: int = 100) -> int:
        due = self.repo.get_deliveries_for_retry(datetime.now(timezone.utc), limit)
        for delivery in due:
            self.process_delivery(delivery.id)
        return len(due)

    def retry_delivery(self, delivery_id: str) -> models.WebhookDelivery:
        delivery = self.repo.get_delivery_by_id(delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery not found")
        if delivery.status == models.DELIVERY_DELIVERED:
            raise DeliveryAlreadyDeliveredError()

        delivery.status = models.DELIVERY_PENDING
        delivery.attempt_count = 0
        delivery.next_retry_at = None
        delivery.last_error = None
        self.repo.update_delivery(delivery)
        logger.info("Delivery manually retried id=%s", delivery_id)
        return self.process_delivery(delivery_id)

    def test_webhook(self, webhook_id: str, event: str = "test.ping", data: Optional[dict] = None) -> SendResult:
        webhook = self.get_webhook(webhook_id)
        self._validate_events([event])
        if data is None:
            data = {"test": True, "message": "This is a test webhook event"}

        event_id = models.new_id()
        timestamp = int(time.time())
        payload = build_payload(event_id, event, webhook.festival_id, data, timestamp)
        signature = generate_signature(payload, webhook.secret, timestamp)
        result = self.sender.send(webhook.url, payload, signature, event, event_id)
        logger.info(
            "Webhook test completed id=%s success=%s status_code=%s", webhook_id, result.success, result.status_code
        )
        return result

    def get_deliveries(
        self, webhook_id: str, page: int, per_page: int
    ) -> tuple[list[models.WebhookDelivery], int]:
        self.get_webhook(webhook_id)
        _, limit, offset = page_bounds(page, per_page)
        return self.repo.get_deliveries_by_webhook(webhook_id, offset, limit)

    def get_delivery_attempts(self, delivery_id: str) -> list[models.WebhookDeliveryAttempt]:
        if self.repo.get_delivery_by_id(delivery_id) is None:
            raise NotFoundError("Delivery not found")
        return self.repo.get_attempts_by_delivery(delivery_id)

    def cleanup_old_deliveries(self, retention_days: int = 30) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        deleted = self.repo.delete_deliveries_before(cutoff)
        if deleted:
            logger.info("Cleaned up old webhook deliveries deleted=%s retention_days=%s", deleted, retention_days)
        return deleted


def dispatch_event_task(
    session_factory: Callable[[], Session],
    sender: WebhookSender,
    festival_id: str,
    event: str,
    data: dict,
) -> None:
    """Background entry point: dispatch with a session of its own."""
    db = session_factory()
    try:
        WebhookService(WebhookRepository(db), sender=sender).dispatch_event(festival_id, event, data)
    except Exception:
        # the triggering request already succeeded, failures stay in the delivery log
        logger.exception("Webhook dispatch failed event=%s festival_id=%s", event, festival_id)
    finally:
        db.close()
