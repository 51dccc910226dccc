from typing import List

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db, page_bounds
from errors import NotFoundError
from security import get_manager_actor
from webhook_service import WebhookRepository, WebhookSender, WebhookService, get_webhook_sender

router = APIRouter(tags=["webhooks"])


def get_webhook_service(
    db: Session = Depends(get_db),
    sender: WebhookSender = Depends(get_webhook_sender),
) -> WebhookService:
    return WebhookService(WebhookRepository(db), sender=sender)


@router.post("/festivals/{festival_id}/webhooks", response_model=schemas.WebhookCreated, status_code=201)
def create_webhook(
    festival_id: str,
    req: schemas.WebhookCreate,
    db: Session = Depends(get_db),
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    if db.query(models.Festival).filter(models.Festival.id == festival_id).first() is None:
        raise NotFoundError("Festival not found")
    return service.create_webhook(festival_id, req)


@router.get("/festivals/{festival_id}/webhooks", response_model=List[schemas.Webhook])
def list_webhooks(
    festival_id: str,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    return service.list_webhooks(festival_id)


@router.get("/webhooks/{webhook_id}", response_model=schemas.Webhook)
def get_webhook(
    webhook_id: str,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    return service.get_webhook(webhook_id)


@router.patch("/webhooks/{webhook_id}", response_model=schemas.Webhook)
def update_webhook(
    webhook_id: str,
    req: schemas.WebhookUpdate,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    return service.update_webhook(webhook_id, req)


@router.delete("/webhooks/{webhook_id}", status_code=204)
def delete_webhook(
    webhook_id: str,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    service.delete_webhook(webhook_id)
    return Response(status_code=204)


@router.post("/webhooks/{webhook_id}/regenerate-secret", response_model=schemas.WebhookSecret)
def regenerate_webhook_secret(
    webhook_id: str,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    return {"secret": service.regenerate_secret(webhook_id)}


@router.post("/webhooks/{webhook_id}/test", response_model=schemas.WebhookTestResult)
def test_webhook(
    webhook_id: str,
    req: schemas.WebhookTestRequest | None = None,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    req = req or schemas.WebhookTestRequest()
    result = service.test_webhook(webhook_id, req.event, req.data)
    return {
        "success": result.success,
        "status_code": result.status_code,
        "response_time_ms": result.response_time_ms,
        "error": result.error,
    }


@router.get("/webhooks/{webhook_id}/deliveries", response_model=schemas.WebhookDeliveryList)
def list_webhook_deliveries(
    webhook_id: str,
    page: int = 1,
    per_page: int = 20,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    page, per_page, _ = page_bounds(page, per_page)
    deliveries, total = service.get_deliveries(webhook_id, page, per_page)
    return {"data": deliveries, "meta": {"total": total, "page": page, "per_page": per_page}}


@router.get("/webhook-deliveries/{delivery_id}/attempts", response_model=List[schemas.WebhookDeliveryAttempt])
def list_delivery_attempts(
    delivery_id: str,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    return service.get_delivery_attempts(delivery_id)


@router.post("/webhook-deliveries/{delivery_id}/retry", response_model=schemas.WebhookDelivery)
def retry_delivery(
    delivery_id: str,
    service: WebhookService = Depends(get_webhook_service),
    actor: dict = Depends(get_manager_actor),
):
    return service.retry_delivery(delivery_id)
