from typing import Callable, List

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

import config
import models
import schemas
from database import get_db, get_session_factory, page_bounds
from errors import BadRequestError, ForbiddenError, NotFoundError
from security import get_current_actor, get_staff_actor
from stand_service import StandRepository, StandService
from wallet_service import WalletRepository, WalletService, format_tokens, tokens_to_fiat
from webhook_service import WebhookSender, dispatch_event_task, get_webhook_sender

router = APIRouter(tags=["wallets"])


def get_wallet_service(db: Session = Depends(get_db)) -> WalletService:
    return WalletService(WalletRepository(db))


def wallet_response(service: WalletService, wallet: models.Wallet) -> schemas.Wallet:
    festival = service.get_festival(wallet.festival_id)
    currency_name = festival.currency_name if festival else None
    exchange_rate = festival.exchange_rate if festival else None
    return schemas.Wallet(
        id=wallet.id,
        user_id=wallet.user_id,
        festival_id=wallet.festival_id,
        balance=wallet.balance,
        balance_display=format_tokens(wallet.balance, currency_name),
        balance_fiat=tokens_to_fiat(wallet.balance, exchange_rate),
        currency_name=currency_name or config.DEFAULT_CURRENCY_NAME,
        status=wallet.status,
        created_at=wallet.created_at,
        updated_at=wallet.updated_at,
    )


def transaction_response(festival: models.Festival | None, tx: models.Transaction) -> schemas.Transaction:
    currency_name = festival.currency_name if festival else None
    exchange_rate = festival.exchange_rate if festival else None
    return schemas.Transaction(
        id=tx.id,
        wallet_id=tx.wallet_id,
        type=tx.type,
        amount=tx.amount,
        amount_display=format_tokens(tx.amount, currency_name),
        amount_fiat=tokens_to_fiat(tx.amount, exchange_rate),
        balance_before=tx.balance_before,
        balance_after=tx.balance_after,
        reference=tx.reference,
        description=tx.description,
        stand_id=tx.stand_id,
        staff_id=tx.staff_id,
        product_ids=tx.product_ids or [],
        status=tx.status,
        created_at=tx.created_at,
    )


def transaction_event(wallet: models.Wallet, tx: models.Transaction) -> dict:
    return {
        "wallet_id": wallet.id,
        "user_id": wallet.user_id,
        "transaction_id": tx.id,
        "type": tx.type,
        "amount": tx.amount,
        "balance_after": tx.balance_after,
        "stand_id": tx.stand_id,
    }


# Attendee wallets

@router.get("/me/wallets", response_model=List[schemas.Wallet])
def my_wallets(
    service: WalletService = Depends(get_wallet_service),
    actor: dict = Depends(get_current_actor),
):
    return [wallet_response(service, w) for w in service.get_user_wallets(actor["user_id"])]


@router.get("/me/wallets/{festival_id}", response_model=schemas.Wallet)
@router.post("/me/wallets/{festival_id}", response_model=schemas.Wallet)
def my_festival_wallet(
    festival_id: str,
    service: WalletService = Depends(get_wallet_service),
    actor: dict = Depends(get_current_actor),
):
    wallet = service.get_or_create_wallet(actor["user_id"], festival_id)
    return wallet_response(service, wallet)


@router.get("/me/wallets/{festival_id}/qr", response_model=schemas.QRCodeResponse)
def my_wallet_qr(
    festival_id: str,
    service: WalletService = Depends(get_wallet_service),
    actor: dict = Depends(get_current_actor),
):
    wallet = service.get_or_create_wallet(actor["user_id"], festival_id)
    return {"qr_code": service.generate_qr_payload(wallet.id), "balance": wallet.balance}


@router.get("/me/wallets/{festival_id}/transactions", response_model=schemas.TransactionList)
def my_wallet_transactions(
    festival_id: str,
    page: int = 1,
    per_page: int = 20,
    service: WalletService = Depends(get_wallet_service),
    actor: dict = Depends(get_current_actor),
):
    wallet = service.get_or_create_wallet(actor["user_id"], festival_id)
    festival = service.get_festival(festival_id)
    page, per_page, _ = page_bounds(page, per_page)
    transactions, total = service.get_transactions(wallet.id, page, per_page)
    return {
        "data": [transaction_response(festival, tx) for tx in transactions],
        "meta": {"total": total, "page": page, "per_page": per_page},
    }


# Staff operations

@router.get("/wallets/{wallet_id}", response_model=schemas.Wallet)
def get_wallet(
    wallet_id: str,
    service: WalletService = Depends(get_wallet_service),
    actor: dict = Depends(get_staff_actor),
):
    return wallet_response(service, service.get_wallet(wallet_id))


@router.post("/wallets/{wallet_id}/topup", response_model=schemas.Transaction, status_code=201)
def top_up_wallet(
    wallet_id: str,
    req: schemas.TopUpRequest,
    background_tasks: BackgroundTasks,
    service: WalletService = Depends(get_wallet_service),
    session_factory: Callable = Depends(get_session_factory),
    sender: WebhookSender = Depends(get_webhook_sender),
    actor: dict = Depends(get_staff_actor),
):
    tx = service.top_up(wallet_id, req.amount, req.payment_method, req.reference, staff_id=actor["user_id"])
    wallet = service.get_wallet(wallet_id)
    background_tasks.add_task(
        dispatch_event_task,
        session_factory,
        sender,
        wallet.festival_id,
        "wallet.topup",
        transaction_event(wallet, tx),
    )
    return transaction_response(service.get_festival(wallet.festival_id), tx)


@router.post("/wallets/{wallet_id}/freeze", response_model=schemas.Wallet)
def freeze_wallet(
    wallet_id: str,
    service: WalletService = Depends(get_wallet_service),
    actor: dict = Depends(get_staff_actor),
):
    return wallet_response(service, service.freeze_wallet(wallet_id))


@router.post("/wallets/{wallet_id}/unfreeze", response_model=schemas.Wallet)
def unfreeze_wallet(
    wallet_id: str,
    service: WalletService = Depends(get_wallet_service),
    actor: dict = Depends(get_staff_actor),
):
    return wallet_response(service, service.unfreeze_wallet(wallet_id))


@router.post("/payments", response_model=schemas.Transaction, status_code=201)
def process_payment(
    req: schemas.PaymentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    service: WalletService = Depends(get_wallet_service),
    session_factory: Callable = Depends(get_session_factory),
    sender: WebhookSender = Depends(get_webhook_sender),
    actor: dict = Depends(get_staff_actor),
):
    stands = StandService(StandRepository(db))
    stand = stands.get_by_id(req.stand_id)
    if stand.status != "ACTIVE":
        raise BadRequestError("stand is not active", code="STAND_NOT_ACTIVE")

    wallet = service.get_wallet(req.wallet_id)
    if wallet.festival_id != stand.festival_id:
        raise BadRequestError("wallet does not belong to this festival", code="FESTIVAL_MISMATCH")

    if (stand.settings or {}).get("requires_pin"):
        if not req.staff_pin:
            raise ForbiddenError("staff PIN required", code="PIN_REQUIRED")
        try:
            valid = stands.validate_staff_pin(stand.id, actor["user_id"], req.staff_pin)
        except NotFoundError as exc:
            raise ForbiddenError("staff is not assigned to this stand", code="NOT_STAND_STAFF") from exc
        if not valid:
            raise ForbiddenError("invalid staff PIN", code="INVALID_PIN")

    tx = service.process_payment(
        wallet.id, req.amount, stand.id, staff_id=actor["user_id"], product_ids=req.product_ids
    )
    background_tasks.add_task(
        dispatch_event_task,
        session_factory,
        sender,
        wallet.festival_id,
        "wallet.transaction",
        transaction_event(wallet, tx),
    )
    return transaction_response(service.get_festival(wallet.festival_id), tx)


@router.post("/payments/validate-qr", response_model=schemas.QRValidationResponse)
def validate_qr(
    req: schemas.ValidateQRRequest,
    service: WalletService = Depends(get_wallet_service),
    actor: dict = Depends(get_staff_actor),
):
    payload = service.validate_qr_payload(req.qr_code)
    wallet = service.get_wallet(payload.wallet_id)
    return {
        "wallet_id": wallet.id,
        "festival_id": wallet.festival_id,
        "balance": wallet.balance,
        "status": wallet.status,
    }


@router.post("/payments/refund", response_model=schemas.Transaction, status_code=201)
def refund_payment(
    req: schemas.RefundRequest,
    background_tasks: BackgroundTasks,
    service: WalletService = Depends(get_wallet_service),
    session_factory: Callable = Depends(get_session_factory),
    sender: WebhookSender = Depends(get_webhook_sender),
    actor: dict = Depends(get_staff_actor),
):
    tx = service.refund_transaction(req.transaction_id, req.reason, staff_id=actor["user_id"])
    wallet = service.get_wallet(tx.wallet_id)
    data = transaction_event(wallet, tx)
    data["refunded_transaction_id"] = req.transaction_id
    data["reason"] = req.reason
    background_tasks.add_task(
        dispatch_event_task, session_factory, sender, wallet.festival_id, "refund.processed", data
    )
    return transaction_response(service.get_festival(wallet.festival_id), tx)
