import base64
import binascii
import logging
import time
from typing import Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

import config
import models
from database import page_bounds
from errors import (
    BadRequestError,
    ConcurrentModificationError,
    InsufficientBalanceError,
    InvalidQRCodeError,
    NotFoundError,
    WalletNotActiveError,
)
from security import sign_value, verify_signed_value

logger = logging.getLogger(__name__)

PAYMENT_RETRY_DELAY_SECONDS = 0.01


class QRCodePayload(BaseModel):
    wallet_id: str
    festival_id: str
    timestamp: int
    signature: str


def format_tokens(amount: int, currency_name: Optional[str] = None) -> str:
    return f"{amount} {currency_name or config.DEFAULT_CURRENCY_NAME}"


def tokens_to_fiat(amount: int, exchange_rate: Optional[float] = None) -> float:
    rate = exchange_rate if exchange_rate is not None else config.DEFAULT_EXCHANGE_RATE
    return round(amount * rate, 2)


class WalletRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_wallet(self, wallet: models.Wallet) -> models.Wallet:
        self.db.add(wallet)
        try:
            self.db.commit()
        except IntegrityError:
            # another request created the wallet for this user and festival first
            self.db.rollback()
            existing = self.get_wallet_by_user_and_festival(wallet.user_id, wallet.festival_id)
            if existing is None:
                raise
            return existing
        self.db.refresh(wallet)
        return wallet

    def get_wallet_by_id(self, wallet_id: str) -> models.Wallet | None:
        return self.db.query(models.Wallet).filter(models.Wallet.id == wallet_id).first()

    def get_wallet_by_user_and_festival(self, user_id: str, festival_id: str) -> models.Wallet | None:
        return (
            self.db.query(models.Wallet)
            .filter(models.Wallet.user_id == user_id, models.Wallet.festival_id == festival_id)
            .first()
        )

    def get_wallets_by_user(self, user_id: str) -> list[models.Wallet]:
        return (
            self.db.query(models.Wallet)
            .filter(models.Wallet.user_id == user_id)
            .order_by(models.Wallet.created_at.desc())
            .all()
        )

    def update_wallet(self, wallet: models.Wallet) -> None:
        self.db.add(wallet)
        self.db.commit()
        self.db.refresh(wallet)

    def get_festival(self, festival_id: str) -> models.Festival | None:
        return self.db.query(models.Festival).filter(models.Festival.id == festival_id).first()

    def get_transaction_by_id(self, transaction_id: str) -> models.Transaction | None:
        return self.db.query(models.Transaction).filter(models.Transaction.id == transaction_id).first()

    def get_transactions_by_wallet(
        self, wallet_id: str, offset: int, limit: int
    ) -> tuple[list[models.Transaction], int]:
        query = self.db.query(models.Transaction).filter(models.Transaction.wallet_id == wallet_id)
        total = query.count()
        transactions = (
            query.order_by(models.Transaction.created_at.desc(), models.Transaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return transactions, total

    def apply_balance_change(
        self,
        transaction: models.Transaction,
        require_active: bool = True,
        refunded_transaction_id: Optional[str] = None,
    ) -> models.Transaction:
        """Apply ``transaction.amount`` to its wallet and store the ledger row.

        Runs in a single database transaction: the wallet row is locked, the
        balance is updated with a compare-and-set on the previous value and the
        ledger row (plus the refunded purchase, if any) is written before commit.
        The refunded purchase is only marked while it is still COMPLETED, so a
        concurrent refund of the same purchase rolls back.
        """
        try:
            wallet = (
                self.db.query(models.Wallet)
                .filter(models.Wallet.id == transaction.wallet_id)
                .populate_existing()
                .with_for_update()
                .first()
            )
            if wallet is None:
                raise NotFoundError("Wallet not found")
            if require_active and wallet.status != models.WALLET_ACTIVE:
                raise WalletNotActiveError()

            balance_before = wallet.balance
            balance_after = balance_before + transaction.amount
            if balance_after < 0:
                raise InsufficientBalanceError()

            updated = (
                self.db.query(models.Wallet)
                .filter(models.Wallet.id == wallet.id, models.Wallet.balance == balance_before)
                .update({"balance": balance_after, "updated_at": func.now()}, synchronize_session=False)
            )
            if updated == 0:
                raise ConcurrentModificationError()

            transaction.balance_before = balance_before
            transaction.balance_after = balance_after
            self.db.add(transaction)

            if refunded_transaction_id:
                marked = (
                    self.db.query(models.Transaction)
                    .filter(
                        models.Transaction.id == refunded_transaction_id,
                        models.Transaction.status == models.TX_COMPLETED,
                    )
                    .update({"status": models.TX_REFUNDED}, synchronize_session=False)
                )
                if marked == 0:
                    raise BadRequestError("transaction already refunded")

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(transaction)
        return transaction


class WalletService:
    """Cashless wallets: balances, ledger and signed QR identification."""

    def __init__(
        self,
        repo: WalletRepository,
        qr_secret: str = config.QR_SECRET_KEY,
        qr_ttl_seconds: int = config.QR_CODE_TTL_SECONDS,
        max_payment_retries: int = config.PAYMENT_MAX_RETRIES,
    ):
        self.repo = repo
        self.qr_secret = qr_secret
        self.qr_ttl_seconds = qr_ttl_seconds
        self.max_payment_retries = max_payment_retries

    def get_or_create_wallet(self, user_id: str, festival_id: str) -> models.Wallet:
        wallet = self.repo.get_wallet_by_user_and_festival(user_id, festival_id)
        if wallet is not None:
            return wallet

        if self.repo.get_festival(festival_id) is None:
            raise NotFoundError("Festival not found")

        wallet = models.Wallet(
            id=models.new_id(),
            user_id=user_id,
            festival_id=festival_id,
            balance=0,
            status=models.WALLET_ACTIVE,
        )
        wallet = self.repo.create_wallet(wallet)
        logger.info("Wallet created id=%s user_id=%s festival_id=%s", wallet.id, user_id, festival_id)
        return wallet

    def get_wallet(self, wallet_id: str) -> models.Wallet:
        wallet = self.repo.get_wallet_by_id(wallet_id)
        if wallet is None:
            raise NotFoundError("Wallet not found")
        return wallet

    def get_user_wallets(self, user_id: str) -> list[models.Wallet]:
        return self.repo.get_wallets_by_user(user_id)

    def get_festival(self, festival_id: str) -> models.Festival | None:
        return self.repo.get_festival(festival_id)

    def top_up(
        self,
        wallet_id: str,
        amount: int,
        payment_method: str = "card",
        reference: str = "",
        staff_id: Optional[str] = None,
    ) -> models.Transaction:
        if amount <= 0:
            raise BadRequestError("amount must be positive")

        wallet = self.get_wallet(wallet_id)
        if wallet.status != models.WALLET_ACTIVE:
            raise WalletNotActiveError()

        tx_type = models.TX_CASH_IN if payment_method == "cash" else models.TX_TOP_UP
        transaction = models.Transaction(
            id=models.new_id(),
            wallet_id=wallet.id,
            type=tx_type,
            amount=amount,
            reference=reference,
            description=f"Top-up via {payment_method}",
            staff_id=staff_id,
            product_ids=[],
            status=models.TX_COMPLETED,
        )
        transaction = self.repo.apply_balance_change(transaction)
        logger.info("Wallet topped up wallet_id=%s amount=%s type=%s", wallet.id, amount, tx_type)
        return transaction

    def process_payment(
        self,
        wallet_id: str,
        amount: int,
        stand_id: str,
        staff_id: Optional[str] = None,
        product_ids: Optional[list[str]] = None,
    ) -> models.Transaction:
        if amount <= 0:
            raise BadRequestError("amount must be positive")

        wallet = self.get_wallet(wallet_id)
        if wallet.status != models.WALLET_ACTIVE:
            raise WalletNotActiveError()
        if wallet.balance < amount:
            raise InsufficientBalanceError()

        def charge() -> models.Transaction:
            transaction = models.Transaction(
                id=models.new_id(),
                wallet_id=wallet.id,
                type=models.TX_PURCHASE,
                amount=-amount,
                description="Purchase",
                stand_id=stand_id,
                staff_id=staff_id,
                product_ids=list(product_ids or []),
                status=models.TX_COMPLETED,
            )
            return self.repo.apply_balance_change(transaction)

        retrying = Retrying(
            retry=retry_if_exception_type(ConcurrentModificationError),
            stop=stop_after_attempt(self.max_payment_retries),
            wait=wait_exponential(multiplier=PAYMENT_RETRY_DELAY_SECONDS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=time.sleep,
            reraise=True,
        )
        transaction = retrying(charge)

        logger.info("Payment processed wallet_id=%s stand_id=%s amount=%s", wallet.id, stand_id, amount)
        return transaction

    def refund_transaction(
        self, transaction_id: str, reason: str = "", staff_id: Optional[str] = None
    ) -> models.Transaction:
        original = self.repo.get_transaction_by_id(transaction_id)
        if original is None:
            raise NotFoundError("Transaction not found")
        if original.type != models.TX_PURCHASE:
            raise BadRequestError("only purchases can be refunded")
        if original.status == models.TX_REFUNDED:
            raise BadRequestError("transaction already refunded")
        if original.status != models.TX_COMPLETED:
            raise BadRequestError("transaction cannot be refunded")

        refund = models.Transaction(
            id=models.new_id(),
            wallet_id=original.wallet_id,
            type=models.TX_REFUND,
            amount=abs(original.amount),
            reference=original.id,
            description=reason or "Refund",
            stand_id=original.stand_id,
            staff_id=staff_id,
            product_ids=list(original.product_ids or []),
            status=models.TX_COMPLETED,
        )
        refund = self.repo.apply_balance_change(
            refund, require_active=False, refunded_transaction_id=original.id
        )
        logger.info("Transaction refunded id=%s refund_id=%s", original.id, refund.id)
        return refund

    def freeze_wallet(self, wallet_id: str) -> models.Wallet:
        wallet = self.get_wallet(wallet_id)
        if wallet.status == models.WALLET_CLOSED:
            raise BadRequestError("wallet is closed")
        wallet.status = models.WALLET_FROZEN
        self.repo.update_wallet(wallet)
        logger.info("Wallet frozen id=%s", wallet.id)
        return wallet

    def unfreeze_wallet(self, wallet_id: str) -> models.Wallet:
        wallet = self.get_wallet(wallet_id)
        if wallet.status == models.WALLET_CLOSED:
            raise BadRequestError("wallet is closed")
        wallet.status = models.WALLET_ACTIVE
        self.repo.update_wallet(wallet)
        logger.info("Wallet unfrozen id=%s", wallet.id)
        return wallet

    def get_transactions(
        self, wallet_id: str, page: int, per_page: int
    ) -> tuple[list[models.Transaction], int]:
        _, limit, offset = page_bounds(page, per_page)
        return self.repo.get_transactions_by_wallet(wallet_id, offset, limit)

    # QR codes

    def _qr_message(self, wallet_id: str, festival_id: str, timestamp: int) -> str:
        return f"{wallet_id}:{festival_id}:{timestamp}"

    def generate_qr_payload(self, wallet_id: str) -> str:
        wallet = self.get_wallet(wallet_id)
        timestamp = int(time.time())
        payload = QRCodePayload(
            wallet_id=wallet.id,
            festival_id=wallet.festival_id,
            timestamp=timestamp,
            signature=sign_value(self._qr_message(wallet.id, wallet.festival_id, timestamp), self.qr_secret),
        )
        return base64.b64encode(payload.model_dump_json().encode("utf-8")).decode("ascii")

    def validate_qr_payload(self, encoded: str) -> QRCodePayload:
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidQRCodeError("invalid QR code format") from exc

        try:
            payload = QRCodePayload.model_validate_json(raw)
        except ValidationError as exc:
            raise InvalidQRCodeError("invalid QR code data") from exc

        message = self._qr_message(payload.wallet_id, payload.festival_id, payload.timestamp)
        if not verify_signed_value(message, payload.signature, self.qr_secret):
            raise InvalidQRCodeError("invalid QR code signature")

        if int(time.time()) - payload.timestamp > self.qr_ttl_seconds:
            raise InvalidQRCodeError("QR code expired")

        return payload
