import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from database import Base

STAND_CATEGORIES = ("BAR", "FOOD", "MERCHANDISE", "TICKETS", "TOP_UP", "OTHER")
STAND_STATUSES = ("ACTIVE", "INACTIVE", "CLOSED")
STAFF_ROLES = ("MANAGER", "CASHIER", "ASSISTANT")

WALLET_ACTIVE = "ACTIVE"
WALLET_FROZEN = "FROZEN"
WALLET_CLOSED = "CLOSED"

TX_TOP_UP = "TOP_UP"
TX_CASH_IN = "CASH_IN"
TX_PURCHASE = "PURCHASE"
TX_REFUND = "REFUND"
TX_TRANSFER = "TRANSFER"
TX_CASH_OUT = "CASH_OUT"

TX_PENDING = "PENDING"
TX_COMPLETED = "COMPLETED"
TX_FAILED = "FAILED"
TX_REFUNDED = "REFUNDED"

DELIVERY_PENDING = "PENDING"
DELIVERY_DELIVERED = "DELIVERED"
DELIVERY_RETRYING = "RETRYING"
DELIVERY_FAILED = "FAILED"


def new_id() -> str:
    return str(uuid.uuid4())


class Festival(Base):
    __tablename__ = "festivals"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, index=True)
    currency_name = Column(String, default="Jetons")
    exchange_rate = Column(Float, default=0.10)  # fiat value of one token
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Stand(Base):
    __tablename__ = "stands"

    id = Column(String, primary_key=True, default=new_id)
    festival_id = Column(String, ForeignKey("festivals.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(String, default="")
    category = Column(String, index=True)  # BAR, FOOD, MERCHANDISE, TICKETS, TOP_UP, OTHER
    location = Column(String, default="")
    image_url = Column(String, default="")
    status = Column(String, default="ACTIVE")  # ACTIVE, INACTIVE, CLOSED
    settings = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class StandStaff(Base):
    __tablename__ = "stand_staff"
    __table_args__ = (UniqueConstraint("stand_id", "user_id", name="uq_stand_staff_stand_user"),)

    id = Column(String, primary_key=True, default=new_id)
    stand_id = Column(String, ForeignKey("stands.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    role = Column(String, default="CASHIER")  # MANAGER, CASHIER, ASSISTANT
    pin = Column(String, default="")  # sha256 hex, empty when no PIN is required
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def has_pin(self) -> bool:
        return bool(self.pin)


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (UniqueConstraint("user_id", "festival_id", name="uq_wallets_user_festival"),)

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    festival_id = Column(String, ForeignKey("festivals.id"), index=True, nullable=False)
    balance = Column(Integer, default=0)
    status = Column(String, default=WALLET_ACTIVE)  # ACTIVE, FROZEN, CLOSED
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=new_id)
    wallet_id = Column(String, ForeignKey("wallets.id"), index=True, nullable=False)
    type = Column(String, index=True)
    amount = Column(Integer, default=0)  # credits positive, debits negative
    balance_before = Column(Integer, default=0)
    balance_after = Column(Integer, default=0)
    reference = Column(String, default="")
    description = Column(String, default="")
    stand_id = Column(String, nullable=True, index=True)
    staff_id = Column(String, nullable=True)
    product_ids = Column(JSON, default=list)
    status = Column(String, default=TX_COMPLETED)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class Webhook(Base):
    __tablename__ = "webhooks"

    id = Column(String, primary_key=True, default=new_id)
    festival_id = Column(String, ForeignKey("festivals.id"), index=True, nullable=False)
    name = Column(String)
    url = Column(String, nullable=False)
    secret = Column(String, nullable=False)
    events = Column(JSON, default=list)
    is_active = Column(Boolean, default=True)
    max_retries = Column(Integer, default=5)
    failure_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"

    id = Column(String, primary_key=True, default=new_id)
    webhook_id = Column(String, ForeignKey("webhooks.id", ondelete="CASCADE"), index=True, nullable=False)
    festival_id = Column(String, index=True)
    event = Column(String, index=True)
    event_id = Column(String, index=True)
    payload = Column(Text)
    signature = Column(String)
    status = Column(String, default=DELIVERY_PENDING, index=True)
    attempt_count = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class WebhookDeliveryAttempt(Base):
    __tablename__ = "webhook_delivery_attempts"

    id = Column(String, primary_key=True, default=new_id)
    delivery_id = Column(String, ForeignKey("webhook_deliveries.id", ondelete="CASCADE"), index=True, nullable=False)
    attempt_number = Column(Integer)
    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    response_time_ms = Column(Integer, default=0)
    success = Column(Boolean, default=False)
    error = Column(String, nullable=True)
    attempted_at = Column(DateTime(timezone=True), server_default=func.now())
