from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

StandCategory = Literal["BAR", "FOOD", "MERCHANDISE", "TICKETS", "TOP_UP", "OTHER"]
StandStatus = Literal["ACTIVE", "INACTIVE", "CLOSED"]
StaffRole = Literal["MANAGER", "CASHIER", "ASSISTANT"]


class PageMeta(BaseModel):
    total: int
    page: int
    per_page: int


class FestivalCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    currency_name: str = "Jetons"
    exchange_rate: float = Field(default=0.10, gt=0)


class Festival(FestivalCreate):
    id: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Stands

class StandSettings(BaseModel):
    accepts_only_tokens: bool = True
    requires_pin: bool = False
    print_receipts: bool = False
    color: str = ""


class StandSettingsUpdate(BaseModel):
    accepts_only_tokens: Optional[bool] = None
    requires_pin: Optional[bool] = None
    print_receipts: Optional[bool] = None
    color: Optional[str] = None


class StandCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    category: StandCategory
    location: str = ""
    image_url: str = ""
    settings: Optional[StandSettings] = None


class StandUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[StandCategory] = None
    location: Optional[str] = None
    image_url: Optional[str] = None
    status: Optional[StandStatus] = None
    settings: Optional[StandSettingsUpdate] = None


class Stand(BaseModel):
    id: str
    festival_id: str
    name: str
    description: Optional[str] = ""
    category: str
    location: Optional[str] = ""
    image_url: Optional[str] = ""
    status: str
    settings: StandSettings
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class StandList(BaseModel):
    data: List[Stand]
    meta: Optional[PageMeta] = None


class AssignStaffRequest(BaseModel):
    user_id: str
    role: StaffRole
    pin: Optional[str] = Field(default=None, pattern=r"^\d{4,6}$")


class StandStaff(BaseModel):
    id: str
    stand_id: str
    user_id: str
    role: str
    has_pin: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ValidatePinRequest(BaseModel):
    pin: str


class ValidatePinResponse(BaseModel):
    valid: bool


# Wallets

class Wallet(BaseModel):
    id: str
    user_id: str
    festival_id: str
    balance: int
    balance_display: str
    balance_fiat: float
    currency_name: str
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Transaction(BaseModel):
    id: str
    wallet_id: str
    type: str
    amount: int
    amount_display: str
    amount_fiat: float
    balance_before: int
    balance_after: int
    reference: Optional[str] = ""
    description: Optional[str] = ""
    stand_id: Optional[str] = None
    staff_id: Optional[str] = None
    product_ids: List[str] = []
    status: str
    created_at: Optional[datetime] = None


class TransactionList(BaseModel):
    data: List[Transaction]
    meta: PageMeta


class QRCodeResponse(BaseModel):
    qr_code: str
    balance: int


class TopUpRequest(BaseModel):
    amount: int = Field(gt=0)
    payment_method: str = "card"  # card, cash, stripe
    reference: str = ""


class PaymentRequest(BaseModel):
    wallet_id: str
    amount: int = Field(gt=0)
    stand_id: str
    product_ids: List[str] = []
    staff_pin: Optional[str] = None


class ValidateQRRequest(BaseModel):
    qr_code: str


class QRValidationResponse(BaseModel):
    wallet_id: str
    festival_id: str
    balance: int
    status: str


class RefundRequest(BaseModel):
    transaction_id: str
    reason: str = ""


# Webhooks

class WebhookCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    url: HttpUrl
    events: List[str] = Field(min_length=1)
    max_retries: Optional[int] = Field(default=None, ge=1, le=10)


class WebhookUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    url: Optional[HttpUrl] = None
    events: Optional[List[str]] = None
    is_active: Optional[bool] = None
    max_retries: Optional[int] = Field(default=None, ge=1, le=10)


class Webhook(BaseModel):
    id: str
    festival_id: str
    name: str
    url: str
    events: List[str]
    is_active: bool
    max_retries: int
    failure_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WebhookCreated(Webhook):
    secret: str


class WebhookSecret(BaseModel):
    secret: str


class WebhookTestRequest(BaseModel):
    event: str = "test.ping"
    data: Optional[dict] = None


class WebhookTestResult(BaseModel):
    success: bool
    status_code: Optional[int] = None
    response_time_ms: int
    error: Optional[str] = None


class WebhookDelivery(BaseModel):
    id: str
    webhook_id: str
    event: str
    event_id: str
    status: str
    attempt_count: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WebhookDeliveryList(BaseModel):
    data: List[WebhookDelivery]
    meta: PageMeta


class WebhookDeliveryAttempt(BaseModel):
    id: str
    delivery_id: str
    attempt_number: int
    status_code: Optional[int] = None
    response_time_ms: int
    success: bool
    error: Optional[str] = None
    attempted_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
