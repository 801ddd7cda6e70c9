from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from bson import ObjectId


# ============================================
# ENUMERATIONS
# ============================================
class ChargeStatus(str, Enum):
    ACTIVE = "active"
    PAID = "paid"
    CANCELLED = "cancelled"
    UNPAID = "unpaid"


class ChargeType(str, Enum):
    ANNUAL = "annual"
    INCIDENTAL = "incidental"


class ChargeCategory(str, Enum):
    MAINTENANCE = "maintenance"
    REPAIRS = "repairs"
    UTILITIES = "utilities"
    SECURITY = "security"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentProvider(str, Enum):
    FLUTTERWAVE = "flutterwave"
    MONNIFY = "monnify"
    STRIPE = "stripe"


class UserRole(str, Enum):
    ADMIN = "admin"
    ESTATE_ADMIN = "estate_admin"
    USER = "user"


# Legacy ledgers wrote "success" for a settled payment
SUCCESS_STATUS_ALIASES = {"success": PaymentStatus.COMPLETED.value}


# ============================================
# USER MODEL (read-only view of the users collection)
# ============================================
class User(BaseModel):
    user_id: str
    name: str = "User"
    email: Optional[str] = None
    role: UserRole = UserRole.USER
    estate_id: Optional[str] = None
    phone_number: Optional[str] = None

    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_default = True

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "User":
        data = dict(doc)
        data["user_id"] = str(data.pop("_id"))
        if data.get("estate") is not None and data.get("estate_id") is None:
            data["estate_id"] = str(data.pop("estate"))
        return cls(**data)


# ============================================
# PAYMENT MODEL (embedded sub-ledger entry)
# ============================================
class Payment(BaseModel):
    reference: str  # Idempotency key, unique system-wide
    provider: PaymentProvider
    amount: int = Field(gt=0)  # Minor units
    status: PaymentStatus = PaymentStatus.PENDING
    paid_by: str
    paid_at: Optional[datetime] = None
    provider_reference: Optional[str] = None  # Gateway-side id (Stripe session, Monnify txn ref)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_default = True

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        if isinstance(value, str):
            return SUCCESS_STATUS_ALIASES.get(value, value)
        return value


# ============================================
# SERVICE CHARGE MODEL
# ============================================
class StatusHistoryEntry(BaseModel):
    from_state: str
    to_state: str
    transitioned_at: datetime
    transitioned_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ServiceCharge(BaseModel):
    charge_id: Optional[str] = Field(default=None, alias="_id")
    title: str
    description: str
    amount: int = Field(gt=0)  # Minor units
    currency: str = "NGN"
    type: ChargeType = ChargeType.INCIDENTAL
    category: ChargeCategory = ChargeCategory.OTHER
    status: ChargeStatus = ChargeStatus.ACTIVE
    due_date: Optional[datetime] = None
    estate_id: Optional[str] = None
    created_by: str
    affected_users: List[str] = Field(default_factory=list)
    paid_by: List[str] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)
    admin_override: bool = False  # True when status was set by hand, not by the ledger
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_default = True

    @field_validator("charge_id", mode="before")
    @classmethod
    def stringify_id(cls, value):
        if isinstance(value, ObjectId):
            return str(value)
        return value

    @field_validator("affected_users", "paid_by", mode="before")
    @classmethod
    def unique_user_ids(cls, value):
        seen = []
        for user_id in value or []:
            user_id = str(user_id)
            if user_id not in seen:
                seen.append(user_id)
        return seen

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ServiceCharge":
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        """Mongo representation; _id stays an ObjectId."""
        doc = self.model_dump(by_alias=False, exclude={"charge_id"})
        if self.charge_id:
            doc["_id"] = ObjectId(self.charge_id)
        return doc


class ServiceChargeCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    amount: int  # Minor units, validated by the service
    currency: str = "NGN"
    type: ChargeType = ChargeType.INCIDENTAL
    category: ChargeCategory = ChargeCategory.OTHER
    due_date: Optional[datetime] = None
    estate_id: Optional[str] = None
    affected_users: List[str] = Field(default_factory=list)

    class Config:
        use_enum_values = True


class ServiceChargeUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[ChargeCategory] = None
    due_date: Optional[datetime] = None
    affected_users: Optional[List[str]] = None

    class Config:
        use_enum_values = True


# ============================================
# PAYMENT FLOW SCHEMAS
# ============================================
class PaymentInitRequest(BaseModel):
    charge_id: str
    provider: PaymentProvider
    amount: int
    payment_method: str = "card"
    description: Optional[str] = None

    class Config:
        use_enum_values = True


class PaymentInitResult(BaseModel):
    redirect_url: str
    reference: str
    provider: str


class VerificationOutcome(BaseModel):
    status: str  # completed, failed, pending
    message: str
    reference: str
    already_verified: bool = False
    charge_status: Optional[str] = None


class WebhookOutcome(BaseModel):
    status: str  # processed, duplicate, ignored
    reference: Optional[str] = None
    payment_status: Optional[str] = None


class SettlementSummary(BaseModel):
    charge_id: str
    amount: int
    completed_total: int
    outstanding: int
    fully_paid: bool
    payers: List[str]
    status: str
    admin_override: bool


# ============================================
# WEBHOOK PAYLOAD SCHEMAS
# ============================================
class WebhookCustomer(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class FlutterwaveTransaction(BaseModel):
    id: Optional[int] = None
    tx_ref: str = Field(min_length=1)
    flw_ref: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    status: str
    customer: WebhookCustomer = Field(default_factory=WebhookCustomer)


class FlutterwaveWebhookPayload(BaseModel):
    event: str
    data: FlutterwaveTransaction


class MonnifyEventData(BaseModel):
    payment_reference: str = Field(alias="paymentReference", min_length=1)
    transaction_reference: Optional[str] = Field(default=None, alias="transactionReference")
    amount_paid: Optional[float] = Field(default=None, alias="amountPaid")
    currency: Optional[str] = Field(default=None, alias="currencyCode")
    payment_status: Optional[str] = Field(default=None, alias="paymentStatus")
    customer: WebhookCustomer = Field(default_factory=WebhookCustomer)

    class Config:
        populate_by_name = True


class MonnifyWebhookPayload(BaseModel):
    event_type: str = Field(alias="eventType")
    event_data: MonnifyEventData = Field(alias="eventData")

    class Config:
        populate_by_name = True


class StripeCustomerDetails(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class StripeCheckoutSession(BaseModel):
    id: str
    client_reference_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer_details: Optional[StripeCustomerDetails] = None


class StripeEventData(BaseModel):
    object: StripeCheckoutSession


class StripeWebhookEvent(BaseModel):
    id: str
    type: str
    created: Optional[int] = None
    data: StripeEventData
