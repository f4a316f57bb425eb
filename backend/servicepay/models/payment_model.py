# models/payment_model.py
import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from servicepay.core.database import Base, utcnow
from servicepay.models.request_model import _values


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    COMPLETED = "completed"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DECLINED = "declined"


class PaymentMethod(str, enum.Enum):
    CARD_GATEWAY = "card_gateway"
    CRYPTO = "crypto"
    BANK_TRANSFER = "bank_transfer"
    MANUAL = "manual"


class PaymentType(str, enum.Enum):
    SPLIT = "split"
    FULL = "full"


TERMINAL_STATUSES = frozenset(
    {PaymentStatus.CONFIRMED, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.DECLINED}
)
DELETABLE_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.DECLINED})
APPROVABLE_STATUSES = frozenset(
    {PaymentStatus.SUCCESS, PaymentStatus.COMPLETED, PaymentStatus.PENDING, PaymentStatus.PROCESSING}
)
OPEN_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


class Payment(Base):
    """One attempted or completed transfer against exactly one ServiceRequest."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_positive_amount"),
        CheckConstraint("payment_sequence >= 1", name="ck_payments_sequence"),
        Index("ix_payments_request_status", "request_id", "payment_status"),
        Index("ix_payments_status_created", "payment_status", "created_at"),
        # At most one confirmed payment per leg of a request
        Index(
            "uq_payments_confirmed_leg",
            "request_id",
            "payment_sequence",
            unique=True,
            sqlite_where=text("payment_status = 'confirmed'"),
            postgresql_where=text("payment_status = 'confirmed'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("service_requests.id", ondelete="RESTRICT"), nullable=False, index=True)

    # Our reference: globally unique, the idempotency key sent to the gateway
    reference = Column(String(96), nullable=False, unique=True, index=True)
    # Client-supplied key for re-submitted creation requests
    idempotency_key = Column(String(128), nullable=True, unique=True)

    amount = Column(Numeric(12, 2), nullable=False)  # USD, currency of record
    discount_amount = Column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    currency = Column(String(8), default="USD", nullable=False)
    payment_method = Column(
        SqlEnum(PaymentMethod, native_enum=False, values_callable=_values, length=32), nullable=False
    )
    payment_type = Column(
        SqlEnum(PaymentType, native_enum=False, values_callable=_values, length=16), nullable=False
    )
    payment_sequence = Column(Integer, default=1, nullable=False)
    payment_status = Column(
        SqlEnum(PaymentStatus, native_enum=False, values_callable=_values, length=32),
        default=PaymentStatus.PENDING,
        nullable=False,
    )

    # Card / bank gateway
    gateway_reference = Column(String(96), nullable=True, index=True)
    checkout_url = Column(String(500), nullable=True)
    access_code = Column(String(128), nullable=True)
    charged_amount = Column(Numeric(16, 2), nullable=True)
    charged_currency = Column(String(8), nullable=True)
    exchange_rate = Column(Numeric(18, 6), nullable=True)

    # Crypto rail (crypto_amount kept as text to preserve native precision)
    crypto_address = Column(String(128), nullable=True)
    crypto_network = Column(String(32), nullable=True)
    crypto_amount = Column(String(64), nullable=True)
    crypto_symbol = Column(String(16), nullable=True)
    crypto_transaction_hash = Column(String(128), nullable=True, unique=True)
    crypto_confirmations = Column(Integer, nullable=True)

    admin_notes = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    extra = Column("metadata", JSON, nullable=True)

    expires_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    confirmed_by = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    service_request = relationship("ServiceRequest", back_populates="payments")

    def __repr__(self):
        return f"<Payment {self.id} {self.payment_status} ${self.amount}>"


# --------------------------------------------------------------
# API shapes
# --------------------------------------------------------------
class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: int
    reference: str
    amount: Decimal
    discount_amount: Decimal
    currency: str
    payment_method: PaymentMethod
    payment_type: PaymentType
    payment_sequence: int
    payment_status: PaymentStatus
    gateway_reference: Optional[str] = None
    crypto_address: Optional[str] = None
    crypto_network: Optional[str] = None
    crypto_amount: Optional[str] = None
    crypto_symbol: Optional[str] = None
    crypto_transaction_hash: Optional[str] = None
    admin_notes: Optional[str] = None
    error_message: Optional[str] = None
    expires_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    created_at: datetime


class CreatePaymentRequest(BaseModel):
    """Body of the client-facing payment creation endpoint."""

    request_id: int = Field(..., alias="requestId")
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")
    amount: Decimal
    payment_type: PaymentType = Field(..., alias="paymentType")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")

    model_config = ConfigDict(populate_by_name=True)


class ManualPaymentRequest(BaseModel):
    request_id: int = Field(..., alias="requestId")
    amount: Decimal
    payment_method: PaymentMethod = Field(default=PaymentMethod.MANUAL, alias="paymentMethod")
    payment_date: datetime = Field(..., alias="paymentDate")
    reference: str
    notes: Optional[str] = None
    payment_type: PaymentType = Field(default=PaymentType.SPLIT, alias="paymentType")
    bank_name: Optional[str] = Field(default=None, alias="bankName")

    model_config = ConfigDict(populate_by_name=True)


class ApproveRequest(BaseModel):
    observed_reference: Optional[str] = Field(default=None, alias="observedReference")

    model_config = ConfigDict(populate_by_name=True)


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


class CryptoHashSubmission(BaseModel):
    transaction_hash: str = Field(..., alias="transactionHash")

    model_config = ConfigDict(populate_by_name=True)


class VerifyPaymentRequest(BaseModel):
    reference: str


class VerifyCryptoRequest(BaseModel):
    confirmations: Optional[int] = None
    notes: Optional[str] = None
