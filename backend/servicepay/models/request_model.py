# models/request_model.py
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from servicepay.core.database import Base, utcnow


def _values(enum_cls):
    return [member.value for member in enum_cls]


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class PartialPaymentStatus(str, enum.Enum):
    NONE = "none"
    FIRST_PAID = "first_paid"
    FULLY_PAID = "fully_paid"

    @property
    def rank(self) -> int:
        return _values(PartialPaymentStatus).index(self.value)


class Client(Base):
    """The paying party. Never deleted while it owns requests (FK RESTRICT)."""

    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(64), nullable=True)
    company = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    service_requests = relationship("ServiceRequest", back_populates="client")


class ServiceRequest(Base):
    __tablename__ = "service_requests"
    __table_args__ = (
        CheckConstraint(
            "admin_discount_percent >= 0 AND admin_discount_percent <= 50",
            name="ck_service_requests_discount_range",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(
        SqlEnum(RequestStatus, native_enum=False, values_callable=_values, length=32),
        default=RequestStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Admin-owned pricing and link fields
    estimated_cost = Column(Numeric(12, 2), nullable=True)
    admin_discount_percent = Column(Numeric(5, 2), default=Decimal("10"), nullable=False)
    payment_link_expiry = Column(DateTime, nullable=True)
    payment_link_active = Column(Boolean, default=True, nullable=False)

    # Aggregates, recomputed with every confirmation
    partial_payment_status = Column(
        SqlEnum(PartialPaymentStatus, native_enum=False, values_callable=_values, length=32),
        default=PartialPaymentStatus.NONE,
        nullable=False,
    )
    total_paid = Column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_discount = Column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    balance_due = Column(Numeric(12, 2), nullable=True)
    payment_confirmed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    client = relationship("Client", back_populates="service_requests")
    payments = relationship("Payment", back_populates="service_request")

    def link_is_usable(self, now: datetime) -> bool:
        if not self.payment_link_active:
            return False
        return self.payment_link_expiry is None or self.payment_link_expiry > now

    def __repr__(self):
        return f"<ServiceRequest {self.id} {self.status} ${self.estimated_cost}>"


# --------------------------------------------------------------
# API shapes
# --------------------------------------------------------------
class ClientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    phone: Optional[str] = None
    company: Optional[str] = None


class ServiceRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    status: RequestStatus
    estimated_cost: Optional[Decimal] = None
    admin_discount_percent: Decimal
    payment_link_expiry: Optional[datetime] = None
    payment_link_active: bool
    partial_payment_status: PartialPaymentStatus
    total_paid: Decimal
    total_discount: Decimal
    balance_due: Optional[Decimal] = None


class PricingUpdate(BaseModel):
    """Admin payload; the discount range is enforced by the service, not here."""

    estimated_cost: Optional[Decimal] = Field(default=None, description="USD")
    admin_discount_percent: Optional[Decimal] = None


class PaymentLinkOut(BaseModel):
    request_id: int
    url: str
    expires_at: datetime
