# models/audit_model.py
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import JSON, Column, DateTime, Integer, String

from servicepay.core.database import Base, utcnow


class AdminAuditLog(Base):
    """Append-only trail of every payment transition, written in the same transaction."""

    __tablename__ = "admin_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    actor = Column(String(128), nullable=False)
    resource_type = Column(String(32), nullable=False, default="payment")
    resource_id = Column(Integer, nullable=False, index=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    actor: str
    resource_type: str
    resource_id: int
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
