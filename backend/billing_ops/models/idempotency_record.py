"""IdempotencyRecord model for API request-level idempotency."""

import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, String, func

from billing_ops.core.database import Base
from billing_ops.models.shared import UUIDType


class IdempotencyRecord(Base):
    """Stores cached responses for idempotent API requests."""

    __tablename__ = "idempotency_records"

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)
    idempotency_key = Column(String(255), nullable=False, unique=True, index=True)
    request_method = Column(String(10), nullable=False)
    request_path = Column(String(500), nullable=False)
    response_status = Column(Integer, nullable=True)
    response_body = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
