"""SettlementRecord model - the local audit trail of settlement events."""

import uuid
from enum import Enum

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, String, Text, func

from billing_ops.core.database import Base
from billing_ops.models.shared import UUIDType


class SettlementSourceType(str, Enum):
    """Where the settled funds came from."""

    CHARGE = "charge"
    MANUAL_CREDIT = "manual_credit"


class SettlementRecordStatus(str, Enum):
    """Settlement record status enum."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementRecord(Base):
    """SettlementRecord model - one row per consumed settlement source.

    ``source_id`` is unique, which is what makes a settlement source
    consumable exactly once.
    """

    __tablename__ = "settlement_records"

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)
    source_id = Column(String(255), unique=True, index=True, nullable=False)
    source_type = Column(String(20), nullable=False)
    account_id = Column(String(255), nullable=False)
    customer_id = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=SettlementRecordStatus.PROCESSING.value)

    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(Text, nullable=True)
    correlation_id = Column(String(255), nullable=True)

    total_applied_cents = Column(BigInteger, nullable=False, default=0)
    credit_added_cents = Column(BigInteger, nullable=False, default=0)
    credit_transaction_id = Column(String(255), nullable=True)
    summary_recorded = Column(Boolean, nullable=False, default=False)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_settlement_records_account_customer", "account_id", "customer_id"),)
