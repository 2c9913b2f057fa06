"""SettlementAllocation model for tracking which invoices a settlement touched."""

import uuid

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, func
from sqlalchemy.schema import ForeignKey

from billing_ops.core.database import Base
from billing_ops.models.shared import UUIDType


class SettlementAllocation(Base):
    """SettlementAllocation model - one invoice's share of a settlement.

    ``action`` is the transition actually carried out on the provider
    (``delete``, ``void``, ``adjust``, ``credit_note`` or ``mark_settled``).
    """

    __tablename__ = "settlement_allocations"

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)
    settlement_id = Column(
        UUIDType,
        ForeignKey("settlement_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)
    invoice_id = Column(String(255), nullable=False, index=True)
    invoice_number = Column(String(255), nullable=True)
    invoice_status = Column(String(20), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    action = Column(String(20), nullable=False)
    fully_settled = Column(Boolean, nullable=False, default=False)
    used_fallback = Column(Boolean, nullable=False, default=False)
    metadata_written = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
