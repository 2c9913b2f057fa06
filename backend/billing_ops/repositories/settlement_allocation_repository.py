"""Settlement allocation repository for data access."""

from uuid import UUID

from sqlalchemy.orm import Session

from billing_ops.models.settlement_allocation import SettlementAllocation
from billing_ops.services.allocation_engine import AppliedInvoice


class SettlementAllocationRepository:
    """Repository for SettlementAllocation model."""

    def __init__(self, db: Session):
        self.db = db

    def create_many(
        self, settlement_id: UUID, applied: list[AppliedInvoice]
    ) -> list[SettlementAllocation]:
        """Persist the applied invoices of one settlement, keeping their order."""
        rows = [
            SettlementAllocation(
                settlement_id=settlement_id,
                position=position,
                invoice_id=item.invoice_id,
                invoice_number=item.invoice_number,
                invoice_status=item.invoice_status,
                amount_cents=item.amount_applied,
                action=item.action.value,
                fully_settled=item.fully_settled,
                used_fallback=item.used_fallback,
                metadata_written=item.metadata_written,
            )
            for position, item in enumerate(applied)
        ]
        self.db.add_all(rows)
        self.db.commit()
        for row in rows:
            self.db.refresh(row)
        return rows

    def get_by_settlement_id(self, settlement_id: UUID) -> list[SettlementAllocation]:
        return (
            self.db.query(SettlementAllocation)
            .filter(SettlementAllocation.settlement_id == settlement_id)
            .order_by(SettlementAllocation.position.asc())
            .all()
        )

