"""Settlement record repository for data access."""

from sqlalchemy.orm import Session

from billing_ops.models.settlement_record import SettlementRecord, SettlementRecordStatus
from billing_ops.models.shared import utc_now
from billing_ops.schemas.settlement import SettlementRecordCreate


class SettlementRecordRepository:
    """Repository for SettlementRecord model."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, data: SettlementRecordCreate) -> SettlementRecord:
        """Open a settlement record in ``processing`` state.

        The unique ``source_id`` makes a second insert for the same source
        fail with ``IntegrityError``.
        """
        record = SettlementRecord(
            source_id=data.source_id,
            source_type=data.source_type.value,
            account_id=data.account_id,
            customer_id=data.customer_id,
            status=SettlementRecordStatus.PROCESSING.value,
            amount_cents=data.amount_cents,
            currency=data.currency,
            reason=data.reason,
            correlation_id=data.correlation_id,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def get_by_source_id(self, source_id: str) -> SettlementRecord | None:
        return (
            self.db.query(SettlementRecord)
            .filter(SettlementRecord.source_id == source_id)
            .first()
        )

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        customer_id: str | None = None,
        account_id: str | None = None,
    ) -> list[SettlementRecord]:
        query = self.db.query(SettlementRecord)
        if customer_id is not None:
            query = query.filter(SettlementRecord.customer_id == customer_id)
        if account_id is not None:
            query = query.filter(SettlementRecord.account_id == account_id)
        return (
            query.order_by(SettlementRecord.created_at.desc(), SettlementRecord.source_id)
            .offset(skip)
            .limit(limit)
            .all()
        )

    def count(self, customer_id: str | None = None, account_id: str | None = None) -> int:
        query = self.db.query(SettlementRecord)
        if customer_id is not None:
            query = query.filter(SettlementRecord.customer_id == customer_id)
        if account_id is not None:
            query = query.filter(SettlementRecord.account_id == account_id)
        return query.count()

    def mark_completed(
        self,
        record: SettlementRecord,
        total_applied_cents: int,
        credit_added_cents: int,
        credit_transaction_id: str | None = None,
    ) -> SettlementRecord:
        record.status = SettlementRecordStatus.COMPLETED.value  # type: ignore[assignment]
        record.total_applied_cents = total_applied_cents  # type: ignore[assignment]
        record.credit_added_cents = credit_added_cents  # type: ignore[assignment]
        record.credit_transaction_id = credit_transaction_id  # type: ignore[assignment]
        record.completed_at = utc_now()  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(record)
        return record

    def mark_failed(
        self,
        record: SettlementRecord,
        failure_reason: str,
        total_applied_cents: int = 0,
    ) -> SettlementRecord:
        record.status = SettlementRecordStatus.FAILED.value  # type: ignore[assignment]
        record.failure_reason = failure_reason  # type: ignore[assignment]
        record.total_applied_cents = total_applied_cents  # type: ignore[assignment]
        record.completed_at = utc_now()  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(record)
        return record

    def set_summary_recorded(self, record: SettlementRecord, recorded: bool) -> SettlementRecord:
        record.summary_recorded = recorded  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(record)
        return record

    def delete(self, record: SettlementRecord) -> None:
        """Remove a record whose settlement never touched the provider."""
        self.db.delete(record)
        self.db.commit()
