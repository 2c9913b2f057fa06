"""Writes the outcome of a settlement back onto its source and the local ledger."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_ops.models.settlement_record import SettlementRecord, SettlementSourceType
from billing_ops.repositories.settlement_allocation_repository import (
    SettlementAllocationRepository,
)
from billing_ops.repositories.settlement_record_repository import SettlementRecordRepository
from billing_ops.services.allocation_engine import AllocationResult, Settlement
from billing_ops.services.billing_provider import (
    BalanceTransactionRecord,
    BillingProviderError,
    InvoiceStore,
)
from billing_ops.services.effective_remaining import fit_metadata_value

logger = logging.getLogger(__name__)


def summary_metadata(result: AllocationResult, credit_added: int) -> dict[str, str]:
    """The post-allocation fields written onto a settlement source."""
    return {
        "invoicesPaid": fit_metadata_value(",".join(a.invoice_id for a in result.applied)),
        "invoiceNumbersPaid": fit_metadata_value(
            ",".join(a.invoice_number or a.invoice_id for a in result.applied)
        ),
        "amountsPaid": fit_metadata_value(
            ",".join(str(a.amount_applied) for a in result.applied)
        ),
        "totalAppliedToInvoices": str(result.total_applied),
        "creditAdded": str(credit_added),
    }


class SettlementRecorder:
    """Persists the audit trail of a finished allocation.

    Nothing here is transactional with the allocation itself: the money
    has already moved, so failures are logged and never rolled back.
    """

    def __init__(self, db: Session, store: InvoiceStore):
        self.db = db
        self.store = store
        self.record_repo = SettlementRecordRepository(db)
        self.allocation_repo = SettlementAllocationRepository(db)

    def record(
        self,
        record: SettlementRecord,
        settlement: Settlement,
        result: AllocationResult,
        source_metadata: dict[str, str],
        credit_transaction: BalanceTransactionRecord | None = None,
    ) -> SettlementRecord:
        """Write the summary to the provider source and close the local record."""
        credit_added = result.remaining_credit if credit_transaction is not None else 0

        try:
            self.allocation_repo.create_many(record.id, result.applied)  # type: ignore[arg-type]
            record = self.record_repo.mark_completed(
                record,
                total_applied_cents=result.total_applied,
                credit_added_cents=credit_added,
                credit_transaction_id=credit_transaction.id if credit_transaction else None,
            )
        except SQLAlchemyError:
            logger.exception("Could not persist settlement ledger for %s", settlement.source_id)
            self.db.rollback()

        summary = summary_metadata(result, credit_added)
        recorded = self._write_source_summary(
            record, settlement, source_metadata, summary, credit_transaction
        )
        try:
            return self.record_repo.set_summary_recorded(record, recorded)
        except SQLAlchemyError:
            logger.exception("Could not flag summary for settlement %s", settlement.source_id)
            self.db.rollback()
            return record

    def _write_source_summary(
        self,
        record: SettlementRecord,
        settlement: Settlement,
        source_metadata: dict[str, str],
        summary: dict[str, str],
        credit_transaction: BalanceTransactionRecord | None,
    ) -> bool:
        try:
            if record.source_type == SettlementSourceType.CHARGE.value:
                self.store.update_charge_metadata(
                    settlement.source_id, {**source_metadata, **summary}
                )
            elif credit_transaction is not None:
                self.store.update_balance_transaction_metadata(
                    settlement.customer_id,
                    credit_transaction.id,
                    {**credit_transaction.metadata, **summary},
                )
            else:
                # A manual credit fully placed on invoices has no provider object.
                return False
        except BillingProviderError:
            logger.exception(
                "Could not record settlement summary on source %s", settlement.source_id
            )
            return False
        return True
