"""Turns whatever a settlement could not place on an invoice into account credit."""

import logging

from billing_ops.core.config import settings
from billing_ops.services.allocation_engine import Settlement
from billing_ops.services.billing_provider import BalanceTransactionRecord, InvoiceStore

logger = logging.getLogger(__name__)


class CreditIssuer:
    def __init__(self, store: InvoiceStore):
        self.store = store

    def issue(
        self, settlement: Settlement, remaining_credit: int, credit_type: str = "excess_payment"
    ) -> BalanceTransactionRecord | None:
        """Credit ``remaining_credit`` to the customer's balance.

        Zero (or negative) remainders issue nothing. Provider failures
        propagate: the caller records the settlement as failed so the
        unplaced amount is not silently lost.
        """
        if remaining_credit <= 0:
            return None

        description = f"Credit from settlement {settlement.source_id}"
        if settlement.reason:
            description += f". Reason: {settlement.reason}"
        metadata = {
            "settlementSourceId": settlement.source_id,
            "reason": settlement.reason,
            "creditType": credit_type,
        }
        if settlement.correlation_id:
            description += f". For {settlement.correlation_id}"
            metadata[settings.correlation_id_keys[0]] = settlement.correlation_id

        txn = self.store.create_balance_credit(
            customer_id=settlement.customer_id,
            amount=remaining_credit,
            currency=settlement.currency,
            description=description,
            metadata=metadata,
        )
        logger.info(
            "Settlement %s added %d %s credit to customer %s (%s)",
            settlement.source_id,
            remaining_credit,
            settlement.currency,
            settlement.customer_id,
            txn.id,
        )
        return txn
