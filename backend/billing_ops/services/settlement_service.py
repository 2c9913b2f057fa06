"""Settlement service: the pay-now, 3-D Secure finalize and manual credit flows.

All three share one pipeline: select candidates, allocate, credit the
remainder, record the outcome. A settlement source is consumed at most
once, and settlements for one customer never overlap.
"""

import logging
from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_ops.core.config import settings
from billing_ops.core.settlement_lock import (
    SettlementConflictError,
    SettlementInProgressError,
    SettlementLockRegistry,
    settlement_locks,
)
from billing_ops.models.settlement_record import (
    SettlementRecord,
    SettlementRecordStatus,
    SettlementSourceType,
)
from billing_ops.repositories.settlement_allocation_repository import (
    SettlementAllocationRepository,
)
from billing_ops.repositories.settlement_record_repository import SettlementRecordRepository
from billing_ops.schemas.settlement import SettlementRecordCreate
from billing_ops.services.allocation_engine import AllocationEngine, Settlement
from billing_ops.services.billing_provider import (
    BillingProviderError,
    ChargeStatus,
    InvoiceStore,
)
from billing_ops.services.candidate_selector import CandidateSelectionError, CandidateSelector
from billing_ops.services.credit_issuer import CreditIssuer
from billing_ops.services.settlement_recorder import SettlementRecorder

logger = logging.getLogger(__name__)

SELECTED_INVOICES_KEY = "selectedInvoiceIds"


class SettlementValidationError(ValueError):
    """A settlement request failed its preconditions; nothing was touched."""


class PaymentNotCompletedError(ValueError):
    """The charge behind a settlement did not succeed."""

    def __init__(self, charge_id: str, status: str):
        super().__init__(f"Payment {charge_id} not completed. Status: {status}")
        self.charge_id = charge_id
        self.status = status


@dataclass
class AppliedSummary:
    invoice_id: str
    invoice_number: str | None
    amount_applied: int


@dataclass
class SettlementOutcome:
    """What a settlement request produced."""

    status: str
    source_id: str
    amount: int
    currency: str
    invoices_paid: list[AppliedSummary] = field(default_factory=list)
    total_applied: int = 0
    credit_added: int = 0
    credit_transaction_id: str | None = None
    client_secret: str | None = None
    replayed: bool = False


def split_invoice_ids(value: str | None) -> list[str]:
    """Parse a comma-joined id list as stored in provider metadata."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class SettlementService:
    """Service for settlement business logic."""

    def __init__(
        self,
        db: Session,
        store: InvoiceStore,
        locks: SettlementLockRegistry | None = None,
    ):
        self.db = db
        self.store = store
        self.locks = locks or settlement_locks
        self.record_repo = SettlementRecordRepository(db)
        self.allocation_repo = SettlementAllocationRepository(db)
        self.selector = CandidateSelector(store)
        self.engine = AllocationEngine(store)
        self.credit_issuer = CreditIssuer(store)
        self.recorder = SettlementRecorder(db, store)

    def pay_now(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str | None = None,
        reason: str = "",
        correlation_id: str | None = None,
        selected_invoice_ids: list[str] | None = None,
        apply_to_all: bool = False,
        save_card: bool = False,
    ) -> SettlementOutcome:
        """Charge a card and settle invoices with the proceeds.

        A charge that needs a 3-D Secure challenge is returned as
        ``requires_action`` with its client secret; the caller finishes it
        with ``finalize_pay_now``.
        """
        if not customer_id or not payment_method_id:
            raise SettlementValidationError("customer_id and payment_method_id are required")
        self._check_amount(amount)
        currency = (currency or settings.DEFAULT_CURRENCY).lower()
        selected_invoice_ids = selected_invoice_ids or []

        if save_card:
            try:
                self.store.attach_payment_method(payment_method_id, customer_id)
            except BillingProviderError as e:
                # Usually already attached.
                logger.warning("Could not attach payment method %s: %s", payment_method_id, e)

        metadata = {
            "reason": reason,
            "payNow": "true",
            SELECTED_INVOICES_KEY: ",".join(selected_invoice_ids),
            "cardSaved": "true" if save_card else "false",
        }
        if correlation_id:
            metadata[settings.correlation_id_keys[0]] = correlation_id

        charge = self.store.create_charge(
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            amount=amount,
            currency=currency,
            metadata=metadata,
            save_payment_method=save_card,
        )

        if charge.status == ChargeStatus.REQUIRES_ACTION.value:
            logger.info("Charge %s requires customer action", charge.id)
            return SettlementOutcome(
                status=ChargeStatus.REQUIRES_ACTION.value,
                source_id=charge.id,
                amount=charge.amount,
                currency=charge.currency,
                client_secret=charge.client_secret,
            )
        if charge.status != ChargeStatus.SUCCEEDED.value:
            raise PaymentNotCompletedError(charge.id, charge.status)

        settlement = Settlement(
            source_id=charge.id,
            customer_id=customer_id,
            amount=charge.amount,
            currency=charge.currency,
            reason=reason,
            correlation_id=correlation_id,
        )
        return self._settle(
            settlement,
            SettlementSourceType.CHARGE,
            selected_invoice_ids,
            apply_to_all,
            source_metadata=charge.metadata,
        )

    def finalize_pay_now(
        self,
        payment_intent_id: str,
        customer_id: str,
        correlation_id: str | None = None,
        selected_invoice_ids: list[str] | None = None,
        apply_to_all: bool = False,
    ) -> SettlementOutcome:
        """Settle a charge once its 3-D Secure challenge has been completed.

        Amount, currency and reason come from the charge itself; the invoice
        selection and correlation id fall back to what was stored on the
        charge when it was created.
        """
        if not payment_intent_id or not customer_id:
            raise SettlementValidationError("payment_intent_id and customer_id are required")

        charge = self.store.retrieve_charge(payment_intent_id)
        if charge.customer_id and charge.customer_id != customer_id:
            raise SettlementValidationError(
                f"Payment {payment_intent_id} does not belong to customer {customer_id}"
            )
        if charge.status != ChargeStatus.SUCCEEDED.value:
            raise PaymentNotCompletedError(charge.id, charge.status)
        self._check_amount(charge.amount)

        if not selected_invoice_ids:
            selected_invoice_ids = split_invoice_ids(charge.metadata.get(SELECTED_INVOICES_KEY))
        if not correlation_id:
            correlation_id = next(
                (charge.metadata[k] for k in settings.correlation_id_keys if charge.metadata.get(k)),
                None,
            )

        settlement = Settlement(
            source_id=charge.id,
            customer_id=customer_id,
            amount=charge.amount,
            currency=charge.currency,
            reason=charge.metadata.get("reason", ""),
            correlation_id=correlation_id,
        )
        return self._settle(
            settlement,
            SettlementSourceType.CHARGE,
            selected_invoice_ids,
            apply_to_all,
            source_metadata=charge.metadata,
        )

    def add_credit(
        self,
        customer_id: str,
        amount: int,
        reason: str,
        currency: str | None = None,
        correlation_id: str | None = None,
        selected_invoice_ids: list[str] | None = None,
        apply_to_all: bool = False,
        source_id: str | None = None,
    ) -> SettlementOutcome:
        """Grant a manual credit, placing it on invoices before the customer balance."""
        if not customer_id or not reason:
            raise SettlementValidationError("customer_id, amount, and reason are required")
        self._check_amount(amount)

        settlement = Settlement(
            source_id=source_id or f"mcr_{uuid4().hex}",
            customer_id=customer_id,
            amount=amount,
            currency=(currency or settings.DEFAULT_CURRENCY).lower(),
            reason=reason,
            correlation_id=correlation_id,
        )
        return self._settle(
            settlement,
            SettlementSourceType.MANUAL_CREDIT,
            selected_invoice_ids or [],
            apply_to_all,
            source_metadata={},
            credit_type="manual_credit",
        )

    def _check_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise SettlementValidationError("amount must be a positive integer in minor units")

    def _settle(
        self,
        settlement: Settlement,
        source_type: SettlementSourceType,
        selected_invoice_ids: list[str],
        apply_to_all: bool,
        source_metadata: dict[str, str],
        credit_type: str = "excess_payment",
    ) -> SettlementOutcome:
        lock_key = f"{self.store.account_id}:{settlement.customer_id}"
        with self.locks.hold(lock_key):
            existing = self.record_repo.get_by_source_id(settlement.source_id)
            if existing is not None:
                return self._replay(existing)

            try:
                record = self.record_repo.create(
                    SettlementRecordCreate(
                        source_id=settlement.source_id,
                        source_type=source_type,
                        account_id=self.store.account_id,
                        customer_id=settlement.customer_id,
                        amount_cents=settlement.amount,
                        currency=settlement.currency,
                        reason=settlement.reason or None,
                        correlation_id=settlement.correlation_id,
                    )
                )
            except IntegrityError:
                # Another process opened the same source between our read and insert.
                self.db.rollback()
                existing = self.record_repo.get_by_source_id(settlement.source_id)
                if existing is None:
                    raise
                return self._replay(existing)

            try:
                candidates = self.selector.select(
                    customer_id=settlement.customer_id,
                    correlation_id=settlement.correlation_id,
                    selected_invoice_ids=selected_invoice_ids,
                    apply_to_all=apply_to_all,
                )
            except Exception as e:
                # Nothing moved yet, so the source may be retried.
                logger.error(
                    "Settlement %s: candidate selection failed, source left retryable: %s",
                    settlement.source_id,
                    e,
                )
                self.db.rollback()
                self.record_repo.delete(record)
                if isinstance(e, CandidateSelectionError):
                    raise CandidateSelectionError(
                        f"Settlement {settlement.source_id} was not applied "
                        f"and can be retried: {e}"
                    ) from e
                raise

            try:
                result = self.engine.allocate(settlement, candidates)
            except Exception as e:
                self._abandon(record, settlement, f"Allocation aborted: {e}")
                raise

            try:
                credit_transaction = self.credit_issuer.issue(
                    settlement, result.remaining_credit, credit_type=credit_type
                )
            except BillingProviderError as e:
                logger.exception(
                    "Settlement %s: could not credit remaining %d to customer %s",
                    settlement.source_id,
                    result.remaining_credit,
                    settlement.customer_id,
                )
                self.allocation_repo.create_many(record.id, result.applied)  # type: ignore[arg-type]
                self.record_repo.mark_failed(
                    record,
                    f"Credit issuance failed: {e}",
                    total_applied_cents=result.total_applied,
                )
                raise
            except Exception as e:
                self._abandon(
                    record,
                    settlement,
                    f"Credit issuance aborted: {e}",
                    total_applied=result.total_applied,
                )
                raise

            try:
                record = self.recorder.record(
                    record, settlement, result, source_metadata, credit_transaction
                )
            except Exception as e:
                self._abandon(
                    record,
                    settlement,
                    f"Recording aborted: {e}",
                    total_applied=result.total_applied,
                )
                raise

        credit_added = result.remaining_credit if credit_transaction is not None else 0
        return SettlementOutcome(
            status=SettlementRecordStatus.COMPLETED.value,
            source_id=settlement.source_id,
            amount=settlement.amount,
            currency=settlement.currency,
            invoices_paid=[
                AppliedSummary(a.invoice_id, a.invoice_number, a.amount_applied)
                for a in result.applied
            ],
            total_applied=result.total_applied,
            credit_added=credit_added,
            credit_transaction_id=credit_transaction.id if credit_transaction else None,
        )

    def _abandon(
        self,
        record: SettlementRecord,
        settlement: Settlement,
        reason: str,
        total_applied: int = 0,
    ) -> None:
        """Close a record whose settlement crashed after funds may have moved.

        The record is failed rather than deleted so the source is never
        applied twice; an operator has to reconcile it.
        """
        logger.exception("Settlement %s: %s", settlement.source_id, reason)
        self.db.rollback()
        self.record_repo.mark_failed(record, reason, total_applied_cents=total_applied)

    def _replay(self, record: SettlementRecord) -> SettlementOutcome:
        """Answer for a source that has already been consumed."""
        if record.status == SettlementRecordStatus.PROCESSING.value:
            raise SettlementInProgressError(f"Settlement {record.source_id} is still processing")
        if record.status == SettlementRecordStatus.FAILED.value:
            raise SettlementConflictError(
                f"Settlement {record.source_id} previously failed: {record.failure_reason}"
            )

        logger.info("Settlement %s already completed, replaying result", record.source_id)
        allocations = self.allocation_repo.get_by_settlement_id(record.id)  # type: ignore[arg-type]
        return SettlementOutcome(
            status=SettlementRecordStatus.COMPLETED.value,
            source_id=str(record.source_id),
            amount=int(record.amount_cents),
            currency=str(record.currency),
            invoices_paid=[
                AppliedSummary(
                    str(a.invoice_id),
                    str(a.invoice_number) if a.invoice_number else None,
                    int(a.amount_cents),
                )
                for a in allocations
            ],
            total_applied=int(record.total_applied_cents),
            credit_added=int(record.credit_added_cents),
            credit_transaction_id=(
                str(record.credit_transaction_id) if record.credit_transaction_id else None
            ),
            replayed=True,
        )
