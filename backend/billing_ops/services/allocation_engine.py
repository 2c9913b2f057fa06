"""Allocation engine: drains one settlement amount across candidate invoices."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from billing_ops.core.config import settings
from billing_ops.models.shared import utc_now_ms
from billing_ops.services.billing_provider import (
    BillingProviderError,
    InvoiceRecord,
    InvoiceStatus,
    InvoiceStore,
)
from billing_ops.services.effective_remaining import (
    LAST_PAYMENT_AMOUNT_KEY,
    LAST_PAYMENT_DATE_KEY,
    LAST_PAYMENT_REASON_KEY,
    LAST_PAYMENT_SOURCE_KEY,
    MAX_METADATA_VALUE_LENGTH,
    MAX_REASON_LENGTH,
    METADATA_VERSION_KEY,
    ORIGINAL_AMOUNT_KEY,
    PAYMENT_HISTORY_KEY,
    SETTLED_FLAG_KEY,
    TOTAL_PAID_KEY,
    PaymentHistoryEntry,
    append_entry,
    compact_history,
    effective_remaining,
    fit_metadata_value,
    metadata_version,
    parse_payment_history,
    serialize_history,
    sum_history,
)
from billing_ops.services.invoice_transitions import TransitionAction, transition_for

logger = logging.getLogger(__name__)

CANDIDATE_STATUSES = (InvoiceStatus.DRAFT.value, InvoiceStatus.OPEN.value)


@dataclass
class Settlement:
    """One inflow of funds to distribute."""

    source_id: str
    customer_id: str
    amount: int
    currency: str
    reason: str = ""
    correlation_id: str | None = None


@dataclass
class AppliedInvoice:
    """An invoice's share of a settlement and how it was carried out."""

    invoice_id: str
    invoice_number: str | None
    amount_applied: int
    invoice_status: str
    action: TransitionAction
    fully_settled: bool
    used_fallback: bool = False
    metadata_written: bool = False


@dataclass
class SkippedInvoice:
    invoice_id: str
    reason: str


@dataclass
class AllocationResult:
    """Outcome of one allocation pass.

    ``remaining_credit`` is always ``settlement amount - total_applied``.
    """

    settlement_amount: int
    applied: list[AppliedInvoice] = field(default_factory=list)
    skipped: list[SkippedInvoice] = field(default_factory=list)
    remaining_credit: int = 0

    @property
    def total_applied(self) -> int:
        return sum(a.amount_applied for a in self.applied)


class AllocationEngine:
    """Applies a settlement to invoices one at a time, in candidate order.

    Per-invoice provider failures never abort the pass: they are logged and
    the invoice is either counted (when the money-moving side effect
    happened) or skipped (when it did not, so its share stays with the
    settlement and ends up as credit).
    """

    def __init__(
        self,
        store: InvoiceStore,
        clock: Callable[[], int] | None = None,
        metadata_write_attempts: int | None = None,
    ):
        self.store = store
        self._clock = clock or utc_now_ms
        self.metadata_write_attempts = (
            metadata_write_attempts
            if metadata_write_attempts is not None
            else settings.METADATA_WRITE_ATTEMPTS
        )

    def allocate(self, settlement: Settlement, candidate_ids: list[str]) -> AllocationResult:
        """Drain ``settlement.amount`` across ``candidate_ids``.

        The amount must already have been validated as positive.
        """
        result = AllocationResult(settlement_amount=settlement.amount)
        remaining = settlement.amount

        for invoice_id in candidate_ids:
            if remaining <= 0:
                break

            try:
                invoice = self.store.retrieve_invoice(invoice_id)
            except BillingProviderError as e:
                logger.warning("Skipping invoice %s, could not retrieve it: %s", invoice_id, e)
                result.skipped.append(SkippedInvoice(invoice_id, "not_found"))
                continue

            if invoice.status not in CANDIDATE_STATUSES:
                logger.info("Skipping invoice %s in status %s", invoice_id, invoice.status)
                result.skipped.append(SkippedInvoice(invoice_id, f"status_{invoice.status}"))
                continue

            due = effective_remaining(invoice)
            if due <= 0:
                result.skipped.append(SkippedInvoice(invoice_id, "nothing_due"))
                continue

            amount = min(remaining, due)
            applied = self._apply(settlement, invoice, amount, fully_settled=amount >= due)
            if applied is None:
                result.skipped.append(SkippedInvoice(invoice_id, "transition_failed"))
                continue

            remaining -= amount
            result.applied.append(applied)

        result.remaining_credit = remaining
        return result

    def _apply(
        self,
        settlement: Settlement,
        invoice: InvoiceRecord,
        amount: int,
        fully_settled: bool,
    ) -> AppliedInvoice | None:
        rule = transition_for(invoice.status, fully_settled)
        entry = PaymentHistoryEntry(
            sourceId=settlement.source_id,
            amount=amount,
            reason=settlement.reason[:MAX_REASON_LENGTH],
            timestamp=self._clock(),
            action=rule.action.value,
        )
        original_amount = None
        if rule.action is TransitionAction.ADJUST:
            original_amount = invoice.metadata.get(ORIGINAL_AMOUNT_KEY) or str(invoice.amount_due)

        action = rule.action
        used_fallback = False
        metadata_written = False
        try:
            self._perform(action, settlement, invoice, amount, fully_settled)
        except BillingProviderError as e:
            if rule.fallback is None:
                logger.exception(
                    "Settlement %s: %s failed for invoice %s",
                    settlement.source_id,
                    action.value,
                    invoice.id,
                )
                return None
            logger.warning(
                "Settlement %s: %s failed for invoice %s (%s), falling back to %s",
                settlement.source_id,
                action.value,
                invoice.id,
                e,
                rule.fallback.value,
            )
            action = rule.fallback
            entry.action = action.value
            used_fallback = True
            if action is TransitionAction.MARK_SETTLED:
                # The metadata write is the whole fallback; without it nothing moved.
                if not self._write_metadata(invoice, entry, fully_settled, original_amount):
                    logger.error(
                        "Settlement %s: could not mark invoice %s as settled",
                        settlement.source_id,
                        invoice.id,
                    )
                    return None
                metadata_written = True
            else:
                try:
                    self._perform(action, settlement, invoice, amount, fully_settled)
                except BillingProviderError:
                    logger.exception(
                        "Settlement %s: fallback %s failed for invoice %s",
                        settlement.source_id,
                        action.value,
                        invoice.id,
                    )
                    return None

        if action is not TransitionAction.DELETE and not metadata_written:
            metadata_written = self._write_metadata(invoice, entry, fully_settled, original_amount)

        logger.info(
            "Settlement %s applied %d to invoice %s (%s)",
            settlement.source_id,
            amount,
            invoice.id,
            action.value,
        )
        return AppliedInvoice(
            invoice_id=invoice.id,
            invoice_number=invoice.number,
            amount_applied=amount,
            invoice_status=invoice.status,
            action=action,
            fully_settled=fully_settled,
            used_fallback=used_fallback,
            metadata_written=metadata_written,
        )

    def _perform(
        self,
        action: TransitionAction,
        settlement: Settlement,
        invoice: InvoiceRecord,
        amount: int,
        fully_settled: bool,
    ) -> None:
        note = f" - {settlement.reason}" if settlement.reason else ""
        if action is TransitionAction.DELETE:
            self.store.delete_invoice(invoice.id)
        elif action is TransitionAction.VOID:
            self.store.void_invoice(invoice.id)
        elif action is TransitionAction.ADJUST:
            self.store.create_adjustment_item(
                customer_id=invoice.customer_id or settlement.customer_id,
                invoice_id=invoice.id,
                amount=-amount,
                currency=invoice.currency,
                description=f"Payment received ({settlement.source_id}){note}",
            )
        elif action is TransitionAction.CREDIT_NOTE:
            kind = "Payment" if fully_settled else "Partial payment"
            credit_metadata = {
                "settlementSourceId": settlement.source_id,
                "partialPayment": "false" if fully_settled else "true",
            }
            if settlement.correlation_id:
                credit_metadata[settings.correlation_id_keys[0]] = settlement.correlation_id
            self.store.create_credit_note(
                invoice_id=invoice.id,
                amount=amount,
                memo=f"{kind} received ({settlement.source_id}){note}",
                metadata=credit_metadata,
            )
        else:
            raise ValueError(f"Unsupported transition action: {action}")

    def _annotated_metadata(
        self,
        current: dict[str, str],
        entry: PaymentHistoryEntry,
        fully_settled: bool,
        original_amount: str | None,
    ) -> dict[str, str]:
        history = append_entry(parse_payment_history(current), entry)
        if len(serialize_history(history)) > MAX_METADATA_VALUE_LENGTH:
            logger.info("Compacting payment history on invoice with %d entries", len(history))
            history = compact_history(history)
        metadata = dict(current)
        metadata.update(
            {
                PAYMENT_HISTORY_KEY: serialize_history(history),
                TOTAL_PAID_KEY: str(sum_history(history)),
                LAST_PAYMENT_SOURCE_KEY: entry.sourceId,
                LAST_PAYMENT_REASON_KEY: fit_metadata_value(entry.reason),
                LAST_PAYMENT_AMOUNT_KEY: str(entry.amount),
                LAST_PAYMENT_DATE_KEY: str(entry.timestamp),
                SETTLED_FLAG_KEY: "true" if fully_settled else "false",
                METADATA_VERSION_KEY: str(metadata_version(current) + 1),
            }
        )
        if original_amount is not None and ORIGINAL_AMOUNT_KEY not in current:
            metadata[ORIGINAL_AMOUNT_KEY] = original_amount
        return metadata

    def _write_metadata(
        self,
        invoice: InvoiceRecord,
        entry: PaymentHistoryEntry,
        fully_settled: bool,
        original_amount: str | None,
    ) -> bool:
        """Append ``entry`` to the invoice's history, guarded by ``metadataVersion``.

        Returns False when the write could not be made; the caller decides
        whether that matters.
        """
        snapshot = invoice.metadata
        for _ in range(self.metadata_write_attempts):
            try:
                latest = self.store.retrieve_invoice(invoice.id)
            except BillingProviderError as e:
                logger.warning("Could not re-read invoice %s before metadata write: %s", invoice.id, e)
                return False

            if metadata_version(latest.metadata) != metadata_version(snapshot):
                logger.warning("Invoice %s metadata changed concurrently, rebuilding", invoice.id)
                snapshot = latest.metadata
                continue

            metadata = self._annotated_metadata(snapshot, entry, fully_settled, original_amount)
            try:
                self.store.update_invoice_metadata(invoice.id, metadata)
            except BillingProviderError:
                logger.exception("Could not update metadata for invoice %s", invoice.id)
                return False
            return True

        logger.error(
            "Gave up writing metadata for invoice %s after %d attempts",
            invoice.id,
            self.metadata_write_attempts,
        )
        return False
