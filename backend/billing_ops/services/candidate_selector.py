"""Candidate selection: which invoices a settlement is applied to, in order."""

import logging

from billing_ops.core.config import settings
from billing_ops.services.billing_provider import (
    BillingProviderError,
    InvoiceRecord,
    InvoiceStatus,
    InvoiceStore,
)

logger = logging.getLogger(__name__)

SCHEDULED_FINALIZE_KEY = "scheduledFinalizeAt"


class CandidateSelectionError(RuntimeError):
    """The candidate invoices could not be enumerated; nothing was allocated."""


def has_correlation_id(invoice: InvoiceRecord, correlation_id: str) -> bool:
    """True when any of the configured metadata keys carries ``correlation_id``."""
    return any(
        invoice.metadata.get(key) == correlation_id for key in settings.correlation_id_keys
    )


def is_failed(invoice: InvoiceRecord) -> bool:
    """An open invoice the provider already tried and failed to collect."""
    return invoice.status == InvoiceStatus.OPEN.value and invoice.attempt_count > 0


def failed_sort_key(invoice: InvoiceRecord) -> tuple[int, int, str]:
    return (invoice.due_date or invoice.created, invoice.created, invoice.id)


def _scheduled_finalize_at(invoice: InvoiceRecord) -> int | None:
    scheduled = invoice.metadata.get(SCHEDULED_FINALIZE_KEY)
    if not scheduled:
        return None
    try:
        return int(scheduled)
    except ValueError:
        logger.warning(
            "Invoice %s has unparseable %s=%r", invoice.id, SCHEDULED_FINALIZE_KEY, scheduled
        )
        return None


def draft_sort_key(invoice: InvoiceRecord) -> tuple[int, int, str]:
    """When the draft is expected to finalize.

    The first date present wins: the locally scheduled finalization, then
    the provider's automatic finalization, then the due date, then creation.
    """
    finalize_at = (
        _scheduled_finalize_at(invoice)
        or invoice.automatically_finalizes_at
        or invoice.due_date
        or invoice.created
    )
    return (finalize_at, invoice.created, invoice.id)


class CandidateSelector:
    """Builds the ordered candidate list for a settlement."""

    def __init__(self, store: InvoiceStore):
        self.store = store

    def select(
        self,
        customer_id: str,
        correlation_id: str | None = None,
        selected_invoice_ids: list[str] | None = None,
        apply_to_all: bool = False,
    ) -> list[str]:
        """Return invoice ids in the order funds should be applied.

        Explicit ids win and are returned verbatim, caller order kept. With
        ``apply_to_all`` the customer's failed invoices come first (oldest
        due first), then drafts (soonest finalize first). Without either,
        the list is empty and the whole settlement becomes credit.

        Raises:
            CandidateSelectionError: if the customer's invoices cannot be listed.
        """
        if selected_invoice_ids:
            return list(selected_invoice_ids)
        if not apply_to_all:
            return []

        try:
            open_invoices = self.store.list_invoices(customer_id, InvoiceStatus.OPEN)
            draft_invoices = self.store.list_invoices(customer_id, InvoiceStatus.DRAFT)
        except BillingProviderError as e:
            raise CandidateSelectionError(
                f"Could not list invoices for customer {customer_id}: {e}"
            ) from e

        if correlation_id:
            open_invoices = [i for i in open_invoices if has_correlation_id(i, correlation_id)]
            draft_invoices = [i for i in draft_invoices if has_correlation_id(i, correlation_id)]

        failed = sorted((i for i in open_invoices if is_failed(i)), key=failed_sort_key)
        drafts = sorted(draft_invoices, key=draft_sort_key)

        logger.info(
            "Selected %d failed and %d draft invoices for customer %s",
            len(failed),
            len(drafts),
            customer_id,
        )
        return [i.id for i in failed] + [i.id for i in drafts]
