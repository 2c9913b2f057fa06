"""In-memory billing provider used by the settlement tests.

Behaves like Stripe where the settlement flow depends on it: deleted
drafts disappear, voided invoices keep nothing remaining, adjustments
lower a draft's ``amount_due`` and credit notes lower an open invoice's
``amount_remaining``.
"""

import copy
from collections.abc import Callable
from typing import Any

from billing_ops.services.billing_provider import (
    BalanceTransactionRecord,
    BillingProviderError,
    ChargeRecord,
    ChargeStatus,
    InvoiceRecord,
    InvoiceStatus,
    InvoiceStore,
)


def draft_invoice(invoice_id: str, amount: int, customer_id: str = "cus_test", **kwargs: Any):
    return InvoiceRecord(
        id=invoice_id,
        status=InvoiceStatus.DRAFT.value,
        amount_due=amount,
        amount_remaining=amount,
        customer_id=customer_id,
        number=kwargs.pop("number", f"N-{invoice_id}"),
        created=kwargs.pop("created", 1_700_000_000),
        **kwargs,
    )


def open_invoice(
    invoice_id: str,
    amount: int,
    customer_id: str = "cus_test",
    attempt_count: int = 1,
    **kwargs: Any,
):
    return InvoiceRecord(
        id=invoice_id,
        status=InvoiceStatus.OPEN.value,
        amount_due=amount,
        amount_remaining=amount,
        customer_id=customer_id,
        number=kwargs.pop("number", f"N-{invoice_id}"),
        attempt_count=attempt_count,
        created=kwargs.pop("created", 1_700_000_000),
        **kwargs,
    )


class FakeInvoiceStore(InvoiceStore):
    """Dict-backed ``InvoiceStore`` with injectable failures.

    ``fail(operation, key)`` makes every later call of ``operation`` for
    ``key`` (an invoice, charge or customer id) raise
    ``BillingProviderError``; ``key=None`` fails the operation for every id.
    ``error`` raises some other exception type instead, for crashes the
    provider layer does not translate.
    """

    def __init__(self, account_id: str = "default"):
        self._account_id = account_id
        self.invoices: dict[str, InvoiceRecord] = {}
        self.charges: dict[str, ChargeRecord] = {}
        self.balance_transactions: dict[str, BalanceTransactionRecord] = {}
        self.adjustments: list[dict[str, Any]] = []
        self.credit_notes: list[dict[str, Any]] = []
        self.attached_payment_methods: list[tuple[str, str]] = []
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, dict[str | None, type[Exception]]] = {}
        self.after_retrieve: Callable[[str], None] | None = None
        self.next_charge_status = ChargeStatus.SUCCEEDED.value
        self._counter = 0

    @property
    def account_id(self) -> str:
        return self._account_id

    def add(self, *invoices: InvoiceRecord) -> None:
        for invoice in invoices:
            self.invoices[invoice.id] = copy.deepcopy(invoice)

    def fail(
        self,
        operation: str,
        key: str | None = None,
        error: type[Exception] = BillingProviderError,
    ) -> None:
        self.failures.setdefault(operation, {})[key] = error

    def _check(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        failing = self.failures.get(operation, {})
        error = failing.get(key, failing.get(None))
        if error is BillingProviderError:
            raise BillingProviderError(f"{operation} failed for {key}", code="test_failure")
        if error is not None:
            raise error(f"{operation} failed for {key}")

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _invoice(self, invoice_id: str) -> InvoiceRecord:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise BillingProviderError(f"No such invoice: {invoice_id}", code="resource_missing")
        return invoice

    def retrieve_invoice(self, invoice_id: str) -> InvoiceRecord:
        self._check("retrieve_invoice", invoice_id)
        invoice = copy.deepcopy(self._invoice(invoice_id))
        if self.after_retrieve is not None:
            self.after_retrieve(invoice_id)
        return invoice

    def list_invoices(self, customer_id: str, status: InvoiceStatus) -> list[InvoiceRecord]:
        self._check("list_invoices", customer_id)
        return [
            copy.deepcopy(i)
            for i in self.invoices.values()
            if i.customer_id == customer_id and i.status == status.value
        ]

    def update_invoice_metadata(self, invoice_id: str, metadata: dict[str, str]) -> InvoiceRecord:
        self._check("update_invoice_metadata", invoice_id)
        invoice = self._invoice(invoice_id)
        invoice.metadata = dict(metadata)
        return copy.deepcopy(invoice)

    def delete_invoice(self, invoice_id: str) -> None:
        self._check("delete_invoice", invoice_id)
        invoice = self._invoice(invoice_id)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise BillingProviderError("Only drafts can be deleted", code="invoice_not_editable")
        del self.invoices[invoice_id]

    def void_invoice(self, invoice_id: str) -> InvoiceRecord:
        self._check("void_invoice", invoice_id)
        invoice = self._invoice(invoice_id)
        if invoice.status != InvoiceStatus.OPEN.value:
            raise BillingProviderError(
                f"Invoice {invoice_id} is {invoice.status}", code="invoice_not_open"
            )
        invoice.status = InvoiceStatus.VOID.value
        invoice.amount_remaining = 0
        return copy.deepcopy(invoice)

    def create_adjustment_item(
        self,
        customer_id: str,
        invoice_id: str,
        amount: int,
        currency: str,
        description: str,
    ) -> str:
        self._check("create_adjustment_item", invoice_id)
        invoice = self._invoice(invoice_id)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise BillingProviderError("Invoice is not editable", code="invoice_not_editable")
        invoice.amount_due += amount
        invoice.amount_remaining += amount
        item_id = self._next_id("ii")
        self.adjustments.append(
            {
                "id": item_id,
                "invoice_id": invoice_id,
                "customer_id": customer_id,
                "amount": amount,
                "currency": currency,
                "description": description,
            }
        )
        return item_id

    def create_credit_note(
        self,
        invoice_id: str,
        amount: int,
        memo: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        self._check("create_credit_note", invoice_id)
        invoice = self._invoice(invoice_id)
        if invoice.status != InvoiceStatus.OPEN.value or amount > invoice.amount_remaining:
            raise BillingProviderError("Credit note exceeds remaining amount")
        invoice.amount_remaining -= amount
        if invoice.amount_remaining == 0:
            invoice.status = InvoiceStatus.PAID.value
        note_id = self._next_id("cn")
        self.credit_notes.append(
            {
                "id": note_id,
                "invoice_id": invoice_id,
                "amount": amount,
                "memo": memo,
                "metadata": dict(metadata or {}),
            }
        )
        return note_id

    def create_balance_credit(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> BalanceTransactionRecord:
        self._check("create_balance_credit", customer_id)
        txn = BalanceTransactionRecord(
            id=self._next_id("cbtxn"),
            customer_id=customer_id,
            amount=-abs(amount),
            currency=currency,
            description=description,
            metadata=dict(metadata or {}),
        )
        self.balance_transactions[txn.id] = txn
        return copy.deepcopy(txn)

    def update_balance_transaction_metadata(
        self, customer_id: str, transaction_id: str, metadata: dict[str, str]
    ) -> None:
        self._check("update_balance_transaction_metadata", transaction_id)
        self.balance_transactions[transaction_id].metadata = dict(metadata)

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        self._check("attach_payment_method", payment_method_id)
        self.attached_payment_methods.append((payment_method_id, customer_id))

    def create_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        save_payment_method: bool = False,
    ) -> ChargeRecord:
        self._check("create_charge", customer_id)
        charge_id = self._next_id("pi")
        charge = ChargeRecord(
            id=charge_id,
            status=self.next_charge_status,
            amount=amount,
            currency=currency,
            customer_id=customer_id,
            client_secret=f"{charge_id}_secret",
            metadata=dict(metadata),
        )
        self.charges[charge_id] = charge
        return copy.deepcopy(charge)

    def retrieve_charge(self, charge_id: str) -> ChargeRecord:
        self._check("retrieve_charge", charge_id)
        charge = self.charges.get(charge_id)
        if charge is None:
            raise BillingProviderError(f"No such payment: {charge_id}", code="resource_missing")
        return copy.deepcopy(charge)

    def update_charge_metadata(self, charge_id: str, metadata: dict[str, str]) -> None:
        self._check("update_charge_metadata", charge_id)
        self.charges[charge_id].metadata = dict(metadata)
