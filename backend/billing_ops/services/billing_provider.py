"""Billing provider abstraction layer.

The settlement pipeline never talks to a provider SDK directly. It goes
through an ``InvoiceStore``: a narrow set of blocking operations on
invoices, credit notes, balance transactions and charges. ``StripeInvoiceStore``
is the production implementation; one store exists per configured
provider account.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any

from billing_ops.core.config import settings


class InvoiceStatus(str, Enum):
    """Provider invoice status enum."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class ChargeStatus(str, Enum):
    """Charge (payment intent) statuses the settlement flow cares about."""

    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    PROCESSING = "processing"
    CANCELED = "canceled"


class BillingProviderError(RuntimeError):
    """A provider operation failed.

    ``code`` carries the provider's error code when one is available
    (e.g. ``invoice_not_editable``, ``resource_missing``).
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


@dataclass
class InvoiceRecord:
    """Snapshot of a provider invoice, amounts in minor currency units."""

    id: str
    status: str
    amount_due: int = 0
    amount_remaining: int = 0
    currency: str = "usd"
    customer_id: str | None = None
    number: str | None = None
    attempt_count: int = 0
    due_date: int | None = None
    created: int = 0
    automatically_finalizes_at: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ChargeRecord:
    """Snapshot of a provider charge (payment intent)."""

    id: str
    status: str
    amount: int
    currency: str
    customer_id: str | None = None
    client_secret: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class BalanceTransactionRecord:
    """A customer balance transaction; negative amounts are credit."""

    id: str
    customer_id: str
    amount: int
    currency: str
    description: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class InvoiceStore(ABC):
    """Abstract base class for billing provider invoice stores.

    Every method is a blocking network call and may raise
    ``BillingProviderError``.
    """

    @property
    @abstractmethod
    def account_id(self) -> str:
        """Return the provider account this store operates on."""
        pass  # pragma: no cover

    @abstractmethod
    def retrieve_invoice(self, invoice_id: str) -> InvoiceRecord:
        """Fetch a fresh copy of an invoice."""
        pass  # pragma: no cover

    @abstractmethod
    def list_invoices(self, customer_id: str, status: InvoiceStatus) -> list[InvoiceRecord]:
        """List every invoice of a customer in the given status."""
        pass  # pragma: no cover

    @abstractmethod
    def update_invoice_metadata(self, invoice_id: str, metadata: dict[str, str]) -> InvoiceRecord:
        """Replace the metadata bag of an invoice."""
        pass  # pragma: no cover

    @abstractmethod
    def delete_invoice(self, invoice_id: str) -> None:
        """Delete a draft invoice."""
        pass  # pragma: no cover

    @abstractmethod
    def void_invoice(self, invoice_id: str) -> InvoiceRecord:
        """Void an open invoice."""
        pass  # pragma: no cover

    @abstractmethod
    def create_adjustment_item(
        self,
        customer_id: str,
        invoice_id: str,
        amount: int,
        currency: str,
        description: str,
    ) -> str:
        """Add a line item (negative for a reduction) to a draft invoice."""
        pass  # pragma: no cover

    @abstractmethod
    def create_credit_note(
        self,
        invoice_id: str,
        amount: int,
        memo: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Issue a credit note reducing an open invoice's remaining amount."""
        pass  # pragma: no cover

    @abstractmethod
    def create_balance_credit(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> BalanceTransactionRecord:
        """Grant ``amount`` as standing credit on the customer's balance."""
        pass  # pragma: no cover

    @abstractmethod
    def update_balance_transaction_metadata(
        self, customer_id: str, transaction_id: str, metadata: dict[str, str]
    ) -> None:
        """Replace the metadata of a customer balance transaction."""
        pass  # pragma: no cover

    @abstractmethod
    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        """Save a payment method on the customer."""
        pass  # pragma: no cover

    @abstractmethod
    def create_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        save_payment_method: bool = False,
    ) -> ChargeRecord:
        """Create and confirm a charge."""
        pass  # pragma: no cover

    @abstractmethod
    def retrieve_charge(self, charge_id: str) -> ChargeRecord:
        """Fetch a charge."""
        pass  # pragma: no cover

    @abstractmethod
    def update_charge_metadata(self, charge_id: str, metadata: dict[str, str]) -> None:
        """Replace the metadata of a charge."""
        pass  # pragma: no cover


def _metadata(obj: Any) -> dict[str, str]:
    raw = getattr(obj, "metadata", None) or {}
    return {str(k): str(v) for k, v in raw.items()}


def _object_id(value: Any) -> str | None:
    """Provider references come back either as ids or expanded objects."""
    if value is None or isinstance(value, str):
        return value
    return str(value.id)


class StripeInvoiceStore(InvoiceStore):
    """Stripe-backed invoice store.

    Charges are payment intents; standing credit is a negative customer
    balance transaction.
    """

    def __init__(self, api_key: str, account_id: str = "default"):
        self.api_key = api_key
        self._account_id = account_id
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            try:
                import stripe

                self._stripe = stripe
            except ImportError as e:
                raise ImportError("stripe package not installed. Run: pip install stripe") from e
        return self._stripe

    @property
    def account_id(self) -> str:
        return self._account_id

    def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Invoke an SDK function with this account's key, normalising errors."""
        try:
            return func(*args, api_key=self.api_key, **kwargs)
        except self.stripe.StripeError as e:
            code = getattr(e, "code", None)
            raise BillingProviderError(f"Stripe {operation} failed: {e}", code=code) from e

    def _to_invoice(self, invoice: Any) -> InvoiceRecord:
        return InvoiceRecord(
            id=invoice.id,
            status=invoice.status,
            amount_due=invoice.amount_due or 0,
            amount_remaining=invoice.amount_remaining or 0,
            currency=invoice.currency or settings.DEFAULT_CURRENCY,
            customer_id=_object_id(invoice.customer),
            number=invoice.number,
            attempt_count=invoice.attempt_count or 0,
            due_date=invoice.due_date,
            created=invoice.created or 0,
            automatically_finalizes_at=getattr(invoice, "automatically_finalizes_at", None),
            metadata=_metadata(invoice),
        )

    def _to_charge(self, intent: Any) -> ChargeRecord:
        return ChargeRecord(
            id=intent.id,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
            customer_id=_object_id(intent.customer),
            client_secret=getattr(intent, "client_secret", None),
            metadata=_metadata(intent),
        )

    def retrieve_invoice(self, invoice_id: str) -> InvoiceRecord:
        invoice = self._call("invoice retrieve", self.stripe.Invoice.retrieve, invoice_id)
        return self._to_invoice(invoice)

    def list_invoices(self, customer_id: str, status: InvoiceStatus) -> list[InvoiceRecord]:
        page = self._call(
            "invoice list",
            self.stripe.Invoice.list,
            customer=customer_id,
            status=status.value,
            limit=settings.INVOICE_LIST_LIMIT,
        )
        try:
            return [self._to_invoice(inv) for inv in page.auto_paging_iter()]
        except self.stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice list failed: {e}") from e

    def update_invoice_metadata(self, invoice_id: str, metadata: dict[str, str]) -> InvoiceRecord:
        invoice = self._call(
            "invoice update", self.stripe.Invoice.modify, invoice_id, metadata=metadata
        )
        return self._to_invoice(invoice)

    def delete_invoice(self, invoice_id: str) -> None:
        self._call("invoice delete", self.stripe.Invoice.delete, invoice_id)

    def void_invoice(self, invoice_id: str) -> InvoiceRecord:
        invoice = self._call("invoice void", self.stripe.Invoice.void_invoice, invoice_id)
        return self._to_invoice(invoice)

    def create_adjustment_item(
        self,
        customer_id: str,
        invoice_id: str,
        amount: int,
        currency: str,
        description: str,
    ) -> str:
        item = self._call(
            "invoice item create",
            self.stripe.InvoiceItem.create,
            customer=customer_id,
            invoice=invoice_id,
            amount=amount,
            currency=currency,
            description=description,
        )
        return str(item.id)

    def create_credit_note(
        self,
        invoice_id: str,
        amount: int,
        memo: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        note = self._call(
            "credit note create",
            self.stripe.CreditNote.create,
            invoice=invoice_id,
            amount=amount,
            reason="order_change",
            memo=memo,
            metadata=metadata or {},
        )
        return str(note.id)

    def create_balance_credit(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> BalanceTransactionRecord:
        # Stripe customer balances are debit-positive; credit is negative.
        txn = self._call(
            "balance transaction create",
            self.stripe.Customer.create_balance_transaction,
            customer_id,
            amount=-abs(amount),
            currency=currency,
            description=description,
            metadata=metadata or {},
        )
        return BalanceTransactionRecord(
            id=txn.id,
            customer_id=customer_id,
            amount=txn.amount,
            currency=txn.currency,
            description=txn.description,
            metadata=_metadata(txn),
        )

    def update_balance_transaction_metadata(
        self, customer_id: str, transaction_id: str, metadata: dict[str, str]
    ) -> None:
        self._call(
            "balance transaction update",
            self.stripe.Customer.modify_balance_transaction,
            customer_id,
            transaction_id,
            metadata=metadata,
        )

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        self._call(
            "payment method attach",
            self.stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
        )

    def create_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        save_payment_method: bool = False,
    ) -> ChargeRecord:
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": metadata,
        }
        if save_payment_method:
            params["setup_future_usage"] = "off_session"

        intent = self._call("payment intent create", self.stripe.PaymentIntent.create, **params)
        return self._to_charge(intent)

    def retrieve_charge(self, charge_id: str) -> ChargeRecord:
        intent = self._call("payment intent retrieve", self.stripe.PaymentIntent.retrieve, charge_id)
        return self._to_charge(intent)

    def update_charge_metadata(self, charge_id: str, metadata: dict[str, str]) -> None:
        self._call(
            "payment intent update", self.stripe.PaymentIntent.modify, charge_id, metadata=metadata
        )


_stores: dict[str, InvoiceStore] = {}
_stores_lock = Lock()


def list_accounts() -> list[dict[str, Any]]:
    """Return configured provider accounts without their secret keys."""
    return [
        {
            "account_id": account_id,
            "name": config.get("name", account_id),
            "id": config.get("id", account_id),
            "logo": config.get("logo"),
            "publishable_key": config.get("publishableKey"),
        }
        for account_id, config in settings.stripe_accounts.items()
    ]


def get_invoice_store(account_id: str | None = None) -> InvoiceStore:
    """Factory function returning the cached store for a provider account.

    With no ``account_id`` the first configured account is used.
    """
    accounts = settings.stripe_accounts
    if not accounts:
        raise ValueError("No billing provider account is configured")

    if account_id is None:
        account_id = next(iter(accounts))

    config = accounts.get(account_id)
    if config is None:
        raise ValueError(f"Billing provider account not found: {account_id}")
    if not config.get("key"):
        raise ValueError(f"Billing provider key not configured for account: {account_id}")

    with _stores_lock:
        store = _stores.get(account_id)
        if store is None:
            store = StripeInvoiceStore(api_key=config["key"], account_id=account_id)
            _stores[account_id] = store
    return store


def reset_invoice_stores() -> None:
    """Drop cached stores (useful for testing)."""
    with _stores_lock:
        _stores.clear()
