"""Settlement schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_ops.models.settlement_record import SettlementSourceType


class SettlementRecordCreate(BaseModel):
    """Schema for opening a settlement record."""

    source_id: str
    source_type: SettlementSourceType
    account_id: str
    customer_id: str
    amount_cents: int
    currency: str
    reason: str | None = None
    correlation_id: str | None = None


class SettlementAllocationResponse(BaseModel):
    """Schema for one invoice's share of a settlement."""

    model_config = ConfigDict(from_attributes=True)

    position: int
    invoice_id: str
    invoice_number: str | None = None
    invoice_status: str
    amount_cents: int
    action: str
    fully_settled: bool
    used_fallback: bool
    metadata_written: bool


class SettlementRecordResponse(BaseModel):
    """Schema for settlement record response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_id: str
    source_type: str
    account_id: str
    customer_id: str
    status: str
    amount_cents: int
    currency: str
    reason: str | None = None
    correlation_id: str | None = None
    total_applied_cents: int
    credit_added_cents: int
    credit_transaction_id: str | None = None
    summary_recorded: bool
    failure_reason: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    allocations: list[SettlementAllocationResponse] = Field(default_factory=list)


class _SettlementTarget(BaseModel):
    """Invoice selection shared by every settlement request."""

    customer_id: str = Field(..., min_length=1)
    correlation_id: str | None = Field(
        default=None, description="Groups the invoices that make up one logical bill"
    )
    selected_invoice_ids: list[str] = Field(
        default_factory=list, description="Invoices to settle, in the order given"
    )
    apply_to_all: bool = Field(
        default=False,
        description="Settle every failed then draft invoice sharing the correlation id",
    )
    account_id: str | None = Field(default=None, description="Billing provider account")


class PayNowRequest(_SettlementTarget):
    """Schema for charging a card and settling invoices with the proceeds."""

    payment_method_id: str = Field(..., min_length=1)
    amount: int = Field(..., description="Amount in minor currency units")
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    reason: str = ""
    save_card: bool = False


class PayNowFinalizeRequest(_SettlementTarget):
    """Schema for settling a charge after its 3-D Secure challenge."""

    payment_intent_id: str = Field(..., min_length=1)


class AddCreditRequest(_SettlementTarget):
    """Schema for granting a manual credit."""

    amount: int = Field(..., description="Amount in minor currency units")
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    reason: str = ""


class AppliedInvoiceResponse(BaseModel):
    invoice_id: str
    invoice_number: str | None = None
    amount_applied: int


class SettlementResponse(BaseModel):
    """Schema for the outcome of a settlement request."""

    status: str = Field(..., description="'completed' or 'requires_action'")
    source_id: str
    amount: int
    currency: str
    invoices_paid: list[AppliedInvoiceResponse] = Field(default_factory=list)
    total_applied: int = 0
    credit_added: int = 0
    credit_transaction_id: str | None = None
    client_secret: str | None = None
    replayed: bool = False


class AccountResponse(BaseModel):
    """Schema for a configured billing provider account."""

    account_id: str
    name: str
    id: str
    logo: str | None = None
    publishable_key: str | None = None
