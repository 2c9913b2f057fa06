from billing_ops.schemas.settlement import (
    AccountResponse,
    AddCreditRequest,
    AppliedInvoiceResponse,
    PayNowFinalizeRequest,
    PayNowRequest,
    SettlementAllocationResponse,
    SettlementRecordCreate,
    SettlementRecordResponse,
    SettlementResponse,
)

__all__ = [
    "AccountResponse",
    "AddCreditRequest",
    "AppliedInvoiceResponse",
    "PayNowFinalizeRequest",
    "PayNowRequest",
    "SettlementAllocationResponse",
    "SettlementRecordCreate",
    "SettlementRecordResponse",
    "SettlementResponse",
]
