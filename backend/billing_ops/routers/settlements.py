"""Settlement API endpoints.

These handlers are plain ``def`` functions: every settlement makes
blocking provider calls and may wait on a per-customer lock, so they run
in FastAPI's threadpool rather than on the event loop.
"""

from collections.abc import Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billing_ops.core.database import get_db
from billing_ops.core.idempotency import (
    IdempotencyResult,
    check_idempotency,
    record_idempotency_response,
    release_idempotency_key,
)
from billing_ops.core.settlement_lock import SettlementConflictError
from billing_ops.models.settlement_record import SettlementRecord
from billing_ops.repositories.settlement_allocation_repository import (
    SettlementAllocationRepository,
)
from billing_ops.repositories.settlement_record_repository import SettlementRecordRepository
from billing_ops.schemas.settlement import (
    AddCreditRequest,
    AppliedInvoiceResponse,
    PayNowFinalizeRequest,
    PayNowRequest,
    SettlementAllocationResponse,
    SettlementRecordResponse,
    SettlementResponse,
)
from billing_ops.services.billing_provider import (
    BillingProviderError,
    InvoiceStore,
    get_invoice_store,
)
from billing_ops.services.candidate_selector import CandidateSelectionError
from billing_ops.services.settlement_service import SettlementOutcome, SettlementService

router = APIRouter()

StoreFactory = Callable[[str | None], InvoiceStore]

SETTLEMENT_RESPONSES: dict[int | str, dict[str, str]] = {
    400: {"description": "Invalid request, unknown account, or payment not completed"},
    409: {"description": "Settlement already in progress or previously failed"},
    422: {"description": "Validation error"},
    502: {"description": "Billing provider error"},
}


def get_store_factory() -> StoreFactory:
    """Dependency returning the account -> invoice store lookup."""
    return get_invoice_store


def _to_response(outcome: SettlementOutcome) -> SettlementResponse:
    return SettlementResponse(
        status=outcome.status,
        source_id=outcome.source_id,
        amount=outcome.amount,
        currency=outcome.currency,
        invoices_paid=[
            AppliedInvoiceResponse(
                invoice_id=a.invoice_id,
                invoice_number=a.invoice_number,
                amount_applied=a.amount_applied,
            )
            for a in outcome.invoices_paid
        ],
        total_applied=outcome.total_applied,
        credit_added=outcome.credit_added,
        credit_transaction_id=outcome.credit_transaction_id,
        client_secret=outcome.client_secret,
        replayed=outcome.replayed,
    )


def _http_error(error: Exception) -> HTTPException:
    if isinstance(error, SettlementConflictError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (CandidateSelectionError, BillingProviderError)):
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _run_settlement(
    request: Request,
    db: Session,
    run: Callable[[], SettlementOutcome],
) -> SettlementResponse | JSONResponse:
    idempotency = check_idempotency(request, db)
    if isinstance(idempotency, JSONResponse):
        return idempotency

    try:
        outcome = run()
    except (
        ValueError,
        SettlementConflictError,
        CandidateSelectionError,
        BillingProviderError,
    ) as e:
        if isinstance(idempotency, IdempotencyResult):
            release_idempotency_key(db, idempotency.key)
        raise _http_error(e) from None
    except Exception:
        # Unexpected failures still answer 500, but the key must not stay claimed.
        if isinstance(idempotency, IdempotencyResult):
            release_idempotency_key(db, idempotency.key)
        raise

    response = _to_response(outcome)
    if isinstance(idempotency, IdempotencyResult):
        body = response.model_dump(mode="json")
        record_idempotency_response(db, idempotency.key, 200, body)
    return response


@router.post(
    "/pay-now",
    response_model=SettlementResponse,
    summary="Charge a card and settle invoices",
    responses=SETTLEMENT_RESPONSES,
)
def pay_now(
    data: PayNowRequest,
    request: Request,
    db: Session = Depends(get_db),
    store_factory: StoreFactory = Depends(get_store_factory),
) -> SettlementResponse | JSONResponse:
    """Charge the customer and apply the proceeds to invoices; excess becomes credit."""

    def run() -> SettlementOutcome:
        service = SettlementService(db, store_factory(data.account_id))
        return service.pay_now(
            customer_id=data.customer_id,
            payment_method_id=data.payment_method_id,
            amount=data.amount,
            currency=data.currency,
            reason=data.reason,
            correlation_id=data.correlation_id,
            selected_invoice_ids=data.selected_invoice_ids,
            apply_to_all=data.apply_to_all,
            save_card=data.save_card,
        )

    return _run_settlement(request, db, run)


@router.post(
    "/pay-now/finalize",
    response_model=SettlementResponse,
    summary="Settle invoices after a 3-D Secure challenge",
    responses=SETTLEMENT_RESPONSES,
)
def finalize_pay_now(
    data: PayNowFinalizeRequest,
    request: Request,
    db: Session = Depends(get_db),
    store_factory: StoreFactory = Depends(get_store_factory),
) -> SettlementResponse | JSONResponse:
    """Apply a charge that succeeded after customer authentication."""

    def run() -> SettlementOutcome:
        service = SettlementService(db, store_factory(data.account_id))
        return service.finalize_pay_now(
            payment_intent_id=data.payment_intent_id,
            customer_id=data.customer_id,
            correlation_id=data.correlation_id,
            selected_invoice_ids=data.selected_invoice_ids,
            apply_to_all=data.apply_to_all,
        )

    return _run_settlement(request, db, run)


@router.post(
    "/credits",
    response_model=SettlementResponse,
    summary="Grant a manual credit",
    responses=SETTLEMENT_RESPONSES,
)
def add_credit(
    data: AddCreditRequest,
    request: Request,
    db: Session = Depends(get_db),
    store_factory: StoreFactory = Depends(get_store_factory),
) -> SettlementResponse | JSONResponse:
    """Apply a manual credit to invoices; whatever is left goes to the customer balance."""

    def run() -> SettlementOutcome:
        service = SettlementService(db, store_factory(data.account_id))
        return service.add_credit(
            customer_id=data.customer_id,
            amount=data.amount,
            reason=data.reason,
            currency=data.currency,
            correlation_id=data.correlation_id,
            selected_invoice_ids=data.selected_invoice_ids,
            apply_to_all=data.apply_to_all,
        )

    return _run_settlement(request, db, run)


def _record_response(db: Session, record: SettlementRecord) -> SettlementRecordResponse:
    allocation_repo = SettlementAllocationRepository(db)
    response = SettlementRecordResponse.model_validate(record)
    response.allocations = [
        SettlementAllocationResponse.model_validate(a)
        for a in allocation_repo.get_by_settlement_id(record.id)  # type: ignore[arg-type]
    ]
    return response


@router.get(
    "/",
    response_model=list[SettlementRecordResponse],
    summary="List settlements",
)
def list_settlements(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    customer_id: str | None = None,
    account_id: str | None = None,
    db: Session = Depends(get_db),
) -> list[SettlementRecordResponse]:
    """List settlement records, newest first."""
    repo = SettlementRecordRepository(db)
    response.headers["X-Total-Count"] = str(repo.count(customer_id, account_id))
    records = repo.get_all(skip=skip, limit=limit, customer_id=customer_id, account_id=account_id)
    return [_record_response(db, r) for r in records]


@router.get(
    "/{source_id}",
    response_model=SettlementRecordResponse,
    summary="Get settlement",
    responses={404: {"description": "Settlement not found"}},
)
def get_settlement(
    source_id: str,
    db: Session = Depends(get_db),
) -> SettlementRecordResponse:
    """Get a settlement record and its per-invoice allocations by source id."""
    repo = SettlementRecordRepository(db)
    record = repo.get_by_source_id(source_id)
    if not record:
        raise HTTPException(status_code=404, detail="Settlement not found")
    return _record_response(db, record)
