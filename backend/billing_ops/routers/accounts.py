"""Billing provider account endpoints."""

from fastapi import APIRouter, HTTPException

from billing_ops.schemas.settlement import AccountResponse
from billing_ops.services.billing_provider import list_accounts

router = APIRouter()


@router.get(
    "/",
    response_model=list[AccountResponse],
    summary="List accounts",
    responses={500: {"description": "Account configuration is invalid"}},
)
async def get_accounts() -> list[AccountResponse]:
    """List configured billing provider accounts. Secret keys are never returned."""
    try:
        accounts = list_accounts()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e)) from None
    return [AccountResponse(**account) for account in accounts]
