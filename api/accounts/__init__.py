"""Account balance and history endpoints."""

from typing import List

from fastapi import APIRouter, Depends, Query

from currency import CurrencyBalance, CurrencyTransaction
from marketplace import Marketplace

from ..dependencies import get_marketplace

router = APIRouter(
    prefix="/accounts",
    tags=["Accounts"]
)


@router.get("/{account_id}/balance", response_model=CurrencyBalance)
async def get_balance(account_id: str, marketplace: Marketplace = Depends(get_marketplace)):
    return await marketplace.currency.get_balance(account_id)


@router.get("/{account_id}/transactions", response_model=List[CurrencyTransaction])
async def get_transactions(
    account_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_order: str = Query('desc', pattern='^(asc|desc)$'),
    marketplace: Marketplace = Depends(get_marketplace)
):
    """Payment history for an account, newest first by default."""
    return await marketplace.currency.get_transactions(account_id, page, limit, sort_order)
