"""Listings API endpoints."""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from pydantic import BaseModel, Field

from marketplace import Marketplace
from protocol import extract_payment_header
from storage import Listing, PaginatedListings, PaginationOptions, SortBy

from ..dependencies import get_marketplace, purchase_response

router = APIRouter(
    prefix="/listings",
    tags=["Listings"]
)


class CreateListingRequest(BaseModel):
    """Request model for creating a listing."""
    seller_id: str
    seller_wallet: str
    item_id: str
    item_type: str
    title: str
    price: Decimal
    description: str = ''
    item_data: Dict[str, Any] = Field(default_factory=dict)
    expires_in_seconds: Optional[int] = None


class PurchaseRequest(BaseModel):
    """Request model for buying a listing or mystery box."""
    buyer_id: str
    buyer_wallet: str


@router.get("", response_model=PaginatedListings)
async def list_listings(
    cursor: Optional[str] = Query(None),
    limit: int = Query(20),
    sort_by: SortBy = Query(SortBy.NEWEST),
    marketplace: Marketplace = Depends(get_marketplace)
):
    """On-market listings, pinned first."""
    options = PaginationOptions(cursor=cursor, limit=limit, sort_by=sort_by)
    return await marketplace.listings.get_active_listings(options)


@router.post("", response_model=Listing, status_code=status.HTTP_201_CREATED)
async def create_listing(
    body: CreateListingRequest,
    marketplace: Marketplace = Depends(get_marketplace)
):
    """Submit a listing for review."""
    return await marketplace.create_listing(**body.model_dump())


@router.get("/user/{seller_id}", response_model=List[Listing])
async def get_user_listings(
    seller_id: str,
    marketplace: Marketplace = Depends(get_marketplace)
):
    return await marketplace.listings.get_listings_by_seller(seller_id)


@router.get("/{listing_id}", response_model=Listing)
async def get_listing(
    listing_id: str,
    marketplace: Marketplace = Depends(get_marketplace)
):
    return await marketplace.listings.get_listing(listing_id)


@router.delete("/{listing_id}", response_model=Listing)
async def cancel_listing(
    listing_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    marketplace: Marketplace = Depends(get_marketplace)
):
    """Withdraw a listing; only its seller may do this."""
    return await marketplace.listings.cancel(listing_id, user_id)


@router.post("/{listing_id}/report", response_model=Listing)
async def report_listing(
    listing_id: str,
    marketplace: Marketplace = Depends(get_marketplace)
):
    return await marketplace.listings.report_listing(listing_id)


@router.post("/{listing_id}/purchase")
async def purchase_listing(
    listing_id: str,
    body: PurchaseRequest,
    request: Request,
    marketplace: Marketplace = Depends(get_marketplace)
):
    """Buy a listing.

    Without an ``X-Payment`` header this answers 402 with the payment
    requirements. Retry with the signed payment to complete the purchase.
    """
    outcome = await marketplace.purchase_listing(
        listing_id,
        body.buyer_id,
        body.buyer_wallet,
        payment_header=extract_payment_header(request.headers),
    )
    return purchase_response(outcome)
