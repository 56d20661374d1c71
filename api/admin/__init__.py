"""Admin endpoints for listing review, tiers and reconciliation.

Authentication for these routes is expected from the deployment (gateway or
reverse proxy); none is enforced here.
"""

from typing import List

from fastapi import APIRouter, Depends, status

from marketplace import Marketplace
from storage import Listing, MysteryBoxTier, PendingTransfer

from ..dependencies import get_marketplace

router = APIRouter(
    prefix="/admin",
    tags=["Admin"]
)


@router.post("/listings/{listing_id}/approve", response_model=Listing)
async def approve_listing(listing_id: str, marketplace: Marketplace = Depends(get_marketplace)):
    return await marketplace.listings.approve(listing_id)


@router.post("/listings/{listing_id}/republish", response_model=Listing)
async def republish_listing(listing_id: str, marketplace: Marketplace = Depends(get_marketplace)):
    """Put a pulled listing back on the market with its failure count reset."""
    return await marketplace.listings.republish(listing_id)


@router.post("/listings/{listing_id}/pin", response_model=Listing)
async def pin_listing(listing_id: str, marketplace: Marketplace = Depends(get_marketplace)):
    return await marketplace.listings.pin(listing_id)


@router.post("/listings/{listing_id}/unpin", response_model=Listing)
async def unpin_listing(listing_id: str, marketplace: Marketplace = Depends(get_marketplace)):
    return await marketplace.listings.unpin(listing_id)


@router.post(
    "/mystery-box/tiers",
    response_model=MysteryBoxTier,
    status_code=status.HTTP_201_CREATED
)
async def add_tier(tier: MysteryBoxTier, marketplace: Marketplace = Depends(get_marketplace)):
    return await marketplace.mystery_boxes.add_tier(tier)


@router.get("/pending-transfers", response_model=List[PendingTransfer])
async def list_pending_transfers(marketplace: Marketplace = Depends(get_marketplace)):
    """Paid trades whose item has not reached the buyer."""
    return await marketplace.trades.get_pending_transfers()


@router.post("/pending-transfers/{pending_id}/retry", response_model=PendingTransfer)
async def retry_pending_transfer(pending_id: str, marketplace: Marketplace = Depends(get_marketplace)):
    return await marketplace.trades.retry_pending_transfer(pending_id)
