"""Mystery box API endpoints."""

from typing import List

from fastapi import APIRouter, Depends, Request

from marketplace import Marketplace
from protocol import extract_payment_header
from storage import MysteryBoxTier

from ..dependencies import get_marketplace, purchase_response
from ..listings import PurchaseRequest

router = APIRouter(
    prefix="/mystery-box",
    tags=["Mystery Box"]
)


@router.get("/tiers", response_model=List[MysteryBoxTier])
async def list_tiers(marketplace: Marketplace = Depends(get_marketplace)):
    return await marketplace.mystery_boxes.get_all_tiers()


@router.get("/tiers/{tier_id}", response_model=MysteryBoxTier)
async def get_tier(tier_id: str, marketplace: Marketplace = Depends(get_marketplace)):
    return await marketplace.mystery_boxes.get_tier(tier_id)


@router.post("/{tier_id}/purchase")
async def purchase_mystery_box(
    tier_id: str,
    body: PurchaseRequest,
    request: Request,
    marketplace: Marketplace = Depends(get_marketplace)
):
    """Buy a mystery box, paid to the platform wallet."""
    outcome = await marketplace.purchase_mystery_box(
        tier_id,
        body.buyer_id,
        body.buyer_wallet,
        payment_header=extract_payment_header(request.headers),
    )
    return purchase_response(outcome)
