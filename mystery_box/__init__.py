"""Mystery box tiers and weighted item rewards.

A tier has a USDC price and an ordered list of (rarity, weight) pairs. A
purchase asks the item system for an item drawn from those weights, grants it
to the buyer and records the purchase. Each step is also exposed on its own so
the trade executor can resume a paid purchase from the step that failed.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from errors import BazaarError, ErrorCodes
from items import ItemAdapter
from protocol import is_valid_usdc_amount
from storage import MysteryBoxPurchase, MysteryBoxTier, StorageAdapter

logger = logging.getLogger(__name__)


class MysteryBoxError(BazaarError):
    """Base exception for mystery box errors"""
    code = ErrorCodes.INVALID_TIER
    status_code = 400


class InvalidTierError(MysteryBoxError):
    """Raised when a tier definition is invalid"""
    code = ErrorCodes.INVALID_TIER


class TierNotFoundError(MysteryBoxError):
    """Raised when a tier does not exist"""
    code = ErrorCodes.TIER_NOT_FOUND
    status_code = 404


class ItemGenerationError(MysteryBoxError):
    """Raised when the item system fails to generate a reward"""
    code = ErrorCodes.ITEM_GENERATION_FAILED
    status_code = 502


class ItemGrantError(MysteryBoxError):
    """Raised when a generated reward cannot be granted to the buyer"""
    code = ErrorCodes.ITEM_GRANT_FAILED
    status_code = 502

    def __init__(self, message: str, item: Optional[dict] = None):
        self.item = item
        super().__init__(message)


class MysteryBoxManager:
    """Manages tiers and resolves mystery box purchases."""

    def __init__(self, storage: StorageAdapter, items: ItemAdapter):
        self.storage = storage
        self.items = items

    async def add_tier(self, tier: MysteryBoxTier) -> MysteryBoxTier:
        """Validate and store a tier.

        Raises:
            InvalidTierError: If id or name is empty, the price is invalid, a
                weight is negative, or no weight is positive
        """
        if not tier.id or not tier.id.strip():
            raise InvalidTierError("Tier id is required")
        if not tier.name or not tier.name.strip():
            raise InvalidTierError("Tier name is required")
        if not is_valid_usdc_amount(tier.price_usdc):
            raise InvalidTierError(f"Tier {tier.id} has an invalid price: {tier.price_usdc}")
        if any(weight < 0 for _, weight in tier.rarity_weights):
            raise InvalidTierError(f"Tier {tier.id} has a negative rarity weight")
        if not tier.rarity_weights or sum(w for _, w in tier.rarity_weights) <= 0:
            raise InvalidTierError(f"Tier {tier.id} must have at least one rarity weight above 0")

        tier = await self.storage.save_mystery_box_tier(tier)
        logger.info(f"Saved mystery box tier {tier.id} ({tier.price_usdc} USDC)")
        return tier

    async def get_tier(self, tier_id: str) -> MysteryBoxTier:
        tier = await self.storage.get_mystery_box_tier(tier_id)
        if tier is None:
            raise TierNotFoundError(f"Mystery box tier {tier_id} not found")
        return tier

    async def get_all_tiers(self) -> List[MysteryBoxTier]:
        return await self.storage.get_mystery_box_tiers()

    async def get_purchases_by_buyer(self, buyer_id: str) -> List[MysteryBoxPurchase]:
        return await self.storage.get_mystery_box_purchases(buyer_id)

    async def generate_item(self, tier: MysteryBoxTier) -> Dict[str, Any]:
        """Ask the item system for a reward drawn from the tier's weights.

        Raises:
            ItemGenerationError: If the item system cannot generate an item
        """
        try:
            return await self.items.generate_random_item(tier.id, tier.rarity_weights)
        except Exception as e:
            logger.error(f"Item generation failed for tier {tier.id}: {e}")
            raise ItemGenerationError(f"Failed to generate item: {e}") from e

    async def grant_item(self, item: Dict[str, Any], buyer_id: str) -> None:
        """Give an already generated reward to the buyer.

        Raises:
            ItemGrantError: If the item system refuses the grant
        """
        try:
            await self.items.grant_item_to_user(item, buyer_id)
        except Exception as e:
            logger.error(f"Granting item {item.get('id')} to {buyer_id} failed: {e}")
            raise ItemGrantError(f"Failed to grant item: {e}", item=item) from e

    async def record_purchase(
        self,
        tier: MysteryBoxTier,
        buyer_id: str,
        tx_reference: str,
        item: Dict[str, Any],
        buyer_wallet: str = '',
        price_usdc: Optional[Decimal] = None
    ) -> MysteryBoxPurchase:
        """Store the purchase for a reward that has been granted."""
        purchase = await self.storage.record_mystery_box_purchase(MysteryBoxPurchase(
            tier_id=tier.id,
            buyer_id=buyer_id,
            buyer_wallet=buyer_wallet,
            price_usdc=tier.price_usdc if price_usdc is None else price_usdc,
            tx_reference=tx_reference,
            generated_item=item,
        ))
        logger.info(
            f"Mystery box {tier.id} opened by {buyer_id}: "
            f"{item.get('rarity', 'unknown')} item {item.get('id')}"
        )
        return purchase

    async def purchase_mystery_box(
        self,
        tier_id: str,
        buyer_id: str,
        tx_reference: str,
        buyer_wallet: str = ''
    ) -> MysteryBoxPurchase:
        """Generate, grant and record a mystery box reward.

        Args:
            tier_id: Tier being purchased
            buyer_id: Player receiving the item
            tx_reference: Ledger reference of the confirmed payment
            buyer_wallet: Wallet that paid

        Returns:
            The recorded MysteryBoxPurchase

        Raises:
            TierNotFoundError: If the tier does not exist
            ItemGenerationError: If the item system cannot generate an item
            ItemGrantError: If the generated item cannot be granted
        """
        tier = await self.get_tier(tier_id)
        item = await self.generate_item(tier)
        await self.grant_item(item, buyer_id)
        return await self.record_purchase(tier, buyer_id, tx_reference, item, buyer_wallet)


# Export public interface
__all__ = [
    'MysteryBoxManager',
    'MysteryBoxError',
    'InvalidTierError',
    'TierNotFoundError',
    'ItemGenerationError',
    'ItemGrantError',
]
