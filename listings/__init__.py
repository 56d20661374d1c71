"""Listings module for managing marketplace listings.

This module provides functionality for:
- Creating listings and locking the listed item
- Admin review: approve, republish, pin and unpin
- Seller cancellation
- Counting failed purchases and pulling listings that keep failing
- Availability checks and paginated queries

Lifecycle:
    in_review --approve--> on_market --purchase--> sold
    on_market --N failed purchases--> pulled
    on_market --seller cancel--> pulled
    pulled --republish--> on_market (failure counter reset)

A listing leaves on_market unlocked from the item system, so republishing
re-validates ownership and locks the item again.
"""
import inspect
import logging
import re
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from errors import BazaarError, ErrorCodes
from items import ItemAdapter, ItemNotFoundError, ItemNotOwnedError
from protocol import is_valid_usdc_amount
from storage import (
    StorageAdapter, Listing, ListingState, PaginatedListings, PaginationOptions, utcnow
)

logger = logging.getLogger(__name__)

DEFAULT_FAILED_PURCHASE_LIMIT = 3

USERNAME_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
WALLET_MIN_LENGTH = 32
WALLET_MAX_LENGTH = 44
TITLE_MAX_LENGTH = 120

ListingCallback = Callable[[Listing], Union[None, Awaitable[None]]]


class ListingError(BazaarError):
    """Base exception for listing errors."""
    code = ErrorCodes.INVALID_LISTING
    status_code = 400


class InvalidListingError(ListingError):
    """Raised when listing parameters fail validation."""
    code = ErrorCodes.VALIDATION_ERROR


class ListingNotFoundError(ListingError):
    """Raised when a listing is not found."""
    code = ErrorCodes.LISTING_NOT_FOUND
    status_code = 404


class ListingNotAvailableError(ListingError):
    """Raised when a listing cannot be purchased."""
    code = ErrorCodes.LISTING_NOT_AVAILABLE
    status_code = 409


class InvalidTransitionError(ListingError):
    """Raised when a lifecycle action does not apply to the current state."""
    code = ErrorCodes.INVALID_TRANSITION
    status_code = 409


class UnauthorizedError(ListingError):
    """Raised when someone other than the seller acts on a listing."""
    code = ErrorCodes.UNAUTHORIZED
    status_code = 403


def validate_listing_params(
    seller_id: str,
    seller_wallet: str,
    item_id: str,
    item_type: str,
    title: str,
    price: Any
) -> List[str]:
    """Collect validation errors for new listing parameters.

    Returns:
        List of error messages, empty if the parameters are valid
    """
    errors = []
    if not item_id or not str(item_id).strip():
        errors.append("item_id is required")
    if not item_type or not str(item_type).strip():
        errors.append("item_type is required")
    if not title or not str(title).strip():
        errors.append("title is required")
    elif len(title) > TITLE_MAX_LENGTH:
        errors.append(f"title must be at most {TITLE_MAX_LENGTH} characters")
    if not seller_id or not (USERNAME_MIN_LENGTH <= len(seller_id) <= USERNAME_MAX_LENGTH):
        errors.append(
            f"seller username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
        )
    elif not USERNAME_PATTERN.match(seller_id):
        errors.append("seller username may only contain letters, digits, '_' and '-'")
    if not seller_wallet or not (WALLET_MIN_LENGTH <= len(seller_wallet) <= WALLET_MAX_LENGTH):
        errors.append("seller wallet address is invalid")
    if not is_valid_usdc_amount(price):
        errors.append("price must be between 0.01 and 1000000 USDC")
    return errors


class ListingManager:
    """Manager class for the listing lifecycle."""

    def __init__(
        self,
        storage: StorageAdapter,
        items: ItemAdapter,
        failed_purchase_limit: int = DEFAULT_FAILED_PURCHASE_LIMIT,
        on_listing_pulled: Optional[ListingCallback] = None
    ):
        """Initialize listing manager.

        Args:
            storage: Storage adapter holding listings
            items: Item system used to check and lock listed items
            failed_purchase_limit: Failed purchases before a listing is pulled
            on_listing_pulled: Called with the listing after an auto-pull
        """
        self.storage = storage
        self.items = items
        self.failed_purchase_limit = failed_purchase_limit
        self.on_listing_pulled = on_listing_pulled

    async def create_listing(
        self,
        seller_id: str,
        seller_wallet: str,
        item_id: str,
        item_type: str,
        title: str,
        price: Union[Decimal, str, int, float],
        description: str = '',
        item_data: Optional[Dict[str, Any]] = None,
        expires_in_seconds: Optional[int] = None
    ) -> Listing:
        """Create a listing awaiting review.

        Args:
            seller_id: Seller username
            seller_wallet: Address that receives the payment
            item_id: Item being sold
            item_type: Game-specific item type
            title: Listing title
            price: Price in USDC
            description: Optional description
            item_data: Game-specific item data shown to buyers
            expires_in_seconds: Optional lifetime of the listing

        Returns:
            The stored listing in state in_review

        Raises:
            InvalidListingError: If the parameters are invalid
            ItemNotFoundError: If the item does not exist
            ItemNotOwnedError: If the seller does not own the item
            ListingError: If storing the listing fails
        """
        errors = validate_listing_params(seller_id, seller_wallet, item_id, item_type, title, price)
        if expires_in_seconds is not None and expires_in_seconds <= 0:
            errors.append("expires_in_seconds must be positive")
        if errors:
            raise InvalidListingError("; ".join(errors), details={'errors': errors})

        if not await self.items.validate_item_exists(item_id):
            raise ItemNotFoundError(f"Item {item_id} not found")
        if not await self.items.validate_item_ownership(item_id, seller_id):
            raise ItemNotOwnedError(f"Item {item_id} is not owned by {seller_id}")

        await self.items.lock_item(item_id)

        now = utcnow()
        listing = Listing(
            seller_id=seller_id,
            seller_wallet=seller_wallet,
            title=title.strip(),
            description=description,
            item_id=item_id,
            item_type=item_type,
            item_data=item_data or {},
            price=Decimal(str(price)),
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=expires_in_seconds) if expires_in_seconds else None,
        )

        try:
            listing = await self.storage.create_listing(listing)
        except Exception as e:
            logger.error(f"Failed to store listing for item {item_id}: {e}")
            await self._unlock_quietly(item_id)
            raise ListingError(f"Failed to create listing: {e}") from e

        logger.info(f"Created listing {listing.id} for item {item_id} by {seller_id}")
        return listing

    async def get_listing(self, listing_id: str) -> Listing:
        """Get a listing by id.

        Raises:
            ListingNotFoundError: If the listing doesn't exist
        """
        listing = await self.storage.get_listing(listing_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found")
        return listing

    async def get_active_listings(
        self,
        options: Optional[PaginationOptions] = None
    ) -> PaginatedListings:
        return await self.storage.get_active_listings(options or PaginationOptions())

    async def get_listings_by_seller(self, seller_id: str) -> List[Listing]:
        return await self.storage.get_listings_by_seller(seller_id)

    async def _transition(
        self,
        listing_id: str,
        action: str,
        from_states: List[ListingState],
        to_state: ListingState,
        **changes: Any
    ) -> Listing:
        updated = await self.storage.transition_listing(listing_id, from_states, to_state, **changes)
        if updated is not None:
            logger.info(f"Listing {listing_id}: {action} -> {to_state.value}")
            return updated

        current = await self.get_listing(listing_id)
        raise InvalidTransitionError(
            f"Cannot {action} listing {listing_id} in state {current.state.value}"
        )

    async def approve(self, listing_id: str) -> Listing:
        """Approve a listing under review and put it on the market."""
        return await self._transition(
            listing_id, 'approve', [ListingState.IN_REVIEW], ListingState.ON_MARKET,
            approved=True
        )

    async def republish(self, listing_id: str) -> Listing:
        """Put a pulled listing back on the market with a clean failure count.

        Raises:
            ListingNotFoundError: If the listing doesn't exist
            InvalidTransitionError: If the listing is not pulled
            ItemNotOwnedError: If the seller no longer owns the item
        """
        listing = await self.get_listing(listing_id)
        if listing.state != ListingState.PULLED:
            raise InvalidTransitionError(
                f"Cannot republish listing {listing_id} in state {listing.state.value}"
            )
        if not await self.items.validate_item_ownership(listing.item_id, listing.seller_id):
            raise ItemNotOwnedError(
                f"Item {listing.item_id} is no longer owned by {listing.seller_id}"
            )

        await self.items.lock_item(listing.item_id)
        try:
            return await self._transition(
                listing_id, 'republish', [ListingState.PULLED], ListingState.ON_MARKET,
                approved=True, failed_purchase_count=0, last_failure_at=None
            )
        except BazaarError:
            await self._unlock_quietly(listing.item_id)
            raise

    async def cancel(self, listing_id: str, requester_id: str) -> Listing:
        """Withdraw a listing on behalf of its seller.

        Raises:
            ListingNotFoundError: If the listing doesn't exist
            UnauthorizedError: If the requester is not the seller
            InvalidTransitionError: If the listing is sold or already pulled
        """
        listing = await self.get_listing(listing_id)
        if listing.seller_id != requester_id:
            raise UnauthorizedError(
                f"Unauthorized: only the seller can cancel listing {listing_id}"
            )

        cancelled = await self._transition(
            listing_id, 'cancel', [ListingState.IN_REVIEW, ListingState.ON_MARKET],
            ListingState.PULLED
        )
        await self._unlock_quietly(listing.item_id)
        return cancelled

    async def set_pinned(self, listing_id: str, pinned: bool) -> Listing:
        updated = await self.storage.update_listing(listing_id, pinned=pinned)
        if updated is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found")
        logger.info(f"Listing {listing_id} {'pinned' if pinned else 'unpinned'}")
        return updated

    async def pin(self, listing_id: str) -> Listing:
        return await self.set_pinned(listing_id, True)

    async def unpin(self, listing_id: str) -> Listing:
        return await self.set_pinned(listing_id, False)

    async def report_listing(self, listing_id: str) -> Listing:
        updated = await self.storage.increment_reports(listing_id)
        if updated is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found")
        return updated

    async def ensure_purchasable(self, listing_id: str, buyer_id: str) -> Listing:
        """Check a listing can be bought by ``buyer_id``.

        Raises:
            ListingNotFoundError: If the listing doesn't exist
            ListingNotAvailableError: If it is not on the market or has expired
            ListingError: If the buyer is the seller
        """
        listing = await self.get_listing(listing_id)
        if listing.state != ListingState.ON_MARKET:
            raise ListingNotAvailableError(
                f"Listing {listing_id} is not available ({listing.state.value})"
            )
        if listing.is_expired():
            raise ListingNotAvailableError(f"Listing {listing_id} has expired")
        if listing.seller_id == buyer_id:
            raise ListingError("Sellers cannot purchase their own listing")
        return listing

    async def record_purchase_failure(self, listing_id: str) -> Listing:
        """Count a failed purchase, pulling the listing at the limit.

        The increment and the pull are a single storage write. Listings that
        are not on the market are returned unchanged.

        Raises:
            ListingNotFoundError: If the listing doesn't exist
        """
        listing, counted = await self.storage.record_purchase_failure(
            listing_id, self.failed_purchase_limit, utcnow()
        )
        if listing is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found")

        if not counted:
            logger.debug(f"Listing {listing_id} is {listing.state.value}, failure not counted")
            return listing

        if listing.state == ListingState.PULLED:
            logger.warning(
                f"Listing {listing_id} auto-pulled after "
                f"{listing.failed_purchase_count} failed purchase attempts"
            )
            await self._unlock_quietly(listing.item_id)
            await self._notify_pulled(listing)
        else:
            logger.info(
                f"Listing {listing_id} failed purchase "
                f"{listing.failed_purchase_count}/{self.failed_purchase_limit}"
            )
        return listing

    async def _notify_pulled(self, listing: Listing) -> None:
        if self.on_listing_pulled is None:
            return
        try:
            result = self.on_listing_pulled(listing)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Auto-pull notification failed for listing {listing.id}: {e}")

    async def _unlock_quietly(self, item_id: str) -> None:
        try:
            await self.items.unlock_item(item_id)
        except Exception as e:
            logger.error(f"Failed to unlock item {item_id}: {e}")


# Export public interface
__all__ = [
    'ListingManager',
    'ListingError',
    'InvalidListingError',
    'ListingNotFoundError',
    'ListingNotAvailableError',
    'InvalidTransitionError',
    'UnauthorizedError',
    'validate_listing_params',
    'DEFAULT_FAILED_PURCHASE_LIMIT',
    'ListingCallback',
]
