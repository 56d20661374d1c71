"""Item system contract.

The marketplace never owns items; it asks an ItemAdapter supplied by the
hosting application to check ownership, lock items while listed, move them
between players and mint mystery box rewards. Items are plain dicts with at
least an ``id``.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Sequence, Tuple

from errors import BazaarError, ErrorCodes

RarityWeights = Sequence[Tuple[str, float]]


class ItemError(BazaarError):
    """Base exception for item errors"""
    code = ErrorCodes.ITEM_NOT_FOUND
    status_code = 400


class ItemNotFoundError(ItemError):
    """Raised when an item does not exist"""
    code = ErrorCodes.ITEM_NOT_FOUND
    status_code = 404


class ItemNotOwnedError(ItemError):
    """Raised when an item is not owned by the expected player"""
    code = ErrorCodes.ITEM_NOT_OWNED
    status_code = 403


class ItemLockedError(ItemError):
    """Raised when an item is already locked by another listing"""
    code = ErrorCodes.ITEM_LOCKED
    status_code = 409


class InvalidRarityWeightsError(ItemError):
    """Raised when rarity weights cannot produce a draw"""
    code = ErrorCodes.INVALID_TIER
    status_code = 400


class ItemAdapter(ABC):
    """Bridge to the hosting application's item storage."""

    @abstractmethod
    async def validate_item_ownership(self, item_id: str, owner_id: str) -> bool:
        pass

    @abstractmethod
    async def validate_item_exists(self, item_id: str) -> bool:
        pass

    @abstractmethod
    async def lock_item(self, item_id: str) -> None:
        """Prevent the item being used or traded while listed."""

    @abstractmethod
    async def unlock_item(self, item_id: str) -> None:
        pass

    @abstractmethod
    async def transfer_item(self, item_id: str, from_id: str, to_id: str) -> None:
        pass

    @abstractmethod
    async def generate_random_item(self, tier_id: str, weights: RarityWeights) -> Dict[str, Any]:
        """Create an item whose rarity is drawn from ``weights``."""

    @abstractmethod
    async def grant_item_to_user(self, item: Dict[str, Any], user_id: str) -> None:
        pass

    @abstractmethod
    def serialize_item(self, item: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def deserialize_item(self, data: str) -> Dict[str, Any]:
        pass


from .rarity import Weights, select_rarity  # noqa: E402
from .memory import InMemoryItemAdapter  # noqa: E402

# Export public interface
__all__ = [
    'ItemAdapter',
    'ItemError',
    'ItemNotFoundError',
    'ItemNotOwnedError',
    'ItemLockedError',
    'InvalidRarityWeightsError',
    'InMemoryItemAdapter',
    'RarityWeights',
    'Weights',
    'select_rarity',
]
