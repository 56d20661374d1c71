"""In-memory item adapter used by the development server and the test suite."""
import asyncio
import json
import logging
import random
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from . import (
    ItemAdapter, ItemLockedError, ItemNotFoundError, ItemNotOwnedError, RarityWeights
)
from .rarity import select_rarity

logger = logging.getLogger(__name__)


class InMemoryItemAdapter(ItemAdapter):
    """Keeps items, owners and locks in dicts."""

    def __init__(self, rng: Optional[random.Random] = None, item_type: str = 'gem'):
        self._rng = rng or random.Random()
        self.item_type = item_type
        self.items: Dict[str, Dict[str, Any]] = {}
        self.locked: Set[str] = set()
        self.granted: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def add_item(self, item_id: str, owner_id: str, **data: Any) -> Dict[str, Any]:
        """Seed an item owned by ``owner_id``."""
        item = {'id': item_id, 'owner': owner_id, 'type': self.item_type, **data}
        self.items[item_id] = item
        return item

    def get_user_items(self, user_id: str) -> List[Dict[str, Any]]:
        return [item for item in self.items.values() if item['owner'] == user_id]

    def get_granted_items(self, user_id: str) -> List[Dict[str, Any]]:
        return list(self.granted.get(user_id, []))

    async def validate_item_ownership(self, item_id: str, owner_id: str) -> bool:
        item = self.items.get(item_id)
        return item is not None and item['owner'] == owner_id

    async def validate_item_exists(self, item_id: str) -> bool:
        return item_id in self.items

    async def lock_item(self, item_id: str) -> None:
        async with self._lock:
            if item_id not in self.items:
                raise ItemNotFoundError(f"Item {item_id} not found")
            if item_id in self.locked:
                raise ItemLockedError(f"Item {item_id} is already locked")
            self.locked.add(item_id)

    async def unlock_item(self, item_id: str) -> None:
        async with self._lock:
            self.locked.discard(item_id)

    async def transfer_item(self, item_id: str, from_id: str, to_id: str) -> None:
        async with self._lock:
            item = self.items.get(item_id)
            if item is None:
                raise ItemNotFoundError(f"Item {item_id} not found")
            if item['owner'] != from_id:
                raise ItemNotOwnedError(f"Item {item_id} is not owned by {from_id}")
            item['owner'] = to_id
            self.locked.discard(item_id)
        logger.info(f"Transferred item {item_id} from {from_id} to {to_id}")

    async def generate_random_item(self, tier_id: str, weights: RarityWeights) -> Dict[str, Any]:
        rarity = select_rarity(weights, self._rng)
        return {
            'id': f"{self.item_type}_{uuid4().hex[:12]}",
            'type': self.item_type,
            'rarity': rarity,
            'tier_id': tier_id,
        }

    async def grant_item_to_user(self, item: Dict[str, Any], user_id: str) -> None:
        async with self._lock:
            self.items[item['id']] = {**item, 'owner': user_id}
            self.granted.setdefault(user_id, []).append(item)
        logger.info(f"Granted item {item['id']} to {user_id}")

    def serialize_item(self, item: Dict[str, Any]) -> str:
        return json.dumps(item, sort_keys=True)

    def deserialize_item(self, data: str) -> Dict[str, Any]:
        return json.loads(data)
