"""Persistent records shared by the marketplace components."""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class ListingState(str, Enum):
    IN_REVIEW = "in_review"
    ON_MARKET = "on_market"
    PULLED = "pulled"
    SOLD = "sold"


class SortBy(str, Enum):
    NEWEST = "newest"
    PRICE_LOW = "price_low"
    PRICE_HIGH = "price_high"


class TradeKind(str, Enum):
    LISTING_PURCHASE = "listing_purchase"
    MYSTERY_BOX_PURCHASE = "mystery_box_purchase"


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class PendingTransferKind(str, Enum):
    TRANSFER = "transfer"
    GRANT = "grant"


class Listing(BaseModel):
    id: str = Field(default_factory=new_id)
    seller_id: str
    seller_wallet: str
    title: str
    description: str = ''
    item_id: str
    item_type: str
    item_data: Dict[str, Any] = Field(default_factory=dict)
    price: Decimal
    state: ListingState = ListingState.IN_REVIEW
    approved: bool = False
    pinned: bool = False
    failed_purchase_count: int = 0
    last_failure_at: Optional[datetime] = None
    reports_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @model_validator(mode='after')
    def _on_market_requires_approval(self) -> 'Listing':
        if self.state == ListingState.ON_MARKET and not self.approved:
            raise ValueError("a listing on the market must be approved")
        return self

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())

    def is_purchasable(self, now: Optional[datetime] = None) -> bool:
        return self.state == ListingState.ON_MARKET and not self.is_expired(now)


class Transaction(BaseModel):
    """Append-only record of a completed sale; tx_reference is unique."""
    id: str = Field(default_factory=new_id)
    kind: TradeKind
    listing_id: Optional[str] = None
    tier_id: Optional[str] = None
    buyer_id: str
    buyer_wallet: str = ''
    seller_id: Optional[str] = None
    amount: Decimal
    tx_reference: str
    network_id: str = ''
    status: TransactionStatus = TransactionStatus.SUCCESS
    items: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class MysteryBoxTier(BaseModel):
    id: str
    name: str
    description: str = ''
    price_usdc: Decimal
    rarity_weights: List[Tuple[str, float]]

    @field_validator('rarity_weights', mode='before')
    @classmethod
    def _ordered_pairs(cls, value: Any) -> Any:
        # Mappings keep their insertion order
        if isinstance(value, Mapping):
            return list(value.items())
        return value


class MysteryBoxPurchase(BaseModel):
    id: str = Field(default_factory=new_id)
    tier_id: str
    buyer_id: str
    buyer_wallet: str = ''
    price_usdc: Decimal
    tx_reference: str
    generated_item: Dict[str, Any]
    created_at: datetime = Field(default_factory=utcnow)


class PendingTransfer(BaseModel):
    """Durable marker for an item move that must follow a committed trade."""
    id: str = Field(default_factory=new_id)
    kind: PendingTransferKind
    tx_reference: str
    buyer_id: str
    buyer_wallet: str = ''
    seller_id: Optional[str] = None
    listing_id: Optional[str] = None
    item_id: Optional[str] = None
    tier_id: Optional[str] = None
    item: Optional[Dict[str, Any]] = None
    item_granted: bool = False
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None


class PaginationOptions(BaseModel):
    cursor: Optional[str] = None
    limit: int = 20
    sort_by: SortBy = SortBy.NEWEST

    @field_validator('limit')
    @classmethod
    def _clamp_limit(cls, value: int) -> int:
        return max(1, min(value, 100))


class PaginatedListings(BaseModel):
    items: List[Listing]
    next_cursor: Optional[str] = None
    has_more: bool = False
