"""PostgreSQL StorageAdapter on an asyncpg pool.

State changes are conditional UPDATEs (``WHERE state = ...``), so two
concurrent purchases cannot both move a listing to sold. The failure counter
and the auto-pull are one UPDATE. Atomic trades run in a single database
transaction.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

import asyncpg
from pydantic import BaseModel

from . import (
    StorageAdapter, StorageError, ListingStateConflictError, ListingAlreadySoldError,
    DuplicateTransactionError, UpdateListing, RecordTransaction, RecordPendingTransfer,
    TradeOperation, sort_listings, paginate
)
from .models import (
    Listing, ListingState, MysteryBoxPurchase, MysteryBoxTier, PaginatedListings,
    PaginationOptions, PendingTransfer, Transaction, utcnow
)

logger = logging.getLogger(__name__)

Model = TypeVar('Model', bound=BaseModel)

LISTING_COLUMNS = tuple(Listing.model_fields)
TRANSACTION_COLUMNS = tuple(Transaction.model_fields)
TIER_COLUMNS = tuple(MysteryBoxTier.model_fields)
PURCHASE_COLUMNS = tuple(MysteryBoxPurchase.model_fields)
PENDING_COLUMNS = tuple(PendingTransfer.model_fields)

# Columns that may be changed through update_listing / transition_listing
MUTABLE_LISTING_COLUMNS = frozenset(LISTING_COLUMNS) - {'id', 'created_at', 'updated_at'}
MUTABLE_PENDING_COLUMNS = frozenset(PENDING_COLUMNS) - {'id', 'created_at'}


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, list):
        return [_db_value(v) for v in value]
    return value


def _values(model: BaseModel, columns: Sequence[str]) -> List[Any]:
    data = model.model_dump()
    return [_db_value(data[column]) for column in columns]


def _insert_sql(table: str, columns: Sequence[str]) -> str:
    placeholders = ', '.join(f'${i}' for i in range(1, len(columns) + 1))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def _set_clause(changes: Dict[str, Any], allowed: frozenset, start: int) -> tuple:
    """Build ``col = $n, ...`` for whitelisted columns."""
    unknown = set(changes) - allowed
    if unknown:
        raise StorageError(f"Cannot update column(s): {', '.join(sorted(unknown))}")
    parts = []
    values = []
    for offset, (column, value) in enumerate(changes.items()):
        parts.append(f"{column} = ${start + offset}")
        values.append(_db_value(value))
    return parts, values


def _model(cls: Type[Model], row: Optional[asyncpg.Record]) -> Optional[Model]:
    return cls.model_validate(dict(row)) if row is not None else None


class PostgresStorageAdapter(StorageAdapter):
    """Storage backed by the tables in database/schema."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @classmethod
    async def connect(cls, db_url: Optional[str] = None) -> 'PostgresStorageAdapter':
        """Initialize the shared pool and schema, then wrap the pool."""
        from database import init_db
        return cls(await init_db(db_url))

    # Listings

    async def create_listing(self, listing: Listing) -> Listing:
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    _insert_sql('listings', LISTING_COLUMNS),
                    *_values(listing, LISTING_COLUMNS)
                )
            except asyncpg.exceptions.UniqueViolationError as e:
                raise StorageError(f"Listing {listing.id} already exists") from e
        return listing

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM listings WHERE id = $1', listing_id)
        return _model(Listing, row)

    async def get_active_listings(
        self,
        options: Optional[PaginationOptions] = None,
        now: Optional[datetime] = None
    ) -> PaginatedListings:
        options = options or PaginationOptions()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM listings
                WHERE state = 'on_market'
                AND (expires_at IS NULL OR expires_at > $1)
                ''',
                now or utcnow()
            )
        listings = [_model(Listing, row) for row in rows]
        return paginate(sort_listings(listings, options.sort_by), options)

    async def get_listings_by_seller(self, seller_id: str) -> List[Listing]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT * FROM listings WHERE seller_id = $1 ORDER BY created_at DESC',
                seller_id
            )
        return [_model(Listing, row) for row in rows]

    async def transition_listing(
        self,
        listing_id: str,
        from_states: Iterable[ListingState],
        to_state: ListingState,
        **changes: Any
    ) -> Optional[Listing]:
        parts, values = _set_clause(changes, MUTABLE_LISTING_COLUMNS - {'state'}, start=4)
        assignments = ', '.join(['state = $3'] + parts)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'''
                UPDATE listings SET {assignments}
                WHERE id = $1 AND state = ANY($2::text[])
                RETURNING *
                ''',
                listing_id, [_db_value(s) for s in from_states], to_state.value, *values
            )
        return _model(Listing, row)

    async def update_listing(self, listing_id: str, **changes: Any) -> Optional[Listing]:
        if 'state' in changes:
            raise StorageError("Use transition_listing to change listing state")
        if not changes:
            return await self.get_listing(listing_id)
        parts, values = _set_clause(changes, MUTABLE_LISTING_COLUMNS, start=2)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE listings SET {', '.join(parts)} WHERE id = $1 RETURNING *",
                listing_id, *values
            )
        return _model(Listing, row)

    async def record_purchase_failure(
        self,
        listing_id: str,
        limit: int,
        at: Optional[datetime] = None
    ) -> Tuple[Optional[Listing], bool]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE listings SET
                    failed_purchase_count = failed_purchase_count + 1,
                    last_failure_at = $3,
                    state = CASE
                        WHEN failed_purchase_count + 1 >= $2 THEN 'pulled'
                        ELSE state
                    END
                WHERE id = $1 AND state = 'on_market'
                RETURNING *
                ''',
                listing_id, limit, at or utcnow()
            )
            if row is not None:
                return _model(Listing, row), True
            row = await conn.fetchrow('SELECT * FROM listings WHERE id = $1', listing_id)
        return _model(Listing, row), False

    async def increment_reports(self, listing_id: str) -> Optional[Listing]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE listings SET reports_count = reports_count + 1
                WHERE id = $1
                RETURNING *
                ''',
                listing_id
            )
        return _model(Listing, row)

    # Transactions

    async def _insert_transaction(self, conn: asyncpg.Connection, transaction: Transaction) -> None:
        try:
            await conn.execute(
                _insert_sql('transactions', TRANSACTION_COLUMNS),
                *_values(transaction, TRANSACTION_COLUMNS)
            )
        except asyncpg.exceptions.UniqueViolationError as e:
            raise DuplicateTransactionError(transaction.tx_reference) from e

    async def record_transaction(self, transaction: Transaction) -> Transaction:
        async with self.pool.acquire() as conn:
            await self._insert_transaction(conn, transaction)
        return transaction

    async def get_transaction_by_reference(self, tx_reference: str) -> Optional[Transaction]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM transactions WHERE tx_reference = $1', tx_reference
            )
        return _model(Transaction, row)

    async def get_transactions_by_account(self, account_id: str) -> List[Transaction]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM transactions
                WHERE buyer_id = $1 OR seller_id = $1
                ORDER BY created_at DESC
                ''',
                account_id
            )
        return [_model(Transaction, row) for row in rows]

    # Mystery boxes

    async def save_mystery_box_tier(self, tier: MysteryBoxTier) -> MysteryBoxTier:
        updates = ', '.join(f"{c} = EXCLUDED.{c}" for c in TIER_COLUMNS if c != 'id')
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"{_insert_sql('mystery_box_tiers', TIER_COLUMNS)} "
                f"ON CONFLICT (id) DO UPDATE SET {updates}",
                *_values(tier, TIER_COLUMNS)
            )
        return tier

    async def get_mystery_box_tier(self, tier_id: str) -> Optional[MysteryBoxTier]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {', '.join(TIER_COLUMNS)} FROM mystery_box_tiers WHERE id = $1",
                tier_id
            )
        return _model(MysteryBoxTier, row)

    async def get_mystery_box_tiers(self) -> List[MysteryBoxTier]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {', '.join(TIER_COLUMNS)} FROM mystery_box_tiers ORDER BY created_at"
            )
        return [_model(MysteryBoxTier, row) for row in rows]

    async def record_mystery_box_purchase(self, purchase: MysteryBoxPurchase) -> MysteryBoxPurchase:
        async with self.pool.acquire() as conn:
            await conn.execute(
                _insert_sql('mystery_box_purchases', PURCHASE_COLUMNS),
                *_values(purchase, PURCHASE_COLUMNS)
            )
        return purchase

    async def get_mystery_box_purchases(self, buyer_id: str) -> List[MysteryBoxPurchase]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT * FROM mystery_box_purchases WHERE buyer_id = $1 ORDER BY created_at',
                buyer_id
            )
        return [_model(MysteryBoxPurchase, row) for row in rows]

    # Pending transfers

    async def get_pending_transfer(self, pending_id: str) -> Optional[PendingTransfer]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM pending_transfers WHERE id = $1', pending_id)
        return _model(PendingTransfer, row)

    async def get_pending_transfers(self) -> List[PendingTransfer]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM pending_transfers
                WHERE resolved_at IS NULL
                ORDER BY created_at
                '''
            )
        return [_model(PendingTransfer, row) for row in rows]

    async def update_pending_transfer(self, pending_id: str, **changes: Any) -> Optional[PendingTransfer]:
        if not changes:
            return await self.get_pending_transfer(pending_id)
        parts, values = _set_clause(changes, MUTABLE_PENDING_COLUMNS, start=2)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE pending_transfers SET {', '.join(parts)} WHERE id = $1 RETURNING *",
                pending_id, *values
            )
        return _model(PendingTransfer, row)

    # Trades

    async def execute_atomic_trade(self, operations: Sequence[TradeOperation]) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for op in operations:
                    if isinstance(op, UpdateListing):
                        await self._swap_listing_state(conn, op)
                    elif isinstance(op, RecordTransaction):
                        await self._insert_transaction(conn, op.transaction)
                    elif isinstance(op, RecordPendingTransfer):
                        await conn.execute(
                            _insert_sql('pending_transfers', PENDING_COLUMNS),
                            *_values(op.pending, PENDING_COLUMNS)
                        )
                    else:
                        raise StorageError(f"Unknown trade operation: {type(op).__name__}")

        logger.debug(f"Committed atomic trade with {len(operations)} operation(s)")

    async def _swap_listing_state(self, conn: asyncpg.Connection, op: UpdateListing) -> None:
        updated = await conn.fetchval(
            '''
            UPDATE listings SET state = $3
            WHERE id = $1 AND state = $2
            RETURNING id
            ''',
            op.listing_id, op.expected_state.value, op.new_state.value
        )
        if updated is not None:
            return

        state = await conn.fetchval('SELECT state FROM listings WHERE id = $1', op.listing_id)
        if state is None:
            raise StorageError(f"Listing {op.listing_id} not found")
        if state == ListingState.SOLD.value:
            raise ListingAlreadySoldError(op.listing_id)
        raise ListingStateConflictError(
            f"Listing {op.listing_id} is {state}, expected {op.expected_state.value}"
        )
