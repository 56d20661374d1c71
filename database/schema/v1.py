"""Schema v1 - Marketplace tables.

Listings with their review/market/sold lifecycle and failure counter,
transactions keyed by a unique ledger reference, mystery box tiers and
purchases, and the pending transfer markers left by trades whose item move
has not completed.
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'listings',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'seller_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'seller_wallet', 'type': 'TEXT', 'nullable': False},
                {'name': 'title', 'type': 'TEXT', 'nullable': False},
                {'name': 'description', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'item_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'item_type', 'type': 'TEXT', 'nullable': False},
                {'name': 'item_data', 'type': 'JSONB', 'nullable': False, 'default': "'{}'"},
                {'name': 'price', 'type': 'NUMERIC(18, 6)', 'nullable': False},
                {'name': 'state', 'type': 'TEXT', 'nullable': False, 'default': "'in_review'"},
                {'name': 'approved', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'pinned', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'failed_purchase_count', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'last_failure_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'reports_count', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'expires_at', 'type': 'TIMESTAMPTZ'}
            ],
            'indexes': [
                {'name': 'idx_listings_seller', 'columns': ['seller_id']},
                {'name': 'idx_listings_market', 'columns': ['pinned', 'created_at'],
                 'where': "state = 'on_market'"}
            ]
        },
        {
            'name': 'transactions',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'listing_id', 'type': 'TEXT'},
                {'name': 'tier_id', 'type': 'TEXT'},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_wallet', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'seller_id', 'type': 'TEXT'},
                {'name': 'amount', 'type': 'NUMERIC(18, 6)', 'nullable': False},
                {'name': 'tx_reference', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'network_id', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'success'"},
                {'name': 'items', 'type': 'JSONB', 'nullable': False, 'default': "'[]'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['listing_id'], 'references': 'listings(id)'}
            ],
            'indexes': [
                {'name': 'idx_transactions_buyer', 'columns': ['buyer_id']},
                {'name': 'idx_transactions_seller', 'columns': ['seller_id']}
            ]
        },
        {
            'name': 'mystery_box_tiers',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'description', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'price_usdc', 'type': 'NUMERIC(18, 6)', 'nullable': False},
                # Ordered [label, weight] pairs
                {'name': 'rarity_weights', 'type': 'JSONB', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'mystery_box_purchases',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'tier_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_wallet', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'price_usdc', 'type': 'NUMERIC(18, 6)', 'nullable': False},
                {'name': 'tx_reference', 'type': 'TEXT', 'nullable': False},
                {'name': 'generated_item', 'type': 'JSONB', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['tier_id'], 'references': 'mystery_box_tiers(id)'}
            ],
            'indexes': [
                {'name': 'idx_box_purchases_buyer', 'columns': ['buyer_id']}
            ]
        },
        {
            'name': 'pending_transfers',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'tx_reference', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_wallet', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'seller_id', 'type': 'TEXT'},
                {'name': 'listing_id', 'type': 'TEXT'},
                {'name': 'item_id', 'type': 'TEXT'},
                {'name': 'tier_id', 'type': 'TEXT'},
                {'name': 'item', 'type': 'JSONB'},
                {'name': 'item_granted', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'attempts', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'last_error', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'resolved_at', 'type': 'TIMESTAMPTZ'}
            ],
            'indexes': [
                {'name': 'idx_pending_transfers_open', 'columns': ['created_at'],
                 'where': 'resolved_at IS NULL'}
            ]
        }
    ],
    'triggers': [
        {
            'name': 'trg_listings_updated_at',
            'table': 'listings',
            'timing': 'BEFORE',
            'event': 'UPDATE',
            'function_name': 'set_updated_at',
            'function_body': '''
                BEGIN
                    NEW.updated_at = now();
                    RETURN NEW;
                END;
            '''
        }
    ],
    'migrations': []
}
