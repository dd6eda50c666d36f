"""Schema v1 - Initial settlement ledger schema.

This version includes tables for:
- Users and their drive items
- Marketplace listings and shared links
- Purchase transactions
- Affiliates and their commissions
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'users',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'name', 'type': 'TEXT'},
                {'name': 'email', 'type': 'TEXT'},
                {'name': 'wallet_address', 'type': 'TEXT'},
                {'name': 'root_folder_id', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'items',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'parent_id', 'type': 'TEXT'},
                {'name': 'owner_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'size', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'mime_type', 'type': 'TEXT'},
                {'name': 'blob_ref', 'type': 'TEXT'},
                {'name': 'content_source', 'type': 'TEXT', 'nullable': False, 'default': "'user'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': ["kind IN ('file', 'folder')"],
            'foreign_keys': [
                {'columns': ['owner_id'], 'references': 'users(id)'}
            ],
            'indexes': [
                {'name': 'idx_items_parent', 'columns': ['parent_id']},
                {
                    'name': 'idx_items_parent_name',
                    'columns': ['owner_id', 'parent_id', 'name'],
                    'unique': True,
                    'where': 'parent_id IS NOT NULL'
                }
            ]
        },
        {
            'name': 'listings',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'item_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'seller_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'title', 'type': 'TEXT', 'nullable': False},
                {'name': 'description', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'price', 'type': 'DECIMAL(18, 6)', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'active'"},
                {'name': 'tags', 'type': 'TEXT[]', 'nullable': False, 'default': "'{}'"},
                {'name': 'view_count', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': ['price > 0'],
            'foreign_keys': [
                {'columns': ['item_id'], 'references': 'items(id)'},
                {'columns': ['seller_id'], 'references': 'users(id)'}
            ],
            'indexes': [
                {'name': 'idx_listings_item', 'columns': ['item_id'], 'unique': True},
                {'name': 'idx_listings_seller', 'columns': ['seller_id']}
            ]
        },
        {
            'name': 'shared_links',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'item_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'owner_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'link_token', 'type': 'TEXT', 'nullable': False},
                {'name': 'kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'title', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'description', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'price', 'type': 'DECIMAL(18, 6)'},
                {'name': 'is_active', 'type': 'BOOL', 'nullable': False, 'default': 'true'},
                {'name': 'expires_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'access_count', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': ["kind = 'public' OR price > 0"],
            'foreign_keys': [
                {'columns': ['item_id'], 'references': 'items(id)'},
                {'columns': ['owner_id'], 'references': 'users(id)'}
            ],
            'indexes': [
                {'name': 'idx_shared_links_token', 'columns': ['link_token'], 'unique': True}
            ]
        },
        {
            'name': 'shared_link_paid_users',
            'columns': [
                {'name': 'shared_link_id', 'type': 'TEXT'},
                {'name': 'user_id', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['shared_link_id', 'user_id'],
            'foreign_keys': [
                {'columns': ['shared_link_id'], 'references': 'shared_links(id)', 'on_delete': 'CASCADE'}
            ]
        },
        {
            'name': 'transactions',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'listing_id', 'type': 'TEXT'},
                {'name': 'shared_link_id', 'type': 'TEXT'},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'seller_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'item_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'amount', 'type': 'DECIMAL(18, 6)', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'completed'"},
                {'name': 'transaction_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'receipt_number', 'type': 'TEXT', 'nullable': False},
                {'name': 'payment_tx_hash', 'type': 'TEXT'},
                {'name': 'purchase_date', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'metadata', 'type': 'JSONB', 'nullable': False, 'default': "'{}'"}
            ],
            'checks': ['(listing_id IS NULL) <> (shared_link_id IS NULL)'],
            'foreign_keys': [
                {'columns': ['listing_id'], 'references': 'listings(id)'},
                {'columns': ['shared_link_id'], 'references': 'shared_links(id)'}
            ],
            'indexes': [
                {'name': 'idx_transactions_buyer', 'columns': ['buyer_id', 'purchase_date']},
                {'name': 'idx_transactions_seller', 'columns': ['seller_id', 'purchase_date']},
                {'name': 'idx_transactions_txid', 'columns': ['transaction_id'], 'unique': True},
                {'name': 'idx_transactions_receipt', 'columns': ['receipt_number'], 'unique': True},
                {
                    'name': 'idx_transactions_payment_hash',
                    'columns': ['payment_tx_hash'],
                    'unique': True,
                    'where': 'payment_tx_hash IS NOT NULL'
                },
                {
                    'name': 'idx_transactions_listing_buyer',
                    'columns': ['listing_id', 'buyer_id'],
                    'unique': True,
                    'where': "status = 'completed' AND listing_id IS NOT NULL"
                },
                {
                    'name': 'idx_transactions_link_buyer',
                    'columns': ['shared_link_id', 'buyer_id'],
                    'unique': True,
                    'where': "status = 'completed' AND shared_link_id IS NOT NULL"
                }
            ]
        },
        {
            'name': 'affiliates',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'listing_id', 'type': 'TEXT'},
                {'name': 'shared_link_id', 'type': 'TEXT'},
                {'name': 'owner_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'affiliate_user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'commission_rate', 'type': 'DECIMAL(5, 2)', 'nullable': False},
                {'name': 'affiliate_code', 'type': 'TEXT', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'active'"},
                {'name': 'total_earnings', 'type': 'DECIMAL(18, 6)', 'nullable': False, 'default': '0'},
                {'name': 'paid_earnings', 'type': 'DECIMAL(18, 6)', 'nullable': False, 'default': '0'},
                {'name': 'total_sales', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                'commission_rate >= 0 AND commission_rate <= 100',
                '(listing_id IS NULL) <> (shared_link_id IS NULL)'
            ],
            'indexes': [
                {'name': 'idx_affiliates_code', 'columns': ['affiliate_code'], 'unique': True},
                {
                    'name': 'idx_affiliates_listing_pair',
                    'columns': ['listing_id', 'owner_id', 'affiliate_user_id'],
                    'unique': True,
                    'where': 'listing_id IS NOT NULL'
                },
                {
                    'name': 'idx_affiliates_link_pair',
                    'columns': ['shared_link_id', 'owner_id', 'affiliate_user_id'],
                    'unique': True,
                    'where': 'shared_link_id IS NOT NULL'
                }
            ]
        },
        {
            'name': 'affiliate_transactions',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'affiliate_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'original_transaction_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'affiliate_user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'owner_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'affiliate_code', 'type': 'TEXT', 'nullable': False},
                {'name': 'sale_amount', 'type': 'DECIMAL(18, 6)', 'nullable': False},
                {'name': 'commission_rate', 'type': 'DECIMAL(5, 2)', 'nullable': False},
                {'name': 'commission_amount', 'type': 'DECIMAL(18, 6)', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'"},
                {'name': 'paid_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'settlement_claim', 'type': 'TEXT'},
                {'name': 'claimed_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'metadata', 'type': 'JSONB', 'nullable': False, 'default': "'{}'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['affiliate_id'], 'references': 'affiliates(id)'},
                {'columns': ['original_transaction_id'], 'references': 'transactions(id)'}
            ],
            'indexes': [
                {
                    'name': 'idx_affiliate_tx_unique',
                    'columns': ['original_transaction_id', 'affiliate_id'],
                    'unique': True
                },
                {'name': 'idx_affiliate_tx_owner', 'columns': ['owner_id', 'status']},
                {'name': 'idx_affiliate_tx_affiliate', 'columns': ['affiliate_user_id', 'status']}
            ]
        }
    ],
    'migrations': []
}
