"""All CREATE INDEX statements for the initial schema."""

ALL = [
    # images
    "CREATE INDEX idx_images_user ON images(user_id, created_at DESC);",
    "CREATE INDEX idx_images_unfinished ON images(status, created_at) "
    "WHERE status IN ('pending', 'processing');",
    # bonus_claims
    "CREATE INDEX idx_bonus_claims_user ON bonus_claims(user_id, created_at DESC);",
    # credit_transactions
    "CREATE INDEX idx_credit_txn_user ON credit_transactions(user_id, created_at DESC);",
    # orders
    "CREATE INDEX idx_orders_user ON orders(user_id, created_at DESC);",
    # subscriptions
    "CREATE INDEX idx_subscriptions_user ON subscriptions(user_id);",
    "CREATE UNIQUE INDEX uq_subscriptions_one_active_per_user "
    "ON subscriptions(user_id) WHERE status = 'active';",
    # referrals
    "CREATE INDEX idx_referrals_referrer ON referrals(referrer_id, created_at DESC);",
]
