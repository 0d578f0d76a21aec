"""CREATE TABLE statements for plans, orders, subscriptions, and referrals."""

PAYMENT_PLANS = """
CREATE TABLE payment_plans (
    id               VARCHAR(50) PRIMARY KEY,
    name             VARCHAR(100) NOT NULL,
    credits          INTEGER NOT NULL,
    price_cents      INTEGER NOT NULL,
    currency         VARCHAR(3) NOT NULL DEFAULT 'usd',
    duration_months  INTEGER NOT NULL DEFAULT 1,
    is_active        BOOLEAN NOT NULL DEFAULT TRUE
);
"""

SUBSCRIPTIONS = """
CREATE TABLE subscriptions (
    id                        UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id                   UUID NOT NULL REFERENCES user_profiles(id),
    plan_id                   VARCHAR(50) NOT NULL REFERENCES payment_plans(id),
    status                    VARCHAR(20) NOT NULL DEFAULT 'active'
                              CONSTRAINT ck_subscriptions_status
                              CHECK (status IN ('active','cancelled','expired')),
    current_period_start      TIMESTAMPTZ NOT NULL,
    current_period_end        TIMESTAMPTZ NOT NULL,
    credits_included          INTEGER NOT NULL,
    external_subscription_id  VARCHAR(255),
    cancel_at_period_end      BOOLEAN NOT NULL DEFAULT FALSE,
    cancelled_at              TIMESTAMPTZ,
    created_at                TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at                TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ORDERS = """
CREATE TABLE orders (
    id                 UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id            UUID NOT NULL REFERENCES user_profiles(id),
    plan_id            VARCHAR(50) NOT NULL REFERENCES payment_plans(id),
    status             VARCHAR(20) NOT NULL DEFAULT 'pending'
                       CONSTRAINT ck_orders_status
                       CHECK (status IN ('pending','completed','failed')),
    external_order_id  VARCHAR(255) UNIQUE,
    subscription_id    UUID REFERENCES subscriptions(id),
    created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at         TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

REFERRALS = """
CREATE TABLE referrals (
    id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    referrer_id      UUID NOT NULL REFERENCES user_profiles(id),
    referee_id       UUID NOT NULL UNIQUE REFERENCES user_profiles(id),
    status           VARCHAR(20) NOT NULL DEFAULT 'pending'
                     CONSTRAINT ck_referrals_status
                     CHECK (status IN ('pending','completed','invalid')),
    referrer_reward  INTEGER NOT NULL DEFAULT 0,
    referee_reward   INTEGER NOT NULL DEFAULT 0,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at     TIMESTAMPTZ,
    CONSTRAINT ck_referrals_not_self CHECK (referrer_id <> referee_id)
);
"""

PROCESSED_WEBHOOKS = """
CREATE TABLE processed_webhooks (
    event_id      VARCHAR(255) PRIMARY KEY,
    processed_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [PAYMENT_PLANS, SUBSCRIPTIONS, ORDERS, REFERRALS, PROCESSED_WEBHOOKS]
