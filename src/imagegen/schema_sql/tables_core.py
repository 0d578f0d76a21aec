"""CREATE TABLE statements for profiles, images, bonus claims, and the credit ledger."""

USER_PROFILES = """
CREATE TABLE user_profiles (
    id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email           VARCHAR(320) NOT NULL UNIQUE,
    first_name      VARCHAR(100),
    last_name       VARCHAR(100),
    credits         INTEGER NOT NULL DEFAULT 0
                    CONSTRAINT ck_user_profiles_credits_non_negative
                    CHECK (credits >= 0),
    referral_code   VARCHAR(32) UNIQUE,
    referred_by     UUID REFERENCES user_profiles(id),
    last_check_in   DATE,
    consecutive_check_ins INTEGER NOT NULL DEFAULT 0,
    active_plan_id  VARCHAR(50),
    subscription_expires_at TIMESTAMPTZ,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

CHECK_IN_REWARDS = """
CREATE TABLE check_in_rewards (
    day           INTEGER PRIMARY KEY
                  CONSTRAINT ck_check_in_rewards_day CHECK (day BETWEEN 1 AND 7),
    credits       INTEGER NOT NULL,
    is_bonus_day  BOOLEAN NOT NULL DEFAULT FALSE
);
"""

IMAGES = """
CREATE TABLE images (
    id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id             UUID NOT NULL REFERENCES user_profiles(id),
    external_task_id    VARCHAR(128) UNIQUE,
    idempotency_key     VARCHAR(255),
    status              VARCHAR(20) NOT NULL DEFAULT 'pending'
                        CONSTRAINT ck_images_status
                        CHECK (status IN ('pending','processing','completed','failed')),
    image_type          VARCHAR(30) NOT NULL DEFAULT 'generation',
    prompt              TEXT NOT NULL,
    processed_image_url VARCHAR(1024),
    error_message       TEXT,
    cost                INTEGER NOT NULL DEFAULT 0,
    metadata            JSONB,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at        TIMESTAMPTZ,
    CONSTRAINT uq_images_user_idempotency UNIQUE (user_id, idempotency_key)
);
"""

BONUS_CLAIMS = """
CREATE TABLE bonus_claims (
    id          BIGSERIAL PRIMARY KEY,
    user_id     UUID NOT NULL REFERENCES user_profiles(id),
    claim_type  VARCHAR(20) NOT NULL
                CONSTRAINT ck_bonus_claims_type
                CHECK (claim_type IN ('social_share','tutorial')),
    claim_key   VARCHAR(64) NOT NULL,
    credits     INTEGER NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_bonus_claims_once UNIQUE (user_id, claim_type, claim_key)
);
"""

CREDIT_TRANSACTIONS = """
CREATE TABLE credit_transactions (
    id                BIGSERIAL PRIMARY KEY,
    user_id           UUID NOT NULL REFERENCES user_profiles(id),
    amount            INTEGER NOT NULL,
    transaction_type  VARCHAR(20) NOT NULL
                      CONSTRAINT ck_credit_transaction_type
                      CHECK (transaction_type IN (
                          'usage','bonus','referral','check_in','purchase'
                      )),
    description       TEXT,
    related_image_id  UUID REFERENCES images(id),
    related_order_id  UUID REFERENCES orders(id),
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

# credit_transactions references orders, so the billing tables are created
# between IMAGES and CREDIT_TRANSACTIONS by the migration.
ALL = [USER_PROFILES, CHECK_IN_REWARDS, IMAGES, BONUS_CLAIMS]
LEDGER = [CREDIT_TRANSACTIONS]
