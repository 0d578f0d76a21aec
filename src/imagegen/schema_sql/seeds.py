"""Seed data INSERT statements."""

CHECK_IN_REWARDS = """
INSERT INTO check_in_rewards (day, credits, is_bonus_day)
VALUES
    (1, 1, FALSE),
    (2, 1, FALSE),
    (3, 2, FALSE),
    (4, 3, TRUE),
    (5, 2, FALSE),
    (6, 3, FALSE),
    (7, 5, TRUE);
"""

PAYMENT_PLANS = """
INSERT INTO payment_plans (id, name, credits, price_cents, currency, duration_months, is_active)
VALUES
    ('basic_monthly', 'Basic',  100,  999, 'usd', 1, TRUE),
    ('pro_monthly',   'Pro',    500, 2999, 'usd', 1, TRUE),
    ('max_monthly',   'Max',   1600, 7999, 'usd', 1, TRUE);
"""

ALL = [CHECK_IN_REWARDS, PAYMENT_PLANS]
