"""Structured JSON audit logger for financial and task lifecycle events.

Emits structured log entries via structlog for ledger movements, task
terminal transitions, subscription allocations, and referral rewards.
Every entry carries an ``audit: true`` flag so production log pipelines can
filter on it easily.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog


log = structlog.get_logger()


class AuditLogger:
    """Structured audit logger for platform events.

    All methods are synchronous -- they only emit log lines and perform
    no I/O beyond writing to the configured structlog sink.
    """

    # ------------------------------------------------------------------
    # Credit event
    # ------------------------------------------------------------------

    def log_credit_event(
        self,
        user_id,
        amount: int,
        txn_type: str,
        new_balance: int | None = None,
        related_image_id=None,
        related_order_id=None,
    ) -> None:
        """Log a ledger row (usage, bonus, referral, check_in, purchase)."""
        log.info(
            "audit_event",
            event_type="credit_event",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            amount=amount,
            txn_type=txn_type,
            new_balance=new_balance,
            related_image_id=str(related_image_id) if related_image_id else None,
            related_order_id=str(related_order_id) if related_order_id else None,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Task transition
    # ------------------------------------------------------------------

    def log_task_transition(
        self,
        task_id: str,
        status: str,
        actor: str,
        error_code: str | None = None,
    ) -> None:
        """Record the single terminal transition of a generation task."""
        log.info(
            "audit_event",
            event_type="task_transition",
            timestamp=datetime.now(timezone.utc).isoformat(),
            task_id=task_id,
            status=status,
            actor=actor,
            error_code=error_code,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Subscription allocation
    # ------------------------------------------------------------------

    def log_subscription_allocated(
        self,
        user_id,
        order_id,
        subscription_id,
        plan_id: str,
        credits: int,
    ) -> None:
        log.info(
            "audit_event",
            event_type="subscription_allocated",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            order_id=str(order_id),
            subscription_id=str(subscription_id),
            plan_id=plan_id,
            credits=credits,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Referral reward
    # ------------------------------------------------------------------

    def log_referral_reward(
        self,
        referrer_id,
        referee_id,
        reward: int,
        stage: str,
    ) -> None:
        """Log a referrer reward at ``signup`` or ``purchase`` stage."""
        log.info(
            "audit_event",
            event_type="referral_reward",
            timestamp=datetime.now(timezone.utc).isoformat(),
            referrer_id=str(referrer_id),
            referee_id=str(referee_id),
            reward=reward,
            stage=stage,
            audit=True,
        )
