"""Stripe payment integration -- checkout sessions and webhook handling."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import stripe
import structlog
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.config import settings
from imagegen.errors import PaymentVerificationError
from imagegen.models import PaymentPlan, ProcessedWebhook
from imagegen.services.subscription_service import allocate_subscription

WEBHOOK_ALLOCATED = "allocated"
WEBHOOK_ALREADY_ALLOCATED = "already_allocated"
WEBHOOK_DUPLICATE = "duplicate"
WEBHOOK_IGNORED = "ignored"

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class StripeGateway:
    """Thin wrapper over the Stripe SDK so handlers can receive a test double."""

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        site_url: str | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        )
        self.site_url = (site_url or settings.SITE_URL).rstrip("/")

    def callback_url(self, order_id: uuid.UUID, status: str) -> str:
        return (
            f"{self.site_url}/api/v1/subscriptions/callback"
            f"?order_id={order_id}&status={status}"
        )

    def create_checkout_session(
        self,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
        plan: PaymentPlan,
        customer_email: str | None = None,
    ) -> tuple[str, str]:
        """Create a Checkout Session for ``plan``. Returns ``(session_id, url)``."""
        session = stripe.checkout.Session.create(
            api_key=self.api_key,
            line_items=[
                {
                    "price_data": {
                        "currency": plan.currency,
                        "unit_amount": plan.price_cents,
                        "product_data": {"name": plan.name},
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            customer_email=customer_email,
            client_reference_id=str(user_id),
            metadata={
                "order_id": str(order_id),
                "user_id": str(user_id),
                "plan_id": plan.id,
            },
            success_url=self.callback_url(order_id, "success"),
            cancel_url=self.callback_url(order_id, "cancel"),
        )
        return session.id, session.url

    def is_session_paid(self, session_id: str) -> bool:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise PaymentVerificationError(
                f"Could not verify checkout session: {exc}"
            ) from exc
        return session.get("payment_status") == "paid" or session.get("status") == "complete"

    def construct_event(self, payload: bytes, sig_header: str) -> Any:
        """Verify the Stripe webhook signature and return the parsed event."""
        try:
            return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise PaymentVerificationError("Invalid signature") from exc
        except ValueError as exc:
            raise PaymentVerificationError("Invalid payload") from exc


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------

async def _is_already_processed(db: AsyncSession, event_id: str) -> bool:
    """Return True if this webhook event has already been handled."""
    existing = await db.execute(
        select(ProcessedWebhook.event_id).where(ProcessedWebhook.event_id == event_id)
    )
    return existing.scalar_one_or_none() is not None


async def _mark_event_processed(db: AsyncSession, event_id: str) -> None:
    """Record a webhook event ID so it is not replayed."""
    try:
        await db.execute(
            insert(ProcessedWebhook).values(
                event_id=event_id, processed_at=datetime.now(timezone.utc)
            )
        )
        await db.commit()
    except IntegrityError:
        # A concurrent delivery recorded it first.
        await db.rollback()


async def _process_checkout_completed(db: AsyncSession, session_obj: Any) -> str:
    metadata = session_obj.get("metadata") or {}
    raw_order_id = metadata.get("order_id")
    if not raw_order_id:
        log.warning("stripe_webhook_missing_order", session_id=session_obj.get("id"))
        return WEBHOOK_IGNORED
    if session_obj.get("payment_status") not in ("paid", "no_payment_required"):
        log.info(
            "stripe_webhook_unpaid_session",
            session_id=session_obj.get("id"),
            payment_status=session_obj.get("payment_status"),
        )
        return WEBHOOK_IGNORED
    try:
        order_id = uuid.UUID(raw_order_id)
    except ValueError as exc:
        raise PaymentVerificationError("Invalid order id in session metadata") from exc
    result = await allocate_subscription(db, order_id)
    return WEBHOOK_ALLOCATED if result.allocated else WEBHOOK_ALREADY_ALLOCATED


# ---------------------------------------------------------------------------
# Webhook entry-point
# ---------------------------------------------------------------------------

@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str


async def handle_webhook(
    payload: bytes,
    sig_header: str,
    db: AsyncSession,
    gateway: StripeGateway,
) -> WebhookResult:
    """Verify a Stripe webhook signature and process the event.

    Idempotent -- skips events that have already been processed, and the
    allocation it triggers is itself gated on the order status.
    """
    event = gateway.construct_event(payload, sig_header)
    event_id: str = event["id"]

    if await _is_already_processed(db, event_id):
        log.info("stripe_webhook_duplicate", event_id=event_id)
        return WebhookResult(event_id, event["type"], WEBHOOK_DUPLICATE)

    outcome = WEBHOOK_IGNORED
    if event["type"] == "checkout.session.completed":
        outcome = await _process_checkout_completed(db, event["data"]["object"])

    await _mark_event_processed(db, event_id)
    log.info("stripe_webhook_handled", event_id=event_id, event_type=event["type"], outcome=outcome)
    return WebhookResult(event_id, event["type"], outcome)
