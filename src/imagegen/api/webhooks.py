"""Stripe webhook endpoint.

Stripe retries any non-2xx answer, so only a bad signature or payload is
rejected (400); replays and event types we do not act on are acknowledged.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.api.dependencies import get_payment_gateway
from imagegen.database import get_db
from imagegen.services.payment_service import StripeGateway, handle_webhook

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


class StripeWebhookAck(BaseModel):
    received: bool = True
    event_id: str
    event_type: str
    outcome: str


@router.post("/stripe", response_model=StripeWebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Verify the signature over the raw body, then confirm the order it names."""
    result = await handle_webhook(await request.body(), stripe_signature, db, gateway)
    return StripeWebhookAck(
        event_id=result.event_id, event_type=result.event_type, outcome=result.outcome
    )
