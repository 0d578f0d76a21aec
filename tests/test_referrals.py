"""Tests for referral linking and the two-stage referrer reward."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from imagegen.errors import NotFoundError, ValidationError
from imagegen.models import Referral, UserProfile
from imagegen.services.credit_service import get_balance, get_ledger_sum
from imagegen.services.referral_service import (
    complete_referral_on_purchase,
    display_name,
    ensure_referral_code,
    link_referral,
    validate_code,
)


@pytest.mark.asyncio
async def test_link_pays_signup_reward(db_session, make_profile):
    referrer = await make_profile(referral_code="REFA0001", first_name="Ada", last_name="Byron")
    referee = await make_profile()

    response = await link_referral(db_session, referee.id, "REFA0001")

    assert response.referrer.id == referrer.id
    assert response.message == "Successfully linked to referrer: Ada Byron"
    assert await get_balance(db_session, referrer.id) == 10
    assert await get_ledger_sum(db_session, referrer.id) == 10
    assert await get_balance(db_session, referee.id) == 0

    referee_row = (
        await db_session.execute(
            select(UserProfile.referred_by).where(UserProfile.id == referee.id)
        )
    ).scalar_one()
    assert referee_row == referrer.id


@pytest.mark.asyncio
async def test_referee_can_only_be_linked_once(db_session, make_profile):
    await make_profile(referral_code="REFA0001")
    await make_profile(referral_code="REFB0002")
    referee = await make_profile()
    await link_referral(db_session, referee.id, "REFA0001")

    with pytest.raises(ValidationError, match="already has a referrer"):
        await link_referral(db_session, referee.id, "REFB0002")

    count = len((await db_session.execute(select(Referral))).scalars().all())
    assert count == 1


@pytest.mark.asyncio
async def test_self_referral_rejected(db_session, make_profile):
    user = await make_profile(referral_code="SELF0001")
    with pytest.raises(ValidationError, match="Cannot refer yourself"):
        await link_referral(db_session, user.id, "SELF0001")


@pytest.mark.asyncio
async def test_unknown_code(db_session, make_profile):
    referee = await make_profile()
    with pytest.raises(NotFoundError):
        await link_referral(db_session, referee.id, "NOPE0000")


@pytest.mark.asyncio
async def test_purchase_reward_is_paid_once(db_session, make_profile):
    referrer = await make_profile(referral_code="REFA0001")
    referee = await make_profile()
    await link_referral(db_session, referee.id, "REFA0001")

    assert await complete_referral_on_purchase(db_session, referee.id) is True
    await db_session.commit()
    assert await complete_referral_on_purchase(db_session, referee.id) is False
    await db_session.commit()

    assert await get_balance(db_session, referrer.id) == 40
    assert await get_ledger_sum(db_session, referrer.id) == 40
    referral = (
        await db_session.execute(
            select(Referral)
            .where(Referral.referee_id == referee.id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert referral.status == "completed"
    assert referral.referrer_reward == 40


@pytest.mark.asyncio
async def test_purchase_without_referral_pays_nothing(db_session, make_profile):
    user = await make_profile()
    assert await complete_referral_on_purchase(db_session, user.id) is False


@pytest.mark.asyncio
async def test_validate_code(db_session, make_profile):
    await make_profile(referral_code="REFA0001", email="grace@example.com")

    assert (await validate_code(db_session, "REFA0001")).referrer_name == "grace"
    with pytest.raises(NotFoundError) as exc_info:
        await validate_code(db_session, "MISSING1")
    assert exc_info.value.to_dict()["valid"] is False


@pytest.mark.asyncio
async def test_ensure_referral_code_assigns_once(db_session, make_profile):
    user = await make_profile()

    code = await ensure_referral_code(db_session, user.id)

    assert len(code) == 8
    assert await ensure_referral_code(db_session, user.id) == code


def test_display_name_falls_back_to_email():
    assert display_name(UserProfile(email="lin@example.com", first_name="Lin")) == "Lin"
    assert display_name(UserProfile(email="lin@example.com")) == "lin"


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_link_and_overview_endpoints(client, make_profile, auth_headers):
    referrer = await make_profile(referral_code="REFA0001")
    referee = await make_profile()

    linked = await client.post(
        "/api/v1/referrals/link",
        json={"referral_code": " REFA0001 "},
        headers=auth_headers(referee.id),
    )
    again = await client.post(
        "/api/v1/referrals/link",
        json={"referral_code": "REFA0001"},
        headers=auth_headers(referee.id),
    )
    overview = await client.get("/api/v1/referrals", headers=auth_headers(referrer.id))

    assert linked.status_code == 200
    assert again.status_code == 400
    body = overview.json()
    assert body["referral_code"] == "REFA0001"
    assert body["stats"]["total"] == 1
    assert body["stats"]["pending"] == 1
    assert len(body["referrals"]) == 1


@pytest.mark.asyncio
async def test_validate_endpoint(client, make_profile):
    await make_profile(referral_code="REFA0001")

    ok = await client.get("/api/v1/referrals/validate", params={"code": "REFA0001"})
    bad = await client.get("/api/v1/referrals/validate", params={"code": "ZZZZ9999"})

    assert ok.json()["valid"] is True
    assert bad.status_code == 404
    assert bad.json()["valid"] is False
