"""Tests for daily check-in streaks and rewards."""

from __future__ import annotations

import uuid
from datetime import date, timedelta

import pytest

from imagegen.errors import ConflictError, NotFoundError
from imagegen.services.check_in_service import check_in
from imagegen.services.credit_service import get_balance, get_ledger_sum

TODAY = date(2026, 3, 10)


@pytest.mark.asyncio
async def test_first_check_in_pays_day_one(db_session, make_profile):
    profile = await make_profile()

    result = await check_in(db_session, profile.id, today=TODAY)

    assert result.consecutive_days == 1
    assert result.credits_awarded == 1
    assert result.is_bonus_day is False
    assert result.new_balance == 1
    assert result.message == "Check-in successful! Earned 1 credit"


@pytest.mark.asyncio
async def test_second_check_in_same_day_conflicts(db_session, make_profile):
    profile = await make_profile()
    await check_in(db_session, profile.id, today=TODAY)

    with pytest.raises(ConflictError, match="Already checked in today"):
        await check_in(db_session, profile.id, today=TODAY)

    assert await get_balance(db_session, profile.id) == 1


@pytest.mark.asyncio
async def test_streak_builds_and_day_four_is_bonus(db_session, make_profile):
    profile = await make_profile()
    results = [
        await check_in(db_session, profile.id, today=TODAY + timedelta(days=n)) for n in range(4)
    ]

    assert [r.consecutive_days for r in results] == [1, 2, 3, 4]
    assert [r.credits_awarded for r in results] == [1, 1, 2, 3]
    assert results[-1].is_bonus_day is True
    assert results[-1].message.endswith("(Bonus day!)")
    assert await get_balance(db_session, profile.id) == 7
    assert await get_ledger_sum(db_session, profile.id) == 7


@pytest.mark.asyncio
async def test_streak_past_seven_uses_day_seven_reward(db_session, make_profile):
    profile = await make_profile(last_check_in=TODAY - timedelta(days=1), consecutive_check_ins=9)

    result = await check_in(db_session, profile.id, today=TODAY)

    assert result.consecutive_days == 10
    assert result.credits_awarded == 5
    assert result.is_bonus_day is True


@pytest.mark.asyncio
async def test_missed_day_resets_streak(db_session, make_profile):
    profile = await make_profile(last_check_in=TODAY - timedelta(days=2), consecutive_check_ins=5)

    result = await check_in(db_session, profile.id, today=TODAY)

    assert result.consecutive_days == 1
    assert result.credits_awarded == 1


@pytest.mark.asyncio
async def test_unknown_profile(db_session):
    with pytest.raises(NotFoundError):
        await check_in(db_session, uuid.uuid4(), today=TODAY)


@pytest.mark.asyncio
async def test_check_in_endpoint(client, make_profile, auth_headers):
    profile = await make_profile()
    headers = auth_headers(profile.id)

    first = await client.post("/api/v1/credits/check-in", headers=headers)
    second = await client.post("/api/v1/credits/check-in", headers=headers)

    assert first.status_code == 200
    assert first.json()["credits_awarded"] == 1
    assert second.status_code == 409
