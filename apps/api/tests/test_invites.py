import pytest

from services.credits import ERROR_ALREADY_INVITED, ERROR_SELF_INVITE, CreditLedger
from services.invites import ERROR_INVALID_CODE, InviteRegistry
from services.stores import MemoryRecordStore


def _registry() -> InviteRegistry:
    ledger = CreditLedger(
        MemoryRecordStore("accounts"),
        free_monthly_credits=3,
        referrer_bonus=5,
        invitee_bonus=5,
        max_invites_per_month=20,
        invite_expires_days=30,
    )
    return InviteRegistry(MemoryRecordStore("invite_codes"), MemoryRecordStore("invite_owners"), ledger)


@pytest.mark.asyncio
async def test_code_is_stable_per_user():
    registry = _registry()

    code = await registry.get_or_create_code("alice")

    assert len(code) == 6
    assert code.isalnum() and code.upper() == code
    assert await registry.get_or_create_code("alice") == code
    assert (await registry.get_stats("alice"))["code"] == code


@pytest.mark.asyncio
async def test_redeem_grants_credits_and_tracks_invitees():
    registry = _registry()
    code = await registry.get_or_create_code("alice")

    result = await registry.redeem(code, "bob")

    assert result.success is True
    assert (await registry.ledger.get_available("bob")).total == 8
    stats = await registry.get_stats("alice")
    assert stats["total_invites"] == 1
    assert stats["total_earned"] == 5
    assert stats["invitees"] == ["bob"]


@pytest.mark.asyncio
async def test_redeem_rejections():
    registry = _registry()
    code = await registry.get_or_create_code("alice")
    await registry.redeem(code, "bob")

    assert (await registry.redeem("NOPE00", "carol")).error == ERROR_INVALID_CODE
    assert (await registry.redeem(code, "alice")).error == ERROR_SELF_INVITE
    assert (await registry.redeem(code, "bob")).error == ERROR_ALREADY_INVITED
    assert (await registry.get_stats("alice"))["total_invites"] == 1
