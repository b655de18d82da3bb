import asyncio

import pytest
from sqlalchemy import select

from creditledger.core.errors import AccountNotFound, InvalidAdjustment, OverageUnavailable
from creditledger.models.overage_charge import OverageCharge
from creditledger.models.usage_event import UsageEvent

from conftest import SHOP


async def test_drains_buckets_in_priority_order(engine_, seed, store):
    await seed(trial=3, coupon=2, plan=5, purchased=10)

    result = await engine_.consume(SHOP, 7, "gen-1")

    assert (result.trial_used, result.coupon_used, result.plan_used, result.purchased_used) == (3, 2, 2, 0)
    assert result.overage_billed == 0
    assert result.balances.as_dict() == {"trial": 0, "coupon": 0, "plan": 3, "purchased": 10, "total": 13}
    assert await store.get_balances(SHOP) == result.balances


async def test_shortfall_goes_to_overage(engine_, seed, store, gateway):
    await seed(purchased=1, billing_customer_id="cus_123")

    result = await engine_.consume(SHOP, 5, "gen-2")

    assert result.purchased_used == 1
    assert result.overage_billed == 4
    assert result.overage_amount_cents == 80
    assert result.balances.total == 0
    assert len(gateway.charges) == 1
    async with store.session() as session:
        charge = (await session.execute(select(OverageCharge))).scalar_one()
        event = (await session.execute(select(UsageEvent))).scalar_one()
    assert charge.amount_cents == 80
    assert charge.usage_key == "gen-2"
    assert charge.status == "billed"
    assert charge.provider_ref == gateway.charges[0][3]
    assert event.overage_charge_id == charge.id


async def test_rejected_overage_debits_nothing(engine_, seed, store):
    await seed(coupon=2, plan=1)

    with pytest.raises(OverageUnavailable) as exc:
        await engine_.consume(SHOP, 5, "gen-3")

    assert exc.value.reason == "no_payment_method"
    assert (await store.get_balances(SHOP)).as_dict() == {
        "trial": 0, "coupon": 2, "plan": 1, "purchased": 0, "total": 3,
    }
    async with store.session() as session:
        assert (await session.execute(select(UsageEvent))).first() is None


async def test_replayed_key_returns_original_result(engine_, seed, store):
    await seed(plan=10)

    first = await engine_.consume(SHOP, 4, "gen-4")
    again = await engine_.consume(SHOP, 4, "gen-4")

    assert not first.replayed
    assert again.replayed
    assert again.plan_used == 4
    assert again.balances == first.balances
    assert (await store.get_balances(SHOP)).plan == 6


async def test_ended_trial_credit_is_still_spent_first(engine_, trial, store, seed):
    await trial.start_trial(SHOP)
    await seed(plan=10)
    await trial.end_trial(SHOP)

    result = await engine_.consume(SHOP, 1, "gen-5")

    assert result.trial_used == 1
    assert result.plan_used == 0
    assert (await store.get_balances(SHOP)).trial == 99


async def test_draining_active_trial_ends_it(engine_, trial, seed):
    await trial.start_trial(SHOP)
    await seed(plan=5)

    result = await engine_.consume(SHOP, 102, "gen-6")

    assert (result.trial_used, result.plan_used) == (100, 2)
    status = await trial.get_status(SHOP)
    assert status["phase"] == "ended"
    assert status["end_reason"] == "trial_credits_exhausted"


async def test_unknown_account(engine_, db):
    with pytest.raises(AccountNotFound):
        await engine_.consume("nobody.myshopify.com", 1, "gen-7")


@pytest.mark.parametrize("quantity", [0, -2])
async def test_invalid_quantity(engine_, seed, quantity):
    await seed(plan=1)
    with pytest.raises(InvalidAdjustment):
        await engine_.consume(SHOP, quantity, "gen-8")


async def test_concurrent_consumption_never_overdraws(engine_, seed, store):
    await seed(trial=5, coupon=5, plan=5, purchased=5)

    results = await asyncio.gather(
        *(engine_.consume(SHOP, 1, f"burst-{i}") for i in range(20)),
    )

    assert sum(r.trial_used + r.coupon_used + r.plan_used + r.purchased_used for r in results) == 20
    assert all(r.overage_billed == 0 for r in results)
    assert (await store.get_balances(SHOP)).total == 0


async def test_concurrent_duplicates_apply_once(engine_, seed, store):
    await seed(plan=10)

    results = await asyncio.gather(*(engine_.consume(SHOP, 3, "same-key") for _ in range(5)))

    assert sum(1 for r in results if not r.replayed) == 1
    assert (await store.get_balances(SHOP)).plan == 7


async def test_refund_restores_buckets_once(engine_, seed, store):
    await seed(trial=2, plan=5)
    await engine_.consume(SHOP, 4, "gen-9")

    refund = await engine_.refund(SHOP, "gen-9", "generation_failed")
    again = await engine_.refund(SHOP, "gen-9", "generation_failed")

    assert refund["restored"] == {"trial": 2, "plan": 2}
    assert again["replayed"] is True
    assert (await store.get_balances(SHOP)).as_dict() == {
        "trial": 2, "coupon": 0, "plan": 5, "purchased": 0, "total": 7,
    }


async def test_refund_of_unknown_usage_is_rejected(engine_, seed):
    await seed(plan=1)
    with pytest.raises(InvalidAdjustment):
        await engine_.refund(SHOP, "never-happened")
