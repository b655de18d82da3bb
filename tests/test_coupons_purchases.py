import pytest
from sqlalchemy import select

from creditledger.core.errors import InvalidAdjustment, InvalidCoupon
from creditledger.models.account import Account
from creditledger.services import catalog

from conftest import SHOP


async def test_redeem_adds_coupon_credit(coupons, store):
    result = await coupons.redeem(SHOP, "welcome50", "txn-1", credit_amount=50)

    assert result["credits_added"] == 50
    assert result["replayed"] is False
    assert result["balances"]["coupon"] == 50
    rows = await store.history(SHOP)
    assert rows[0].reason == "coupon_redemption"
    assert rows[0].ref_id == "txn-1"


async def test_replayed_transaction_is_a_noop(coupons, store):
    await coupons.redeem(SHOP, "REFERRAL100", "txn-2")
    replay = await coupons.redeem(SHOP, "REFERRAL100", "txn-2")

    assert replay["replayed"] is True
    assert (await store.get_balances(SHOP)).coupon == 100


async def test_per_shop_limit(coupons, store):
    await coupons.redeem(SHOP, "WELCOME50", "txn-3")
    with pytest.raises(InvalidCoupon) as exc:
        await coupons.redeem(SHOP, "WELCOME50", "txn-4")
    assert exc.value.error == "USAGE_LIMIT_EXCEEDED"
    assert (await store.get_balances(SHOP)).coupon == 50


@pytest.mark.parametrize(
    "code,amount,error",
    [
        ("NOPE", None, "INVALID_CODE"),
        ("HOLIDAY25", None, "EXPIRED_CODE"),
        ("WELCOME50", 500, "CREDIT_MISMATCH"),
    ],
)
async def test_catalog_validation(coupons, store, code, amount, error):
    with pytest.raises(InvalidCoupon) as exc:
        await coupons.redeem(SHOP, code, "txn-x", credit_amount=amount)
    assert exc.value.error == error
    async with store.session() as session:
        assert await session.get(Account, SHOP) is None


async def test_inactive_coupon(coupons, monkeypatch, db):
    monkeypatch.setitem(
        catalog.COUPON_CODES, "RETIRED10", catalog.Coupon(code="RETIRED10", credits=10, active=False)
    )
    with pytest.raises(InvalidCoupon) as exc:
        await coupons.redeem(SHOP, "retired10", "txn-5")
    assert exc.value.error == "INACTIVE_CODE"


async def test_invalid_coupon_is_an_invalid_adjustment():
    assert issubclass(InvalidCoupon, InvalidAdjustment)


async def test_purchase_adds_to_purchased_bucket(purchases, store):
    result = await purchases.confirm(SHOP, "medium", "order-1", credit_amount=100)
    replay = await purchases.confirm(SHOP, "medium", "order-1", credit_amount=100)

    assert result["credits_added"] == 100
    assert replay["replayed"] is True
    assert (await store.get_balances(SHOP)).as_dict() == {
        "trial": 0, "coupon": 0, "plan": 0, "purchased": 100, "total": 100,
    }


@pytest.mark.parametrize("package,amount", [("huge", None), ("small", 75)])
async def test_purchase_validation(purchases, store, package, amount):
    with pytest.raises(InvalidAdjustment):
        await purchases.confirm(SHOP, package, "order-2", credit_amount=amount)
    async with store.session() as session:
        assert (await session.execute(select(Account))).first() is None
