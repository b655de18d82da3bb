import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from creditledger.core.errors import AccountNotFound, ConcurrentModification, InsufficientBalance, InvalidAdjustment
from creditledger.models.account import Account
from creditledger.models.credit_ledger import CreditLedger
from creditledger.services.credit_store import CreditBucketStore, normalize_shop_domain

from conftest import SHOP


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("demo-shop", "demo-shop.myshopify.com"),
        ("Demo-Shop.myshopify.com", "demo-shop.myshopify.com"),
        ("https://demo-shop.myshopify.com/admin/apps", "demo-shop.myshopify.com"),
    ],
)
def test_normalize_shop_domain(raw, expected):
    assert normalize_shop_domain(raw) == expected


def test_normalize_shop_domain_rejects_empty():
    with pytest.raises(InvalidAdjustment):
        normalize_shop_domain("  ")


async def test_unknown_account_is_not_found(store):
    with pytest.raises(AccountNotFound):
        await store.get_balances(SHOP)
    with pytest.raises(AccountNotFound):
        await store.adjust(SHOP, "plan", 5, "manual")


async def test_ensure_account_creates_all_zero_buckets(store):
    balances = await store.ensure_account("demo-shop")
    assert balances.as_dict()["total"] == 0
    assert (await store.get_balances(SHOP)).as_dict() == {
        "trial": 0, "coupon": 0, "plan": 0, "purchased": 0, "total": 0,
    }


async def test_adjust_writes_audit_trail(store, seed):
    await seed(plan=20)
    assert await store.adjust(SHOP, "plan", -5, "manual", ref_id="ticket-1") == 15

    rows = await store.history(SHOP)
    assert [(r.bucket, r.delta, r.balance_after, r.reason) for r in rows] == [
        ("plan", -5, 15, "manual"),
        ("plan", 20, 20, "seed"),
    ]


async def test_adjust_below_zero_leaves_balance_untouched(store, seed):
    await seed(coupon=2)
    with pytest.raises(InsufficientBalance):
        await store.adjust(SHOP, "coupon", -3, "manual")
    assert (await store.get_balances(SHOP)).coupon == 2


async def test_failed_transaction_rolls_back_everything(store, seed):
    await seed(trial=5, plan=5)

    async def _boom(tx):
        tx.adjust("trial", -5, "consumption")
        raise RuntimeError("generation crashed")

    with pytest.raises(RuntimeError):
        await store.run(SHOP, _boom)

    assert (await store.get_balances(SHOP)).trial == 5
    async with store.session() as session:
        reasons = (await session.execute(select(CreditLedger.reason))).scalars().all()
    assert "consumption" not in reasons


async def test_version_is_bumped_per_commit(store, seed):
    await seed(plan=1)
    await store.adjust(SHOP, "plan", 1, "manual")
    account = await store.get_account(SHOP)
    assert account.version == 2


async def test_stale_version_is_retried(store, seed):
    await seed(plan=10)
    calls = []

    async def _racing(tx):
        calls.append(tx.account.version)
        if len(calls) == 1:
            # Another process commits this account meanwhile
            async with store.session() as other:
                acc = await other.get(Account, SHOP)
                acc.version += 1
                await other.commit()
        tx.adjust("plan", -1, "consumption")
        return tx.balances

    balances = await store.run(SHOP, _racing)
    assert len(calls) == 2
    assert balances.plan == 9
    assert (await store.get_balances(SHOP)).plan == 9


async def test_retries_are_bounded(db, clock, seed):
    store = CreditBucketStore(clock=clock, max_retries=2)
    await seed(plan=10)

    async def _always_stale(tx):
        async with store.session() as other:
            acc = await other.get(Account, SHOP)
            acc.version += 1
            await other.commit()
        tx.adjust("plan", -1, "consumption")

    with pytest.raises(ConcurrentModification):
        await store.run(SHOP, _always_stale)
    assert (await store.get_balances(SHOP)).plan == 10


async def test_same_account_transactions_are_serialized(store, seed):
    await seed(plan=50)

    async def _debit(tx):
        await asyncio.sleep(0)
        tx.adjust("plan", -1, "consumption")

    await asyncio.gather(*(store.run(SHOP, _debit) for _ in range(20)))
    assert (await store.get_balances(SHOP)).plan == 30


async def test_purge_applied_operations(store, seed, clock):
    await seed(plan=1)

    async def _remember(tx):
        tx.remember("consume", "old-key", {"ok": True})

    await store.run(SHOP, _remember)
    assert await store.purge_applied_operations(older_than=clock.now - timedelta(days=1)) == 0
    clock.advance(days=31)
    assert await store.purge_applied_operations() == 1
