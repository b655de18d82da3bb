"""
Pytest configuration for the credit ledger tests.
Points the ledger at a throwaway SQLite database before any app import.
"""

import os
import tempfile
from datetime import datetime, timedelta

# Must be set before creditledger.core.config is imported
_test_data_dir = tempfile.mkdtemp(prefix="creditledger_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_test_data_dir}/test.db"
os.environ["LOG_DIR"] = os.path.join(_test_data_dir, "logs")
os.environ["TEST_MODE"] = "true"
os.environ["INTERNAL_API_TOKEN"] = "test-internal-token"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

import pytest

from creditledger.core.database import SessionLocal, drop_models, engine, init_models
from creditledger.services.consumption_engine import PriorityConsumptionEngine
from creditledger.services.coupon_service import CouponRedemptionService
from creditledger.services.credit_store import CreditBucketStore
from creditledger.services.overage import MockPaymentGateway, OverageBillingCalculator
from creditledger.services.purchase_service import PurchaseCreditService
from creditledger.services.renewal import PeriodRenewalReconciler
from creditledger.services.trial_manager import TrialLifecycleManager

SHOP = "demo-shop.myshopify.com"


class FakeClock:
    """Settable stand-in for datetime.utcnow."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
async def db():
    await drop_models()
    await init_models()
    yield
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 12, 0, 0))


@pytest.fixture
def store(db, clock):
    return CreditBucketStore(session_factory=SessionLocal, clock=clock)


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def trial(store):
    return TrialLifecycleManager(store)


@pytest.fixture
def overage(store, gateway):
    return OverageBillingCalculator(store, gateway, timeout_seconds=0.5)


@pytest.fixture
def engine_(store, overage, trial):
    return PriorityConsumptionEngine(store, overage=overage, trial=trial)


@pytest.fixture
def renewals(store, overage):
    return PeriodRenewalReconciler(store, overage=overage)


@pytest.fixture
def coupons(store):
    return CouponRedemptionService(store)


@pytest.fixture
def purchases(store):
    return PurchaseCreditService(store)


@pytest.fixture
def seed(store):
    """Create SHOP and set bucket balances directly."""

    async def _seed(account_id=SHOP, billing_customer_id=None, plan_handle=None, **balances):
        async def _apply(tx):
            if plan_handle:
                tx.account.plan_handle = plan_handle
            if billing_customer_id:
                tx.account.billing_customer_id = billing_customer_id
            for bucket, amount in balances.items():
                if amount:
                    tx.adjust(bucket, amount, "seed")
            return tx.balances

        return await store.run(account_id, _apply, create=True)

    return _seed
