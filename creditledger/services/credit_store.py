# =========================================================
# FILE: /creditledger/services/credit_store.py
# =========================================================
"""Persistent per-account credit buckets.

Every mutation of an account goes through :meth:`CreditBucketStore.run`, which
gives the callback an :class:`AccountTransaction` inside the account's
exclusive scope:

* one ``asyncio.Lock`` per account id serializes work inside this process,
  other accounts are untouched;
* the ``accounts.version`` column is compared-and-bumped on commit, so a
  second process writing the same account makes one side roll back and retry.

Idempotency keys live in ``applied_operations``. A replay is detected with
:meth:`AccountTransaction.claim`, which raises ``DuplicateTransaction`` carrying
the stored result of the first application.
"""

from __future__ import annotations

import asyncio
import logging
import re
import weakref
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditledger.core.config import IDEMPOTENCY_RETENTION_DAYS, LEDGER_MAX_RETRIES
from creditledger.core.database import SessionLocal
from creditledger.core.errors import (
    AccountNotFound,
    ConcurrentModification,
    DuplicateTransaction,
    InvalidAdjustment,
)
from creditledger.models.account import Account
from creditledger.models.applied_operation import AppliedOperation
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.credit_ledger import CreditLedger
from creditledger.services.buckets import (
    CONSUMPTION_ORDER,
    AuditEntry,
    Balances,
    BucketSource,
    apply_adjustment,
    parse_bucket,
)

logger = logging.getLogger("creditledger.store")

T = TypeVar("T")

_SHOP_SUFFIX = ".myshopify.com"
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")


def normalize_shop_domain(raw: Optional[str]) -> str:
    """``My-Shop`` / ``https://my-shop.myshopify.com/admin`` -> ``my-shop.myshopify.com``."""
    value = (raw or "").strip().lower()
    value = _SCHEME_RE.sub("", value)
    value = value.split("/", 1)[0].strip()
    if not value:
        raise InvalidAdjustment("Account identifier (shop domain) is required")
    if "." not in value:
        value = f"{value}{_SHOP_SUFFIX}"
    return value


class _StaleAccount(Exception):
    pass


class AccountTransaction:
    """Unit of work over one account's bucket set."""

    def __init__(self, session: AsyncSession, account: Account, buckets: Dict[BucketSource, CreditBucket], now: datetime):
        self.session = session
        self.account = account
        self.now = now
        self._buckets = buckets
        self._loaded_version = account.version or 0
        self.audit: List[AuditEntry] = []

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def balances(self) -> Balances:
        return Balances(**{source.value: self._buckets[source].balance for source in CONSUMPTION_ORDER})

    def adjust(self, bucket, delta: int, reason: str, ref_id: Optional[str] = None) -> int:
        """Apply ``delta`` to one bucket; returns the new balance."""
        new_balances, entry = apply_adjustment(self.balances, bucket, delta, reason, ref_id)
        row = self._buckets[entry.bucket]
        row.balance = new_balances.get(entry.bucket)
        if delta > 0:
            row.lifetime_added = (row.lifetime_added or 0) + delta
        row.updated_at = self.now

        self.session.add(CreditLedger(
            account_id=self.account.id,
            bucket=entry.bucket.value,
            delta=entry.delta,
            balance_after=entry.balance_after,
            reason=entry.reason,
            ref_id=entry.ref_id,
            created_at=self.now,
        ))
        self.audit.append(entry)
        return entry.balance_after

    async def claim(self, kind: str, key: str) -> None:
        """Raise ``DuplicateTransaction`` if ``key`` was already applied."""
        if not key or not str(key).strip():
            raise InvalidAdjustment(f"{kind} requires an idempotency key")
        existing = (
            await self.session.execute(
                select(AppliedOperation).where(
                    AppliedOperation.account_id == self.account.id,
                    AppliedOperation.kind == kind,
                    AppliedOperation.key == key,
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateTransaction(kind, key, existing.result)

    def remember(self, kind: str, key: str, result: Optional[Dict[str, Any]] = None) -> None:
        self.session.add(AppliedOperation(
            account_id=self.account.id,
            kind=kind,
            key=key,
            result=result,
            created_at=self.now,
        ))

    def add(self, row: Any) -> None:
        self.session.add(row)

    async def commit(self) -> None:
        await self.session.flush()
        res = await self.session.execute(
            update(Account)
            .where(Account.id == self.account.id, Account.version == self._loaded_version)
            .values(version=self._loaded_version + 1, updated_at=self.now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise _StaleAccount(self.account.id)
        await self.session.commit()


class CreditBucketStore:
    def __init__(
        self,
        session_factory: async_sessionmaker = SessionLocal,
        max_retries: int = LEDGER_MAX_RETRIES,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self.max_retries = max(1, int(max_retries))
        self.clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def session(self) -> AsyncSession:
        return self._session_factory()

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    # ─────────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────────

    async def run(
        self,
        account_id: str,
        fn: Callable[[AccountTransaction], Awaitable[T]],
        *,
        create: bool = False,
    ) -> T:
        """Run ``fn`` atomically against one account, retrying on write conflicts."""
        account_id = normalize_shop_domain(account_id)
        lock = self._lock_for(account_id)
        async with lock:
            for attempt in range(1, self.max_retries + 1):
                async with self._session_factory() as session:
                    try:
                        tx = await self._open(session, account_id, create)
                        result = await fn(tx)
                        await tx.commit()
                        return result
                    except (_StaleAccount, IntegrityError) as exc:
                        await session.rollback()
                        logger.warning(
                            "Ledger write conflict on %s (attempt %d/%d): %s",
                            account_id, attempt, self.max_retries, type(exc).__name__,
                        )
                    except OperationalError as exc:
                        if "locked" not in str(exc).lower():
                            raise
                        await session.rollback()
                        logger.warning(
                            "Database busy for %s (attempt %d/%d)", account_id, attempt, self.max_retries,
                        )
                        await asyncio.sleep(0.05 * attempt)
        raise ConcurrentModification(account_id, self.max_retries)

    async def _open(self, session: AsyncSession, account_id: str, create: bool) -> AccountTransaction:
        now = self.clock()
        account = await session.get(Account, account_id)
        if account is None:
            if not create:
                raise AccountNotFound(account_id)
            account = Account(id=account_id, version=0, created_at=now, updated_at=now)
            session.add(account)
            await session.flush()
            logger.info("Created ledger account %s", account_id)

        rows = (
            await session.execute(select(CreditBucket).where(CreditBucket.account_id == account_id))
        ).scalars().all()
        buckets: Dict[BucketSource, CreditBucket] = {}
        for row in rows:
            buckets[parse_bucket(row.source)] = row
        for source in CONSUMPTION_ORDER:
            if source not in buckets:
                row = CreditBucket(
                    account_id=account_id,
                    source=source.value,
                    balance=0,
                    lifetime_added=0,
                    updated_at=now,
                )
                session.add(row)
                buckets[source] = row
        return AccountTransaction(session, account, buckets, now)

    # ─────────────────────────────────────────────
    # Convenience operations
    # ─────────────────────────────────────────────

    async def ensure_account(self, account_id: str) -> Balances:
        async def _noop(tx: AccountTransaction) -> Balances:
            return tx.balances

        return await self.run(account_id, _noop, create=True)

    async def adjust(self, account_id: str, bucket, delta: int, reason: str, ref_id: Optional[str] = None) -> int:
        source = parse_bucket(bucket)

        async def _adjust(tx: AccountTransaction) -> int:
            return tx.adjust(source, delta, reason, ref_id)

        return await self.run(account_id, _adjust)

    async def get_account(self, account_id: str) -> Account:
        account_id = normalize_shop_domain(account_id)
        async with self._session_factory() as session:
            account = await session.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def get_balances(self, account_id: str) -> Balances:
        account_id = normalize_shop_domain(account_id)
        async with self._session_factory() as session:
            if await session.get(Account, account_id) is None:
                raise AccountNotFound(account_id)
            rows = (
                await session.execute(select(CreditBucket).where(CreditBucket.account_id == account_id))
            ).scalars().all()
        values = {row.source: row.balance for row in rows}
        return Balances(**{source.value: int(values.get(source.value, 0)) for source in CONSUMPTION_ORDER})

    async def history(self, account_id: str, limit: int = 50) -> List[CreditLedger]:
        account_id = normalize_shop_domain(account_id)
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(CreditLedger)
                    .where(CreditLedger.account_id == account_id)
                    .order_by(CreditLedger.id.desc())
                    .limit(limit)
                )
            ).scalars().all()
        return list(rows)

    async def purge_applied_operations(self, older_than: Optional[datetime] = None) -> int:
        """Forget idempotency keys past the retention window."""
        cutoff = older_than or (self.clock() - timedelta(days=IDEMPOTENCY_RETENTION_DAYS))
        async with self._session_factory() as session:
            res = await session.execute(
                delete(AppliedOperation).where(AppliedOperation.created_at < cutoff)
            )
            await session.commit()
        purged = res.rowcount or 0
        if purged:
            logger.info("Purged %d idempotency keys older than %s", purged, cutoff.isoformat())
        return purged
