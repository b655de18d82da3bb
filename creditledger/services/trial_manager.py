# =========================================================
# FILE: /creditledger/services/trial_manager.py
# =========================================================
"""Trial lifecycle: NotStarted -> Active -> Ended.

Ending a trial only flips its state. Whatever is left in the trial bucket
stays spendable and keeps its first place in the consumption order.

While the trial runs, usage warnings fire once per threshold in
``TRIAL_NOTIFICATION_THRESHOLDS``; the caller delivers them and marks them sent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from creditledger.core.config import TRIAL_CREDITS, TRIAL_DAYS
from creditledger.core.errors import DuplicateTransaction, InvalidAdjustment
from creditledger.models.account import Account
from creditledger.services.buckets import BucketSource
from creditledger.services.credit_store import AccountTransaction, CreditBucketStore

logger = logging.getLogger("creditledger.trial")

TRIAL_DURATION = timedelta(days=TRIAL_DAYS)

# Trial credits used at which the merchant is warned, lowest first
TRIAL_NOTIFICATION_THRESHOLDS = (80, 90, 95, 100)


class TrialPhase(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    ENDED = "ended"


class TrialEndReason(str, Enum):
    DURATION_ELAPSED = "duration_elapsed"
    CREDITS_EXHAUSTED = "trial_credits_exhausted"
    ADMIN = "admin"


@dataclass(frozen=True)
class TrialState:
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    duration: timedelta = TRIAL_DURATION

    @classmethod
    def from_account(cls, account: Account) -> "TrialState":
        return cls(
            started_at=account.trial_started_at,
            ended_at=account.trial_ended_at,
            end_reason=account.trial_end_reason,
        )

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.started_at is None:
            return None
        return self.started_at + self.duration


def sent_thresholds(account: Account) -> List[int]:
    return [int(t) for t in (account.trial_notifications_sent or [])]


def trial_status(state: TrialState, now: datetime) -> TrialPhase:
    if state.started_at is None:
        return TrialPhase.NOT_STARTED
    if state.ended_at is not None:
        return TrialPhase.ENDED
    if now >= state.started_at + state.duration:
        return TrialPhase.ENDED
    return TrialPhase.ACTIVE


class TrialLifecycleManager:
    def __init__(self, store: CreditBucketStore, trial_credits: int = TRIAL_CREDITS):
        self.store = store
        self.trial_credits = trial_credits

    # ─────────────────────────────────────────────
    # In-transaction helpers (used by the consumption engine)
    # ─────────────────────────────────────────────

    def refresh(self, tx: AccountTransaction) -> TrialPhase:
        """Persist a lazily detected expiry; returns the current phase."""
        state = TrialState.from_account(tx.account)
        phase = trial_status(state, tx.now)
        if phase is TrialPhase.ENDED and state.ended_at is None:
            self._mark_ended(tx, TrialEndReason.DURATION_ELAPSED, at=state.expires_at)
        return phase

    def end_in(self, tx: AccountTransaction, reason: TrialEndReason) -> bool:
        """End an active trial; returns False when there was nothing to end."""
        if self.refresh(tx) is not TrialPhase.ACTIVE:
            return False
        self._mark_ended(tx, reason, at=tx.now)
        return True

    def _mark_ended(self, tx: AccountTransaction, reason: TrialEndReason, at: Optional[datetime]) -> None:
        tx.account.trial_ended_at = at or tx.now
        tx.account.trial_end_reason = reason.value
        logger.info(
            "Trial ended for %s (%s), %d trial credits remain spendable",
            tx.account_id, reason.value, tx.balances.trial,
        )

    # ─────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────

    async def start_trial(
        self,
        account_id: str,
        plan_handle: Optional[str] = None,
        billing_customer_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Activation: create the account if needed and grant the trial allotment once."""

        async def _start(tx: AccountTransaction) -> Dict[str, Any]:
            if plan_handle:
                tx.account.plan_handle = plan_handle
            if billing_customer_id:
                tx.account.billing_customer_id = billing_customer_id
            try:
                await tx.claim("activation", "trial")
            except DuplicateTransaction:
                return self._describe(tx, started=False)
            if tx.account.trial_started_at is not None:
                return self._describe(tx, started=False)

            tx.account.trial_started_at = tx.now
            tx.account.trial_ended_at = None
            tx.account.trial_end_reason = None
            if self.trial_credits > 0:
                tx.adjust(BucketSource.TRIAL, self.trial_credits, "trial_grant", ref_id="trial")
            tx.remember("activation", "trial", {"started_at": tx.now.isoformat()})
            logger.info("Trial started for %s with %d credits", tx.account_id, self.trial_credits)
            return self._describe(tx, started=True)

        return await self.store.run(account_id, _start, create=True)

    async def end_trial(self, account_id: str, reason: TrialEndReason = TrialEndReason.ADMIN) -> Dict[str, Any]:
        """Explicit administrative end. Leaves the trial bucket untouched."""

        async def _end(tx: AccountTransaction) -> Dict[str, Any]:
            ended = self.end_in(tx, reason)
            return self._describe(tx, ended=ended)

        return await self.store.run(account_id, _end)

    async def get_status(self, account_id: str) -> Dict[str, Any]:
        async def _status(tx: AccountTransaction) -> Dict[str, Any]:
            self.refresh(tx)
            return self._describe(tx)

        return await self.store.run(account_id, _status)

    async def mark_notification_sent(self, account_id: str, threshold: int) -> Dict[str, Any]:
        """Record that the warning for ``threshold`` went out. Repeats are no-ops."""
        if isinstance(threshold, bool) or threshold not in TRIAL_NOTIFICATION_THRESHOLDS:
            raise InvalidAdjustment(
                f"Unknown trial notification threshold {threshold!r}, expected one of {list(TRIAL_NOTIFICATION_THRESHOLDS)}"
            )

        async def _mark(tx: AccountTransaction) -> Dict[str, Any]:
            sent = sent_thresholds(tx.account)
            marked = threshold not in sent
            if marked:
                # New list so the JSON column is flagged dirty
                tx.account.trial_notifications_sent = sorted(sent + [threshold])
                logger.info("Trial notification %d marked sent for %s", threshold, tx.account_id)
            return self._describe(tx, marked=marked)

        return await self.store.run(account_id, _mark)

    def credits_used(self, tx: AccountTransaction) -> int:
        if tx.account.trial_started_at is None:
            return 0
        return max(0, self.trial_credits - tx.balances.trial)

    def pending_notification(self, tx: AccountTransaction, phase: TrialPhase) -> Optional[int]:
        """Lowest reached threshold not yet sent, or None outside the trial."""
        in_trial = phase is TrialPhase.ACTIVE or (
            tx.account.trial_end_reason == TrialEndReason.CREDITS_EXHAUSTED.value
        )
        if not in_trial:
            return None
        used = self.credits_used(tx)
        sent = sent_thresholds(tx.account)
        for threshold in TRIAL_NOTIFICATION_THRESHOLDS:
            if used >= threshold and threshold not in sent:
                return threshold
        return None

    def _describe(self, tx: AccountTransaction, **extra: Any) -> Dict[str, Any]:
        state = TrialState.from_account(tx.account)
        phase = trial_status(state, tx.now)
        days_remaining = 0
        if phase is TrialPhase.ACTIVE and state.expires_at is not None:
            days_remaining = max(0, (state.expires_at - tx.now).days)
        data = {
            "account_id": tx.account_id,
            "phase": phase.value,
            "is_active": phase is TrialPhase.ACTIVE,
            "trial_balance": tx.balances.trial,
            "trial_credits_total": self.trial_credits,
            "days_remaining": days_remaining,
            "started_at": state.started_at,
            "ended_at": state.ended_at,
            "end_reason": state.end_reason,
            "credits_used": self.credits_used(tx),
            "notification_threshold": self.pending_notification(tx, phase),
            "notifications_sent": sent_thresholds(tx.account),
        }
        data.update(extra)
        return data
