"""
Account Ledger — per-user credit balance with all-or-nothing adjustments.

Two backends share one contract:
  - InMemoryLedger:  lock-guarded dict, used in development and tests
  - SupabaseLedger:  compare-and-set on profiles.credit_balance

Every adjustment writes an audit row (credit_transactions) with its reason:
  restore / video   — stage debits
  refund            — a failed stage handed its debit back
  purchase          — credits bought or granted
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from .. import config, metrics
from .errors import InsufficientFunds, NotFound

logger = logging.getLogger(__name__)

REASON_RESTORE = "restore"
REASON_VIDEO = "video"
REASON_REFUND = "refund"
REASON_PURCHASE = "purchase"


class LedgerContention(RuntimeError):
    """The balance kept changing under us; nothing was written."""


def _check_amount(amount: int):
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError(f"Ledger amounts must be positive integers, got {amount!r}")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Ledger:
    """Base contract. Subclasses implement the atomic primitives."""

    async def balance(self, user_id: str) -> int:
        raise NotImplementedError

    async def _apply_debit(self, user_id: str, amount: int) -> int:
        raise NotImplementedError

    async def _apply_credit(self, user_id: str, amount: int) -> int:
        raise NotImplementedError

    def _audit(self, user_id: str, amount: int, balance_after: int, reason: str, project_id: Optional[str]):
        raise NotImplementedError

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: str = REASON_RESTORE,
        project_id: Optional[str] = None,
    ) -> int:
        """
        Take ``amount`` credits, or raise InsufficientFunds without touching
        the balance. Returns the new balance.
        """
        _check_amount(amount)
        try:
            new_balance = await self._apply_debit(user_id, amount)
        except InsufficientFunds:
            metrics.inc_counter("ledger.debit.rejected")
            raise
        self._audit(user_id, -amount, new_balance, reason, project_id)
        metrics.inc_counter("ledger.debit.count")
        metrics.inc_counter("ledger.debit.credits", amount)
        logger.info(f"Debited {amount} from {user_id} ({reason}) → {new_balance}")
        return new_balance

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: str = REASON_PURCHASE,
        project_id: Optional[str] = None,
    ) -> int:
        """Unconditionally add ``amount`` credits. Returns the new balance."""
        _check_amount(amount)
        new_balance = await self._apply_credit(user_id, amount)
        self._audit(user_id, amount, new_balance, reason, project_id)
        metrics.inc_counter(f"ledger.{reason}.count")
        metrics.inc_counter(f"ledger.{reason}.credits", amount)
        logger.info(f"Credited {amount} to {user_id} ({reason}) → {new_balance}")
        return new_balance

    async def refund(self, user_id: str, amount: int, project_id: Optional[str] = None) -> int:
        return await self.credit(user_id, amount, reason=REASON_REFUND, project_id=project_id)


# ═════════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryLedger(Ledger):
    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._lock = threading.Lock()
        self._balances: dict[str, int] = dict(balances or {})
        self.transactions: list[dict] = []

    def open_account(self, user_id: str, balance: int = 0):
        with self._lock:
            self._balances.setdefault(user_id, balance)

    async def balance(self, user_id: str) -> int:
        with self._lock:
            if user_id not in self._balances:
                raise NotFound(f"User {user_id} not found.")
            return self._balances[user_id]

    async def _apply_debit(self, user_id: str, amount: int) -> int:
        with self._lock:
            if user_id not in self._balances:
                raise NotFound(f"User {user_id} not found.")
            balance = self._balances[user_id]
            if balance < amount:
                raise InsufficientFunds(amount, balance)
            self._balances[user_id] = balance - amount
            return balance - amount

    async def _apply_credit(self, user_id: str, amount: int) -> int:
        with self._lock:
            if user_id not in self._balances:
                raise NotFound(f"User {user_id} not found.")
            self._balances[user_id] += amount
            return self._balances[user_id]

    def _audit(self, user_id, amount, balance_after, reason, project_id):
        with self._lock:
            self.transactions.append({
                "user_id": user_id,
                "amount": amount,
                "balance_after": balance_after,
                "reason": reason,
                "project_id": project_id,
                "created_at": _now_iso(),
            })


# ═════════════════════════════════════════════════════════════════════════════
# Supabase backend
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseLedger(Ledger):
    """
    Balance lives in ``profiles.credit_balance``.

    Each adjustment reads the balance and writes the new value with an
    ``eq("credit_balance", seen)`` filter, so the update only lands if no one
    else changed the row in between. An empty result means we lost the race
    and must re-read.
    """

    def __init__(self, client, max_retries: int = config.LEDGER_CAS_MAX_RETRIES):
        self._sb = client
        self.max_retries = max_retries

    def _read(self, user_id: str) -> int:
        result = (
            self._sb.table("profiles")
            .select("credit_balance")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise NotFound(f"User {user_id} not found.")
        return int(result.data[0].get("credit_balance") or 0)

    def _compare_and_set(self, user_id: str, seen: int, new: int) -> bool:
        result = (
            self._sb.table("profiles")
            .update({"credit_balance": new})
            .eq("id", user_id)
            .eq("credit_balance", seen)
            .execute()
        )
        return bool(result.data)

    async def balance(self, user_id: str) -> int:
        return self._read(user_id)

    async def _apply_debit(self, user_id: str, amount: int) -> int:
        for attempt in range(self.max_retries):
            seen = self._read(user_id)
            if seen < amount:
                raise InsufficientFunds(amount, seen)
            if self._compare_and_set(user_id, seen, seen - amount):
                return seen - amount
            logger.warning(f"Debit CAS lost for {user_id} (attempt {attempt + 1}/{self.max_retries})")
        metrics.inc_counter("ledger.contention")
        raise LedgerContention(f"Could not debit {user_id}: balance under contention")

    async def _apply_credit(self, user_id: str, amount: int) -> int:
        for attempt in range(self.max_retries):
            seen = self._read(user_id)
            if self._compare_and_set(user_id, seen, seen + amount):
                return seen + amount
            logger.warning(f"Credit CAS lost for {user_id} (attempt {attempt + 1}/{self.max_retries})")
        metrics.inc_counter("ledger.contention")
        raise LedgerContention(f"Could not credit {user_id}: balance under contention")

    def _audit(self, user_id, amount, balance_after, reason, project_id):
        # The balance is already committed; a lost audit row is logged, not fatal.
        try:
            self._sb.table("credit_transactions").insert({
                "user_id": user_id,
                "amount": amount,
                "balance_after": balance_after,
                "reason": reason,
                "project_id": project_id,
            }).execute()
        except Exception as e:
            logger.error(f"Failed to record credit transaction for {user_id} ({reason}, {amount}): {e}")
            metrics.record_error("ledger", "audit_write", str(e), user_id)
