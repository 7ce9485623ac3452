import asyncio

import pytest

from retroimprover import config, metrics
from retroimprover.pipeline.errors import InsufficientFunds, NotFound
from retroimprover.pipeline.ledger import (
    InMemoryLedger,
    LedgerContention,
    SupabaseLedger,
)


# ── In-memory ────────────────────────────────────────────────────────────────

async def test_debit_returns_new_balance_and_audits(ledger):
    balance = await ledger.debit("alice", 3, reason="video", project_id="p1")

    assert balance == 7
    assert ledger.transactions[0]["amount"] == -3
    assert ledger.transactions[0]["balance_after"] == 7
    assert ledger.transactions[0]["project_id"] == "p1"
    assert metrics.get_counter("ledger.debit.count") == 1


async def test_debit_beyond_balance_leaves_it_untouched(ledger):
    with pytest.raises(InsufficientFunds) as exc:
        await ledger.debit("alice", 11)

    assert exc.value.credits_left == 10
    assert exc.value.to_detail()["code"] == "INSUFFICIENT_CREDITS"
    assert await ledger.balance("alice") == 10
    assert ledger.transactions == []


async def test_concurrent_debits_never_overdraw():
    ledger = InMemoryLedger({"carol": 5})

    results = await asyncio.gather(
        *(ledger.debit("carol", 1) for _ in range(10)),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, int)) == 5
    assert sum(1 for r in results if isinstance(r, InsufficientFunds)) == 5
    assert await ledger.balance("carol") == 0


async def test_refund_is_recorded_as_refund(ledger):
    await ledger.debit("alice", 3, reason="video")
    balance = await ledger.refund("alice", 3, project_id="p1")

    assert balance == 10
    assert [t["reason"] for t in ledger.transactions] == ["video", "refund"]
    assert metrics.get_counter("ledger.refund.credits") == 3


async def test_unknown_account_is_not_found(ledger):
    with pytest.raises(NotFound):
        await ledger.debit("mallory", 1)


@pytest.mark.parametrize("amount", [0, -1, 1.5, True])
async def test_amounts_must_be_positive_integers(ledger, amount):
    with pytest.raises(ValueError):
        await ledger.debit("alice", amount)


# ── Supabase compare-and-set ─────────────────────────────────────────────────

@pytest.fixture
def supabase_ledger(supabase):
    supabase.tables["profiles"] = [{"id": "alice", "credit_balance": 5}]
    return SupabaseLedger(supabase)


async def test_supabase_debit_writes_balance_and_audit_row(supabase, supabase_ledger):
    balance = await supabase_ledger.debit("alice", 1, reason="restore", project_id="p1")

    assert balance == 4
    assert supabase.tables["profiles"][0]["credit_balance"] == 4
    row = supabase.tables["credit_transactions"][0]
    assert (row["amount"], row["reason"], row["project_id"]) == (-1, "restore", "p1")


async def test_supabase_debit_retries_after_losing_race(supabase, supabase_ledger):
    def concurrent_debit(db):
        db.tables["profiles"][0]["credit_balance"] -= 1

    supabase.before_update.append(concurrent_debit)

    balance = await supabase_ledger.debit("alice", 2)

    assert balance == 2
    assert supabase.tables["profiles"][0]["credit_balance"] == 2


async def test_supabase_debit_rechecks_funds_after_race(supabase, supabase_ledger):
    def drain(db):
        db.tables["profiles"][0]["credit_balance"] = 1

    supabase.before_update.append(drain)

    with pytest.raises(InsufficientFunds):
        await supabase_ledger.debit("alice", 3)
    assert supabase.tables["profiles"][0]["credit_balance"] == 1


async def test_supabase_gives_up_under_sustained_contention(supabase, supabase_ledger):
    def bump(db):
        db.tables["profiles"][0]["credit_balance"] += 1

    supabase.before_update.extend([bump] * supabase_ledger.max_retries)

    with pytest.raises(LedgerContention):
        await supabase_ledger.credit("alice", 1)
    assert "credit_transactions" not in supabase.tables


async def test_supabase_unknown_profile_is_not_found(supabase_ledger):
    with pytest.raises(NotFound):
        await supabase_ledger.balance("nobody")


async def test_supabase_retry_budget_comes_from_config(supabase):
    supabase.tables["profiles"] = [{"id": "alice", "credit_balance": 5}]
    ledger = SupabaseLedger(supabase, max_retries=2)
    bumps = []

    def bump(db):
        bumps.append(1)
        db.tables["profiles"][0]["credit_balance"] += 1

    supabase.before_update.extend([bump] * 5)

    with pytest.raises(LedgerContention):
        await ledger.debit("alice", 1)
    assert len(bumps) == 2
    assert SupabaseLedger(supabase).max_retries == config.LEDGER_CAS_MAX_RETRIES
