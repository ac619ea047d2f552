import pytest

from services.transfer.context_accounts import (
    ContextAccountHandle,
    ContextAccountPlanner,
    LifecycleState,
    context_size,
    fresh_handles,
)
from services.transfer.errors import ContextAccountReuseError, LedgerError, RentQueryFailed
from services.transfer.types import ProofKind

S = LifecycleState


def test_handle_moves_forward_one_state_at_a_time():
    h = ContextAccountHandle(ProofKind.EQUALITY)
    for target in (S.CREATED, S.VERIFIED, S.CONSUMED, S.CLOSED):
        h.advance(target)
        assert h.state is target


@pytest.mark.parametrize("target", [S.VERIFIED, S.CLOSED, S.UNFUNDED])
def test_handle_rejects_skips_and_backsteps(target):
    h = ContextAccountHandle(ProofKind.RANGE)
    with pytest.raises(ContextAccountReuseError):
        h.advance(target)


def test_closed_handle_is_terminal():
    h = ContextAccountHandle(ProofKind.VALIDITY)
    for target in (S.CREATED, S.VERIFIED, S.CONSUMED, S.CLOSED):
        h.advance(target)
    with pytest.raises(ContextAccountReuseError):
        h.advance(S.CLOSED)


def test_handle_binds_once():
    h = ContextAccountHandle(ProofKind.EQUALITY)
    h.bind("plan-a")
    with pytest.raises(ContextAccountReuseError):
        h.bind("plan-b")


def test_used_handle_cannot_be_bound():
    h = ContextAccountHandle(ProofKind.EQUALITY)
    h.advance(S.CREATED)
    with pytest.raises(ContextAccountReuseError):
        h.bind("plan")


def test_fresh_handles_are_distinct():
    a, b = fresh_handles(), fresh_handles()
    addresses = {h.address for h in list(a.values()) + list(b.values())}
    assert len(addresses) == 6
    assert all(h.state is S.UNFUNDED for h in a.values())


def test_context_sizes(cfg):
    assert context_size(cfg, ProofKind.EQUALITY) == 161
    assert context_size(cfg, ProofKind.VALIDITY) == 385
    assert context_size(cfg, ProofKind.RANGE) == 297


@pytest.mark.asyncio
async def test_rent_is_cached_per_planner(ledger, cfg):
    planner = ContextAccountPlanner(ledger, cfg)
    plans = await planner.plan_all()
    again = await planner.plan_all()

    assert plans == again
    assert sorted(c[1] for c in ledger.method_calls("get_min_rent")) == [161, 297, 385]
    assert plans[ProofKind.EQUALITY].rent_lamports == (128 + 161) * 6960

    await ContextAccountPlanner(ledger, cfg).plan(ProofKind.EQUALITY)
    assert len(ledger.method_calls("get_min_rent")) == 4


@pytest.mark.asyncio
async def test_rent_query_retried_once(ledger, cfg):
    ledger.rent_errors = [RentQueryFailed("timeout")]
    plan = await ContextAccountPlanner(ledger, cfg).plan(ProofKind.RANGE)
    assert plan.byte_size == 297
    assert len(ledger.method_calls("get_min_rent")) == 2


@pytest.mark.asyncio
async def test_rent_query_fails_after_two_attempts(ledger, cfg):
    ledger.rent_errors = [LedgerError("down"), RentQueryFailed("still down")]
    with pytest.raises(RentQueryFailed):
        await ContextAccountPlanner(ledger, cfg).plan(ProofKind.VALIDITY)
    assert len(ledger.method_calls("get_min_rent")) == 2
