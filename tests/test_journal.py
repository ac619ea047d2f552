import os

import pytest

from services.api.eventlog import TransferJournal, dump_stranded
from services.crypto_core.keypairs import pubkey_to_b58
from services.ledger.wire import CloseContextState, decode_instruction
from services.transfer.context_accounts import ContextAccountPlan, LifecycleState, fresh_handles
from services.transfer.planner import MessagePlanner
from services.transfer.types import ProofKind

S = LifecycleState


async def _seed(journal, authority):
    handles = fresh_handles()
    plans = [(handles[k], ContextAccountPlan(k, 100 + i, 1000 * (i + 1))) for i, k in enumerate(ProofKind)]
    await journal.record_run("run-1", authority, os.urandom(32), os.urandom(32), os.urandom(32))
    await journal.record_contexts("run-1", authority, plans)
    return handles


@pytest.mark.asyncio
async def test_unfunded_contexts_are_not_stranded(tmp_path):
    async with TransferJournal(str(tmp_path / "j.db")) as journal:
        await _seed(journal, os.urandom(32))
        assert await journal.stranded_accounts() == []
        assert await journal.run_status("run-1") == "running"


@pytest.mark.asyncio
async def test_created_and_verified_contexts_are_stranded(tmp_path):
    authority = os.urandom(32)
    async with TransferJournal(str(tmp_path / "j.db")) as journal:
        handles = await _seed(journal, authority)
        eq, val = handles[ProofKind.EQUALITY], handles[ProofKind.VALIDITY]
        eq.advance(S.CREATED)
        eq.advance(S.VERIFIED)
        await journal.update_context(eq)
        val.advance(S.CREATED)
        await journal.update_context(val)

        stranded = await journal.stranded_accounts()
        assert {s.address: s.state for s in stranded} == {eq.address_b58: "VERIFIED", val.address_b58: "CREATED"}
        assert sum(s.rent_lamports for s in stranded) == 3000
        assert await journal.stranded_accounts(pubkey_to_b58(os.urandom(32))) == []
        assert len(await journal.stranded_accounts(pubkey_to_b58(authority))) == 2

        await journal.mark_closed([eq.address_b58])
        assert [s.address for s in await journal.stranded_accounts()] == [val.address_b58]


@pytest.mark.asyncio
async def test_uncertain_contexts_are_stranded(tmp_path):
    async with TransferJournal(str(tmp_path / "j.db")) as journal:
        handles = await _seed(journal, os.urandom(32))
        rng = handles[ProofKind.RANGE]
        await journal.mark_uncertain([rng])

        (only,) = await journal.stranded_accounts()
        assert only.address == rng.address_b58
        assert only.state == "UNFUNDED" and only.uncertain
        assert '"uncertain": true' in dump_stranded([only])


@pytest.mark.asyncio
async def test_build_reclaim_step(tmp_path, cfg):
    authority = os.urandom(32)
    async with TransferJournal(str(tmp_path / "j.db")) as journal:
        planner = MessagePlanner(cfg)
        assert await journal.build_reclaim_step(planner, authority) is None

        handles = await _seed(journal, authority)
        for h in handles.values():
            h.advance(S.CREATED)
            await journal.update_context(h)

        step = await journal.build_reclaim_step(planner, authority)
        closes = [decode_instruction(ix) for ix in step.instructions]
        assert all(isinstance(c, CloseContextState) for c in closes)
        assert {c.context_account for c in closes} == {h.address for h in handles.values()}
        assert all(c.destination == authority and c.authority == authority for c in closes)


@pytest.mark.asyncio
async def test_journal_survives_reopen(tmp_path):
    path = str(tmp_path / "nested" / "j.db")
    authority = os.urandom(32)
    async with TransferJournal(path) as journal:
        handles = await _seed(journal, authority)
        handles[ProofKind.EQUALITY].advance(S.CREATED)
        await journal.update_context(handles[ProofKind.EQUALITY])

    async with TransferJournal(path) as journal:
        assert len(await journal.stranded_accounts()) == 1


def test_closed_journal_refuses_queries(tmp_path):
    journal = TransferJournal(str(tmp_path / "j.db"))
    with pytest.raises(RuntimeError):
        journal.db
