from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

import aiosqlite

from services.api.logging_config import get_logger
from services.crypto_core.keypairs import pubkey_from_b58, pubkey_to_b58
from services.transfer.context_accounts import ContextAccountHandle, ContextAccountPlan, LifecycleState

if TYPE_CHECKING:
    from services.transfer.planner import MessagePlanner
    from services.transfer.types import SubmissionOutcome, TransferResult, TransferStep

logger = get_logger("journal")

DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS runs(
  run_id TEXT PRIMARY KEY,
  authority TEXT NOT NULL,
  mint TEXT NOT NULL,
  source TEXT NOT NULL,
  destination TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'running',
  cause TEXT,
  started_at TEXT NOT NULL,
  finished_at TEXT
);

CREATE TABLE IF NOT EXISTS steps(
  run_id TEXT NOT NULL,
  step_index INTEGER NOT NULL,
  label TEXT NOT NULL,
  status TEXT NOT NULL,
  signature TEXT,
  cause TEXT,
  attempts INTEGER NOT NULL DEFAULT 0,
  ts TEXT NOT NULL,
  PRIMARY KEY(run_id, step_index)
);

CREATE TABLE IF NOT EXISTS context_accounts(
  address TEXT PRIMARY KEY,
  run_id TEXT NOT NULL,
  kind TEXT NOT NULL,
  authority TEXT NOT NULL,
  byte_size INTEGER NOT NULL,
  rent_lamports INTEGER NOT NULL,
  state TEXT NOT NULL,
  uncertain INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT NOT NULL
);
"""

_LIVE_STATES = (LifecycleState.CREATED.name, LifecycleState.VERIFIED.name, LifecycleState.CONSUMED.name)


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class StrandedAccount:
    address: str
    run_id: str
    kind: str
    authority: str
    rent_lamports: int
    state: str
    uncertain: bool

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class TransferJournal:
    """
    Append-mostly record of transfer runs, their steps and their context
    accounts. The only recovery path for a half-finished transfer is to find
    the context accounts it funded and close them, so every state change is
    written as soon as it is known.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> "TransferJournal":
        if self._db is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.executescript(DDL)
            await self._db.commit()
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "TransferJournal":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("journal is not open")
        return self._db

    # ---------- writes ----------
    async def record_run(self, run_id: str, authority: bytes, mint: bytes, source: bytes, destination: bytes) -> None:
        await self.db.execute(
            "INSERT OR IGNORE INTO runs(run_id,authority,mint,source,destination,started_at) VALUES(?,?,?,?,?,?)",
            (run_id, pubkey_to_b58(authority), pubkey_to_b58(mint), pubkey_to_b58(source),
             pubkey_to_b58(destination), _now()),
        )
        await self.db.commit()

    async def record_contexts(
        self, run_id: str, authority: bytes, planned: Iterable[tuple[ContextAccountHandle, ContextAccountPlan]]
    ) -> None:
        now = _now()
        await self.db.executemany(
            "INSERT OR REPLACE INTO context_accounts"
            "(address,run_id,kind,authority,byte_size,rent_lamports,state,updated_at) VALUES(?,?,?,?,?,?,?,?)",
            [
                (h.address_b58, run_id, h.kind.value, pubkey_to_b58(authority), p.byte_size, p.rent_lamports,
                 h.state.name, now)
                for h, p in planned
            ],
        )
        await self.db.commit()

    async def update_context(self, handle: ContextAccountHandle) -> None:
        await self.db.execute(
            "UPDATE context_accounts SET state=?, uncertain=0, updated_at=? WHERE address=?",
            (handle.state.name, _now(), handle.address_b58),
        )
        await self.db.commit()

    async def mark_uncertain(self, handles: Iterable[ContextAccountHandle]) -> None:
        await self.db.executemany(
            "UPDATE context_accounts SET uncertain=1, updated_at=? WHERE address=?",
            [(_now(), h.address_b58) for h in handles],
        )
        await self.db.commit()

    async def record_step(self, run_id: str, step: "TransferStep", outcome: "SubmissionOutcome") -> None:
        await self.db.execute(
            "INSERT OR REPLACE INTO steps(run_id,step_index,label,status,signature,cause,attempts,ts) "
            "VALUES(?,?,?,?,?,?,?,?)",
            (run_id, step.index, step.label, outcome.status.value, outcome.signature, outcome.cause,
             outcome.attempts, _now()),
        )
        await self.db.commit()

    async def finish_run(self, result: "TransferResult") -> None:
        status = "confirmed" if result.ok else result.outcome.status.value
        await self.db.execute(
            "UPDATE runs SET status=?, cause=?, finished_at=? WHERE run_id=?",
            (status, None if result.ok else result.describe(), _now(), result.run_id),
        )
        await self.db.commit()

    async def mark_closed(self, addresses: Iterable[str]) -> None:
        await self.db.executemany(
            "UPDATE context_accounts SET state=?, uncertain=0, updated_at=? WHERE address=?",
            [(LifecycleState.CLOSED.name, _now(), a) for a in addresses],
        )
        await self.db.commit()

    # ---------- reads ----------
    async def stranded_accounts(self, authority: Optional[str] = None) -> List[StrandedAccount]:
        """Context accounts that were (or may have been) funded and never closed."""
        placeholders = ",".join("?" for _ in _LIVE_STATES)
        sql = (
            "SELECT address,run_id,kind,authority,rent_lamports,state,uncertain FROM context_accounts "
            f"WHERE (state IN ({placeholders}) OR (uncertain=1 AND state != ?))"
        )
        params: List[Any] = list(_LIVE_STATES) + [LifecycleState.CLOSED.name]
        if authority:
            sql += " AND authority=?"
            params.append(authority)
        sql += " ORDER BY updated_at, address"
        async with self.db.execute(sql, params) as cur:
            rows = await cur.fetchall()
        return [
            StrandedAccount(r[0], r[1], r[2], r[3], int(r[4]), r[5], bool(r[6]))
            for r in rows
        ]

    async def run_steps(self, run_id: str) -> List[Dict[str, Any]]:
        async with self.db.execute(
            "SELECT step_index,label,status,signature,cause,attempts FROM steps WHERE run_id=? ORDER BY step_index",
            (run_id,),
        ) as cur:
            rows = await cur.fetchall()
        keys = ("index", "label", "status", "signature", "cause", "attempts")
        return [dict(zip(keys, r)) for r in rows]

    async def run_status(self, run_id: str) -> Optional[str]:
        async with self.db.execute("SELECT status FROM runs WHERE run_id=?", (run_id,)) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    async def build_reclaim_step(self, planner: "MessagePlanner", authority: bytes) -> Optional["TransferStep"]:
        """
        Close-only step returning stranded rent to `authority`, or None when
        nothing is stranded. Covers as many accounts as fit in one transaction.
        """
        stranded = await self.stranded_accounts(pubkey_to_b58(authority))
        if not stranded:
            return None
        steps = planner.plan_reclaim(authority, [pubkey_from_b58(s.address) for s in stranded])
        logger.info(
            f"reclaim: {len(stranded)} stranded account(s), "
            f"{sum(s.rent_lamports for s in stranded)} lamports, first step covers "
            f"{len(steps[0].instructions)} close(s)"
        )
        return steps[0]


def dump_stranded(accounts: List[StrandedAccount]) -> str:
    return json.dumps([a.as_dict() for a in accounts], indent=2)
