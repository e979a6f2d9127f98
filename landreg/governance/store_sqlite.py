"""
SQLite Proposal Store

Persistent ProposalStore on aiosqlite. Proposals are kept as a JSON document
next to the scalar columns the sweep and listings filter on; tallies are
TEXT so arbitrarily large voting power survives the round trip. The
``votes`` table carries ``UNIQUE(proposal_id, voter)``, which is the last
line of defence against a duplicate vote.

All writes go through one connection, one asyncio.Lock and a
``BEGIN IMMEDIATE`` transaction.
"""

import asyncio
import json
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import aiosqlite

from ..logger import get_logger
from .proposals import (
    DuplicateProposalError,
    Proposal,
    ProposalNotFoundError,
    ProposalStatus,
    ProposalType,
)
from .store import Mutator, ProposalStore, tally_vote
from .voting import AlreadyVotedError, VoteChoice, VoteRecord

logger = get_logger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    external_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    proposal_type TEXT NOT NULL,
    proposer TEXT NOT NULL,
    votes_for TEXT NOT NULL DEFAULT '0',
    votes_against TEXT NOT NULL DEFAULT '0',
    votes_abstain TEXT NOT NULL DEFAULT '0',
    voting_end REAL,
    expiration_at REAL,
    created_at REAL NOT NULL,
    document TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status);
CREATE INDEX IF NOT EXISTS idx_proposals_voting_end ON proposals(voting_end);
CREATE UNIQUE INDEX IF NOT EXISTS idx_proposals_external_id
    ON proposals(external_id) WHERE external_id != '';

CREATE TABLE IF NOT EXISTS votes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    proposal_id TEXT NOT NULL,
    voter TEXT NOT NULL,
    choice INTEGER NOT NULL,
    voting_power TEXT NOT NULL,
    tx_ref TEXT NOT NULL,
    block_number INTEGER,
    reason TEXT,
    cast_at REAL NOT NULL,
    UNIQUE (proposal_id, voter),
    FOREIGN KEY (proposal_id) REFERENCES proposals(id)
);
"""


def _row_values(proposal: Proposal) -> tuple:
    return (
        proposal.external_id,
        proposal.status.name,
        proposal.proposal_type.name,
        proposal.proposer,
        str(proposal.votes_for),
        str(proposal.votes_against),
        str(proposal.votes_abstain),
        proposal.voting_end,
        proposal.expiration_at,
        proposal.created_at,
        json.dumps(proposal.to_dict(), default=str),
    )


def _vote_from_row(row) -> VoteRecord:
    return VoteRecord(
        proposal_id=row["proposal_id"],
        voter=row["voter"],
        choice=VoteChoice(row["choice"]),
        voting_power=int(row["voting_power"]),
        tx_ref=row["tx_ref"],
        block_number=row["block_number"],
        reason=row["reason"],
        cast_at=row["cast_at"],
    )


class SQLiteProposalStore(ProposalStore):
    """aiosqlite-backed ProposalStore."""

    def __init__(self, db_path: str, wal_mode: bool = True):
        self.db_path = db_path
        self.wal_mode = wal_mode
        self.connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @staticmethod
    async def create(db_path: str, wal_mode: bool = True) -> "SQLiteProposalStore":
        """Create and initialize a store."""
        self = SQLiteProposalStore(db_path, wal_mode=wal_mode)
        await self.initialize()
        return self

    async def initialize(self):
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        # Autocommit mode; transactions are opened explicitly.
        self.connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        self.connection.row_factory = aiosqlite.Row
        if self.wal_mode:
            await self.connection.execute("PRAGMA journal_mode=WAL")
            await self.connection.execute("PRAGMA synchronous=NORMAL")
        await self.connection.execute("PRAGMA foreign_keys=ON")
        await self.connection.executescript(SCHEMA)
        logger.info(f"SQLite proposal store initialized: {self.db_path}")

    async def close(self):
        if self.connection:
            await self.connection.close()
            self.connection = None
            logger.info(f"SQLite proposal store closed: {self.db_path}")

    @asynccontextmanager
    async def _transaction(self):
        async with self._lock:
            await self.connection.execute("BEGIN IMMEDIATE")
            try:
                yield self.connection
            except BaseException:
                await self.connection.execute("ROLLBACK")
                raise
            await self.connection.execute("COMMIT")

    async def _load(self, proposal_id: str) -> Proposal:
        cursor = await self.connection.execute(
            "SELECT document FROM proposals WHERE id = ?", (proposal_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise ProposalNotFoundError(f"Proposal {proposal_id} not found")
        return Proposal.from_dict(json.loads(row["document"]))

    async def _save(self, db, proposal: Proposal):
        try:
            await db.execute(
                """
                UPDATE proposals SET
                    external_id = ?, status = ?, proposal_type = ?, proposer = ?,
                    votes_for = ?, votes_against = ?, votes_abstain = ?,
                    voting_end = ?, expiration_at = ?, created_at = ?, document = ?
                WHERE id = ?
                """,
                _row_values(proposal) + (proposal.id,),
            )
        except aiosqlite.IntegrityError as e:
            raise DuplicateProposalError(
                f"External id {proposal.external_id} already belongs to another proposal"
            ) from e

    # ── ProposalStore ─────────────────────────────────────────────────

    async def add(self, proposal: Proposal) -> Proposal:
        async with self._transaction() as db:
            try:
                await db.execute(
                    """
                    INSERT INTO proposals (
                        external_id, status, proposal_type, proposer,
                        votes_for, votes_against, votes_abstain,
                        voting_end, expiration_at, created_at, document, id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    _row_values(proposal) + (proposal.id,),
                )
            except aiosqlite.IntegrityError as e:
                raise DuplicateProposalError(f"Proposal {proposal.id} already exists") from e
        return proposal.copy()

    async def get(self, proposal_id: str) -> Proposal:
        async with self._lock:
            return await self._load(proposal_id)

    async def find_by_external_id(self, external_id: str) -> Optional[Proposal]:
        if not external_id:
            return None
        async with self._lock:
            cursor = await self.connection.execute(
                "SELECT document FROM proposals WHERE external_id = ?", (external_id,)
            )
            row = await cursor.fetchone()
        return Proposal.from_dict(json.loads(row["document"])) if row else None

    async def update(self, proposal_id: str, mutator: Mutator) -> Proposal:
        async with self._transaction() as db:
            current = await self._load(proposal_id)
            working = current.copy()
            if mutator(working) is False:
                return current
            await self._save(db, working)
            return working.copy()

    async def record_vote(self, vote: VoteRecord) -> Proposal:
        async with self._transaction() as db:
            working = await self._load(vote.proposal_id)
            cursor = await db.execute(
                "SELECT 1 FROM votes WHERE proposal_id = ? AND voter = ?",
                (vote.proposal_id, vote.voter),
            )
            tally_vote(working, vote, await cursor.fetchone() is not None)
            try:
                await db.execute(
                    """
                    INSERT INTO votes (
                        proposal_id, voter, choice, voting_power, tx_ref,
                        block_number, reason, cast_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        vote.proposal_id, vote.voter, int(vote.choice), str(vote.voting_power),
                        vote.tx_ref, vote.block_number, vote.reason, vote.cast_at,
                    ),
                )
            except aiosqlite.IntegrityError as e:
                raise AlreadyVotedError(
                    f"{vote.voter} already voted on proposal {vote.proposal_id}"
                ) from e
            await self._save(db, working)
            return working.copy()

    async def get_vote(self, proposal_id: str, voter: str) -> Optional[VoteRecord]:
        async with self._lock:
            cursor = await self.connection.execute(
                "SELECT * FROM votes WHERE proposal_id = ? AND voter = ?",
                (proposal_id, voter),
            )
            row = await cursor.fetchone()
        return _vote_from_row(row) if row else None

    async def get_votes(self, proposal_id: str) -> List[VoteRecord]:
        async with self._lock:
            await self._load(proposal_id)
            cursor = await self.connection.execute(
                "SELECT * FROM votes WHERE proposal_id = ? ORDER BY cast_at, id",
                (proposal_id,),
            )
            rows = await cursor.fetchall()
        return [_vote_from_row(row) for row in rows]

    async def list_proposals(
        self,
        status: Optional[ProposalStatus] = None,
        proposal_type: Optional[ProposalType] = None,
        proposer: Optional[str] = None,
    ) -> List[Proposal]:
        clauses, args = [], []
        if status is not None:
            clauses.append("status = ?")
            args.append(status.name)
        if proposal_type is not None:
            clauses.append("proposal_type = ?")
            args.append(proposal_type.name)
        if proposer is not None:
            clauses.append("lower(proposer) = lower(?)")
            args.append(proposer)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._lock:
            cursor = await self.connection.execute(
                f"SELECT document FROM proposals {where} ORDER BY created_at DESC", args
            )
            rows = await cursor.fetchall()
        return [Proposal.from_dict(json.loads(row["document"])) for row in rows]

    async def list_due_for_close(self, now: float) -> List[Proposal]:
        async with self._lock:
            cursor = await self.connection.execute(
                "SELECT document FROM proposals "
                "WHERE status = ? AND voting_end IS NOT NULL AND voting_end <= ? "
                "ORDER BY voting_end",
                (ProposalStatus.ACTIVE.name, now),
            )
            rows = await cursor.fetchall()
        return [Proposal.from_dict(json.loads(row["document"])) for row in rows]

    async def list_due_for_expiry(self, now: float) -> List[Proposal]:
        async with self._lock:
            cursor = await self.connection.execute(
                "SELECT document FROM proposals "
                "WHERE status IN (?, ?) AND expiration_at IS NOT NULL AND expiration_at <= ? "
                "ORDER BY expiration_at",
                (ProposalStatus.PENDING.name, ProposalStatus.ACTIVE.name, now),
            )
            rows = await cursor.fetchall()
        return [Proposal.from_dict(json.loads(row["document"])) for row in rows]
