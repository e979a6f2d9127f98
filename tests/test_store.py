"""
Proposal Store Test Suite

Coverage (in-memory and SQLite backends):
  - add / get / find / list with filters
  - atomic update, no-op mutators, failing mutators
  - record_vote: tally, flag refresh, uniqueness under concurrency
  - due-for-close / due-for-expiry listings
  - SQLite: arbitrary-precision persistence across reopen
  - in-memory: lock map limited to stored proposals
"""

import asyncio
import os
import sys
from decimal import Decimal

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from landreg.governance.proposals import (
    ActionBatch,
    DuplicateProposalError,
    Proposal,
    ProposalNotFoundError,
    ProposalStatus,
    ProposalType,
)
from landreg.governance.store import InMemoryProposalStore
from landreg.governance.store_sqlite import SQLiteProposalStore
from landreg.governance.voting import (
    AlreadyVotedError,
    TallyOverflowError,
    VoteChoice,
    VoteRecord,
    VotingClosedError,
)
from landreg.ledger.encoding import normalize_address


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

NOW = 1_700_000_000.0
PROPOSER = normalize_address("0x" + "a1" * 20)
OTHER_PROPOSER = normalize_address("0x" + "a9" * 20)
TARGET = normalize_address("0x" + "11" * 20)

BACKENDS = ["memory", "sqlite"]


async def open_store(kind: str, tmp_path):
    if kind == "memory":
        store = InMemoryProposalStore()
        await store.initialize()
        return store
    return await SQLiteProposalStore.create(str(tmp_path / "governance.db"))


def voter(i: int) -> str:
    return normalize_address("0x" + f"{i:040x}")


def make_proposal(**kwargs) -> Proposal:
    defaults = dict(
        title="Merge parcels LR-1 and LR-2",
        description="Consolidate two adjacent parcels into one title",
        proposal_type=ProposalType.RULE_MODIFICATION,
        proposer=PROPOSER,
        actions=ActionBatch.from_lists([TARGET], [0], ["merge(uint256,uint256)"], ["0x"]),
        status=ProposalStatus.ACTIVE,
        quorum_required=10,
        total_voting_power_at_snapshot=10 ** 6,
        voting_end=NOW + 3600,
        created_at=NOW,
    )
    defaults.update(kwargs)
    return Proposal(**defaults)


def make_vote(proposal_id, i=1, power=10, choice=VoteChoice.FOR) -> VoteRecord:
    return VoteRecord(
        proposal_id=proposal_id,
        voter=voter(i),
        choice=choice,
        voting_power=power,
        tx_ref=f"0x{i:064x}",
        block_number=100 + i,
        cast_at=NOW + i,
    )


# ══════════════════════════════════════════════════════════════════════
#  BASIC CRUD
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("kind", BACKENDS)
class TestCrud:

    @pytest.mark.asyncio
    async def test_add_and_get(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal(metadata={"parcel": "LR-1"})
            await store.add(proposal)
            loaded = await store.get(proposal.id)
            assert loaded.to_dict() == proposal.to_dict()
            assert loaded is not proposal
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal()
            await store.add(proposal)
            with pytest.raises(DuplicateProposalError):
                await store.add(proposal)
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_missing_proposal(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            with pytest.raises(ProposalNotFoundError):
                await store.get("nope")
            with pytest.raises(ProposalNotFoundError):
                await store.update("nope", lambda p: None)
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_find_by_external_id(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal(external_id="0x" + "ef" * 32)
            await store.add(proposal)
            await store.add(make_proposal())
            found = await store.find_by_external_id("0x" + "ef" * 32)
            assert found.id == proposal.id
            assert await store.find_by_external_id("0x" + "00" * 32) is None
            assert await store.find_by_external_id("") is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_list_filters_newest_first(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            old = make_proposal(created_at=NOW - 100)
            new = make_proposal(created_at=NOW)
            pending = make_proposal(status=ProposalStatus.PENDING, created_at=NOW - 50,
                                    proposal_type=ProposalType.TREASURY_ALLOCATION)
            other = make_proposal(proposer=OTHER_PROPOSER, created_at=NOW - 10)
            for p in (old, new, pending, other):
                await store.add(p)

            assert [p.id for p in await store.list_proposals()] == [
                new.id, other.id, pending.id, old.id,
            ]
            assert [p.id for p in await store.list_proposals(status=ProposalStatus.PENDING)] == [
                pending.id
            ]
            by_type = await store.list_proposals(proposal_type=ProposalType.TREASURY_ALLOCATION)
            assert [p.id for p in by_type] == [pending.id]
            by_proposer = await store.list_proposals(proposer=OTHER_PROPOSER.lower())
            assert [p.id for p in by_proposer] == [other.id]
        finally:
            await store.close()


# ══════════════════════════════════════════════════════════════════════
#  UPDATE
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("kind", BACKENDS)
class TestUpdate:

    @pytest.mark.asyncio
    async def test_mutator_applied(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal()
            await store.add(proposal)

            def close(p):
                p.transition_to(ProposalStatus.DEFEATED, "closed", now=NOW + 3600)

            updated = await store.update(proposal.id, close)
            assert updated.status == ProposalStatus.DEFEATED
            assert (await store.get(proposal.id)).history[-1]["to"] == "DEFEATED"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_noop_mutator_writes_nothing(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal()
            await store.add(proposal)

            def noop(p):
                p.title = "changed but discarded"
                return False

            result = await store.update(proposal.id, noop)
            assert (await store.get(proposal.id)).title == proposal.title
            assert result.status == ProposalStatus.ACTIVE
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_failing_mutator_rolls_back(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal()
            await store.add(proposal)

            def broken(p):
                p.title = "half written"
                raise ValueError("boom")

            with pytest.raises(ValueError):
                await store.update(proposal.id, broken)
            assert (await store.get(proposal.id)).title == proposal.title
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_external_id_unique(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            first = make_proposal(external_id="0x" + "ab" * 32)
            second = make_proposal()
            await store.add(first)
            await store.add(second)

            def steal(p):
                p.external_id = first.external_id

            with pytest.raises(DuplicateProposalError):
                await store.update(second.id, steal)
        finally:
            await store.close()


# ══════════════════════════════════════════════════════════════════════
#  VOTES
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("kind", BACKENDS)
class TestRecordVote:

    @pytest.mark.asyncio
    async def test_tally_and_flags(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal()
            await store.add(proposal)
            await store.record_vote(make_vote(proposal.id, 1, 6, VoteChoice.FOR))
            updated = await store.record_vote(make_vote(proposal.id, 2, 4, VoteChoice.AGAINST))

            assert (updated.votes_for, updated.votes_against) == (6, 4)
            assert updated.quorum_reached
            assert updated.threshold_reached
            assert updated.status == ProposalStatus.ACTIVE
            assert await store.has_voted(proposal.id, voter(1))
            assert not await store.has_voted(proposal.id, voter(3))
            assert (await store.get_vote(proposal.id, voter(2))).choice == VoteChoice.AGAINST
            assert [v.voter for v in await store.get_votes(proposal.id)] == [voter(1), voter(2)]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_duplicate_voter_rejected(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal()
            await store.add(proposal)
            await store.record_vote(make_vote(proposal.id, 1, 5))
            with pytest.raises(AlreadyVotedError):
                await store.record_vote(make_vote(proposal.id, 1, 5, VoteChoice.AGAINST))
            stored = await store.get(proposal.id)
            assert (stored.votes_for, stored.votes_against) == (5, 0)
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_counted_once(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal()
            await store.add(proposal)
            results = await asyncio.gather(
                *[store.record_vote(make_vote(proposal.id, 7, 3)) for _ in range(5)],
                return_exceptions=True,
            )
            errors = [r for r in results if isinstance(r, Exception)]
            assert len(errors) == 4
            assert all(isinstance(e, AlreadyVotedError) for e in errors)
            assert (await store.get(proposal.id)).votes_for == 3
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_concurrent_distinct_voters(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal()
            await store.add(proposal)
            await asyncio.gather(*[
                store.record_vote(make_vote(proposal.id, i, i, VoteChoice(i % 3)))
                for i in range(1, 41)
            ])
            stored = await store.get(proposal.id)
            assert stored.total_votes == sum(range(1, 41))
            assert stored.votes_for == sum(i for i in range(1, 41) if i % 3 == 1)
            assert len(await store.get_votes(proposal.id)) == 40
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_vote_on_decided_rejected(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal(status=ProposalStatus.DEFEATED)
            await store.add(proposal)
            with pytest.raises(VotingClosedError):
                await store.record_vote(make_vote(proposal.id))
            assert await store.get_votes(proposal.id) == []
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_snapshot_bound(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            proposal = make_proposal(total_voting_power_at_snapshot=10)
            await store.add(proposal)
            await store.record_vote(make_vote(proposal.id, 1, 8))
            with pytest.raises(TallyOverflowError):
                await store.record_vote(make_vote(proposal.id, 2, 3))
            assert not await store.has_voted(proposal.id, voter(2))
        finally:
            await store.close()


# ══════════════════════════════════════════════════════════════════════
#  SWEEP LISTINGS
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("kind", BACKENDS)
class TestDueListings:

    @pytest.mark.asyncio
    async def test_due_for_close(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            due = make_proposal(voting_end=NOW - 1)
            open_ = make_proposal(voting_end=NOW + 60)
            decided = make_proposal(voting_end=NOW - 1, status=ProposalStatus.SUCCEEDED)
            for p in (due, open_, decided):
                await store.add(p)
            assert [p.id for p in await store.list_due_for_close(NOW)] == [due.id]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_due_for_expiry(self, kind, tmp_path):
        store = await open_store(kind, tmp_path)
        try:
            pending = make_proposal(status=ProposalStatus.PENDING, expiration_at=NOW - 5)
            active = make_proposal(expiration_at=NOW)
            later = make_proposal(expiration_at=NOW + 5)
            queued = make_proposal(status=ProposalStatus.QUEUED, expiration_at=NOW - 5)
            never = make_proposal()
            for p in (pending, active, later, queued, never):
                await store.add(p)
            due = {p.id for p in await store.list_due_for_expiry(NOW)}
            assert due == {pending.id, active.id}
        finally:
            await store.close()


# ══════════════════════════════════════════════════════════════════════
#  SQLITE PERSISTENCE
# ══════════════════════════════════════════════════════════════════════

class TestSQLitePersistence:

    @pytest.mark.asyncio
    async def test_values_survive_reopen(self, tmp_path):
        path = str(tmp_path / "nested" / "governance.db")
        store = await SQLiteProposalStore.create(path)
        big = 2 ** 255
        proposal = make_proposal(
            total_voting_power_at_snapshot=2 ** 256,
            quorum_required=big,
            voting_threshold=Decimal("66.67"),
            pending_transactions={"queue": "0x" + "cd" * 32},
        )
        await store.add(proposal)
        await store.record_vote(make_vote(proposal.id, 1, big, VoteChoice.ABSTAIN))
        await store.close()

        reopened = await SQLiteProposalStore.create(path, wal_mode=False)
        try:
            loaded = await reopened.get(proposal.id)
            assert loaded.votes_abstain == big
            assert loaded.quorum_required == big
            assert loaded.quorum_reached
            assert loaded.voting_threshold == Decimal("66.67")
            assert loaded.pending_transactions == {"queue": "0x" + "cd" * 32}
            votes = await reopened.get_votes(proposal.id)
            assert votes[0].voting_power == big
            assert votes[0].block_number == 101
        finally:
            await reopened.close()


# ══════════════════════════════════════════════════════════════════════
#  IN-MEMORY LOCKS
# ══════════════════════════════════════════════════════════════════════

class TestInMemoryLocks:

    @pytest.mark.asyncio
    async def test_one_lock_per_stored_proposal(self):
        store = InMemoryProposalStore()
        proposal = make_proposal()
        await store.add(proposal)
        await store.update(proposal.id, lambda p: None)
        await store.record_vote(make_vote(proposal.id))

        for missing in ("nope", "gone"):
            with pytest.raises(ProposalNotFoundError):
                await store.update(missing, lambda p: None)
            with pytest.raises(ProposalNotFoundError):
                await store.record_vote(make_vote(missing))

        assert set(store._locks) == {proposal.id}
