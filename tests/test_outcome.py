"""
Outcome Evaluator Test Suite

Coverage:
  - quorum / threshold / decision rules
  - strict threshold boundary
  - missing or zero snapshot
  - arbitrary-precision tallies
  - purity and determinism
"""

import os
import sys
from decimal import Decimal

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from landreg.governance.outcome import (
    Outcome,
    evaluate,
    evaluate_proposal,
    refresh_flags,
    threshold_to_bps,
)
from landreg.governance.proposals import ActionBatch, Proposal, ProposalStatus, ProposalType


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

TARGET = "0x" + "11" * 20
PROPOSER = "0x" + "a1" * 20


def run(votes_for, votes_against, votes_abstain, quorum=100, snapshot=1000, threshold="50.0"):
    return evaluate(votes_for, votes_against, votes_abstain, quorum, snapshot, Decimal(threshold))


def make_proposal(**kwargs) -> Proposal:
    return Proposal(
        title="Raise registration fee",
        description="Adjust the parcel registration fee",
        proposal_type=ProposalType.PARAMETER_CHANGE,
        proposer=PROPOSER,
        actions=ActionBatch.from_lists([TARGET], [0], ["setFee(uint256)"], ["0x"]),
        **kwargs,
    )


# ══════════════════════════════════════════════════════════════════════
#  SCENARIOS
# ══════════════════════════════════════════════════════════════════════

class TestScenarios:

    def test_scenario_a_passes(self):
        outcome = run(60, 39, 1)
        assert outcome.quorum_reached
        assert outcome.threshold_reached
        assert outcome.decision == ProposalStatus.SUCCEEDED
        assert outcome.succeeded

    def test_scenario_b_quorum_not_reached(self):
        outcome = run(40, 40, 0)
        assert not outcome.quorum_reached
        assert not outcome.threshold_reached
        assert outcome.decision == ProposalStatus.DEFEATED

    def test_quorum_not_reached_ignores_ratio(self):
        outcome = run(99, 0, 0)
        assert outcome == Outcome(False, False, ProposalStatus.DEFEATED)

    def test_threshold_failure(self):
        outcome = run(40, 60, 0)
        assert outcome.quorum_reached
        assert not outcome.threshold_reached
        assert outcome.decision == ProposalStatus.DEFEATED


class TestThresholdBoundary:

    def test_exactly_at_threshold_fails(self):
        outcome = run(50, 50, 0)
        assert outcome.quorum_reached
        assert not outcome.threshold_reached

    def test_one_unit_above_passes(self):
        assert run(51, 50, 0).threshold_reached

    def test_fractional_threshold(self):
        # 1/3 of 300 is exactly 33.33...% which is above 33.33%
        assert run(100, 200, 0, quorum=0, threshold="33.33").threshold_reached
        assert not run(3333, 6667, 0, quorum=0, threshold="33.33").threshold_reached
        assert run(3334, 6666, 0, quorum=0, threshold="33.33").threshold_reached

    def test_zero_threshold_needs_one_for_vote(self):
        assert run(1, 500, 0, quorum=0, threshold="0").threshold_reached
        assert not run(0, 500, 0, quorum=0, threshold="0").threshold_reached

    def test_full_threshold_never_passes(self):
        assert not run(100, 0, 0, threshold="100").threshold_reached

    def test_threshold_to_bps(self):
        assert threshold_to_bps(Decimal("50.0")) == 5000
        assert threshold_to_bps("33.33") == 3333
        assert threshold_to_bps(66) == 6600
        assert threshold_to_bps("12.345") == 1234


class TestAbstain:

    def test_abstain_counts_toward_quorum(self):
        outcome = run(30, 10, 60)
        assert outcome.quorum_reached
        assert outcome.threshold_reached

    def test_only_abstain_reaches_quorum_but_not_threshold(self):
        outcome = run(0, 0, 150)
        assert outcome.quorum_reached
        assert not outcome.threshold_reached
        assert outcome.decision == ProposalStatus.DEFEATED


class TestMissingInputs:

    def test_zero_snapshot_is_defeated(self):
        outcome = run(1000, 0, 0, snapshot=0)
        assert outcome == Outcome(False, False, ProposalStatus.DEFEATED)

    def test_missing_snapshot_is_defeated(self):
        outcome = evaluate(10, 0, 0, 1, None, Decimal("50"))
        assert outcome.decision == ProposalStatus.DEFEATED
        assert not outcome.quorum_reached

    def test_missing_quorum_is_defeated(self):
        outcome = evaluate(10, 0, 0, None, 100, Decimal("50"))
        assert outcome.decision == ProposalStatus.DEFEATED

    def test_negative_input_raises(self):
        with pytest.raises(ValueError):
            run(-1, 0, 0)

    def test_decimal_strings_accepted(self):
        outcome = evaluate("60", "39", "1", "100", "1000", "50.0")
        assert outcome.succeeded


class TestPrecision:

    def test_uint256_tallies(self):
        big = 2 ** 255
        outcome = evaluate(big + 1, big, 0, big, 2 ** 257, Decimal("50"))
        assert outcome.quorum_reached
        assert outcome.threshold_reached

    def test_large_tallies_at_boundary(self):
        big = 10 ** 40
        assert not evaluate(big, big, 0, 0, 4 * big, Decimal("50")).threshold_reached


class TestPurity:

    def test_deterministic(self):
        args = (60, 39, 1, 100, 1000, Decimal("50.0"))
        assert evaluate(*args) == evaluate(*args)

    def test_evaluate_proposal_does_not_mutate(self):
        p = make_proposal(votes_for=60, votes_against=39, votes_abstain=1,
                          quorum_required=100, total_voting_power_at_snapshot=1000)
        outcome = evaluate_proposal(p)
        assert outcome.succeeded
        assert not p.quorum_reached
        assert p.status == ProposalStatus.PENDING

    def test_refresh_flags_sets_cached_flags(self):
        p = make_proposal(votes_for=40, votes_against=40, quorum_required=100,
                          total_voting_power_at_snapshot=1000)
        refresh_flags(p)
        assert not p.quorum_reached
        p.votes_abstain = 20
        outcome = refresh_flags(p)
        assert p.quorum_reached is outcome.quorum_reached is True
        assert p.threshold_reached is False

    def test_outcome_to_dict(self):
        assert run(60, 39, 1).to_dict() == {
            "quorumReached": True,
            "thresholdReached": True,
            "decision": "SUCCEEDED",
        }
