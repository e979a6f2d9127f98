"""
Operator CLI Test Suite
"""

import asyncio
import json
import logging
import os
import sys
import time

import pytest
from click.testing import CliRunner

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from landreg.cli.governance import cli
from landreg.governance.proposals import ActionBatch, Proposal, ProposalStatus, ProposalType
from landreg.governance.store_sqlite import SQLiteProposalStore
from landreg.ledger.encoding import normalize_address


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

PROPOSER = normalize_address("0x" + "a1" * 20)
TARGET = normalize_address("0x" + "11" * 20)


@pytest.fixture(autouse=True)
def quiet_logs():
    logger = logging.getLogger("landreg")
    previous = logger.level
    logger.setLevel(logging.WARNING)
    yield
    logger.setLevel(previous)


def write_config(tmp_path, extra: str = "") -> str:
    db_path = tmp_path / "governance.db"
    path = tmp_path / "config.toml"
    path.write_text(f'[database.sqlite]\npath = "{db_path}"\n{extra}')
    return str(path)


def seed(tmp_path, **kwargs) -> Proposal:
    now = time.time()
    fields = dict(
        title="Register easement on LR-12",
        description="Record a right of way across parcel LR-12",
        proposal_type=ProposalType.RULE_MODIFICATION,
        proposer=PROPOSER,
        actions=ActionBatch.from_lists([TARGET], [0], ["easement(uint256)"], ["0x"]),
        status=ProposalStatus.ACTIVE,
        external_id="0x" + "ef" * 32,
        quorum_required=10,
        total_voting_power_at_snapshot=100,
        votes_for=20,
        voting_start=now - 7200,
        voting_end=now - 60,
        created_at=now - 7200,
    )
    fields.update(kwargs)
    proposal = Proposal(**fields)

    async def insert():
        store = await SQLiteProposalStore.create(str(tmp_path / "governance.db"))
        try:
            await store.add(proposal)
        finally:
            await store.close()

    asyncio.run(insert())
    return proposal


# ══════════════════════════════════════════════════════════════════════
#  TESTS
# ══════════════════════════════════════════════════════════════════════

class TestCli:

    def test_sweep_once(self, tmp_path):
        config = write_config(tmp_path)
        proposal = seed(tmp_path)
        runner = CliRunner()

        result = runner.invoke(cli, ["--config", config, "sweep", "--once"])
        assert result.exit_code == 0, result.output
        assert "Closed 1 (succeeded 1, defeated 0), expired 0" in result.output

        shown = runner.invoke(cli, ["--config", config, "show", proposal.id, "--json"])
        assert shown.exit_code == 0, shown.output
        data = json.loads(shown.output)
        assert data["status"] == "SUCCEEDED"
        assert data["votes"] == []

    def test_sweep_disabled(self, tmp_path):
        config = write_config(tmp_path, "[sweep]\nenabled = false\n")
        result = CliRunner().invoke(cli, ["--config", config, "sweep"])
        assert result.exit_code != 0
        assert "disabled" in result.output

    def test_show_text(self, tmp_path):
        config = write_config(tmp_path)
        proposal = seed(tmp_path, pending_transactions={"queue": "0x" + "cd" * 32})
        result = CliRunner().invoke(cli, ["--config", config, "show", proposal.id])
        assert result.exit_code == 0, result.output
        assert "Register easement on LR-12" in result.output
        assert "ACTIVE" in result.output
        assert "queue: 0x" + "cd" * 32 in result.output

    def test_show_unknown(self, tmp_path):
        config = write_config(tmp_path)
        result = CliRunner().invoke(cli, ["--config", config, "show", "missing"])
        assert result.exit_code != 0
        assert "not found" in result.output

    def test_stats(self, tmp_path):
        config = write_config(tmp_path)
        seed(tmp_path)
        result = CliRunner().invoke(cli, ["--config", config, "stats"])
        assert result.exit_code == 0, result.output
        assert "Total:   1" in result.output
        assert "Active proposals:        1" in result.output

    def test_invalid_config(self, tmp_path):
        config = write_config(tmp_path, "[governance]\nvoting_period = 0\n")
        result = CliRunner().invoke(cli, ["--config", config, "stats"])
        assert result.exit_code != 0
        assert "voting_period" in result.output
