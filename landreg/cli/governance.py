#!/usr/bin/env python3
"""
Land Registry Governance CLI

Operator commands over the configured SQLite proposal store.

Usage:
    landreg-governance [--config FILE] sweep [--once] [--interval SECONDS]
    landreg-governance [--config FILE] show <proposal_id> [--json]
    landreg-governance [--config FILE] stats
"""

import asyncio
import json
import signal
import time
from typing import Optional

import click

from landreg import __version__
from landreg.config import GovernanceConfig, load_config
from landreg.exceptions import ConfigurationError
from landreg.governance import (
    GovernanceError,
    LifecycleController,
    ProposalStatus,
    ReconciliationSweep,
    SQLiteProposalStore,
    governance_statistics,
)
from landreg.logger import LogManager


STATUS_COLORS = {
    ProposalStatus.PENDING: "white",
    ProposalStatus.ACTIVE: "cyan",
    ProposalStatus.SUCCEEDED: "green",
    ProposalStatus.DEFEATED: "red",
    ProposalStatus.QUEUED: "yellow",
    ProposalStatus.EXECUTED: "green",
    ProposalStatus.CANCELLED: "magenta",
    ProposalStatus.EXPIRED: "red",
}


def format_timestamp(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S UTC", time.gmtime(value))


async def open_store(config: GovernanceConfig) -> SQLiteProposalStore:
    sqlite = config.database.sqlite
    return await SQLiteProposalStore.create(sqlite.path, wal_mode=sqlite.wal_mode)


@click.group()
@click.version_option(version=__version__, prog_name="landreg-governance")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]):
    """Land Registry governance engine operator commands."""
    try:
        config = load_config(config_path)
        config.validate()
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    LogManager().configure(log_level=config.app.log_level)
    ctx.obj = config


@cli.command("sweep")
@click.option("--once", is_flag=True, help="Run a single pass and exit")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between passes")
@click.pass_obj
def sweep_cmd(config: GovernanceConfig, once: bool, interval: Optional[float]):
    """Close elapsed voting windows and expire overdue proposals.

    Examples:

        landreg-governance sweep --once

        landreg-governance sweep --interval 30
    """
    if not config.sweep.enabled and not once:
        raise click.ClickException("Sweep is disabled in the [sweep] config section")

    async def run():
        store = await open_store(config)
        try:
            controller = LifecycleController(store, settings=config)
            sweep = ReconciliationSweep(controller)
            if once:
                return await sweep.run_once()
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            await sweep.run_forever(interval or config.sweep.interval, stop)
        finally:
            await store.close()

    report = asyncio.run(run())
    if report is not None:
        click.echo(
            f"Closed {report.closed} (succeeded {report.succeeded}, defeated {report.defeated}), "
            f"expired {report.expired}"
        )
        if report.failures:
            click.echo(click.style(f"{report.failures} proposal(s) failed: "
                                   f"{', '.join(report.failed_ids)}", fg="red"))


@cli.command("show")
@click.argument("proposal_id")
@click.option("--json", "as_json", is_flag=True, help="Print the full record as JSON")
@click.pass_obj
def show_cmd(config: GovernanceConfig, proposal_id: str, as_json: bool):
    """Display a proposal and its votes."""

    async def load():
        store = await open_store(config)
        try:
            return await store.get(proposal_id), await store.get_votes(proposal_id)
        finally:
            await store.close()

    try:
        proposal, votes = asyncio.run(load())
    except GovernanceError as e:
        raise click.ClickException(str(e))

    if as_json:
        data = proposal.to_dict()
        data["votes"] = [v.to_dict() for v in votes]
        click.echo(json.dumps(data, indent=2, default=str))
        return

    status = click.style(proposal.status.name, fg=STATUS_COLORS[proposal.status], bold=True)
    click.echo(f"{proposal.title}  [{status}]")
    click.echo(f"ID:            {proposal.id}")
    click.echo(f"Ledger ID:     {proposal.external_id or '-'}")
    click.echo(f"Type:          {proposal.proposal_type.name}")
    click.echo(f"Proposer:      {proposal.proposer}")
    click.echo(f"Content:       {proposal.description_uri or '-'}")
    click.echo(f"Voting:        {format_timestamp(proposal.voting_start)} → "
               f"{format_timestamp(proposal.voting_end)}")
    click.echo()
    click.echo(f"For:           {proposal.votes_for}")
    click.echo(f"Against:       {proposal.votes_against}")
    click.echo(f"Abstain:       {proposal.votes_abstain}")
    click.echo(f"Quorum:        {proposal.quorum_required} "
               f"({'reached' if proposal.quorum_reached else 'not reached'})")
    click.echo(f"Threshold:     >{proposal.voting_threshold}% "
               f"({'reached' if proposal.threshold_reached else 'not reached'})")
    click.echo(f"Participation: {proposal.participation_bps / 100:.2f}%")
    if proposal.earliest_execution_at is not None:
        click.echo(f"Executable at: {format_timestamp(proposal.earliest_execution_at)}")
    if proposal.execution_tx_ref:
        click.echo(f"Executed in:   {proposal.execution_tx_ref}")
    if proposal.cancellation_reason:
        click.echo(f"Cancelled:     {proposal.cancellation_reason}")
    if proposal.pending_transactions:
        click.echo(click.style("Unconfirmed ledger transactions:", fg="yellow"))
        for operation, tx_ref in proposal.pending_transactions.items():
            click.echo(f"  {operation}: {tx_ref}")

    if votes:
        click.echo()
        click.echo(f"Votes ({len(votes)}):")
        for vote in votes:
            click.echo(f"  {vote.voter}  {vote.choice.name:<7}  {vote.voting_power}")


@cli.command("stats")
@click.pass_obj
def stats_cmd(config: GovernanceConfig):
    """Print proposal and participation statistics."""

    async def collect():
        store = await open_store(config)
        try:
            return await governance_statistics(store, time.time())
        finally:
            await store.close()

    stats = asyncio.run(collect())
    click.echo(click.style("Proposals", bold=True))
    click.echo(f"  Total:   {stats['totalProposals']}")
    click.echo(f"  Recent:  {stats['recentProposals']} (last 30 days)")
    for name, count in stats["proposalsByStatus"].items():
        if count:
            click.echo(f"  {name:<10} {count}")
    click.echo(click.style("Participation", bold=True))
    click.echo(f"  Active proposals:        {stats['activeProposals']}")
    click.echo(f"  Voters on active:        {stats['totalVoters']}")
    click.echo(f"  Voting power cast:       {stats['totalVotingPower']}")
    click.echo(f"  Avg voters per proposal: {stats['averageParticipation']}")


def main():
    cli()


if __name__ == "__main__":
    main()
