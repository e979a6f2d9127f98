"""
Reconciliation Sweep

Periodic pass that advances proposals nobody is acting on:

  1. PENDING/ACTIVE past ``expiration_at`` → EXPIRED (runs first, so
     expiration wins over a simultaneous window close)
  2. ACTIVE with an elapsed voting window → SUCCEEDED / DEFEATED

Before deciding, votes left pending by an earlier timeout are settled from
their ledger receipts when the controller has a gateway. A proposal with a
vote still in flight is deferred to a later pass.

Each proposal is handled on its own; a failure is logged and counted and the
sweep moves on. Every transition is idempotent, so overlapping sweeps and
concurrent user requests are safe.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..constants import SWEEP_DEFAULT_INTERVAL_SECONDS
from ..logger import get_logger
from .controller import LifecycleController, pending_votes
from .proposals import ProposalStatus
from .store import ProposalStore

logger = get_logger(__name__)


@dataclass
class SweepReport:
    closed: int = 0
    expired: int = 0
    succeeded: int = 0
    defeated: int = 0
    deferred: int = 0
    failures: int = 0
    failed_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "closed": self.closed,
            "expired": self.expired,
            "succeeded": self.succeeded,
            "defeated": self.defeated,
            "deferred": self.deferred,
            "failures": self.failures,
            "failedIds": list(self.failed_ids),
        }


class ReconciliationSweep:

    def __init__(
        self,
        controller: LifecycleController,
        store: Optional[ProposalStore] = None,
        clock=None,
    ):
        self.controller = controller
        self.store = store or controller.store
        self.clock = clock or controller.clock or time.time

    def _failed(self, report: SweepReport, proposal_id: str, action: str):
        report.failures += 1
        report.failed_ids.append(proposal_id)
        logger.error(f"Sweep could not {action} proposal {proposal_id}", exc_info=True)

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        now = self.clock()

        for proposal in await self.store.list_due_for_expiry(now):
            try:
                updated = await self.controller.expire(proposal.id)
            except Exception:
                self._failed(report, proposal.id, "expire")
                continue
            if updated.status == ProposalStatus.EXPIRED and proposal.status != ProposalStatus.EXPIRED:
                report.expired += 1

        for proposal in await self.store.list_due_for_close(now):
            try:
                if pending_votes(proposal) and self.controller.gateway is not None:
                    await self.controller.settle_pending_votes(proposal.id)
                updated = await self.controller.close_voting(proposal.id)
            except Exception:
                self._failed(report, proposal.id, "close voting on")
                continue
            if updated.status == ProposalStatus.SUCCEEDED:
                report.succeeded += 1
            elif updated.status == ProposalStatus.DEFEATED:
                report.defeated += 1
            else:
                if updated.status == ProposalStatus.ACTIVE and pending_votes(updated):
                    report.deferred += 1
                continue
            report.closed += 1

        if report.closed or report.expired or report.deferred or report.failures:
            logger.info(
                f"Sweep: closed={report.closed} (succeeded={report.succeeded}, "
                f"defeated={report.defeated}) expired={report.expired} "
                f"deferred={report.deferred} failures={report.failures}"
            )
        return report

    async def run_forever(
        self,
        interval: float = SWEEP_DEFAULT_INTERVAL_SECONDS,
        stop_event: Optional[asyncio.Event] = None,
    ):
        """Run ``run_once`` every *interval* seconds until *stop_event* is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Reconciliation sweep started (every {interval}s)")
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                # Listing failed; the next tick retries.
                logger.error("Sweep pass failed", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation sweep stopped")
