"""
Governance notifications

The engine only emits events; delivery (email, push, ...) belongs to
whatever Notifier is plugged in. Dispatch is fire-and-forget: a failing
notifier never affects the operation that triggered it.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set

from .logger import get_logger

logger = get_logger(__name__)


class EventKind(Enum):
    PROPOSAL_CREATED = "proposal_created"
    VOTE_CAST = "vote_cast"
    PROPOSAL_EXECUTED = "proposal_executed"


@dataclass(frozen=True)
class GovernanceEvent:
    proposal_id: str
    external_id: str
    actor_address: str
    kind: EventKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "externalId": self.external_id,
            "actorAddress": self.actor_address,
            "eventKind": self.kind.value,
        }


class Notifier(ABC):

    @abstractmethod
    async def notify(self, event: GovernanceEvent) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default notifier: writes the event to the log."""

    async def notify(self, event: GovernanceEvent) -> None:
        logger.info(
            f"Notification {event.kind.value}: proposal {event.proposal_id} "
            f"by {event.actor_address}"
        )


# Keep strong references so scheduled tasks are not garbage collected.
_background_tasks: Set[asyncio.Task] = set()


async def _deliver(notifier: Notifier, event: GovernanceEvent):
    try:
        await notifier.notify(event)
    except Exception as e:
        logger.warning(f"Notification {event.kind.value} for {event.proposal_id} failed: {e}")


def dispatch(notifier: Optional[Notifier], event: GovernanceEvent) -> Optional[asyncio.Task]:
    """Schedule *event* on the running loop and return immediately."""
    if notifier is None:
        return None
    task = asyncio.create_task(_deliver(notifier, event))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def drain():
    """Wait for all in-flight notifications (used on shutdown and in tests)."""
    loop = asyncio.get_running_loop()
    pending = [task for task in _background_tasks if task.get_loop() is loop]
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
