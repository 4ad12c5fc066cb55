"""Compensation list for partially provisioned tenants.

Each provisioning step that creates something registers the action that
undoes it. On a fatal failure the caller may run them newest-first. Running
them is opt-in (``provisioning.rollback_on_failure``): by default partial
tenants are left in place for inspection and only the cleanup hints are
logged.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from dcloud_core.observability import get_logger

logger = get_logger(__name__)


@dataclass
class Compensation:
    """Inverse action for one completed step."""

    description: str
    action: Callable[[], Awaitable[object]]


@dataclass
class CompensationStack:
    """Inverse actions in registration order."""

    items: list[Compensation] = field(default_factory=list)

    def push(self, description: str, action: Callable[[], Awaitable[object]]) -> None:
        self.items.append(Compensation(description, action))

    def __len__(self) -> int:
        return len(self.items)

    def describe(self) -> list[str]:
        """Pending compensations, newest first."""
        return [c.description for c in reversed(self.items)]

    def clear(self) -> None:
        self.items.clear()

    async def unwind(self) -> list[str]:
        """Run every compensation newest-first.

        A failing compensation is logged and the rest still run.

        Returns:
            Descriptions of compensations that failed
        """
        failed = []
        while self.items:
            item = self.items.pop()
            logger.warning("Rolling back", context={"step": item.description})
            try:
                await item.action()
            except Exception as e:
                logger.error("Rollback step failed", context={"step": item.description}, error=e)
                failed.append(item.description)
        return failed
