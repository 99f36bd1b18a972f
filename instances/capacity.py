"""
Capacity Reporter — counts live workloads on the fleet host.
The host is the source of truth; the registry count is only a fallback.
"""

from __future__ import annotations
from typing import List, Optional, TYPE_CHECKING
import logging

from fleet.errors import CommandError, HostConnectionError
from remote import commands

if TYPE_CHECKING:
    import asyncssh
    from config import PoolConfig
    from instances.registry import InstanceRegistry
    from remote.ssh_executor import RemoteExecutor

logger = logging.getLogger(__name__)


class CapacityReporter:
    """Cross-checks the registry against `docker ps` on the host."""

    def __init__(
        self,
        executor: "RemoteExecutor",
        registry: "InstanceRegistry",
        pool: "PoolConfig",
    ):
        self.executor = executor
        self.registry = registry
        self.pool = pool

    async def live_names(
        self, conn: Optional["asyncssh.SSHClientConnection"] = None
    ) -> List[str]:
        """Names of running containers that follow the slot naming scheme."""
        command = commands.list_live(self.pool)
        label = "list-live"
        if conn is None:
            output = await self.executor.execute(command, label)
        else:
            output = await self.executor.run(conn, command, label)

        # The name filter is a substring match; keep exact prefix+number only.
        return [
            name for name in commands.parse_names(output.stdout)
            if commands.slot_from_name(self.pool, name) is not None
        ]

    async def live_slots(
        self, conn: Optional["asyncssh.SSHClientConnection"] = None
    ) -> List[int]:
        names = await self.live_names(conn)
        return sorted({commands.slot_from_name(self.pool, n) for n in names})

    async def count_active(self) -> int:
        """Live workload count; registry count if the host query fails."""
        try:
            return len(await self.live_slots())
        except (HostConnectionError, CommandError) as e:
            fallback = self.registry.count_occupied()
            logger.warning(
                f"[CAPACITY] Live count failed ({e}). "
                f"Falling back to registry count: {fallback}"
            )
            return fallback
