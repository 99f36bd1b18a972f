"""
Instance Reclaimer — tears down a slot's terminal and frees the slot.
The slot is always freed, even when host cleanup fails part-way.
"""

from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING
import logging

from fleet.errors import FleetError, SessionResetError
from remote import commands

if TYPE_CHECKING:
    import asyncssh
    from config import PoolConfig
    from instances.registry import InstanceRegistry
    from remote.ssh_executor import RemoteExecutor

logger = logging.getLogger(__name__)


class InstanceReclaimer:
    """Stops/removes a slot's container, descriptor and login artifact."""

    def __init__(
        self,
        executor: "RemoteExecutor",
        registry: "InstanceRegistry",
        pool: "PoolConfig",
    ):
        self.executor = executor
        self.registry = registry
        self.pool = pool

    async def reclaim(self, slot_id: int) -> bool:
        """Acquires the registry lock. True if every host step succeeded."""
        async with self.registry.lock:
            return await self.reclaim_locked(slot_id)

    async def reclaim_locked(self, slot_id: int) -> bool:
        """Same as reclaim(); caller already holds registry.lock."""
        try:
            try:
                await self._teardown(slot_id)
            except SessionResetError as e:
                logger.warning(
                    f"[RECLAIM] Slot {slot_id}: session reset ({e}). "
                    f"Retrying in {self.pool.reclaim_reset_delay_sec}s"
                )
                await asyncio.sleep(self.pool.reclaim_reset_delay_sec)
                await self._teardown(slot_id)
            logger.info(f"[RECLAIM] Slot {slot_id} stopped and cleaned up")
            return True
        except FleetError as e:
            logger.error(f"[RECLAIM] Slot {slot_id} cleanup failed: {e}")
            return False
        finally:
            if self.registry.contains(slot_id):
                self.registry.vacate(slot_id)

    async def _teardown(self, slot_id: int):
        name = self.pool.resource_name(slot_id)
        async with self.executor.session() as conn:
            exists = await self.executor.run(
                conn, commands.container_exists(name), f"container-exists:{name}"
            )
            if exists.stdout.strip():
                await self.executor.run(conn, commands.stop_container(name), f"stop:{name}")
                await self.executor.run(conn, commands.remove_container(name), f"remove:{name}")
            else:
                logger.info(f"[RECLAIM] {name} not found, treating as stopped")

            await self.executor.run(
                conn, commands.compose_down(self.pool, slot_id), f"compose-down:{name}"
            )
            await self.executor.run(
                conn,
                commands.remove_files([
                    self.pool.descriptor_path(slot_id),
                    self.pool.artifact_path(slot_id),
                ]),
                f"remove-files:{name}",
            )
            await self._release_network(conn, slot_id)

    async def _release_network(self, conn: "asyncssh.SSHClientConnection", slot_id: int):
        """Drop the shared network once nothing else is attached to it."""
        network = self.pool.shared_network
        others_registered = [s for s in self.registry.occupied() if s != slot_id]
        if others_registered:
            return

        members = await self.executor.run(
            conn, commands.network_members(network), f"network-members:{network}"
        )
        own = self.pool.resource_name(slot_id)
        others_live = [n for n in commands.parse_names(members.stdout) if n != own]
        if others_live:
            logger.debug(f"[RECLAIM] {network} still used by {others_live}")
            return

        await self.executor.run(conn, commands.remove_network(network), f"remove-network:{network}")
        logger.info(f"[RECLAIM] Removed shared network {network}")
