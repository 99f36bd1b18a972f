"""
MT5 Fleet Manager — Main Orchestrator.
Ties all components together: startup, boot reconcile, API server, shutdown.
"""

from __future__ import annotations
import asyncio
import os
import sys
import signal
from typing import Optional
import logging

from dotenv import load_dotenv

# Load .env file before anything else
load_dotenv()

from config import FleetConfig
from api_server import ApiServer
from fleet.errors import FleetError
from instances.allocator import InstanceAllocator
from instances.capacity import CapacityReporter
from instances.reclaimer import InstanceReclaimer
from instances.reconciler import Reconciler
from instances.registry import InstanceRegistry
from instances.service import SessionService
from notifications.telegram import TelegramNotifier
from remote.ssh_executor import RemoteExecutor
from storage.database import Database

logger = logging.getLogger(__name__)


def setup_logging():
    """stdout + data/fleet.log, level from LOG_LEVEL."""
    # Create data dir before FileHandler
    os.makedirs("data", exist_ok=True)
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler("data/fleet.log"),
        ],
    )
    # asyncssh is chatty at INFO (one line per channel)
    logging.getLogger("asyncssh").setLevel(logging.WARNING)


class FleetManager:
    """Main process orchestrator. Owns the registry for its whole lifetime."""

    def __init__(self, config: FleetConfig):
        self.config = config
        self._stopping = False
        self._stopped = asyncio.Event()
        self._reconcile_task: Optional[asyncio.Task] = None

        self.db = Database(config.storage.db_path)
        self.notifier = TelegramNotifier(
            bot_token=config.notifications.telegram_bot_token,
            chat_id=config.notifications.telegram_chat_id,
            enabled=config.notifications.enabled,
        )

        # Remote + state
        self.executor = RemoteExecutor(config.host)
        self.registry = InstanceRegistry(config.pool.max_instances)
        self.capacity = CapacityReporter(self.executor, self.registry, config.pool)

        # Lifecycle
        self.allocator = InstanceAllocator(
            self.executor, self.registry, self.capacity, config.pool
        )
        self.reclaimer = InstanceReclaimer(self.executor, self.registry, config.pool)
        self.reconciler = Reconciler(
            config=config.reconcile,
            registry=self.registry,
            capacity=self.capacity,
            reclaimer=self.reclaimer,
            db=self.db,
            notifier=self.notifier,
        )

        # Boundary
        self.service = SessionService(
            pool=config.pool,
            registry=self.registry,
            allocator=self.allocator,
            reclaimer=self.reclaimer,
            capacity=self.capacity,
            db=self.db,
            notifier=self.notifier,
        )
        self.api = ApiServer(
            service=self.service,
            registry=self.registry,
            db=self.db,
            host=config.server.host,
            port=config.server.port,
        )

    async def start(self):
        """Full startup sequence."""
        logger.info("=" * 60)
        logger.info("   MT5 FLEET MANAGER — STARTING")
        logger.info("=" * 60)

        # 1. Connect database
        os.makedirs(os.path.dirname(self.config.storage.db_path) or "data", exist_ok=True)
        self.db.connect()

        # 2. Learn what is already running on the host
        if self.config.reconcile.kill_orphans:
            logger.warning(
                "[BOOT] RECONCILE_KILL_ORPHANS is on: live workloads with no "
                "session record will be stopped"
            )
        try:
            report = await self.reconciler.reconcile_once()
            logger.info(f"[BOOT] Host has {len(report.live)} live workload(s)")
        except FleetError as e:
            logger.error(f"[BOOT] Initial reconcile failed, continuing: {e}")

        # 3. Serve
        await self.api.start()
        await self.notifier.send_fleet_status(
            f"Started ✅\n"
            f"Host: {self.config.host.host}\n"
            f"Slots: {self.registry.max_instances}"
        )

        logger.info("[BOOT] ✅ All systems go. Running...")

        if self.config.reconcile.enabled:
            self._reconcile_task = asyncio.create_task(self.reconciler.start())
        await self._stopped.wait()

    async def stop(self):
        """Graceful shutdown."""
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        logger.info("[SHUTDOWN] Stopping fleet manager...")

        try:
            await self.reconciler.stop()
            if self._reconcile_task is not None:
                self._reconcile_task.cancel()
                try:
                    await self._reconcile_task
                except asyncio.CancelledError:
                    pass
                self._reconcile_task = None
            await self.api.stop()
            logger.info(self.registry.get_status_summary())
            await self.notifier.send_fleet_status("Stopped 🔴")
            await self.notifier.close()
            self.db.close()
        finally:
            self._stopped.set()

        logger.info("[SHUTDOWN] Complete.")


async def main():
    """Entry point."""
    config = FleetConfig.from_env()

    # Validate critical config
    problems = config.validate()
    if problems:
        for problem in problems:
            logger.critical(problem)
        sys.exit(1)

    manager = FleetManager(config)

    # Graceful shutdown handler
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        def handle_signal(sig):
            logger.info(f"Received signal {sig}. Initiating shutdown...")
            asyncio.create_task(manager.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        await manager.start()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received in main loop.")
        await manager.stop()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await manager.stop()
        sys.exit(1)


def run():
    setup_logging()
    asyncio.run(main())


if __name__ == "__main__":
    run()
