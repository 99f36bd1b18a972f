"""
Shared fixtures. The fleet host is simulated in memory: FakeFleetHost
subclasses RemoteExecutor and answers each command by its label, keeping a
set of running containers, staged files and networks.
"""

import asyncio
from types import SimpleNamespace

import pytest

from config import HostConfig, PoolConfig, ReconcileConfig
from fleet.errors import HostConnectionError
from fleet.models import CommandOutput, Credentials
from instances.allocator import InstanceAllocator
from instances.capacity import CapacityReporter
from instances.reclaimer import InstanceReclaimer
from instances.reconciler import Reconciler
from instances.registry import InstanceRegistry
from instances.service import SessionService
from notifications.telegram import TelegramNotifier
from remote.ssh_executor import RemoteExecutor
from storage.database import Database


class FakeSession:
    def __init__(self, host):
        self.host = host

    def close(self):
        self.host.closed += 1

    async def wait_closed(self):
        pass


class FakeFleetHost(RemoteExecutor):
    """In-memory docker host keyed on command labels ("kind:target")."""

    def __init__(self, pool: PoolConfig):
        super().__init__(HostConfig(host="fleet.test", private_key_b64="unused"))
        self.pool = pool
        self.containers = set()
        self.files = {}
        self.networks = set()
        self.labels = []
        self.failures = {}
        self.unreachable = False
        self.yields = False             # hand control to other tasks per command
        self.connects = 0
        self.closed = 0

    def fail(self, kind, *errors):
        """Queue errors raised by the next calls of a command kind."""
        self.failures.setdefault(kind, []).extend(errors)

    def count(self, kind):
        return sum(1 for label in self.labels if label.split(":", 1)[0] == kind)

    async def connect(self):
        if self.unreachable:
            raise HostConnectionError("fleet.test unreachable")
        self.connects += 1
        return FakeSession(self)

    async def run(self, conn, command, label=None):
        if self.yields:
            await asyncio.sleep(0)
        kind, _, target = (label or command).partition(":")
        self.labels.append(label)

        queued = self.failures.get(kind)
        if queued:
            raise queued.pop(0)

        stdout = ""
        if kind == "list-live":
            stdout = "\n".join(sorted(self.containers))
        elif kind in ("write-artifact", "write-descriptor"):
            self.files[(kind, target)] = command
        elif kind == "ensure-network":
            self.networks.add(target)
        elif kind == "compose-up":
            self.containers.add(target)
        elif kind == "container-exists":
            stdout = "c0ffee\n" if target in self.containers else ""
        elif kind in ("stop", "remove"):
            self.containers.discard(target)
        elif kind == "remove-files":
            for key in [k for k in self.files if k[1] == target]:
                del self.files[key]
        elif kind == "network-members":
            stdout = " ".join(sorted(self.containers)) if target in self.networks else ""
        elif kind == "remove-network":
            self.networks.discard(target)

        return CommandOutput(stdout=stdout, stderr="", exit_status=0)


def make_fleet(max_instances=2, kill_orphans=True):
    pool = PoolConfig(max_instances=max_instances, reclaim_reset_delay_sec=0)
    host = FakeFleetHost(pool)
    registry = InstanceRegistry(max_instances)
    capacity = CapacityReporter(host, registry, pool)
    allocator = InstanceAllocator(host, registry, capacity, pool)
    reclaimer = InstanceReclaimer(host, registry, pool)
    db = Database(":memory:")
    db.connect()
    notifier = TelegramNotifier(bot_token="", chat_id="", enabled=False)
    reconciler = Reconciler(
        config=ReconcileConfig(kill_orphans=kill_orphans),
        registry=registry,
        capacity=capacity,
        reclaimer=reclaimer,
        db=db,
        notifier=notifier,
    )
    service = SessionService(
        pool=pool,
        registry=registry,
        allocator=allocator,
        reclaimer=reclaimer,
        capacity=capacity,
        db=db,
        notifier=notifier,
    )
    return SimpleNamespace(
        pool=pool,
        host=host,
        registry=registry,
        capacity=capacity,
        allocator=allocator,
        reclaimer=reclaimer,
        reconciler=reconciler,
        service=service,
        db=db,
        notifier=notifier,
    )


@pytest.fixture
def fleet():
    f = make_fleet()
    yield f
    f.db.close()


@pytest.fixture
def creds():
    return Credentials(login="5012345", password="s3cr3t", server="Deriv-Demo")


def connect_payload(user="u1", **overrides):
    payload = {
        "userId": user,
        "accountId": "5012345",
        "password": "s3cr3t",
        "server": "Deriv-Demo",
        "symbol": "EURUSD",
        "timeframe": "M15",
    }
    payload.update(overrides)
    return payload
