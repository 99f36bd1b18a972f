"""
Remote command builders.

Every value that ends up in a shell string passes through shlex.quote, and
file contents (credentials included) travel as base64 decoded on the host,
so nothing a user submits is ever interpreted by the remote shell.
"""

from __future__ import annotations
import base64
import shlex
from typing import Iterable, List, Optional, TYPE_CHECKING
import yaml

from fleet.models import Credentials

if TYPE_CHECKING:
    from config import PoolConfig


def q(value) -> str:
    return shlex.quote(str(value))


# ==================== Artifacts ====================

def render_artifact(credentials: Credentials, symbol: str, timeframe: str) -> str:
    """Login file read by the EA at terminal start."""
    return (
        "[Common]\n"
        f"Login={credentials.login}\n"
        f"Password={credentials.password}\n"
        f"Server={credentials.server}\n"
        "\n"
        "[Trading]\n"
        f"Symbol={symbol}\n"
        f"TimeFrame={timeframe}\n"
    )


def render_descriptor(pool: "PoolConfig", slot_id: int) -> str:
    """Compose file declaring the single terminal service for a slot."""
    name = pool.resource_name(slot_id)
    descriptor = {
        "services": {
            name: {
                "image": pool.image,
                "container_name": name,
                "volumes": [
                    {
                        "type": "bind",
                        "source": pool.artifact_path(slot_id),
                        "target": pool.workload_artifact_path,
                        "read_only": True,
                    }
                ],
                "restart": pool.restart_policy,
            }
        },
        "networks": {
            "default": {"name": pool.shared_network, "external": True},
        },
    }
    return yaml.dump(descriptor, sort_keys=False, default_flow_style=False)


# ==================== Commands ====================

def write_file(path: str, content: str) -> str:
    """Write content to path on the host via a base64 blob."""
    blob = base64.b64encode(content.encode("utf-8")).decode("ascii")
    directory = path.rsplit("/", 1)[0] or "/"
    return (
        f"mkdir -p {q(directory)} && "
        f"printf %s {q(blob)} | base64 -d > {q(path)}"
    )


def ensure_network(network: str) -> str:
    return (
        f"docker network inspect {q(network)} >/dev/null 2>&1 "
        f"|| docker network create {q(network)}"
    )


def compose_up(pool: "PoolConfig", slot_id: int) -> str:
    return (
        f"cd {q(pool.remote_dir)} && "
        f"docker compose -p {q(pool.resource_name(slot_id))} "
        f"-f {q(pool.descriptor_path(slot_id))} up -d"
    )


def compose_down(pool: "PoolConfig", slot_id: int) -> str:
    path = q(pool.descriptor_path(slot_id))
    return (
        f"if [ -f {path} ]; then cd {q(pool.remote_dir)} && "
        f"docker compose -p {q(pool.resource_name(slot_id))} -f {path} "
        f"down --volumes --timeout {int(pool.compose_down_timeout_sec)}; fi"
    )


def list_live(pool: "PoolConfig") -> str:
    return f"docker ps --filter name={q(pool.resource_prefix)} --format '{{{{.Names}}}}'"


def container_exists(name: str) -> str:
    return f"docker ps -a -q --filter name={q('^' + name + '$')}"


def stop_container(name: str) -> str:
    return f"docker stop {q(name)} >/dev/null 2>&1 || true"


def remove_container(name: str) -> str:
    return f"docker rm -f {q(name)} >/dev/null 2>&1 || true"


def network_members(network: str) -> str:
    return (
        f"docker network inspect {q(network)} "
        f"-f '{{{{range .Containers}}}}{{{{.Name}}}} {{{{end}}}}' 2>/dev/null || true"
    )


def remove_network(network: str) -> str:
    return f"docker network rm {q(network)} >/dev/null 2>&1 || true"


def remove_files(paths: Iterable[str]) -> str:
    return "rm -f " + " ".join(q(p) for p in paths)


# ==================== Parsing ====================

def parse_names(output: str) -> List[str]:
    return [n for n in output.split() if n]


def slot_from_name(pool: "PoolConfig", name: str) -> Optional[int]:
    """mt5-instance-7 -> 7. Anything else -> None."""
    if not name.startswith(pool.resource_prefix):
        return None
    suffix = name[len(pool.resource_prefix):]
    if not suffix.isdigit():
        return None
    return int(suffix)
