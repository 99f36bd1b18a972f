"""
MT5 Fleet Manager — Configuration
All tunable parameters in one place.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class HostConfig:
    host: str = ""
    port: int = 22
    username: str = "ubuntu"
    private_key_b64: str = ""           # Base64 of the private key (preferred)
    private_key_path: str = ""          # Fallback: path to key file
    known_hosts_path: Optional[str] = None  # None = host key not verified
    connect_timeout_sec: int = 10
    connect_retries: int = 3            # Total attempts
    retry_backoff_sec: float = 2.0      # Fixed delay between attempts
    command_timeout_sec: int = 60

    @property
    def has_key_source(self) -> bool:
        return bool(self.private_key_b64 or self.private_key_path)


@dataclass
class PoolConfig:
    max_instances: int = 15
    resource_prefix: str = "mt5-instance-"
    image: str = "local-mt5-image:latest"
    remote_dir: str = "/home/ubuntu/mt5-instances"
    shared_network: str = "mt5-instances_default"
    workload_artifact_path: str = (
        "/root/.wine/drive_c/Program Files/MetaTrader 5/MQL5/Files/MT5-login.ini"
    )
    restart_policy: str = "unless-stopped"
    default_timeframe: str = "M5"
    compose_down_timeout_sec: int = 60
    reclaim_reset_delay_sec: float = 5.0

    def resource_name(self, slot_id: int) -> str:
        return f"{self.resource_prefix}{slot_id}"

    def descriptor_path(self, slot_id: int) -> str:
        return f"{self.remote_dir}/docker-compose-{slot_id}.yml"

    def artifact_path(self, slot_id: int) -> str:
        return f"{self.remote_dir}/mt5-login-{slot_id}.ini"


@dataclass
class ReconcileConfig:
    enabled: bool = True
    interval_sec: int = 300             # Same cadence as the old connection monitor
    kill_orphans: bool = True           # Reclaim live workloads with no registry record


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class NotificationConfig:
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    enabled: bool = True


@dataclass
class StorageConfig:
    db_path: str = "./data/fleet.db"


@dataclass
class FleetConfig:
    host: HostConfig = field(default_factory=HostConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "FleetConfig":
        """Load config with environment variable overrides."""
        config = cls()
        config.host.host = os.getenv("VPS_HOST", "")
        config.host.port = int(os.getenv("VPS_PORT", "22"))
        config.host.username = os.getenv("VPS_USERNAME", "ubuntu")
        config.host.private_key_b64 = os.getenv("FLEET_SSH_KEY_B64", "")
        config.host.private_key_path = os.getenv("FLEET_SSH_KEY_PATH", "")
        config.host.known_hosts_path = os.getenv("FLEET_KNOWN_HOSTS") or None
        config.host.command_timeout_sec = int(os.getenv("FLEET_COMMAND_TIMEOUT", "60"))
        config.pool.max_instances = int(os.getenv("MAX_INSTANCES", "15"))
        config.pool.image = os.getenv("MT5_IMAGE", config.pool.image)
        config.pool.remote_dir = os.getenv("MT5_REMOTE_DIR", config.pool.remote_dir)
        config.pool.shared_network = os.getenv("MT5_SHARED_NETWORK", config.pool.shared_network)
        config.reconcile.enabled = os.getenv("RECONCILE_ENABLED", "true").lower() == "true"
        config.reconcile.interval_sec = int(os.getenv("RECONCILE_INTERVAL", "300"))
        config.reconcile.kill_orphans = os.getenv("RECONCILE_KILL_ORPHANS", "true").lower() == "true"
        config.server.port = int(os.getenv("API_PORT", "8080"))
        config.notifications.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
        config.notifications.telegram_chat_id = os.getenv("TELEGRAM_CHAT_ID", "")
        config.storage.db_path = os.getenv("DB_PATH", "./data/fleet.db")
        config.log_level = os.getenv("LOG_LEVEL", "INFO")
        return config

    def validate(self) -> List[str]:
        """Return a list of fatal configuration problems."""
        problems = []
        if not self.host.host:
            problems.append("VPS_HOST must be set")
        if not self.host.has_key_source:
            problems.append("FLEET_SSH_KEY_B64 or FLEET_SSH_KEY_PATH must be set")
        if self.pool.max_instances < 1:
            problems.append("MAX_INSTANCES must be >= 1")
        return problems
