"""
Remote Command Executor.
Opens authenticated SSH sessions to the fleet host and runs one command at a
time to completion. Connection failures are retried with a fixed back-off.
"""

from __future__ import annotations
import asyncio
import base64
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Tuple, TYPE_CHECKING
import asyncssh
import logging

from fleet.errors import CommandError, HostConnectionError, SessionResetError
from fleet.models import CommandOutput

if TYPE_CHECKING:
    from config import HostConfig

logger = logging.getLogger(__name__)


class RemoteExecutor:
    """Async SSH command runner for the fleet host."""

    # Docker / compose write progress to stderr. Seeing any of these means
    # the stderr text is chatter, not an error.
    BENIGN_MARKERS: Tuple[str, ...] = (
        "Creating", "Created",
        "Starting", "Started",
        "Stopping", "Stopped",
        "Removing", "Removed",
        "Recreating", "Recreated",
        "Running",
        "Pulling", "Pulled",
        "Waiting", "Healthy",
    )

    def __init__(self, config: "HostConfig"):
        self.config = config
        self._key: Optional[asyncssh.SSHKey] = None

    # ==================== Credentials ====================

    def _load_key(self) -> asyncssh.SSHKey:
        """Load the private key once. Missing/unreadable key is not retried."""
        if self._key is not None:
            return self._key

        try:
            if self.config.private_key_b64:
                data = base64.b64decode(self.config.private_key_b64)
                self._key = asyncssh.import_private_key(data)
            elif self.config.private_key_path:
                self._key = asyncssh.read_private_key(self.config.private_key_path)
            else:
                raise HostConnectionError("No SSH private key configured")
        except HostConnectionError:
            raise
        except (OSError, ValueError, asyncssh.KeyImportError) as e:
            raise HostConnectionError(f"Failed to load SSH private key: {e}") from e

        return self._key

    # ==================== Sessions ====================

    async def connect(self) -> asyncssh.SSHClientConnection:
        """
        Open a fresh SSH session.
        Retries up to connect_retries attempts, connect_timeout_sec each,
        sleeping retry_backoff_sec between attempts.
        """
        key = self._load_key()
        attempts = max(1, self.config.connect_retries)
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                conn = await asyncio.wait_for(
                    asyncssh.connect(
                        self.config.host,
                        port=self.config.port,
                        username=self.config.username,
                        client_keys=[key],
                        known_hosts=self.config.known_hosts_path,
                        connect_timeout=self.config.connect_timeout_sec,
                    ),
                    timeout=self.config.connect_timeout_sec,
                )
                if attempt > 1:
                    logger.info(f"[SSH] Connected to {self.config.host} on attempt {attempt}")
                return conn

            except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(
                    f"[SSH] Connect attempt {attempt}/{attempts} to "
                    f"{self.config.host}:{self.config.port} failed: {e!r}"
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_backoff_sec)

        raise HostConnectionError(
            f"Could not connect to {self.config.host}:{self.config.port} "
            f"after {attempts} attempts: {last_error!r}"
        ) from last_error

    @asynccontextmanager
    async def session(self) -> AsyncIterator[asyncssh.SSHClientConnection]:
        """Scoped session: always closed on exit, whatever happened inside."""
        conn = await self.connect()
        try:
            yield conn
        finally:
            conn.close()
            try:
                await conn.wait_closed()
            except (OSError, asyncssh.Error) as e:
                logger.debug(f"[SSH] Error while closing session: {e!r}")

    # ==================== Commands ====================

    async def run(
        self,
        conn: asyncssh.SSHClientConnection,
        command: str,
        label: Optional[str] = None,
    ) -> CommandOutput:
        """
        Run exactly one command and wait for it.
        `label` is what gets logged; commands may carry base64 secrets.
        """
        label = label or command
        logger.debug(f"[SSH] $ {label}")

        try:
            result = await asyncio.wait_for(
                conn.run(command, check=False),
                timeout=self.config.command_timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise CommandError(
                label, f"timed out after {self.config.command_timeout_sec}s"
            ) from e
        except (asyncssh.ConnectionLost, ConnectionResetError, BrokenPipeError) as e:
            raise SessionResetError(f"Session reset during '{label}': {e!r}") from e
        except (OSError, asyncssh.Error) as e:
            raise HostConnectionError(f"Session error during '{label}': {e!r}") from e

        output = CommandOutput(
            stdout=_as_text(result.stdout),
            stderr=_as_text(result.stderr),
            exit_status=result.exit_status,
        )

        if not self.is_success(output):
            logger.warning(f"[SSH] '{label}' failed: {output.stderr.strip()[:300]}")
            raise CommandError(label, stderr=output.stderr, stdout=output.stdout)

        if output.stderr:
            logger.debug(f"[SSH] '{label}' stderr: {output.stderr.strip()[:300]}")
        return output

    async def execute(self, command: str, label: Optional[str] = None) -> CommandOutput:
        """Open a session, run one command, close the session."""
        async with self.session() as conn:
            return await self.run(conn, command, label)

    @classmethod
    def is_success(cls, output: CommandOutput) -> bool:
        """
        A non-zero exit status is always failure. For commands that exited
        0 (or whose status is unknown), stderr alone is not failure: it is
        failure only when stdout is empty and stderr carries none of the
        benign progress markers.
        """
        if output.exit_status not in (None, 0):
            return False
        if not output.stderr.strip():
            return True
        if any(marker in output.stderr for marker in cls.BENIGN_MARKERS):
            return True
        return bool(output.stdout.strip())


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
