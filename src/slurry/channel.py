# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Remote command channel for Slurry.

Executes scheduler commands on a cluster login node and moves small files
(batch scripts, job output) back and forth. No business logic and no
retries: callers decide how to react to a ChannelError.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import asyncssh

logger = logging.getLogger(__name__)


class ChannelErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    AUTH_FAILURE = "auth_failure"


class ChannelError(Exception):
    """Raised when the remote session cannot deliver a command result."""

    def __init__(self, kind: ChannelErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(f"{kind.value}: {message}" if message else kind.value)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _log_command(name: str, command: str) -> None:
    if len(command) > 100:
        logger.info(f"[{name}] Executing: {command[:100]}...")
    else:
        logger.info(f"[{name}] Executing: {command}")


class RemoteChannel:
    """Contract for one authenticated session to a cluster.

    Commands on one channel never overlap; concurrency comes from using
    several channels (one per host).
    """

    name = "remote"

    def __init__(self):
        self._session_lock = asyncio.Lock()

    async def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a command line and return its exit code and output.

        Raises:
            ChannelError: On timeout, lost connection or failed authentication.
        """
        async with self._session_lock:
            _log_command(self.name, command)
            result = await self._execute(command, timeout)
        if result.stderr:
            logger.warning(f"[{self.name}] STDERR:\n{result.stderr}")
        return result

    async def _execute(self, command: str, timeout: Optional[float]) -> CommandResult:
        raise NotImplementedError

    async def put_file(self, content: str, remote_path: str) -> None:
        """Write text content to a file on the remote side."""
        raise NotImplementedError

    async def get_file(self, remote_path: str) -> str:
        """Read a (small) text file from the remote side."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class SSHChannel(RemoteChannel):
    """Channel over a single asyncssh connection, opened lazily."""

    def __init__(
        self,
        hostname: str,
        port: int = 22,
        username: Optional[str] = None,
        client_keys: Optional[list] = None,
        known_hosts: Optional[str] = None,
        check_host_keys: bool = True,
        connect_timeout: float = 30.0,
        name: Optional[str] = None,
    ):
        super().__init__()
        self.hostname = hostname
        self.port = port
        self.username = username
        self.client_keys = client_keys
        self.known_hosts = known_hosts
        self.check_host_keys = check_host_keys
        self.connect_timeout = connect_timeout
        self.name = name or hostname
        self._conn: Optional[asyncssh.SSHClientConnection] = None

    async def _connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is not None:
            return self._conn
        kwargs = {"port": self.port, "username": self.username}
        if self.client_keys:
            kwargs["client_keys"] = self.client_keys
        if not self.check_host_keys:
            kwargs["known_hosts"] = None
        elif self.known_hosts is not None:
            kwargs["known_hosts"] = self.known_hosts
        try:
            self._conn = await asyncio.wait_for(
                asyncssh.connect(self.hostname, **kwargs), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise ChannelError(ChannelErrorKind.TIMEOUT, f"connect to {self.hostname}") from e
        except asyncssh.PermissionDenied as e:
            raise ChannelError(ChannelErrorKind.AUTH_FAILURE, str(e)) from e
        except (asyncssh.Error, OSError) as e:
            raise ChannelError(ChannelErrorKind.CONNECTION_LOST, str(e)) from e
        logger.info(f"[{self.name}] Connected to {self.hostname}:{self.port}")
        return self._conn

    def _drop_connection(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    async def _execute(self, command: str, timeout: Optional[float]) -> CommandResult:
        conn = await self._connection()
        try:
            result = await asyncio.wait_for(conn.run(command, check=False), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ChannelError(ChannelErrorKind.TIMEOUT, f"after {timeout}s: {command[:60]}") from e
        except (asyncssh.Error, OSError) as e:
            self._drop_connection()
            raise ChannelError(ChannelErrorKind.CONNECTION_LOST, str(e)) from e
        exit_code = result.exit_status if result.exit_status is not None else -1
        return CommandResult(exit_code, str(result.stdout or ""), str(result.stderr or ""))

    @staticmethod
    def _sftp_path(remote_path: str) -> str:
        # SFTP paths are relative to the login directory; "~" is not expanded
        return remote_path[2:] if remote_path.startswith("~/") else remote_path

    async def put_file(self, content: str, remote_path: str) -> None:
        async with self._session_lock:
            conn = await self._connection()
            try:
                async with await conn.start_sftp_client() as sftp:
                    async with sftp.open(self._sftp_path(remote_path), "w") as f:
                        await f.write(content)
            except (asyncssh.Error, OSError) as e:
                self._drop_connection()
                raise ChannelError(ChannelErrorKind.CONNECTION_LOST, str(e)) from e
        logger.debug(f"[{self.name}] Uploaded {remote_path}")

    async def get_file(self, remote_path: str) -> str:
        async with self._session_lock:
            conn = await self._connection()
            try:
                async with await conn.start_sftp_client() as sftp:
                    async with sftp.open(self._sftp_path(remote_path), "r") as f:
                        return await f.read()
            except (asyncssh.Error, OSError) as e:
                self._drop_connection()
                raise ChannelError(ChannelErrorKind.CONNECTION_LOST, str(e)) from e

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None


class LocalChannel(RemoteChannel):
    """Channel that runs scheduler commands on this machine.

    Used on login nodes where sbatch/squeue are available directly.
    """

    def __init__(self, name: str = "local", shell: str = "/bin/sh"):
        super().__init__()
        self.name = name
        self.shell = shell

    async def _execute(self, command: str, timeout: Optional[float]) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                executable=self.shell,
            )
        except OSError as e:
            raise ChannelError(ChannelErrorKind.CONNECTION_LOST, str(e)) from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ChannelError(ChannelErrorKind.TIMEOUT, f"after {timeout}s: {command[:60]}") from e
        return CommandResult(
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def put_file(self, content: str, remote_path: str) -> None:
        path = Path(remote_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    async def get_file(self, remote_path: str) -> str:
        try:
            return Path(remote_path).expanduser().read_text()
        except OSError as e:
            raise ChannelError(ChannelErrorKind.CONNECTION_LOST, str(e)) from e
