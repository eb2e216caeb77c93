"""SSH transport layer: one session per host, optionally through a jump host."""

import asyncio
import logging
import shlex
import stat
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable

import asyncssh

from fleetctl.config import DEFAULT_COMMAND_TIMEOUT, ConnectionProfile


logger = logging.getLogger(__name__)

# Synthetic stderr line appended when the local wait for a command expires.
TIMEOUT_MARKER = "Run Command Timeout!"

COPY_CHUNK_SIZE = 64 * 1024

LineCallback = Callable[[str, str, str], None]


class TransportError(Exception):
    """Raised when a host cannot be reached, authenticated, or copied to/from."""

    pass


@dataclass
class RemoteResult:
    """Outcome of a command on a single host.

    Attributes:
        address: Host address the command ran on.
        stdout: Collected non-empty stdout lines, newline terminated.
        stderr: Collected non-empty stderr lines, newline terminated.
        completed: False when the timeout fired before the command finished.
        exit_status: Remote exit code, or None when the command timed out.
    """

    address: str
    stdout: str
    stderr: str
    completed: bool
    exit_status: int | None = None

    @property
    def ok(self) -> bool:
        """True when the command finished in time with exit status 0."""
        return self.completed and self.exit_status == 0


def _client_options(profile: ConnectionProfile, strict_host_keys: bool) -> dict:
    """Build asyncssh connect kwargs shared by the proxy and target hops."""
    options: dict = {
        "username": profile.username,
        "connect_timeout": profile.connect_timeout,
    }
    # Reason: Passing client_keys disables asyncssh's agent lookup, so only
    # do it when the key file actually exists; otherwise SSH_AUTH_SOCK and
    # the default ~/.ssh keys are used.
    if profile.key_path is not None and profile.key_path.exists():
        options["client_keys"] = [str(profile.key_path)]
    elif profile.key_path is not None:
        logger.debug("Key %s not found, falling back to ssh-agent", profile.key_path)
    if profile.password:
        options["password"] = profile.password
    if not strict_host_keys:
        options["known_hosts"] = None
    return options


def _lines(chunks: list[str]) -> str:
    return "".join(f"{line}\n" for line in chunks)


def quote_remote_path(path: str) -> str:
    """Quote a remote path for a shell command, keeping a leading ``~`` live.

    ``shlex.quote`` alone turns ``~/logs`` into a literal directory named
    ``~``, so the home prefix is rewritten to ``"$HOME"``.
    """
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        rest = path[2:]
        return '"$HOME"/' + shlex.quote(rest) if rest else '"$HOME"/'
    return shlex.quote(path)


class RemoteSession:
    """An SSH connection to one host.

    Owned by exactly one unit of work; use it as an async context manager
    so both hops are closed when the unit ends.
    """

    def __init__(
        self,
        address: str,
        profile: ConnectionProfile,
        conn: asyncssh.SSHClientConnection,
        proxy: asyncssh.SSHClientConnection | None = None,
        strict_host_keys: bool = False,
    ):
        self.address = address
        self.profile = profile
        self._conn = conn
        self._proxy = proxy
        self._strict_host_keys = strict_host_keys

    @classmethod
    async def connect(
        cls, profile: ConnectionProfile, address: str, *, strict_host_keys: bool = False
    ) -> "RemoteSession":
        """Open a session to ``address``.

        When the profile names a proxy, the proxy is connected first with
        the same credentials and the target connection is tunnelled
        through it.

        Args:
            profile: Connection profile (user, key, port, proxy).
            address: Target host address.
            strict_host_keys: Verify host keys against known_hosts.

        Returns:
            RemoteSession: The connected session.

        Raises:
            TransportError: If either hop cannot connect or authenticate.
        """
        options = _client_options(profile, strict_host_keys)
        proxy = None
        try:
            if profile.proxy_address:
                logger.debug("Connecting to %s via %s", address, profile.proxy_address)
                proxy = await asyncssh.connect(profile.proxy_host, profile.proxy_port, **options)
                conn = await asyncssh.connect(address, profile.port, tunnel=proxy, **options)
            else:
                conn = await asyncssh.connect(address, profile.port, **options)
        except (asyncssh.Error, OSError) as exc:
            if proxy is not None:
                proxy.close()
            hop = f" (via {profile.proxy_address})" if profile.proxy_address else ""
            raise TransportError(f"Cannot connect to {address}{hop}: {exc}") from exc
        return cls(address, profile, conn, proxy, strict_host_keys)

    async def close(self) -> None:
        """Close the target connection, then the proxy connection."""
        self._conn.close()
        await self._conn.wait_closed()
        if self._proxy is not None:
            self._proxy.close()
            await self._proxy.wait_closed()

    async def __aenter__(self) -> "RemoteSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def run(
        self,
        command: str,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        on_line: LineCallback | None = None,
    ) -> RemoteResult:
        """Run ``command`` and stream its output line by line.

        stdout and stderr are read concurrently and race against the
        timeout. On timeout only the local wait is abandoned: the remote
        process keeps running.

        Args:
            command: Shell command to execute remotely.
            timeout: Seconds to wait for the command to finish.
            on_line: Optional callback ``(address, stream, line)`` invoked
                for every non-empty output line.

        Returns:
            RemoteResult: Collected output and completion state.

        Raises:
            TransportError: If the session cannot start the command.
        """
        try:
            process = await self._conn.create_process(command, errors="replace")
        except (asyncssh.Error, OSError) as exc:
            raise TransportError(f"Cannot run command on {self.address}: {exc}") from exc

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        async def _pump(reader, lines: list[str], stream: str) -> None:
            async for raw in reader:
                line = raw.rstrip("\r\n")
                if not line:
                    continue
                lines.append(line)
                if on_line is not None:
                    on_line(self.address, stream, line)

        async def _finish() -> int | None:
            await asyncio.gather(
                _pump(process.stdout, stdout_lines, "stdout"),
                _pump(process.stderr, stderr_lines, "stderr"),
            )
            await process.wait_closed()
            return process.exit_status

        waiter = asyncio.ensure_future(_finish())
        done, _ = await asyncio.wait({waiter}, timeout=timeout)

        if waiter in done:
            try:
                exit_status = waiter.result()
            except (asyncssh.Error, OSError) as exc:
                raise TransportError(f"Connection to {self.address} lost: {exc}") from exc
            return RemoteResult(
                address=self.address,
                stdout=_lines(stdout_lines),
                stderr=_lines(stderr_lines),
                completed=True,
                exit_status=exit_status,
            )

        # Timed out: stop reading locally, leave the remote command alone.
        waiter.cancel()
        await asyncio.wait({waiter})
        logger.warning("%s - command timed out after %ss", self.address, timeout)
        stderr_lines.append(TIMEOUT_MARKER)
        if on_line is not None:
            on_line(self.address, "stderr", TIMEOUT_MARKER)
        return RemoteResult(
            address=self.address,
            stdout=_lines(stdout_lines),
            stderr=_lines(stderr_lines),
            completed=False,
            exit_status=None,
        )

    async def copy_to(self, local_path: Path, remote_path: str) -> None:
        """Push a single file using the scp receive-mode protocol.

        Sends ``C<mode> <size> <name>``, the raw bytes and a terminating
        zero byte to ``scp -t <remote_path>``, waiting for the server's
        acknowledgement after each step.

        Args:
            local_path: File to send.
            remote_path: Destination file or directory on the host.

        Raises:
            TransportError: If the file is unreadable or the server rejects it.
        """
        local_path = Path(local_path)
        try:
            info = local_path.stat()
        except OSError as exc:
            raise TransportError(f"Cannot read {local_path}: {exc}") from exc

        name = PurePosixPath(remote_path).name or local_path.name
        if remote_path.endswith("/") or remote_path == "~":
            name = local_path.name
        header = f"C{stat.S_IMODE(info.st_mode):04o} {info.st_size} {name}\n"

        try:
            process = await self._conn.create_process(
                f"scp -t {quote_remote_path(remote_path)}", encoding=None
            )
        except (asyncssh.Error, OSError) as exc:
            raise TransportError(f"Cannot start scp on {self.address}: {exc}") from exc

        try:
            await self._read_ack(process)
            process.stdin.write(header.encode())
            await self._read_ack(process)
            with local_path.open("rb") as fh:
                while True:
                    chunk = fh.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    process.stdin.write(chunk)
                    await process.stdin.drain()
            process.stdin.write(b"\x00")
            await self._read_ack(process)
            process.stdin.write_eof()
            await process.wait_closed()
        except (asyncssh.Error, OSError, asyncio.IncompleteReadError) as exc:
            raise TransportError(f"Copy of {local_path} to {self.address} failed: {exc}") from exc
        finally:
            process.close()

        logger.info("%s - copied %s to %s (%d bytes)", self.address, local_path, remote_path, info.st_size)

    async def _read_ack(self, process) -> None:
        """Read one scp status byte; 1 (warning) and 2 (fatal) carry a message."""
        status = await process.stdout.readexactly(1)
        if status == b"\x00":
            return
        message = (await process.stdout.readline()).decode(errors="replace").strip()
        raise TransportError(f"scp on {self.address} rejected transfer: {message or status!r}")

    async def copy_from(self, remote_path: str, local_dir: Path) -> Path:
        """Pull a remote file into ``local_dir`` with the scp client binary.

        Args:
            remote_path: File on the host.
            local_dir: Existing local directory to copy into.

        Returns:
            Path: Local path of the copied file.

        Raises:
            TransportError: If scp cannot be started or exits non-zero.
        """
        cmd = build_scp_pull_cmd(
            self.profile, self.address, remote_path, local_dir, strict_host_keys=self._strict_host_keys
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportError(f"Cannot start scp: {exc}") from exc

        _, stderr_bytes = await proc.communicate()
        if proc.returncode:
            raise TransportError(
                f"scp from {self.address}:{remote_path} failed (rc={proc.returncode}): "
                f"{stderr_bytes.decode(errors='replace').strip()}"
            )
        target = Path(local_dir) / PurePosixPath(remote_path).name
        logger.info("%s - copied %s to %s", self.address, remote_path, target)
        return target


def _scp_host(address: str) -> str:
    # Reason: scp needs brackets around IPv6 literals in user@host:path.
    if ":" in address and not address.startswith("["):
        return f"[{address}]"
    return address


def build_scp_pull_cmd(
    profile: ConnectionProfile,
    address: str,
    remote_path: str,
    local_dir: Path,
    strict_host_keys: bool = False,
) -> list[str]:
    """Build the scp client command that pulls ``remote_path`` from a host.

    The command runs in batch mode so a missing key or unknown host fails
    instead of prompting. The key and host key options apply to the target
    only; the ProxyJump hop authenticates with the local ssh_config and
    agent defaults.

    Args:
        profile: Connection profile supplying user, port, key and proxy.
        address: Host to copy from.
        remote_path: Remote file path.
        local_dir: Local destination directory.
        strict_host_keys: Keep scp's own host key checking.

    Returns:
        list[str]: Command arguments for scp.
    """
    cmd = ["scp", "-q", "-P", str(profile.port), "-o", "BatchMode=yes"]
    if profile.key_path is not None:
        cmd += ["-i", str(profile.key_path)]
    if not strict_host_keys:
        cmd += ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
    if profile.proxy_address:
        cmd += ["-o", f"ProxyJump={profile.username}@{profile.proxy_address}"]
    cmd += [f"{profile.username}@{_scp_host(address)}:{remote_path}", str(local_dir)]
    return cmd


async def open_session(
    profile: ConnectionProfile, address: str, *, strict_host_keys: bool = False
) -> RemoteSession:
    """Connect a RemoteSession; the seam used by the executor and transfers."""
    return await RemoteSession.connect(profile, address, strict_host_keys=strict_host_keys)
