"""Shared test fixtures for the fleetctl test suite.

SSH is faked by monkeypatching ``asyncssh.connect`` with in-memory
connections, and the scp client binary by monkeypatching
``asyncio.create_subprocess_exec``. Both share one fake remote
filesystem so files pushed to a host can be pulled back.
"""

import asyncio
import shlex
from pathlib import Path, PurePosixPath

import asyncssh
import pytest

from fleetctl.config import ConnectionProfile, load_config
from fleetctl.inventory import Host, HostComponent, Inventory


# ---------------------------------------------------------------------------
# Fake asyncssh objects
# ---------------------------------------------------------------------------


class FakeReader:
    """Text stream that yields predetermined lines, optionally hanging after."""

    def __init__(self, text: str = "", hang: bool = False):
        self._lines = text.splitlines(keepends=True)
        self._hang = hang

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for line in self._lines:
            await asyncio.sleep(0)
            yield line
        if self._hang:
            await asyncio.Event().wait()


class FakeProcess:
    """Remote command process with fixed output and exit status."""

    def __init__(self, stdout: str = "", stderr: str = "", exit_status: int = 0, hang: bool = False):
        self.stdout = FakeReader(stdout, hang=hang)
        self.stderr = FakeReader(stderr)
        self.exit_status = exit_status
        self.closed = False

    async def wait_closed(self):
        return None

    def close(self):
        self.closed = True


class FakeScpStdin:
    def __init__(self):
        self.buffer = bytearray()
        self.eof = False

    def write(self, data: bytes):
        self.buffer.extend(data)

    async def drain(self):
        return None

    def write_eof(self):
        self.eof = True


class FakeAckReader:
    """scp status channel: acknowledges every step unless told to reject."""

    def __init__(self, reject: str | None = None):
        self._reject = reject

    async def readexactly(self, n: int) -> bytes:
        if self._reject is not None:
            return b"\x02"
        return b"\x00" * n

    async def readline(self) -> bytes:
        return f"{self._reject}\n".encode()


class FakeScpProcess:
    """``scp -t <path>`` on the remote side, writing into the fake filesystem."""

    def __init__(self, ssh: "FakeSSH", host: str, remote_path: str):
        self._ssh = ssh
        self._host = host
        self._remote_path = remote_path
        self.stdin = FakeScpStdin()
        self.stdout = FakeAckReader(ssh.scp_reject.get(host))
        self.closed = False

    async def wait_closed(self):
        data = bytes(self.stdin.buffer)
        header, _, rest = data.partition(b"\n")
        mode, size, name = header[1:].decode().split(" ", 2)
        size = int(size)
        assert rest[size:] == b"\x00"
        path = self._remote_path
        if path.endswith("/"):
            path = path + name
        self._ssh.files[(self._host, path)] = rest[:size]
        self._ssh.headers.append((self._host, header.decode()))

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, ssh: "FakeSSH", host: str, tunnel=None):
        self._ssh = ssh
        self.host = host
        self.tunnel = tunnel
        self.closed = False

    async def create_process(self, command: str, **kwargs):
        self._ssh.commands.append((self.host, command))
        if command.startswith("scp -t "):
            return FakeScpProcess(self._ssh, self.host, shlex.split(command)[2])
        return self._ssh.process_for(self.host, command)

    def close(self):
        self.closed = True

    async def wait_closed(self):
        return None


class FakeCompletedScp:
    def __init__(self, returncode: int = 0, stderr: bytes = b""):
        self.returncode = returncode
        self._stderr = stderr

    async def communicate(self):
        return b"", self._stderr


class FakeSSH:
    """Registry of fake hosts: canned responses, failures and files.

    Attributes:
        connects: (host, port, kwargs) for every connect call.
        commands: (host, command) for every process started.
        files: Fake remote filesystem keyed by (host, path).
        headers: scp headers received, as (host, header).
        scp_calls: Argument lists passed to the scp client.
    """

    def __init__(self):
        self.connects: list[tuple[str, int, dict]] = []
        self.commands: list[tuple[str, str]] = []
        self.connections: list[FakeConnection] = []
        self.files: dict[tuple[str, str], bytes] = {}
        self.headers: list[tuple[str, str]] = []
        self.scp_calls: list[list[str]] = []
        self.scp_options: list[dict] = []
        self.refused: set[str] = set()
        self.hanging: set[str] = set()
        self.scp_reject: dict[str, str] = {}
        self._responses: list[tuple[str, str, tuple[str, str, int]]] = []

    def respond(self, host: str, pattern: str = "", stdout: str = "", stderr: str = "", exit_status: int = 0):
        """Register output for commands on ``host`` containing ``pattern``."""
        self._responses.insert(0, (host, pattern, (stdout, stderr, exit_status)))

    def process_for(self, host: str, command: str) -> FakeProcess:
        stdout, stderr, exit_status = "", "", 0
        for resp_host, pattern, resp in self._responses:
            if resp_host == host and pattern in command:
                stdout, stderr, exit_status = resp
                break
        if "tar -czf" in command and exit_status <= 1:
            args = shlex.split(command)
            self.files[(host, args[args.index("-czf") + 1])] = f"tar:{args[1]}".encode()
        return FakeProcess(stdout, stderr, exit_status, hang=host in self.hanging)

    async def connect(self, host, port=22, **kwargs):
        self.connects.append((host, port, kwargs))
        if host in self.refused:
            raise ConnectionRefusedError(f"Connection refused by {host}")
        conn = FakeConnection(self, host, kwargs.get("tunnel"))
        self.connections.append(conn)
        return conn

    async def scp_exec(self, *args, **kwargs):
        self.scp_calls.append(list(args))
        self.scp_options.append(kwargs)
        source, local_dir = args[-2], args[-1]
        _, _, rest = source.partition("@")
        if rest.startswith("["):
            host = rest[1 : rest.index("]")]
            remote = rest[rest.index("]") + 2 :]
        else:
            host, _, remote = rest.partition(":")
        data = self.files.get((host, remote))
        if data is None:
            return FakeCompletedScp(1, f"scp: {remote}: No such file or directory".encode())
        Path(local_dir, PurePosixPath(remote).name).write_bytes(data)
        return FakeCompletedScp()


@pytest.fixture
def fake_ssh(monkeypatch):
    """Patch asyncssh.connect and the scp client with an in-memory fake.

    Non-scp subprocesses still run for real.
    """
    fake = FakeSSH()
    real_exec = asyncio.create_subprocess_exec

    async def _exec(*args, **kwargs):
        if args and args[0] == "scp":
            return await fake.scp_exec(*args, **kwargs)
        return await real_exec(*args, **kwargs)

    monkeypatch.setattr(asyncssh, "connect", fake.connect)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _exec)
    yield fake


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def profile() -> ConnectionProfile:
    """A connection profile without a key file or proxy."""
    return ConnectionProfile(name="test", username="root", port=22)


@pytest.fixture
def inventory() -> Inventory:
    """Hosts A (service X, component C1) and B (service Y, component C2).

    The control host S (s.example.com / 10.0.0.9) runs no agent.
    """
    return Inventory(
        hosts=[
            Host(public_host_name="a.example.com", ip="10.0.0.1", host_name="a.internal", host_state="HEALTHY"),
            Host(public_host_name="b.example.com", ip="10.0.0.2", host_name="b.internal", host_state="HEALTHY"),
        ],
        host_components=[
            HostComponent(component_name="C1", service_name="X", host_name="a.example.com", state="STARTED"),
            HostComponent(component_name="C2", service_name="Y", host_name="b.example.com", state="STARTED"),
        ],
    )


@pytest.fixture
def tmp_config(tmp_path):
    """Create a temporary config.toml and inventory and return the loaded config.

    Args:
        tmp_path: pytest built-in fixture for temp directory.

    Returns:
        tuple: (FleetConfig, Path) - the loaded config and path to the config file.
    """
    inventory_file = tmp_path / "inventory.json"
    inventory_file.write_text(
        '{"hosts": ['
        '{"public_host_name": "a.example.com", "ip": "10.0.0.1", "host_state": "HEALTHY"},'
        '{"public_host_name": "b.example.com", "ip": "10.0.0.2", "host_state": "HEALTHY"}],'
        ' "host_components": ['
        '{"component_name": "C1", "service_name": "X", "host_name": "a.example.com"},'
        '{"component_name": "C2", "service_name": "Y", "host_name": "b.example.com"}]}'
    )
    config_file = tmp_path / "config.toml"
    config_file.write_text(
        'profile = "default"\n'
        "command_timeout = 5\n"
        f'inventory = "{inventory_file}"\n'
        "\n"
        "[cluster]\n"
        'name = "prod"\n'
        'hostname = "10.0.0.9"\n'
        'username = "admin"\n'
        'password = "secret"\n'
        'cluster = "prod"\n'
        "\n"
        "[profiles.default]\n"
        'username = "root"\n'
        "port = 22\n"
    )
    config = load_config(config_file)
    yield config, config_file
