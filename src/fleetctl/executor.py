"""Concurrent command fan-out across a target set."""

import asyncio
import logging
import shlex
from typing import Callable, Iterable

from fleetctl.config import DEFAULT_COMMAND_TIMEOUT, ConnectionProfile
from fleetctl.ssh import (
    TIMEOUT_MARKER,
    LineCallback,
    RemoteResult,
    TransportError,
    open_session,
)


logger = logging.getLogger(__name__)

LOCAL_ADDRESS = "local"

ResultCallback = Callable[[RemoteResult], None]


class ResultMap(dict[str, RemoteResult]):
    """Per-host results keyed by address.

    Hosts that failed at the transport level are absent from the mapping
    itself and listed in ``failures`` with their error message instead.
    """

    def __init__(self) -> None:
        super().__init__()
        self.failures: dict[str, str] = {}

    @property
    def timed_out(self) -> list[str]:
        """Addresses whose command did not finish before the timeout."""
        return sorted(address for address, result in self.items() if not result.completed)


async def run_on_host(
    address: str,
    profile: ConnectionProfile,
    command: str,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    *,
    strict_host_keys: bool = False,
    on_line: LineCallback | None = None,
) -> RemoteResult:
    """Open a session to one host, run ``command`` and close the session.

    Args:
        address: Target host address.
        profile: Connection profile.
        command: Shell command to run.
        timeout: Seconds to wait for the command.
        strict_host_keys: Verify host keys against known_hosts.
        on_line: Optional streaming callback for output lines.

    Returns:
        RemoteResult: The host's result.

    Raises:
        TransportError: If the host cannot be reached or authenticated.
    """
    session = await open_session(profile, address, strict_host_keys=strict_host_keys)
    async with session:
        return await session.run(command, timeout, on_line=on_line)


async def dispatch(
    targets: Iterable[str],
    profile: ConnectionProfile,
    command: str,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    *,
    strict_host_keys: bool = False,
    on_result: ResultCallback | None = None,
    on_line: LineCallback | None = None,
) -> ResultMap:
    """Run ``command`` on every target concurrently.

    One task is started per address with no throttling, and the caller
    waits until every task has finished. A transport error or timeout on
    one host never cancels the others.

    Args:
        targets: Host addresses to run on.
        profile: Connection profile shared by all hosts.
        command: Shell command to run.
        timeout: Per-host timeout in seconds.
        strict_host_keys: Verify host keys against known_hosts.
        on_result: Called with each RemoteResult as its host finishes.
        on_line: Streaming callback for output lines.

    Returns:
        ResultMap: Results keyed by address, plus transport failures.
    """
    addresses = sorted(set(targets))
    results = ResultMap()

    async def _unit(address: str) -> None:
        try:
            result = await run_on_host(
                address,
                profile,
                command,
                timeout,
                strict_host_keys=strict_host_keys,
                on_line=on_line,
            )
        except TransportError as exc:
            logger.error("%s - %s", address, exc)
            results.failures[address] = str(exc)
            return
        results[address] = result
        if on_result is not None:
            on_result(result)

    logger.info("Dispatching to %d hosts: %s", len(addresses), command)
    outcomes = await asyncio.gather(*[_unit(address) for address in addresses], return_exceptions=True)

    # Reason: Unexpected errors are raised only after every sibling has
    # finished, so no unit is abandoned mid-flight.
    for outcome in outcomes:
        if isinstance(outcome, Exception):
            raise outcome

    return results


async def run_local(command: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> RemoteResult:
    """Run a command on the control node itself, without a shell.

    Unlike remote commands, a local command that exceeds the timeout is
    killed, since this process owns it.

    Args:
        command: Command line, split with shlex.
        timeout: Seconds to wait for the command.

    Returns:
        RemoteResult: Result with address "local".

    Raises:
        OSError: If the executable cannot be started.
        ValueError: If the command is empty or cannot be split.
    """
    args = shlex.split(command)
    if not args:
        raise ValueError("Local command is empty")

    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Local command timed out after %ss: %s", timeout, command)
        return RemoteResult(
            address=LOCAL_ADDRESS,
            stdout="",
            stderr=f"{TIMEOUT_MARKER}\n",
            completed=False,
            exit_status=None,
        )

    return RemoteResult(
        address=LOCAL_ADDRESS,
        stdout=stdout_bytes.decode(errors="replace"),
        stderr=stderr_bytes.decode(errors="replace"),
        completed=True,
        exit_status=proc.returncode,
    )
