"""File transfers between the control node and the target hosts."""

import asyncio
import logging
import shlex
from pathlib import Path
from typing import Iterable

import requests

from fleetctl.config import DEFAULT_COMMAND_TIMEOUT, ConnectionProfile
from fleetctl.ssh import TransportError, open_session, quote_remote_path


logger = logging.getLogger(__name__)

ARCHIVE_DIR = "/tmp"
DOWNLOAD_CHUNK_SIZE = 64 * 1024


def host_folder(dest: Path, address: str) -> Path:
    """Create and return the per-host subdirectory of ``dest``.

    Files pulled from different hosts land in separate folders so that
    identically named files never overwrite each other.
    """
    folder = Path(dest) / address
    folder.mkdir(parents=True, exist_ok=True)
    return folder


async def _fan_out(addresses: list[str], unit) -> dict[str, bool]:
    """Run ``unit(address)`` on every address, isolating transport errors."""
    status: dict[str, bool] = {}

    async def _guarded(address: str) -> None:
        try:
            await unit(address)
        except TransportError as exc:
            logger.error("%s - %s", address, exc)
            status[address] = False
            return
        status[address] = True

    outcomes = await asyncio.gather(*[_guarded(a) for a in addresses], return_exceptions=True)
    for outcome in outcomes:
        if isinstance(outcome, Exception):
            raise outcome
    return status


async def push(
    targets: Iterable[str],
    profile: ConnectionProfile,
    source: Path,
    target: str,
    *,
    strict_host_keys: bool = False,
) -> dict[str, bool]:
    """Copy a local file to every target concurrently.

    Args:
        targets: Host addresses.
        profile: Connection profile.
        source: Local file to upload.
        target: Remote destination path.
        strict_host_keys: Verify host keys against known_hosts.

    Returns:
        dict[str, bool]: Success flag per address. Failures are logged.
    """
    source = Path(source)

    async def _unit(address: str) -> None:
        session = await open_session(profile, address, strict_host_keys=strict_host_keys)
        async with session:
            await session.copy_to(source, target)

    return await _fan_out(sorted(set(targets)), _unit)


async def pull(
    targets: Iterable[str],
    profile: ConnectionProfile,
    remote_path: str,
    dest: Path,
    *,
    strict_host_keys: bool = False,
) -> dict[str, bool]:
    """Copy a remote file from every target into ``dest/<address>/``.

    Args:
        targets: Host addresses.
        profile: Connection profile.
        remote_path: File to fetch on each host.
        dest: Local destination root.
        strict_host_keys: Verify host keys against known_hosts.

    Returns:
        dict[str, bool]: Success flag per address. Failures are logged.
    """

    async def _unit(address: str) -> None:
        folder = host_folder(dest, address)
        session = await open_session(profile, address, strict_host_keys=strict_host_keys)
        async with session:
            await session.copy_from(remote_path, folder)

    return await _fan_out(sorted(set(targets)), _unit)


def build_archive_cmd(source_dir: str, archive_path: str) -> str:
    """Build the remote command that tars the contents of ``source_dir``."""
    return f"cd {quote_remote_path(source_dir)} && tar -czf {shlex.quote(archive_path)} *"


async def pull_directory(
    targets: Iterable[str],
    profile: ConnectionProfile,
    source_dir: str,
    dest: Path,
    archive_name: str,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    *,
    strict_host_keys: bool = False,
) -> dict[str, bool]:
    """Archive a remote directory on every target and pull the archives.

    Each host runs ``tar`` into /tmp/<archive_name>.tar.gz, then the
    archive is copied into ``dest/<address>/``.

    Args:
        targets: Host addresses.
        profile: Connection profile.
        source_dir: Remote directory to archive.
        dest: Local destination root.
        archive_name: Base name of the archive file.
        timeout: Seconds allowed for the tar command.
        strict_host_keys: Verify host keys against known_hosts.

    Returns:
        dict[str, bool]: Success flag per address. Failures are logged.
    """
    archive_path = f"{ARCHIVE_DIR}/{archive_name}.tar.gz"
    command = build_archive_cmd(source_dir, archive_path)

    async def _unit(address: str) -> None:
        session = await open_session(profile, address, strict_host_keys=strict_host_keys)
        async with session:
            result = await session.run(command, timeout)
            # Reason: GNU tar exits 1 when a file changed while being read,
            # which is routine for live log directories.
            if not result.completed or (result.exit_status or 0) > 1:
                raise TransportError(
                    f"archiving {source_dir} failed: {result.stderr.strip() or 'no output'}"
                )
            logger.info("%s - archived %s into %s", address, source_dir, archive_path)
            await session.copy_from(archive_path, host_folder(dest, address))

    return await _fan_out(sorted(set(targets)), _unit)


def fetch_url(url: str, destination: Path, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> Path:
    """Download ``url`` to a local file.

    Args:
        url: HTTP(S) URL to fetch.
        destination: Local file to write.
        timeout: Connect/read timeout in seconds.

    Returns:
        Path: The written file.

    Raises:
        requests.RequestException: If the request fails or returns an
            error status.
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with destination.open("wb") as fh:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                fh.write(chunk)
    logger.info("Downloaded %s to %s", url, destination)
    return destination
