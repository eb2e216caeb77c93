"""Playbooks: ordered task lists run against the fleet.

A playbook is a YAML document::

    name: restart-zk
    description: Push a new config and restart ZooKeeper
    tasks:
      - name: upload config
        type: Upload
        components: ZOOKEEPER_SERVER
        parameters:
          source: ./zoo.cfg
          target: /etc/zookeeper/conf/zoo.cfg
      - name: restart
        type: ClusterCommand
        command: RESTART
        services: ZOOKEEPER

Every task is checked before the first one runs, then the tasks run one
after the other in document order.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import requests
import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from fleetctl.config import DEFAULT_COMMAND_TIMEOUT, ClusterEntry, ConnectionProfile
from fleetctl.executor import ResultCallback, dispatch, run_local
from fleetctl.inventory import Inventory
from fleetctl.ssh import RemoteResult
from fleetctl.targets import TargetFilter, create_filter, resolve_targets
from fleetctl.transfer import fetch_url, push


logger = logging.getLogger(__name__)

CONFIGS_SCRIPT = "/var/lib/ambari-server/resources/scripts/configs.py"
CLUSTER_ACTIONS = ("START", "STOP", "RESTART")


class PlaybookError(Exception):
    """Raised when a playbook cannot be loaded or one of its tasks is invalid."""

    pass


class TaskKind(str, Enum):
    """What a task does."""

    REMOTE_COMMAND = "RemoteCommand"
    LOCAL_COMMAND = "LocalCommand"
    DOWNLOAD = "Download"
    UPLOAD = "Upload"
    CONFIG_UPDATE = "ConfigUpdate"
    CLUSTER_COMMAND = "ClusterCommand"


# Older playbooks use these names.
_KIND_ALIASES = {
    "Config": TaskKind.CONFIG_UPDATE,
    "AmbariCommand": TaskKind.CLUSTER_COMMAND,
}


class Task(BaseModel):
    """A single playbook step.

    Attributes:
        name: Human readable label.
        kind: Task kind (YAML key ``type``).
        command: Shell command, or START/STOP/RESTART for cluster commands.
        hosts: Comma-separated public hostnames.
        services: Comma-separated service names.
        components: Comma-separated component names.
        server: Target the control host (YAML key ``ambari_server``).
        agent: Target every inventory host (YAML key ``ambari_agent``).
        parameters: Kind-specific parameters.
    """

    name: str = ""
    kind: TaskKind = Field(validation_alias=AliasChoices("type", "kind"))
    command: str = ""
    hosts: str = ""
    services: str = ""
    components: str = ""
    server: bool = Field(default=False, validation_alias=AliasChoices("ambari_server", "server"))
    agent: bool = Field(default=False, validation_alias=AliasChoices("ambari_agent", "agent"))
    parameters: dict[str, str] = {}

    @field_validator("kind", mode="before")
    @classmethod
    def resolve_alias(cls, v: Any) -> Any:
        return _KIND_ALIASES.get(v, v)

    @field_validator("command", "hosts", "services", "components", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("parameters", mode="before")
    @classmethod
    def stringify_parameters(cls, v: Any) -> Any:
        # Reason: YAML turns values like 8080 or true into non-strings.
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(key): "" if value is None else str(value) for key, value in v.items()}
        return v

    @property
    def label(self) -> str:
        return self.name or self.kind.value


class Playbook(BaseModel):
    """An ordered list of tasks."""

    name: str = ""
    description: str = ""
    tasks: list[Task] = []

    @field_validator("tasks", mode="before")
    @classmethod
    def none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v


class ClusterManager(Protocol):
    """Service and component lifecycle operations of the cluster manager."""

    def start_service(self, name: str) -> None: ...

    def stop_service(self, name: str) -> None: ...

    def restart_service(self, name: str) -> None: ...

    def start_component(self, name: str) -> None: ...

    def stop_component(self, name: str) -> None: ...

    def restart_component(self, name: str) -> None: ...


@dataclass
class TaskOutcome:
    """What happened when a task ran.

    Attributes:
        name: Task label.
        kind: Task kind.
        results: Per-host command results, empty for tasks without commands.
        failed: True when any host failed, timed out or exited non-zero,
            or the local step raised.
        detail: Short human readable summary.
    """

    name: str
    kind: TaskKind
    results: dict[str, RemoteResult] = field(default_factory=dict)
    failed: bool = False
    detail: str = ""


def load_playbook(path: Path) -> Playbook:
    """Read and validate a playbook YAML file.

    Args:
        path: Playbook location.

    Returns:
        Playbook: The parsed playbook.

    Raises:
        PlaybookError: If the file is missing, is not YAML, or has an
            invalid structure.
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise PlaybookError(f"Cannot read playbook {path}: {exc}") from None
    except yaml.YAMLError as exc:
        raise PlaybookError(f"{path}: {exc}") from None

    if not isinstance(data, dict):
        raise PlaybookError(f"{path}: playbook must be a YAML mapping")

    try:
        playbook = Playbook.model_validate(data)
    except ValidationError as exc:
        raise PlaybookError(f"{path}: {exc}") from None

    logger.info("Loaded playbook %s (%s, %d tasks)", playbook.name, path, len(playbook.tasks))
    return playbook


def _require(task: Task, *keys: str) -> None:
    missing = [key for key in keys if not task.parameters.get(key)]
    if missing:
        names = ", ".join(f"'{key}'" for key in missing)
        raise PlaybookError(f"Task '{task.label}': {names} parameter is required for {task.kind.value} tasks")


def validate_task(
    task: Task,
    cluster: ClusterEntry | None = None,
    cluster_manager: ClusterManager | None = None,
) -> None:
    """Check that a task carries everything its kind needs.

    Args:
        task: Task to check.
        cluster: Configured cluster entry, needed by config updates and
            tasks that target the control host.
        cluster_manager: Lifecycle client, needed by cluster commands.

    Raises:
        PlaybookError: On the first missing or invalid field.
    """
    kind = task.kind
    if kind in (TaskKind.REMOTE_COMMAND, TaskKind.LOCAL_COMMAND) and not task.command.strip():
        raise PlaybookError(f"Task '{task.label}': 'command' is required for {kind.value} tasks")

    if kind == TaskKind.LOCAL_COMMAND:
        try:
            shlex.split(task.command)
        except ValueError as exc:
            raise PlaybookError(f"Task '{task.label}': cannot parse command: {exc}") from None
    elif kind == TaskKind.REMOTE_COMMAND:
        has_source = bool(task.parameters.get("source"))
        has_target = bool(task.parameters.get("target"))
        if has_source != has_target:
            _require(task, "source", "target")
    elif kind == TaskKind.DOWNLOAD:
        _require(task, "url", "file")
    elif kind == TaskKind.UPLOAD:
        _require(task, "source", "target")
    elif kind == TaskKind.CONFIG_UPDATE:
        _require(task, "config_type", "config_key", "config_value")
        if cluster is None:
            raise PlaybookError(f"Task '{task.label}': config updates need a [cluster] entry")
    elif kind == TaskKind.CLUSTER_COMMAND:
        if task.command.upper() not in CLUSTER_ACTIONS:
            raise PlaybookError(
                f"Task '{task.label}': command must be one of {', '.join(CLUSTER_ACTIONS)}"
            )
        if not (task.services.strip() or task.components.strip()):
            raise PlaybookError(f"Task '{task.label}': 'services' or 'components' is required")
        if cluster_manager is None:
            raise PlaybookError(f"Task '{task.label}': no cluster manager client is available")

    if kind in (TaskKind.REMOTE_COMMAND, TaskKind.UPLOAD) and task.server and not task.agent and cluster is None:
        raise PlaybookError(f"Task '{task.label}': 'ambari_server' needs a [cluster] entry")


def build_config_update_cmd(
    cluster: ClusterEntry, config_type: str, config_key: str, config_value: str
) -> str:
    """Build the configs.py invocation that sets one configuration key.

    Args:
        cluster: Cluster entry supplying credentials and the endpoint.
        config_type: Configuration type, e.g. ``core-site``.
        config_key: Property name.
        config_value: New property value.

    Returns:
        str: Shell command, with every value quoted.
    """
    q = shlex.quote
    note = f"fleetctl - Update config key: {config_key}"
    return (
        f"{CONFIGS_SCRIPT} --action set -c {q(config_type)} -k {q(config_key)} -v {q(config_value)} "
        f"-u {q(cluster.username)} -p {q(cluster.password)} --host={q(cluster.hostname)} "
        f"--cluster={q(cluster.cluster or cluster.name)} --protocol={q(cluster.protocol)} -b {q(note)}"
    )


def _has_failures(results: dict[str, RemoteResult]) -> bool:
    if getattr(results, "failures", None):
        return True
    return any(not result.ok for result in results.values())


class PlaybookRunner:
    """Runs playbook tasks against an inventory.

    Args:
        inventory: Hosts and host components used to resolve targets.
        profile: Connection profile shared by all remote steps.
        cluster: Cluster entry; its hostname is the control host.
        cluster_manager: Client for START/STOP/RESTART tasks.
        timeout: Per-host command timeout in seconds.
        strict_host_keys: Verify host keys against known_hosts.
        on_result: Called with each host's result as it finishes.
    """

    def __init__(
        self,
        inventory: Inventory,
        profile: ConnectionProfile,
        cluster: ClusterEntry | None = None,
        cluster_manager: ClusterManager | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        strict_host_keys: bool = False,
        on_result: ResultCallback | None = None,
    ):
        self.inventory = inventory
        self.profile = profile
        self.cluster = cluster
        self.cluster_manager = cluster_manager
        self.timeout = timeout
        self.strict_host_keys = strict_host_keys
        self.on_result = on_result

    @property
    def control_host(self) -> str | None:
        return self.cluster.hostname if self.cluster is not None else None

    def targets_for(self, task: Task) -> set[str]:
        """Resolve the hosts a task runs on."""
        if task.agent:
            return self.inventory.addresses()
        target_filter = create_filter(task.services, task.components, task.hosts, task.server)
        return resolve_targets(target_filter, self.inventory, self.control_host)

    async def run(self, playbook: Playbook) -> list[TaskOutcome]:
        """Validate every task, then run them in order.

        Args:
            playbook: The playbook to run.

        Returns:
            list[TaskOutcome]: One outcome per task, in order.

        Raises:
            PlaybookError: If any task is invalid. Nothing runs in that case.
        """
        for task in playbook.tasks:
            validate_task(task, self.cluster, self.cluster_manager)

        logger.info("Executing playbook %s", playbook.name or "<unnamed>")
        outcomes = []
        for index, task in enumerate(playbook.tasks, start=1):
            logger.info("[%d/%d] %s (%s)", index, len(playbook.tasks), task.label, task.kind.value)
            outcome = await self.run_task(task)
            if outcome.failed:
                logger.warning("Task '%s' failed: %s", task.label, outcome.detail)
            outcomes.append(outcome)
        return outcomes

    async def run_task(self, task: Task) -> TaskOutcome:
        """Run one task that has already been validated."""
        handlers = {
            TaskKind.REMOTE_COMMAND: self._remote_command,
            TaskKind.LOCAL_COMMAND: self._local_command,
            TaskKind.DOWNLOAD: self._download,
            TaskKind.UPLOAD: self._upload,
            TaskKind.CONFIG_UPDATE: self._config_update,
            TaskKind.CLUSTER_COMMAND: self._cluster_command,
        }
        return await handlers[task.kind](task)

    async def _dispatch(self, hosts: set[str], command: str) -> dict[str, RemoteResult]:
        return await dispatch(
            hosts,
            self.profile,
            command,
            self.timeout,
            strict_host_keys=self.strict_host_keys,
            on_result=self.on_result,
        )

    async def _push(self, task: Task, hosts: set[str]) -> dict[str, bool]:
        return await push(
            hosts,
            self.profile,
            Path(task.parameters["source"]).expanduser(),
            task.parameters["target"],
            strict_host_keys=self.strict_host_keys,
        )

    async def _remote_command(self, task: Task) -> TaskOutcome:
        hosts = self.targets_for(task)
        upload_failed = False
        if task.parameters.get("source"):
            pushed = await self._push(task, hosts)
            upload_failed = not all(pushed.values())
        results = await self._dispatch(hosts, task.command)
        failed = upload_failed or _has_failures(results)
        return TaskOutcome(
            task.label,
            task.kind,
            results,
            failed,
            f"{len(results)}/{len(hosts)} hosts returned",
        )

    async def _local_command(self, task: Task) -> TaskOutcome:
        logger.info("Execute local command: %s", task.command)
        try:
            result = await run_local(task.command, self.timeout)
        except OSError as exc:
            logger.error("Local command '%s' failed: %s", task.command, exc)
            return TaskOutcome(task.label, task.kind, failed=True, detail=str(exc))
        if self.on_result is not None:
            self.on_result(result)
        return TaskOutcome(
            task.label,
            task.kind,
            {result.address: result},
            not result.ok,
            f"exit status {result.exit_status}",
        )

    async def _download(self, task: Task) -> TaskOutcome:
        url = task.parameters["url"]
        destination = Path(task.parameters["file"]).expanduser()
        try:
            await asyncio.to_thread(fetch_url, url, destination, self.timeout)
        except (requests.RequestException, OSError) as exc:
            logger.error("Download of %s failed: %s", url, exc)
            return TaskOutcome(task.label, task.kind, failed=True, detail=str(exc))
        return TaskOutcome(task.label, task.kind, detail=f"saved {destination}")

    async def _upload(self, task: Task) -> TaskOutcome:
        hosts = self.targets_for(task)
        pushed = await self._push(task, hosts)
        copied = sum(1 for ok in pushed.values() if ok)
        return TaskOutcome(
            task.label,
            task.kind,
            failed=copied != len(pushed),
            detail=f"copied to {copied}/{len(pushed)} hosts",
        )

    async def _config_update(self, task: Task) -> TaskOutcome:
        command = build_config_update_cmd(
            self.cluster,
            task.parameters["config_type"],
            task.parameters["config_key"],
            task.parameters["config_value"],
        )
        hosts = resolve_targets(TargetFilter(include_control_host=True), self.inventory, self.control_host)
        results = await self._dispatch(hosts, command)
        return TaskOutcome(
            task.label,
            task.kind,
            results,
            _has_failures(results) or not results,
            f"set {task.parameters['config_type']}/{task.parameters['config_key']}",
        )

    async def _cluster_command(self, task: Task) -> TaskOutcome:
        action = task.command.lower()
        if task.components.strip():
            scope, names = "component", create_filter(components=task.components).component_names
        else:
            scope, names = "service", create_filter(services=task.services).service_names

        operation = getattr(self.cluster_manager, f"{action}_{scope}")
        for name in sorted(names):
            logger.info("%s %s %s", task.command.upper(), scope, name)
            # Reason: Cluster manager clients make blocking HTTP calls.
            await asyncio.to_thread(operation, name)
        return TaskOutcome(
            task.label,
            task.kind,
            detail=f"{task.command.upper()} {scope}s: {', '.join(sorted(names))}",
        )
