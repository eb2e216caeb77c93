"""Download service, agent and server logs from cluster hosts."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from fleetctl.config import DEFAULT_COMMAND_TIMEOUT, ConnectionProfile
from fleetctl.executor import dispatch
from fleetctl.inventory import Inventory
from fleetctl.targets import TargetFilter, resolve_targets
from fleetctl.transfer import pull_directory


logger = logging.getLogger(__name__)

SERVER_LOG_DIR = "/var/log/ambari-server"
AGENT_LOG_DIR = "/var/log/ambari-agent"
SERVER_LOG_DIR_CMD = "cat /etc/ambari-server/conf/log4j.properties | grep ambari.root.dir"
AGENT_LOG_DIR_CMD = "cat /etc/ambari-agent/conf/ambari-agent.ini | grep logdir"

# service -> component -> (config type, property holding the log directory)
COMPONENT_LOG_DIRS: dict[str, dict[str, tuple[str, str]]] = {
    "ZOOKEEPER": {
        "ZOOKEEPER_SERVER": ("zookeeper-env", "zk_log_dir"),
        "ZOOKEEPER_CLIENT": ("zookeeper-env", "zk_log_dir"),
    },
    "AMBARI_INFRA_SOLR": {
        "INFRA_SOLR": ("infra-solr-env", "infra_solr_log_dir"),
        "INFRA_SOLR_CLIENT": ("infra-solr-client-log4j", "infra_solr_client_log_dir"),
    },
    "LOGSEARCH": {
        "LOGSEARCH_SERVER": ("logsearch-env", "logsearch_log_dir"),
        "LOGSEARCH_LOGFEEDER": ("logfeeder-env", "logfeeder_log_dir"),
    },
    "ACCUMULO": {
        "ACCUMULO_MASTER": ("accumulo-env", "accumulo_log_dir"),
    },
    "AMBARI_METRICS": {
        "METRICS_COLLECTOR": ("ams-env", "metrics_collector_log_dir"),
        "METRICS_MONITOR": ("ams-env", "metrics_monitor_log_dir"),
        "METRICS_GRAFANA": ("ams-grafana-env", "metrics_grafana_log_dir"),
    },
    "ATLAS": {
        "ATLAS_MASTER": ("atlas-env", "metadata_log_dir"),
    },
    "DRUID": {
        "DRUID_BROKER": ("druid-env", "druid_log_dir"),
    },
    "HBASE": {
        "HBASE_MASTER": ("hbase-env", "hbase_log_dir"),
        "HBASE_REGIONSERVER": ("hbase-env", "hbase_log_dir"),
    },
    "HDFS": {
        "NAMENODE": ("hadoop-env", "hdfs_log_dir_prefix"),
        "DATANODE": ("hadoop-env", "hdfs_log_dir_prefix"),
    },
    "HIVE": {
        "HIVE_METASTORE": ("hive-env", "hive_log_dir"),
        "HIVE_SERVER": ("hive-env", "hive_log_dir"),
        "HIVE_SERVER_INTERACTIVE": ("hive-env", "hive_log_dir"),
    },
    "KAFKA": {
        "KAFKA_BROKER": ("kafka-env", "kafka_log_dir"),
    },
    "OOZIE": {
        "OOZIE_SERVER": ("oozie-env", "oozie_log_dir"),
    },
    "RANGER": {
        "RANGER_ADMIN": ("ranger-env", "ranger_admin_log_dir"),
        "RANGER_USERSYNC": ("ranger-env", "ranger_usersync_log_dir"),
    },
    "RANGER_KMS": {
        "RANGER_KMS_SERVER": ("kms-env", "kms_log_dir"),
    },
    "SPARK2": {
        "SPARK2_JOBHISTORYSERVER": ("spark2-env", "spark_log_dir"),
        "SPARK2_THRIFTSERVER": ("spark2-env", "spark_log_dir"),
        "LIVY2_SERVER": ("livy2-env", "livy2_log_dir"),
    },
    "SUPERSET": {
        "SUPERSET": ("superset-env", "superset_log_dir"),
    },
    "STORM": {
        "NIMBUS": ("storm-env", "storm_log_dir"),
        "STORM_UI_SERVER": ("storm-env", "storm_log_dir"),
        "SUPERVISOR": ("storm-env", "storm_log_dir"),
    },
    "MAPREDUCE2": {
        "HISTORYSERVER": ("mapred-env", "mapred_log_dir_prefix"),
    },
    "YARN": {
        "APP_TIMELINE_SERVER": ("yarn-env", "yarn_log_dir_prefix"),
        "RESOURCEMANAGER": ("yarn-env", "yarn_log_dir_prefix"),
    },
    "ZEPPELIN": {
        "ZEPPELIN_MASTER": ("zeppelin-env", "zeppelin_log_dir"),
    },
    "SMARTSENSE": {
        "HST_SERVER": ("hst-log4j", "hst.log.dir"),
        "HST_AGENT": ("hst-log4j", "hst.log.dir"),
    },
    "NIFI": {
        "NIFI_CA": ("nifi-env", "nifi_node_log_dir"),
    },
    "STREAMLINE": {
        "STREAMLINE_SERVER": ("streamline-env", "streamline_log_dir"),
    },
}


def parse_properties(lines: Iterable[str]) -> dict[str, str]:
    """Parse ``key=value`` lines; keys are stripped, values kept verbatim.

    Lines without an ``=`` are ignored.
    """
    properties: dict[str, str] = {}
    for line in lines:
        key, sep, value = line.partition("=")
        if sep and key.strip():
            properties[key.strip()] = value
    return properties


def get_config_value(blueprint: dict[str, Any], config_type: str, config_property: str) -> str:
    """Read one property from the ``configurations`` list of a blueprint.

    Returns:
        str: The property value, or "" when absent.
    """
    for entry in blueprint.get("configurations", []):
        section = entry.get(config_type)
        if not isinstance(section, dict):
            continue
        value = section.get("properties", {}).get(config_property)
        if value is not None:
            return str(value)
    return ""


def resolve_log_dirs(target_filter: TargetFilter, blueprint: dict[str, Any] | None) -> dict[str, str]:
    """Map component name to its log directory for the filtered components.

    Services in the filter select their components from the table; with
    only a component filter, every service is searched. Components whose
    directory is not set in the blueprint are left out.

    Args:
        target_filter: Filter naming services and/or components.
        blueprint: Exported cluster blueprint, or None.

    Returns:
        dict[str, str]: Component name to log directory.
    """
    if blueprint is None:
        return {}
    if not (target_filter.service_names or target_filter.component_names):
        return {}

    services = target_filter.service_names or COMPONENT_LOG_DIRS.keys()
    log_dirs: dict[str, str] = {}
    for service in services:
        for component, (config_type, config_property) in COMPONENT_LOG_DIRS.get(service, {}).items():
            if target_filter.component_names and component not in target_filter.component_names:
                continue
            log_dir = get_config_value(blueprint, config_type, config_property)
            if log_dir:
                log_dirs[component] = log_dir
    return log_dirs


def create_download_root(dest: Path, cluster_name: str, now: datetime | None = None) -> Path:
    """Create ``dest/download-<cluster>-<timestamp>`` and return it."""
    timestamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
    root = Path(dest) / f"download-{cluster_name}-{timestamp}"
    root.mkdir(parents=True, exist_ok=True)
    return root


def server_log_dir(properties: dict[str, str]) -> str | None:
    """Compute the server log directory from log4j properties."""
    log_dir = properties.get("ambari.log.dir")
    if not log_dir:
        return None
    root_dir = properties.get("ambari.root.dir", "")
    log_dir = log_dir.replace("${ambari.root.dir}", root_dir, 1)
    while "//" in log_dir:
        log_dir = log_dir.replace("//", "/")
    return log_dir.strip()


async def download_logs(
    inventory: Inventory,
    target_filter: TargetFilter,
    profile: ConnectionProfile,
    dest: Path,
    cluster_name: str,
    control_host: str | None,
    blueprint: dict[str, Any] | None = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    *,
    strict_host_keys: bool = False,
) -> Path:
    """Download logs selected by ``target_filter`` into a timestamped folder.

    * Server filter: the cluster manager's own logs.
    * Service/component filter with a blueprint: each component's log
      directory, from the hosts running that component.
    * Otherwise: the agent logs of every filtered host.

    Args:
        inventory: Inventory snapshot.
        target_filter: Which hosts (and components) to collect from.
        profile: Connection profile.
        dest: Local destination root.
        cluster_name: Name used in the download folder.
        control_host: Address of the cluster manager host.
        blueprint: Exported blueprint used to locate component log dirs.
        timeout: Per-command timeout in seconds.
        strict_host_keys: Verify host keys against known_hosts.

    Returns:
        Path: The download root folder.

    Raises:
        TargetError: If the server filter is used without a control host.
    """
    if target_filter.include_control_host:
        hosts = resolve_targets(target_filter, inventory, control_host)
        root = create_download_root(dest, cluster_name)
        results = await dispatch(
            hosts, profile, SERVER_LOG_DIR_CMD, timeout, strict_host_keys=strict_host_keys
        )
        log_dir = SERVER_LOG_DIR
        for result in results.values():
            log_dir = server_log_dir(parse_properties(result.stdout.splitlines())) or log_dir
        logger.info("Server log directory: %s", log_dir)
        await pull_directory(
            hosts,
            profile,
            log_dir,
            root / "ambari-server",
            "ambari-server",
            timeout,
            strict_host_keys=strict_host_keys,
        )
        return root

    root = create_download_root(dest, cluster_name)
    log_dirs = resolve_log_dirs(target_filter, blueprint)
    if log_dirs:
        components: set[str] = set(target_filter.component_names)
        for service in target_filter.service_names:
            components |= inventory.components_for_service(service)
        for component in sorted(components):
            log_dir = log_dirs.get(component)
            if not log_dir:
                logger.warning("No known log directory for %s, skipping", component)
                continue
            component_filter = TargetFilter(
                component_names=frozenset({component}),
                explicit_hosts=target_filter.explicit_hosts,
            )
            hosts = resolve_targets(component_filter, inventory, control_host)
            await pull_directory(
                hosts,
                profile,
                log_dir,
                root / component,
                component,
                timeout,
                strict_host_keys=strict_host_keys,
            )
        return root

    hosts = resolve_targets(target_filter, inventory, control_host)
    log_dir = AGENT_LOG_DIR
    if hosts:
        # Reason: Agents share one configuration, so asking a single host
        # for its log directory is enough.
        probe = sorted(hosts)[0]
        results = await dispatch(
            [probe], profile, AGENT_LOG_DIR_CMD, timeout, strict_host_keys=strict_host_keys
        )
        for result in results.values():
            log_dir = parse_properties(result.stdout.splitlines()).get("logdir", "").strip() or log_dir
    logger.info("Agent log directory: %s", log_dir)
    await pull_directory(
        hosts,
        profile,
        log_dir,
        root / "ambari-agent",
        "ambari-agent",
        timeout,
        strict_host_keys=strict_host_keys,
    )
    return root
