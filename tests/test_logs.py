"""Tests for log directory discovery and log downloads (logs.py)."""

from datetime import datetime
from pathlib import Path

import pytest

from fleetctl.inventory import Host, HostComponent, Inventory
from fleetctl.logs import (
    COMPONENT_LOG_DIRS,
    create_download_root,
    download_logs,
    get_config_value,
    parse_properties,
    resolve_log_dirs,
    server_log_dir,
)
from fleetctl.targets import TargetError, create_filter


BLUEPRINT = {
    "configurations": [
        {"zookeeper-env": {"properties": {"zk_log_dir": "/var/log/zookeeper"}}},
        {"hadoop-env": {"properties": {"hdfs_log_dir_prefix": "/var/log/hadoop"}}},
    ]
}


@pytest.fixture
def zk_inventory() -> Inventory:
    return Inventory(
        hosts=[
            Host(public_host_name="zk1.example.com", ip="10.0.1.1"),
            Host(public_host_name="zk2.example.com", ip="10.0.1.2"),
        ],
        host_components=[
            HostComponent(component_name="ZOOKEEPER_SERVER", service_name="ZOOKEEPER", host_name="zk1.example.com"),
            HostComponent(component_name="ZOOKEEPER_SERVER", service_name="ZOOKEEPER", host_name="zk2.example.com"),
            HostComponent(component_name="ZOOKEEPER_CLIENT", service_name="ZOOKEEPER", host_name="zk2.example.com"),
        ],
    )


def test_parse_properties():
    props = parse_properties(["ambari.root.dir = /", "no equals here", "ambari.log.dir=${ambari.root.dir}/var/log"])

    assert props == {"ambari.root.dir": " /", "ambari.log.dir": "${ambari.root.dir}/var/log"}


def test_server_log_dir_substitutes_root():
    props = {"ambari.root.dir": "/", "ambari.log.dir": "${ambari.root.dir}/var/log/ambari-server"}

    assert server_log_dir(props) == "/var/log/ambari-server"


def test_server_log_dir_missing():
    assert server_log_dir({"ambari.root.dir": "/"}) is None


def test_get_config_value():
    assert get_config_value(BLUEPRINT, "zookeeper-env", "zk_log_dir") == "/var/log/zookeeper"
    assert get_config_value(BLUEPRINT, "zookeeper-env", "missing") == ""
    assert get_config_value({}, "zookeeper-env", "zk_log_dir") == ""


def test_resolve_log_dirs_by_service():
    log_dirs = resolve_log_dirs(create_filter(services="ZOOKEEPER"), BLUEPRINT)

    assert log_dirs == {"ZOOKEEPER_SERVER": "/var/log/zookeeper", "ZOOKEEPER_CLIENT": "/var/log/zookeeper"}


def test_resolve_log_dirs_by_component():
    log_dirs = resolve_log_dirs(create_filter(components="DATANODE"), BLUEPRINT)

    assert log_dirs == {"DATANODE": "/var/log/hadoop"}


def test_resolve_log_dirs_without_blueprint():
    assert resolve_log_dirs(create_filter(services="ZOOKEEPER"), None) == {}


def test_log_dir_table_entries_are_pairs():
    for components in COMPONENT_LOG_DIRS.values():
        for config_type, config_property in components.values():
            assert config_type and config_property


def test_create_download_root(tmp_path: Path):
    root = create_download_root(tmp_path, "prod", datetime(2024, 3, 5, 14, 7, 9))

    assert root == tmp_path / "download-prod-20240305140709"
    assert root.is_dir()


# ===========================================================================
# download_logs
# ===========================================================================


@pytest.mark.asyncio
async def test_download_agent_logs(fake_ssh, profile, zk_inventory, tmp_path: Path):
    fake_ssh.respond("10.0.1.1", "ambari-agent.ini", stdout="logdir=/data/agent-logs\n")

    root = await download_logs(zk_inventory, create_filter(), profile, tmp_path, "prod", None)

    assert root.name.startswith("download-prod-")
    for host in ("10.0.1.1", "10.0.1.2"):
        assert (host, "cd /data/agent-logs && tar -czf /tmp/ambari-agent.tar.gz *") in fake_ssh.commands
        assert (root / "ambari-agent" / host / "ambari-agent.tar.gz").exists()
    # Only the first host is asked for the log directory.
    probes = [host for host, cmd in fake_ssh.commands if "ambari-agent.ini" in cmd]
    assert probes == ["10.0.1.1"]


@pytest.mark.asyncio
async def test_download_agent_logs_default_dir(fake_ssh, profile, zk_inventory, tmp_path: Path):
    await download_logs(zk_inventory, create_filter(hosts="zk2.example.com"), profile, tmp_path, "prod", None)

    assert ("10.0.1.2", "cd /var/log/ambari-agent && tar -czf /tmp/ambari-agent.tar.gz *") in fake_ssh.commands


@pytest.mark.asyncio
async def test_download_server_logs(fake_ssh, profile, zk_inventory, tmp_path: Path):
    fake_ssh.respond(
        "10.0.9.9",
        "log4j.properties",
        stdout="ambari.root.dir=/\nambari.log.dir=${ambari.root.dir}/var/log/ambari-server-custom\n",
    )

    root = await download_logs(
        zk_inventory, create_filter(server=True), profile, tmp_path, "prod", "10.0.9.9"
    )

    assert ("10.0.9.9", "cd /var/log/ambari-server-custom && tar -czf /tmp/ambari-server.tar.gz *") in fake_ssh.commands
    assert (root / "ambari-server" / "10.0.9.9" / "ambari-server.tar.gz").exists()


@pytest.mark.asyncio
async def test_download_server_logs_without_control_host(fake_ssh, profile, zk_inventory, tmp_path: Path):
    with pytest.raises(TargetError):
        await download_logs(zk_inventory, create_filter(server=True), profile, tmp_path, "prod", None)

    assert fake_ssh.commands == []
    assert list(tmp_path.glob("download-*")) == []


@pytest.mark.asyncio
async def test_download_component_logs(fake_ssh, profile, zk_inventory, tmp_path: Path):
    root = await download_logs(
        zk_inventory,
        create_filter(services="ZOOKEEPER"),
        profile,
        tmp_path,
        "prod",
        None,
        blueprint=BLUEPRINT,
    )

    server_dir = root / "ZOOKEEPER_SERVER"
    assert (server_dir / "10.0.1.1" / "ZOOKEEPER_SERVER.tar.gz").exists()
    assert (server_dir / "10.0.1.2" / "ZOOKEEPER_SERVER.tar.gz").exists()
    client_dir = root / "ZOOKEEPER_CLIENT"
    assert (client_dir / "10.0.1.2" / "ZOOKEEPER_CLIENT.tar.gz").exists()
    assert not (client_dir / "10.0.1.1").exists()


@pytest.mark.asyncio
async def test_download_component_logs_respects_host_filter(fake_ssh, profile, zk_inventory, tmp_path: Path):
    root = await download_logs(
        zk_inventory,
        create_filter(components="ZOOKEEPER_SERVER", hosts="zk2.example.com"),
        profile,
        tmp_path,
        "prod",
        None,
        blueprint=BLUEPRINT,
    )

    assert not (root / "ZOOKEEPER_SERVER" / "10.0.1.1").exists()
    assert (root / "ZOOKEEPER_SERVER" / "10.0.1.2" / "ZOOKEEPER_SERVER.tar.gz").exists()
