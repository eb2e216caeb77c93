"""Tests for filter parsing and target resolution."""

import pytest

from fleetctl.inventory import Host, HostComponent, Inventory
from fleetctl.targets import TargetError, TargetFilter, create_filter, resolve_targets


A = "10.0.0.1"
B = "10.0.0.2"
S = "10.0.0.9"


# ---------------------------------------------------------------------------
# create_filter
# ---------------------------------------------------------------------------


def test_create_filter_splits_and_strips() -> None:
    target_filter = create_filter(" HDFS, YARN ,", "NAMENODE", "a.example.com,b.example.com", True)

    assert target_filter.service_names == {"HDFS", "YARN"}
    assert target_filter.component_names == {"NAMENODE"}
    assert target_filter.explicit_hosts == {"a.example.com", "b.example.com"}
    assert target_filter.include_control_host is True


def test_create_filter_empty() -> None:
    target_filter = create_filter(None, "", None)

    assert target_filter == TargetFilter()
    assert target_filter.is_empty()


# ---------------------------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------------------------


def test_service_filter(inventory: Inventory) -> None:
    assert resolve_targets(create_filter(services="X"), inventory, S) == {A}


def test_component_union(inventory: Inventory) -> None:
    assert resolve_targets(create_filter(components="C1,C2"), inventory, S) == {A, B}


def test_explicit_hosts_are_and_filter(inventory: Inventory) -> None:
    """B is not in X's candidates and the host filter excludes A."""
    assert resolve_targets(create_filter(services="X", hosts="b.example.com"), inventory, S) == set()


def test_services_and_components_union(inventory: Inventory) -> None:
    assert resolve_targets(create_filter(services="X", components="C2"), inventory, S) == {A, B}


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "hosts, expected",
    [
        ("a.example.com", {A}),
        ("b.example.com", {B}),
        ("a.example.com,b.example.com", {A, B}),
        ("unknown.example.com", set()),
    ],
)
def test_explicit_hosts_only(inventory: Inventory, hosts: str, expected: set[str]) -> None:
    """Only public hostnames matter when no service/component is named."""
    assert resolve_targets(create_filter(hosts=hosts), inventory, S) == expected


def test_empty_filter_returns_all_agents(inventory: Inventory) -> None:
    assert resolve_targets(TargetFilter(), inventory, S) == {A, B}


def test_service_without_components_is_empty(inventory: Inventory) -> None:
    assert resolve_targets(create_filter(services="NOPE"), inventory, S) == set()


def test_control_host_added_without_agent(inventory: Inventory) -> None:
    assert resolve_targets(create_filter(server=True), inventory, S) == {S}


def test_control_host_added_alongside_service(inventory: Inventory) -> None:
    assert resolve_targets(create_filter(services="Y", server=True), inventory, S) == {B, S}


def test_control_host_with_agent_resolves_to_ip() -> None:
    """A control host registered as an agent by hostname resolves to its IP."""
    inventory = Inventory(
        hosts=[
            Host(public_host_name="s.example.com", ip=S),
            Host(public_host_name="a.example.com", ip=A),
        ]
    )

    assert resolve_targets(create_filter(server=True), inventory, "s.example.com") == {S}


def test_control_host_agent_outside_host_filter_resolves_to_ip() -> None:
    inventory = Inventory(
        hosts=[
            Host(public_host_name="s.example.com", ip=S),
            Host(public_host_name="a.example.com", ip=A),
        ]
    )
    target_filter = create_filter(hosts="a.example.com", server=True)

    assert resolve_targets(target_filter, inventory, "s.example.com") == {S}


@pytest.mark.parametrize("control_host", [None, ""])
def test_control_host_requested_but_unknown(inventory: Inventory, control_host: str | None) -> None:
    """Asking for the control host without one configured is an error, not the whole fleet."""
    with pytest.raises(TargetError, match="control host"):
        resolve_targets(create_filter(server=True), inventory, control_host)


def test_resolution_is_deduplicated() -> None:
    inventory = Inventory(
        hosts=[Host(public_host_name="a.example.com", ip=A)],
        host_components=[
            HostComponent(component_name="C1", service_name="X", host_name="a.example.com"),
            HostComponent(component_name="C3", service_name="X", host_name="a.example.com"),
        ],
    )

    assert resolve_targets(create_filter(services="X", components="C1,C3"), inventory) == {A}


def test_host_component_matched_by_ip() -> None:
    """Host-component records that carry an IP as host name still match."""
    inventory = Inventory(
        hosts=[Host(public_host_name="a.example.com", ip=A)],
        host_components=[HostComponent(component_name="C1", service_name="X", host_name=A)],
    )

    assert resolve_targets(create_filter(components="C1"), inventory) == {A}
