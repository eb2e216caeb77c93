"""Target resolution: turn a host filter into a concrete set of addresses.

A filter names services, components, explicit hosts and/or the control
host. Services and components are unioned into a candidate name set;
explicit hosts are an AND constraint applied on top of that union.
"""

import logging
from dataclasses import dataclass, field

from fleetctl.inventory import Inventory


logger = logging.getLogger(__name__)


class TargetError(Exception):
    """Raised when a filter cannot be resolved with the given configuration."""

    pass


@dataclass(frozen=True)
class TargetFilter:
    """Declarative host filter.

    Attributes:
        service_names: Services whose hosts are candidates.
        component_names: Components whose hosts are candidates.
        explicit_hosts: Public hostnames the result is restricted to.
        include_control_host: Also target the cluster manager host.
    """

    service_names: frozenset[str] = field(default_factory=frozenset)
    component_names: frozenset[str] = field(default_factory=frozenset)
    explicit_hosts: frozenset[str] = field(default_factory=frozenset)
    include_control_host: bool = False

    def is_empty(self) -> bool:
        """True when the filter selects every known host."""
        return not (
            self.service_names
            or self.component_names
            or self.explicit_hosts
            or self.include_control_host
        )


def _split_csv(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def create_filter(
    services: str | None = None,
    components: str | None = None,
    hosts: str | None = None,
    server: bool = False,
) -> TargetFilter:
    """Build a TargetFilter from comma-separated filter strings.

    Args:
        services: Comma-separated service names ("HDFS,YARN").
        components: Comma-separated component names.
        hosts: Comma-separated public hostnames.
        server: Include the control host.

    Returns:
        TargetFilter: The parsed filter.
    """
    return TargetFilter(
        service_names=_split_csv(services),
        component_names=_split_csv(components),
        explicit_hosts=_split_csv(hosts),
        include_control_host=server,
    )


def resolve_targets(
    target_filter: TargetFilter, inventory: Inventory, control_host: str | None = None
) -> set[str]:
    """Resolve a filter against an inventory snapshot.

    Args:
        target_filter: The filter to apply.
        inventory: Hosts and host components to resolve against.
        control_host: Address of the cluster manager host, used when the
            filter includes the control host.

    Returns:
        set[str]: Deduplicated IP addresses of the matching hosts.

    Raises:
        TargetError: If the control host is requested but none is known.
    """
    names: set[str] = set()
    for service in target_filter.service_names:
        names |= inventory.hosts_for_service(service)
    for component in target_filter.component_names:
        names |= inventory.hosts_for_component(component)

    if target_filter.include_control_host and not control_host:
        raise TargetError(
            "The cluster manager host was requested but no control host is configured. "
            "Add a [cluster] entry with its hostname."
        )
    if target_filter.include_control_host:
        names.add(control_host)

    targets: set[str] = set()
    for agent in inventory.hosts:
        if target_filter.explicit_hosts and agent.public_host_name not in target_filter.explicit_hosts:
            continue
        if names:
            if agent.public_host_name in names or agent.ip in names:
                targets.add(agent.ip)
        else:
            targets.add(agent.ip)

    # Reason: The control host is targeted even when it does not run an
    # agent or is excluded by the host filter; an agent record for it
    # resolves to its IP so the same host never appears twice.
    if target_filter.include_control_host:
        targets.add(_control_address(inventory, control_host))

    logger.debug("Resolved %s to %d targets", target_filter, len(targets))
    return targets


def _control_address(inventory: Inventory, control_host: str) -> str:
    for agent in inventory.hosts:
        if control_host in (agent.public_host_name, agent.ip, agent.host_name):
            return agent.ip
    return control_host
