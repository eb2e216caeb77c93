"""Typed host inventory: agents and their host-component assignments.

The inventory is a snapshot taken from the cluster manager. Two JSON shapes
are accepted:

* the flat document written by fleetctl itself::

    {"hosts": [{"public_host_name": ..., "ip": ..., "host_state": ...}],
     "host_components": [{"component_name": ..., "service_name": ...,
                          "host_name": ..., "state": ...}]}

* raw Ambari REST responses, nested under their resource keys::

    {"hosts": {"items": [{"Hosts": {...}}]},
     "host_components": {"items": [{"HostRoles": {...}}]}}
"""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError


logger = logging.getLogger(__name__)


class InventoryError(Exception):
    """Raised when an inventory document cannot be read or decoded."""

    pass


class Host(BaseModel):
    """A registered agent host.

    Attributes:
        public_host_name: Public hostname, matched by explicit host filters.
        ip: Address used to reach the host over SSH.
        host_name: Internal hostname as known by the cluster manager.
        host_state: Agent state (HEALTHY, UNHEALTHY, ...).
    """

    public_host_name: str
    ip: str
    host_name: str = ""
    host_state: str = "UNKNOWN"


class HostComponent(BaseModel):
    """A component installed on a host."""

    component_name: str
    service_name: str
    host_name: str
    state: str = "UNKNOWN"


class Inventory(BaseModel):
    """Snapshot of agent hosts and host-component records."""

    hosts: list[Host] = []
    host_components: list[HostComponent] = []

    def hosts_for_service(self, service: str) -> set[str]:
        """Host names carrying any component of ``service``."""
        return {hc.host_name for hc in self.host_components if hc.service_name == service}

    def hosts_for_component(self, component: str) -> set[str]:
        """Host names carrying ``component``."""
        return {hc.host_name for hc in self.host_components if hc.component_name == component}

    def components_for_service(self, service: str) -> set[str]:
        """Component names installed for ``service`` anywhere in the cluster."""
        return {hc.component_name for hc in self.host_components if hc.service_name == service}

    def addresses(self) -> set[str]:
        """IP addresses of every agent."""
        return {host.ip for host in self.hosts}

    @classmethod
    def from_ambari(
        cls, hosts_response: dict[str, Any], host_components_response: dict[str, Any] | None = None
    ) -> "Inventory":
        """Build an inventory from Ambari REST API responses.

        Args:
            hosts_response: Body of ``GET hosts?fields=Hosts/...``.
            host_components_response: Body of ``GET host_components?fields=HostRoles/...``.

        Returns:
            Inventory: The typed snapshot.
        """
        hosts = [
            Host.model_validate(item["Hosts"])
            for item in hosts_response.get("items", [])
            if "Hosts" in item
        ]
        host_components = [
            HostComponent.model_validate(item["HostRoles"])
            for item in (host_components_response or {}).get("items", [])
            if "HostRoles" in item
        ]
        return cls(hosts=hosts, host_components=host_components)


def _is_ambari_shape(data: dict[str, Any]) -> bool:
    return any(isinstance(data.get(key), dict) for key in ("hosts", "host_components"))


def load_inventory(path: Path) -> Inventory:
    """Load an inventory snapshot from a JSON file.

    Args:
        path: Path to the inventory document.

    Returns:
        Inventory: The decoded inventory.

    Raises:
        InventoryError: If the file is missing, is not JSON, or does not
            match either accepted schema.
    """
    if not path.exists():
        raise InventoryError(f"Inventory file {path} does not exist.")

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise InventoryError(f"{path}:{exc.lineno}:{exc.colno} {exc.msg}") from None

    if not isinstance(data, dict):
        raise InventoryError(f"{path}: inventory must be a JSON object")

    try:
        if _is_ambari_shape(data):
            inventory = Inventory.from_ambari(data.get("hosts") or {}, data.get("host_components"))
        else:
            inventory = Inventory.model_validate(data)
    except (ValidationError, KeyError, TypeError, AttributeError) as exc:
        raise InventoryError(f"{path}: {exc}") from None

    logger.debug(
        "Loaded inventory %s: %d hosts, %d host components",
        path,
        len(inventory.hosts),
        len(inventory.host_components),
    )
    return inventory
