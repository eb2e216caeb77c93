"""Configuration loading: connection profiles and the cluster entry."""

import os
from pathlib import Path
from typing import Any

import tomllib
from pydantic import BaseModel, ConfigDict, field_validator, model_validator


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "fleetctl" / "config.toml"
DEFAULT_COMMAND_TIMEOUT = 60


class ProfileNotFound(Exception):
    """Raised when a connection profile cannot be found by name."""

    pass


class ConnectionProfile(BaseModel):
    """SSH identity used to reach cluster hosts.

    Immutable once loaded; every host of a single operation is reached
    with the same profile.

    Attributes:
        name: Profile name (the key under [profiles] in the config file).
        username: SSH login user.
        key_path: Private key file. Falls back to the SSH agent when unset
            or missing on disk.
        port: SSH port of the target hosts.
        proxy_address: Optional jump host ("host" or "host:port").
        password: Optional password, tried in addition to keys.
        connect_timeout: Seconds allowed for establishing a connection.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    username: str = "root"
    key_path: Path | None = None
    port: int = 22
    proxy_address: str | None = None
    password: str | None = None
    connect_timeout: float = DEFAULT_COMMAND_TIMEOUT

    @field_validator("key_path", mode="before")
    @classmethod
    def expand_key_path(cls, v: Any) -> Any:
        """Expand ~ and env vars in the key path."""
        if v is None or v == "":
            return None
        return Path(os.path.expandvars(str(v))).expanduser()

    @field_validator("proxy_address", mode="before")
    @classmethod
    def normalize_proxy(cls, v: Any) -> Any:
        """Treat empty strings and the literal "none" as no proxy."""
        if v is None:
            return None
        value = str(v).strip()
        if not value or value.lower() == "none":
            return None
        return value

    @property
    def proxy_host(self) -> str | None:
        """Proxy hostname without any port suffix."""
        if self.proxy_address is None:
            return None
        return split_host_port(self.proxy_address, self.port)[0]

    @property
    def proxy_port(self) -> int:
        """Proxy port; defaults to the profile port."""
        if self.proxy_address is None:
            return self.port
        return split_host_port(self.proxy_address, self.port)[1]


class ClusterEntry(BaseModel):
    """Cluster manager (Ambari server) the fleet belongs to.

    The hostname doubles as the control host address used by the
    server target filter.
    """

    name: str
    hostname: str
    port: int = 8080
    protocol: str = "http"
    username: str = "admin"
    password: str = ""
    cluster: str = ""

    @field_validator("protocol", mode="before")
    @classmethod
    def lower_protocol(cls, v: str) -> str:
        return str(v).lower()


class FleetConfig(BaseModel):
    """Top-level fleetctl configuration.

    Attributes:
        profile: Name of the active connection profile.
        command_timeout: Per-host command timeout in seconds.
        strict_host_keys: Verify host keys against ~/.ssh/known_hosts.
        inventory: Path of the inventory JSON document.
        cluster: The cluster manager entry, if configured.
        profiles: Connection profiles keyed by name.
    """

    profile: str | None = None
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    strict_host_keys: bool = False
    inventory: Path | None = None
    cluster: ClusterEntry | None = None
    profiles: dict[str, ConnectionProfile] = {}

    @model_validator(mode="before")
    @classmethod
    def name_profiles(cls, data: Any) -> Any:
        """Copy each [profiles.<name>] table key into the profile's name."""
        if not isinstance(data, dict):
            return data
        profiles = data.get("profiles")
        if isinstance(profiles, dict):
            named = {}
            for name, raw in profiles.items():
                if isinstance(raw, dict):
                    raw = {"name": name, **raw}
                named[name] = raw
            data = {**data, "profiles": named}
        return data

    @field_validator("profile", mode="before")
    @classmethod
    def expand_profile(cls, v: Any) -> Any:
        if v is None:
            return None
        return os.path.expandvars(str(v))

    @field_validator("inventory", mode="before")
    @classmethod
    def expand_inventory(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return Path(os.path.expandvars(str(v))).expanduser()

    @field_validator("command_timeout")
    @classmethod
    def positive_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("command_timeout must be positive")
        return v

    def get_profile(self, name: str | None = None) -> ConnectionProfile:
        """Look up a connection profile by name.

        Args:
            name: Profile name. Defaults to the active profile, or to the
                only profile when exactly one is configured.

        Returns:
            ConnectionProfile: The matching profile.

        Raises:
            ProfileNotFound: If no profile matches.
        """
        wanted = name or self.profile
        if wanted is None and len(self.profiles) == 1:
            return next(iter(self.profiles.values()))
        if wanted is None:
            raise ProfileNotFound(
                "No connection profile is selected. Set 'profile' in the config or pass --profile."
            )
        try:
            return self.profiles[wanted]
        except KeyError:
            raise ProfileNotFound(f"Connection profile '{wanted}' not found.") from None


def split_host_port(address: str, default_port: int) -> tuple[str, int]:
    """Split "host:port" (or "[v6]:port") into its parts.

    Args:
        address: Address with an optional port suffix.
        default_port: Port used when the address carries none.

    Returns:
        tuple[str, int]: Host and port.
    """
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
        return host, int(port) if port else default_port
    # Reason: A bare IPv6 address has several colons and no port.
    if address.count(":") == 1:
        host, port = address.split(":", 1)
        return host, int(port)
    return address, default_port


def load_config(path: Path | None = None) -> FleetConfig:
    """Load fleetctl configuration from a TOML file.

    Reads the given path (or ~/.config/fleetctl/config.toml). If the file
    doesn't exist, returns a FleetConfig with default values.

    Args:
        path: Path to the config file.

    Returns:
        FleetConfig: The loaded and validated configuration.

    Raises:
        pydantic.ValidationError: If the config file contains invalid values.
    """
    config_path = path or DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return FleetConfig()

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    return FleetConfig(**data)
