"""fleetctl: target resolution and concurrent SSH execution for cluster hosts."""

__version__ = "0.1.0"
