"""Exception types raised by the relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigurationError(RelayError):
    """Required configuration is missing or inconsistent."""


class InvalidEventError(RelayError):
    """A change event failed validation or could not be routed."""


class ReplicationError(RelayError):
    """A replication object could not be provisioned."""
