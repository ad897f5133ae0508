"""
Topology guardrail errors.

Raised while the construct tree is being built, before anything is
synthesized. None of them are retried: each one means the topology
definition itself is wrong.
"""

from typing import Optional


class TopologyError(ValueError):
    """Base class for topology guardrail violations."""

    def __init__(self, resource: str, constraint: str, detail: Optional[str] = None) -> None:
        self.resource = resource
        self.constraint = constraint
        self.detail = detail
        message = f"{resource}: {constraint}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ConfigurationError(TopologyError):
    """Invalid static input: bad CIDR, too few zones, unencrypted storage..."""


class PlacementError(TopologyError):
    """Resource assigned to the wrong subnet tier."""


class CredentialConflictError(TopologyError):
    """Two credential-distribution paths configured for the same cluster."""


class ScopeViolationError(TopologyError):
    """IAM grant broader than the single resource it is meant for."""
