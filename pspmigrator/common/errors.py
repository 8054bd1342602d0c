from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    MALFORMED_POLICY = "malformed_policy"
    POLICY_NOT_FOUND = "policy_not_found"


class PspMigratorError(Exception):
    """Base class for every error surfaced by pspmigrator."""

    kind: ErrorKind = ErrorKind.TRANSPORT


class AccessorError(PspMigratorError):
    """Raised when kubectl or the API server fails (auth, network, server error)."""

    kind = ErrorKind.TRANSPORT


class NotFound(AccessorError):
    """Raised when the requested object does not exist in the cluster."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, name: str, namespace: Optional[str] = None) -> None:
        self.resource = resource
        self.name = name
        self.namespace = namespace
        if namespace:
            message = f"{resource} {name} in namespace {namespace} not found"
        else:
            message = f"{resource} {name} not found"
        super().__init__(message)


class MalformedPolicy(PspMigratorError):
    """Raised when a policy declares a strategy without its required sub-fields."""

    kind = ErrorKind.MALFORMED_POLICY

    def __init__(self, policy_name: Optional[str], field: str, reason: str) -> None:
        self.policy_name = policy_name
        self.field = field
        self.reason = reason
        super().__init__(f"PodSecurityPolicy {policy_name or '<unnamed>'} is malformed: {field}: {reason}")


class PolicyNotFound(PspMigratorError):
    """Raised when the policy bound to a pod no longer exists."""

    kind = ErrorKind.POLICY_NOT_FOUND

    def __init__(self, pod: str, namespace: Optional[str], policy_name: str) -> None:
        self.pod = pod
        self.namespace = namespace
        self.policy_name = policy_name
        super().__init__(
            f"PodSecurityPolicy {policy_name} bound to pod {namespace}/{pod} not found"
        )


__all__ = [
    "AccessorError",
    "ErrorKind",
    "MalformedPolicy",
    "NotFound",
    "PolicyNotFound",
    "PspMigratorError",
]
