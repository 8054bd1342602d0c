"""Closed table of the pod fields a PodSecurityPolicy can default on admission."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


POD_SCOPE = "pod"
CONTAINER_SCOPE = "container"
ANNOTATION_SCOPE = "annotation"

EXACT = "exact"
SET = "set"
PRESENCE = "presence"

PSP_ANNOTATION = "kubernetes.io/psp"

SECCOMP_DEFAULT_ANNOTATION = "seccomp.security.alpha.kubernetes.io/defaultProfileName"
SECCOMP_POD_ANNOTATION = "seccomp.security.alpha.kubernetes.io/pod"
APPARMOR_DEFAULT_ANNOTATION = "apparmor.security.beta.kubernetes.io/defaultProfileName"
APPARMOR_CONTAINER_ANNOTATION_PREFIX = "container.apparmor.security.beta.kubernetes.io/"

CONTAINER_SECTIONS = ("initContainers", "containers")


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<unset>"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


@dataclass(frozen=True)
class FieldSpec:
    name: str
    scope: str
    rule: str
    path: Tuple[str, ...]
    policy_fields: Tuple[str, ...]


FIELD_SPECS: Tuple[FieldSpec, ...] = (
    # Pod-level security context.
    FieldSpec("seLinuxOptions", POD_SCOPE, EXACT, ("securityContext", "seLinuxOptions"), ("seLinux",)),
    FieldSpec("fsGroup", POD_SCOPE, EXACT, ("securityContext", "fsGroup"), ("fsGroup",)),
    FieldSpec(
        "supplementalGroups",
        POD_SCOPE,
        SET,
        ("securityContext", "supplementalGroups"),
        ("supplementalGroups",),
    ),
    FieldSpec(
        "seccompProfile",
        ANNOTATION_SCOPE,
        PRESENCE,
        (SECCOMP_POD_ANNOTATION,),
        (SECCOMP_DEFAULT_ANNOTATION,),
    ),
    # Container-level security context; values fall back to the pod level.
    FieldSpec("runAsUser", CONTAINER_SCOPE, EXACT, ("securityContext", "runAsUser"), ("runAsUser",)),
    FieldSpec("runAsNonRoot", CONTAINER_SCOPE, EXACT, ("securityContext", "runAsNonRoot"), ("runAsUser",)),
    FieldSpec("runAsGroup", CONTAINER_SCOPE, EXACT, ("securityContext", "runAsGroup"), ("runAsGroup",)),
    FieldSpec(
        "capabilities.add",
        CONTAINER_SCOPE,
        SET,
        ("securityContext", "capabilities", "add"),
        ("defaultAddCapabilities",),
    ),
    FieldSpec(
        "capabilities.drop",
        CONTAINER_SCOPE,
        SET,
        ("securityContext", "capabilities", "drop"),
        ("requiredDropCapabilities",),
    ),
    FieldSpec(
        "readOnlyRootFilesystem",
        CONTAINER_SCOPE,
        EXACT,
        ("securityContext", "readOnlyRootFilesystem"),
        ("readOnlyRootFilesystem",),
    ),
    FieldSpec(
        "allowPrivilegeEscalation",
        CONTAINER_SCOPE,
        EXACT,
        ("securityContext", "allowPrivilegeEscalation"),
        ("defaultAllowPrivilegeEscalation", "allowPrivilegeEscalation"),
    ),
    FieldSpec(
        "appArmorProfile",
        ANNOTATION_SCOPE,
        PRESENCE,
        (APPARMOR_CONTAINER_ANNOTATION_PREFIX,),
        (APPARMOR_DEFAULT_ANNOTATION,),
    ),
)

# Pod-level fields a container security context falls back to.
INHERITED_FROM_POD = frozenset({"runAsUser", "runAsNonRoot", "runAsGroup"})


def is_container_field(spec: FieldSpec) -> bool:
    if spec.scope == CONTAINER_SCOPE:
        return True
    return spec.scope == ANNOTATION_SCOPE and spec.path[0].endswith("/")


__all__ = [
    "ANNOTATION_SCOPE",
    "APPARMOR_CONTAINER_ANNOTATION_PREFIX",
    "APPARMOR_DEFAULT_ANNOTATION",
    "CONTAINER_SCOPE",
    "CONTAINER_SECTIONS",
    "EXACT",
    "FIELD_SPECS",
    "FieldSpec",
    "INHERITED_FROM_POD",
    "POD_SCOPE",
    "PRESENCE",
    "PSP_ANNOTATION",
    "SECCOMP_DEFAULT_ANNOTATION",
    "SECCOMP_POD_ANNOTATION",
    "SET",
    "UNSET",
    "is_container_field",
]
