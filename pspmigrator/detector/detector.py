from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import jsonpatch

from pspmigrator.analyzer.analyzer import PolicyAnalysis, analyze
from pspmigrator.common.errors import NotFound, PolicyNotFound
from pspmigrator.common.fields import (
    ANNOTATION_SCOPE,
    APPARMOR_CONTAINER_ANNOTATION_PREFIX,
    CONTAINER_SECTIONS,
    FIELD_SPECS,
    INHERITED_FROM_POD,
    POD_SCOPE,
    PSP_ANNOTATION,
    SECCOMP_POD_ANNOTATION,
    SET,
    UNSET,
    FieldSpec,
    is_container_field,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldDiff:
    path: str
    name: str
    policy_field: str
    expected: Any
    actual: Any
    container: Optional[str] = None
    # JSON pointer parts of the field, used to build the admission patch.
    pointer: Tuple[str, ...] = field(default=(), compare=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path,
            "field": self.name,
            "policy_field": self.policy_field,
            "expected": None if self.expected is UNSET else self.expected,
            "actual": None if self.actual is UNSET else self.actual,
        }
        if self.container is not None:
            data["container"] = self.container
        return data

    def __str__(self) -> str:
        return f"{self.path}: expected {_format_value(self.expected)}, actual {_format_value(self.actual)}"


@dataclass(frozen=True)
class MutationReport:
    pod: str
    namespace: Optional[str]
    policy_name: Optional[str]
    mutated: bool
    diffs: Tuple[FieldDiff, ...] = ()
    analysis: Optional[PolicyAnalysis] = None
    patch: Tuple[Dict[str, Any], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "pod": self.pod,
            "namespace": self.namespace,
            "psp": self.policy_name,
            "mutated": self.mutated,
            "diff": [diff.to_dict() for diff in self.diffs],
        }
        if self.analysis is not None:
            data["analysis"] = self.analysis.to_dict()
        if self.patch:
            data["patch"] = list(self.patch)
        return data


class PodMutationDetector:
    """Decide whether the PodSecurityPolicy bound to a pod would change it on admission.

    ``accessor`` needs a ``get_policy(name)`` method that returns the policy JSON and
    raises :class:`NotFound` or :class:`AccessorError`; see
    :class:`pspmigrator.cluster.KubectlAccessor`.
    """

    def __init__(self, accessor: Any) -> None:
        self.accessor = accessor

    def detect(
        self,
        pod: Dict[str, Any],
        ignore_containers: Iterable[str] = (),
        ignore_fields: Iterable[str] = (),
    ) -> MutationReport:
        name, namespace = _pod_identity(pod)
        policy_name = bound_policy_name(pod)
        if policy_name is None:
            logger.debug("Pod %s/%s has no %s annotation", namespace, name, PSP_ANNOTATION)
            return MutationReport(pod=name, namespace=namespace, policy_name=None, mutated=False)

        try:
            policy = self.accessor.get_policy(policy_name)
        except NotFound as exc:
            raise PolicyNotFound(name, namespace, policy_name) from exc

        analysis = analyze(policy)
        if not analysis.mutating:
            return MutationReport(
                pod=name,
                namespace=namespace,
                policy_name=policy_name,
                mutated=False,
                analysis=analysis,
            )

        reconstructed = apply_policy_defaults(pod, analysis)
        diffs = diff_pods(
            reconstructed,
            pod,
            analysis,
            ignore_containers=ignore_containers,
            ignore_fields=ignore_fields,
        )
        logger.debug("Pod %s/%s against PSP %s: %d diff(s)", namespace, name, policy_name, len(diffs))
        patch = admission_patch(pod, diffs)
        return MutationReport(
            pod=name,
            namespace=namespace,
            policy_name=policy_name,
            mutated=bool(diffs),
            diffs=tuple(diffs),
            analysis=analysis,
            patch=tuple(patch.patch),
        )


def detect(
    pod: Dict[str, Any],
    accessor: Any,
    ignore_containers: Iterable[str] = (),
) -> MutationReport:
    return PodMutationDetector(accessor).detect(pod, ignore_containers=ignore_containers)


def bound_policy_name(pod: Dict[str, Any]) -> Optional[str]:
    annotations = _annotations(pod)
    value = annotations.get(PSP_ANNOTATION)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def apply_policy_defaults(pod: Dict[str, Any], analysis: PolicyAnalysis) -> Dict[str, Any]:
    """Return a copy of ``pod`` with every policy default filled in where the pod leaves it unset.

    Mirrors the admission plugin: pod-level fields are defaulted once, container fields
    only when neither the container nor (for run-as fields) the pod sets them, default
    capabilities are added unless the container already adds or drops them, and
    required drops are appended.
    """

    defaults = analysis.defaults
    result = copy.deepcopy(pod)
    spec = _child_mapping(result, "spec")
    pod_context = spec.get("securityContext") if isinstance(spec.get("securityContext"), dict) else {}

    for field_name in ("seLinuxOptions", "fsGroup", "supplementalGroups"):
        current = pod_context.get(field_name)
        # An empty group list counts as unset.
        if field_name in defaults and (current is None or current == []):
            pod_context[field_name] = copy.deepcopy(defaults[field_name])
            spec["securityContext"] = pod_context

    annotations = _child_mapping(_child_mapping(result, "metadata"), "annotations")
    if "seccompProfile" in defaults and not _declares_seccomp(result):
        annotations[SECCOMP_POD_ANNOTATION] = defaults["seccompProfile"]

    for container in _iter_containers(spec):
        context = container.get("securityContext")
        if not isinstance(context, dict):
            context = {}

        for field_name in ("runAsUser", "runAsGroup"):
            if field_name in defaults and _effective(context, pod_context, field_name) is None:
                context[field_name] = defaults[field_name]
        if (
            defaults.get("runAsNonRoot")
            and _effective(context, pod_context, "runAsNonRoot") is None
            and _effective(context, pod_context, "runAsUser") is None
        ):
            context["runAsNonRoot"] = True

        if "capabilities.add" in defaults or "capabilities.drop" in defaults:
            capabilities = context.get("capabilities")
            capabilities = dict(capabilities) if isinstance(capabilities, dict) else {}
            add = list(capabilities.get("add") or [])
            drop = list(capabilities.get("drop") or [])
            for cap in defaults.get("capabilities.add", []):
                if cap not in add and cap not in drop:
                    add.append(cap)
            for cap in defaults.get("capabilities.drop", []):
                if cap not in drop:
                    drop.append(cap)
            if add:
                capabilities["add"] = add
            if drop:
                capabilities["drop"] = drop
            if capabilities:
                context["capabilities"] = capabilities

        for field_name in ("readOnlyRootFilesystem", "allowPrivilegeEscalation"):
            if field_name in defaults and context.get(field_name) is None:
                context[field_name] = defaults[field_name]

        if context:
            container["securityContext"] = context

        if "appArmorProfile" in defaults and isinstance(container.get("name"), str):
            annotations.setdefault(
                APPARMOR_CONTAINER_ANNOTATION_PREFIX + container["name"], defaults["appArmorProfile"]
            )

    return result


def diff_pods(
    expected_pod: Dict[str, Any],
    live_pod: Dict[str, Any],
    analysis: PolicyAnalysis,
    *,
    ignore_containers: Iterable[str] = (),
    ignore_fields: Iterable[str] = (),
) -> List[FieldDiff]:
    """Compare the reconstructed pod against the live one over the mutating fields only."""

    skipped_containers = {name for name in ignore_containers if name}
    skipped_fields = {name for name in ignore_fields if name}
    specs = [
        spec
        for spec in FIELD_SPECS
        if spec.name in analysis.defaults and spec.name not in skipped_fields
    ]
    diffs: List[FieldDiff] = []

    for spec in specs:
        if is_container_field(spec):
            continue
        if spec.scope == POD_SCOPE:
            pointer = ("spec",) + spec.path
            path = ".".join(pointer)
            expected = _lookup(expected_pod.get("spec"), spec.path)
            actual = _lookup(live_pod.get("spec"), spec.path)
        else:
            key = spec.path[0]
            pointer = ("metadata", "annotations", key)
            path = f"metadata.annotations[{key}]"
            expected = _annotations(expected_pod).get(key, UNSET)
            actual = _annotations(live_pod).get(key, UNSET)
        if _differs(spec, expected, actual):
            diffs.append(
                FieldDiff(path, spec.name, _policy_field(spec, analysis), expected, actual, pointer=pointer)
            )

    expected_containers = {
        (section, index): container
        for section, index, _, container in _iter_named_containers(expected_pod.get("spec"))
    }
    for section, index, name, live_container in _iter_named_containers(live_pod.get("spec")):
        if name is not None and name in skipped_containers:
            continue
        expected_container = expected_containers.get((section, index), {})
        for spec in specs:
            if not is_container_field(spec):
                continue
            if spec.scope == ANNOTATION_SCOPE:
                # Per-container annotations are keyed by name.
                if name is None:
                    continue
                key = spec.path[0] + name
                pointer = ("metadata", "annotations", key)
                path = f"metadata.annotations[{key}]"
                expected = _annotations(expected_pod).get(key, UNSET)
                actual = _annotations(live_pod).get(key, UNSET)
            else:
                pointer = ("spec", section, str(index)) + spec.path
                label = name if name is not None else f"#{index}"
                path = f"spec.{section}[{label}]." + ".".join(spec.path)
                expected = _lookup(expected_container, spec.path)
                actual = _lookup(live_container, spec.path)
            if _differs(spec, expected, actual):
                diffs.append(
                    FieldDiff(
                        path,
                        spec.name,
                        _policy_field(spec, analysis),
                        expected,
                        actual,
                        container=name,
                        pointer=pointer,
                    )
                )

    return diffs


def admission_patch(live_pod: Dict[str, Any], diffs: Sequence[FieldDiff]) -> jsonpatch.JsonPatch:
    """Build the RFC 6902 patch that admission would apply to ``live_pod`` for these diffs."""

    target = copy.deepcopy(live_pod)
    for diff in diffs:
        _assign(target, diff.pointer, copy.deepcopy(diff.expected))
    return jsonpatch.make_patch(live_pod, target)


def _assign(root: Dict[str, Any], pointer: Sequence[str], value: Any) -> None:
    current: Any = root
    for part in pointer[:-1]:
        if isinstance(current, list):
            current = current[int(part)]
            continue
        child = current.get(part)
        if not isinstance(child, (dict, list)):
            child = {}
            current[part] = child
        current = child
    current[pointer[-1]] = value


def _differs(spec: FieldSpec, expected: Any, actual: Any) -> bool:
    if spec.rule == SET:
        return _as_set(expected) != _as_set(actual)
    if expected is UNSET or actual is UNSET:
        return expected is not actual
    return expected != actual


def _as_set(value: Any) -> frozenset:
    if value is UNSET or value is None:
        return frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(json.dumps(item, sort_keys=True) for item in value)
    return frozenset([json.dumps(value, sort_keys=True)])


def _policy_field(spec: FieldSpec, analysis: PolicyAnalysis) -> str:
    for name in spec.policy_fields:
        if name in analysis.fields or name in analysis.annotations:
            return name
    return spec.policy_fields[0]


def _lookup(root: Any, path: Sequence[str]) -> Any:
    current = root
    for key in path:
        if not isinstance(current, dict):
            return UNSET
        current = current.get(key)
        if current is None:
            return UNSET
    return current


def _effective(context: Dict[str, Any], pod_context: Dict[str, Any], field_name: str) -> Any:
    value = context.get(field_name)
    if value is None and field_name in INHERITED_FROM_POD:
        value = pod_context.get(field_name)
    return value


def _declares_seccomp(pod: Dict[str, Any]) -> bool:
    annotations = _annotations(pod)
    if SECCOMP_POD_ANNOTATION in annotations:
        return True
    spec = pod.get("spec") if isinstance(pod.get("spec"), dict) else {}
    context = spec.get("securityContext")
    return isinstance(context, dict) and context.get("seccompProfile") is not None


def _child_mapping(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    child = parent.get(key)
    if not isinstance(child, dict):
        child = {}
        parent[key] = child
    return child


def _annotations(pod: Any) -> Dict[str, Any]:
    metadata = pod.get("metadata") if isinstance(pod, dict) else None
    annotations = metadata.get("annotations") if isinstance(metadata, dict) else None
    return annotations if isinstance(annotations, dict) else {}


def _pod_identity(pod: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    metadata = pod.get("metadata") if isinstance(pod.get("metadata"), dict) else {}
    name = metadata.get("name") if isinstance(metadata.get("name"), str) else "<unnamed>"
    namespace = metadata.get("namespace") if isinstance(metadata.get("namespace"), str) else None
    return name, namespace


def _iter_containers(spec: Any) -> Iterable[Dict[str, Any]]:
    for _, _, _, container in _iter_named_containers(spec):
        yield container


def _iter_named_containers(spec: Any) -> Iterable[Tuple[str, int, Optional[str], Dict[str, Any]]]:
    if not isinstance(spec, dict):
        return
    for section in CONTAINER_SECTIONS:
        containers = spec.get(section)
        if not isinstance(containers, list):
            continue
        for index, container in enumerate(containers):
            if not isinstance(container, dict):
                continue
            name = container.get("name")
            yield section, index, name if isinstance(name, str) and name else None, container


def _format_value(value: Any) -> str:
    if value is UNSET:
        return repr(UNSET)
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


__all__ = [
    "FieldDiff",
    "MutationReport",
    "PodMutationDetector",
    "admission_patch",
    "apply_policy_defaults",
    "bound_policy_name",
    "detect",
    "diff_pods",
]
