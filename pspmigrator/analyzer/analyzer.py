from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pspmigrator.common.errors import MalformedPolicy
from pspmigrator.common.fields import APPARMOR_DEFAULT_ANNOTATION, SECCOMP_DEFAULT_ANNOTATION


RUN_AS_ANY = "RunAsAny"
MUST_RUN_AS = "MustRunAs"
MAY_RUN_AS = "MayRunAs"
MUST_RUN_AS_NON_ROOT = "MustRunAsNonRoot"

_ALLOWED_RULES = {
    "runAsUser": {MUST_RUN_AS, MUST_RUN_AS_NON_ROOT, RUN_AS_ANY},
    "runAsGroup": {MUST_RUN_AS, MAY_RUN_AS, RUN_AS_ANY},
    "seLinux": {MUST_RUN_AS, RUN_AS_ANY},
    "fsGroup": {MUST_RUN_AS, MAY_RUN_AS, RUN_AS_ANY},
    "supplementalGroups": {MUST_RUN_AS, MAY_RUN_AS, RUN_AS_ANY},
}


@dataclass(frozen=True)
class PolicyAnalysis:
    policy_name: Optional[str]
    mutating: bool
    fields: Tuple[str, ...]
    annotations: Tuple[str, ...]
    # Default injected per pod field name (see pspmigrator.common.fields).
    defaults: Dict[str, Any] = field(default_factory=dict, compare=True, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy": self.policy_name,
            "mutating": self.mutating,
            "fields": list(self.fields),
            "annotations": list(self.annotations),
        }


def analyze(policy: Dict[str, Any]) -> PolicyAnalysis:
    """Work out which PodSecurityPolicy fields and annotations default pod values on admission.

    A field is mutating when its strategy supplies a deterministic value for a pod that
    leaves the field unset. Strategies that only validate (``RunAsAny``, ``MayRunAs``,
    host namespace flags, volume allow-lists) never are.
    """

    name = _policy_name(policy)
    spec = policy.get("spec") if isinstance(policy, dict) else None
    if not isinstance(spec, dict):
        raise MalformedPolicy(name, "spec", "policy has no spec")

    fields: List[str] = []
    annotations: List[str] = []
    defaults: Dict[str, Any] = {}

    add_caps = _capability_list(name, spec, "defaultAddCapabilities")
    if add_caps:
        fields.append("defaultAddCapabilities")
        defaults["capabilities.add"] = add_caps

    drop_caps = _capability_list(name, spec, "requiredDropCapabilities")
    if drop_caps:
        fields.append("requiredDropCapabilities")
        defaults["capabilities.drop"] = drop_caps

    se_linux = _strategy(name, spec, "seLinux")
    if se_linux is not None and se_linux["rule"] == MUST_RUN_AS:
        options = se_linux.get("seLinuxOptions")
        if not isinstance(options, dict) or not options:
            raise MalformedPolicy(name, "seLinux", "MustRunAs requires seLinuxOptions")
        fields.append("seLinux")
        defaults["seLinuxOptions"] = dict(options)

    run_as_user = _strategy(name, spec, "runAsUser")
    if run_as_user is not None:
        if run_as_user["rule"] == MUST_RUN_AS:
            fields.append("runAsUser")
            defaults["runAsUser"] = _first_min(name, "runAsUser", run_as_user)
        elif run_as_user["rule"] == MUST_RUN_AS_NON_ROOT:
            fields.append("runAsUser")
            defaults["runAsNonRoot"] = True

    for key in ("runAsGroup", "supplementalGroups", "fsGroup"):
        group_strategy = _strategy(name, spec, key)
        if group_strategy is None or group_strategy["rule"] == RUN_AS_ANY:
            continue
        # MayRunAs only validates, but its ranges must still be well formed.
        low = _first_min(name, key, group_strategy)
        if group_strategy["rule"] == MUST_RUN_AS:
            fields.append(key)
            defaults[key] = [low] if key == "supplementalGroups" else low

    if _flag(name, spec, "readOnlyRootFilesystem") is True:
        fields.append("readOnlyRootFilesystem")
        defaults["readOnlyRootFilesystem"] = True

    default_escalation = _flag(name, spec, "defaultAllowPrivilegeEscalation")
    if default_escalation is not None:
        fields.append("defaultAllowPrivilegeEscalation")
        defaults["allowPrivilegeEscalation"] = default_escalation
    elif _flag(name, spec, "allowPrivilegeEscalation") is False:
        fields.append("allowPrivilegeEscalation")
        defaults["allowPrivilegeEscalation"] = False

    metadata = policy.get("metadata") if isinstance(policy.get("metadata"), dict) else {}
    policy_annotations = metadata.get("annotations") if isinstance(metadata.get("annotations"), dict) else {}
    for key, default_name in (
        (SECCOMP_DEFAULT_ANNOTATION, "seccompProfile"),
        (APPARMOR_DEFAULT_ANNOTATION, "appArmorProfile"),
    ):
        value = policy_annotations.get(key)
        if isinstance(value, str) and value.strip():
            annotations.append(key)
            defaults[default_name] = value.strip()

    return PolicyAnalysis(
        policy_name=name,
        mutating=bool(fields or annotations),
        fields=tuple(sorted(fields)),
        annotations=tuple(sorted(annotations)),
        defaults=defaults,
    )


def _policy_name(policy: Any) -> Optional[str]:
    if not isinstance(policy, dict):
        return None
    metadata = policy.get("metadata")
    name = metadata.get("name") if isinstance(metadata, dict) else None
    return name if isinstance(name, str) else None


def _strategy(name: Optional[str], spec: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    # Absent strategies govern nothing; present ones must name a known rule.
    strategy = spec.get(key)
    if strategy is None:
        return None
    if not isinstance(strategy, dict):
        raise MalformedPolicy(name, key, "strategy must be an object")
    rule = strategy.get("rule")
    if not isinstance(rule, str) or not rule:
        raise MalformedPolicy(name, key, "strategy has no rule")
    if rule not in _ALLOWED_RULES[key]:
        raise MalformedPolicy(name, key, f"unknown rule {rule!r}")
    return strategy


def _first_min(name: Optional[str], key: str, strategy: Dict[str, Any]) -> int:
    ranges = _ranges(name, key, strategy.get("ranges"))
    if not ranges:
        raise MalformedPolicy(name, key, f"{strategy['rule']} requires at least one range")
    return ranges[0][0]


def _ranges(name: Optional[str], key: str, raw: Any) -> List[Tuple[int, int]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise MalformedPolicy(name, key, "ranges must be a list")
    parsed: List[Tuple[int, int]] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise MalformedPolicy(name, key, "range entries must be objects")
        low, high = entry.get("min"), entry.get("max")
        if not _is_int(low) or not _is_int(high):
            raise MalformedPolicy(name, key, "range is missing min or max")
        if low > high:
            raise MalformedPolicy(name, key, f"range min {low} exceeds max {high}")
        parsed.append((low, high))
    return parsed


def _capability_list(name: Optional[str], spec: Dict[str, Any], key: str) -> List[str]:
    raw = spec.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(cap, str) for cap in raw):
        raise MalformedPolicy(name, key, "must be a list of capability names")
    return [cap for cap in raw if cap]


def _flag(name: Optional[str], spec: Dict[str, Any], key: str) -> Optional[bool]:
    value = spec.get(key)
    if value is None or isinstance(value, bool):
        return value
    raise MalformedPolicy(name, key, "must be a boolean")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def mutating_field_names(analyses: Sequence[PolicyAnalysis]) -> List[str]:
    """Union of mutating fields across several policies, for cluster-wide summaries."""

    names = set()
    for analysis in analyses:
        names.update(analysis.fields)
    return sorted(names)


__all__ = ["PolicyAnalysis", "analyze", "mutating_field_names"]
