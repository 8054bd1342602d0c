"""Pod mutation detection against the bound PodSecurityPolicy."""

from .batch import PodCheckRow, check_pods
from .detector import (
    FieldDiff,
    MutationReport,
    PodMutationDetector,
    apply_policy_defaults,
    bound_policy_name,
    detect,
    diff_pods,
)

__all__ = [
    "FieldDiff",
    "MutationReport",
    "PodCheckRow",
    "PodMutationDetector",
    "apply_policy_defaults",
    "bound_policy_name",
    "check_pods",
    "detect",
    "diff_pods",
]
