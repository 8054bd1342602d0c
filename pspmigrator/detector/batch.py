from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pspmigrator.common.errors import PspMigratorError

from .detector import MutationReport, PodMutationDetector, bound_policy_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PodCheckRow:
    name: str
    namespace: Optional[str]
    policy_name: str
    report: Optional[MutationReport] = None
    error: Optional[str] = None

    @property
    def mutated_label(self) -> str:
        if self.error is not None or self.report is None:
            return "error"
        return str(self.report.mutated).lower()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "psp": self.policy_name,
            "mutated": None if self.report is None else self.report.mutated,
        }
        if self.report is not None and self.report.diffs:
            data["diff"] = [diff.to_dict() for diff in self.report.diffs]
        if self.error is not None:
            data["error"] = self.error
        return data


def check_pods(
    detector: PodMutationDetector,
    pods: Sequence[Dict[str, Any]],
    *,
    ignore_containers: Iterable[str] = (),
    jobs: int = 1,
) -> List[PodCheckRow]:
    """Check every pod bound to a PodSecurityPolicy; one pod's failure never stops the batch."""

    ignored = tuple(ignore_containers)
    bound = [pod for pod in pods if bound_policy_name(pod) is not None]

    def check_one(pod: Dict[str, Any]) -> PodCheckRow:
        metadata = pod.get("metadata") or {}
        name = metadata.get("name", "<unnamed>")
        namespace = metadata.get("namespace")
        policy_name = bound_policy_name(pod) or ""
        try:
            report = detector.detect(pod, ignore_containers=ignored)
        except PspMigratorError as exc:
            logger.warning("error occurred checking if pod %s/%s is mutated: %s", namespace, name, exc)
            return PodCheckRow(name, namespace, policy_name, error=str(exc))
        return PodCheckRow(name, namespace, policy_name, report=report)

    if jobs <= 1 or len(bound) <= 1:
        return [check_one(pod) for pod in bound]

    jobs = min(jobs, len(bound))
    with ThreadPoolExecutor(max_workers=jobs) as executor:
        futures = [executor.submit(check_one, pod) for pod in bound]
        return [future.result() for future in futures]


__all__ = ["PodCheckRow", "check_pods"]
