"""Plain-text rendering of mutation reports."""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from pspmigrator.analyzer import PolicyAnalysis
from pspmigrator.detector import MutationReport, PodCheckRow


POD_TABLE_HEADER = ("NAME", "NAMESPACE", "MUTATED", "PSP")
POLICY_TABLE_HEADER = ("NAME", "MUTATING", "FIELDS", "ANNOTATIONS")


def render_table(header: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(title) for title in header]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    border = "+" + "+".join("-" * (width + 2) for width in widths) + "+"

    def line(cells: Sequence[str]) -> str:
        return "| " + " | ".join(cell.ljust(widths[idx]) for idx, cell in enumerate(cells)) + " |"

    lines = [border, line(header), border]
    lines.extend(line(row) for row in rows)
    lines.append(border)
    return "\n".join(lines)


def render_pod_rows(rows: Sequence[PodCheckRow]) -> str:
    return render_table(
        POD_TABLE_HEADER,
        [(row.name, row.namespace or "", row.mutated_label, row.policy_name) for row in rows],
    )


def render_policy_rows(results: Sequence[Tuple[str, Optional[PolicyAnalysis]]]) -> str:
    """Render one row per policy; a missing analysis marks a policy that failed to analyse."""

    rows = []
    for name, analysis in results:
        if analysis is None:
            rows.append((name, "error", "", ""))
            continue
        rows.append(
            (
                name,
                str(analysis.mutating).lower(),
                ",".join(analysis.fields),
                ",".join(analysis.annotations),
            )
        )
    return render_table(POLICY_TABLE_HEADER, rows)


def describe_report(report: MutationReport) -> List[str]:
    lines = [f"Pod {report.pod} is mutated by PSP {report.policy_name}: {str(report.mutated).lower()}, diff:"]
    if not report.diffs:
        lines.append("  (none)")
    lines.extend(f"  {diff}" for diff in report.diffs)
    return lines


def describe_policy(analysis: PolicyAnalysis) -> str:
    fields = ", ".join(analysis.fields) or "none"
    annotations = ", ".join(analysis.annotations) or "none"
    return (
        f"PSP profile {analysis.policy_name} has the following mutating fields: {fields} "
        f"and annotations: {annotations}"
    )


__all__ = [
    "describe_policy",
    "describe_report",
    "render_pod_rows",
    "render_policy_rows",
    "render_table",
]
