from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, NoReturn, Optional, Tuple

import typer

from pspmigrator.analyzer import PolicyAnalysis, analyze, mutating_field_names
from pspmigrator.cluster import KubectlAccessor
from pspmigrator.common.errors import AccessorError, MalformedPolicy, NotFound, PspMigratorError
from pspmigrator.config import Settings, load_settings, split_csv
from pspmigrator.detector import PodMutationDetector, check_pods
from pspmigrator.render import (
    describe_policy,
    describe_report,
    render_pod_rows,
    render_policy_rows,
)

logger = logging.getLogger(__name__)

app = typer.Typer(help="pspmigrator is a tool to help migrate from PSP to PSA.")
mutating_app = typer.Typer(help="Check if pods or PSP objects are mutating.")
app.add_typer(mutating_app, name="mutating")

_OUTPUT_FORMATS = ("text", "json")
_POD_OUTPUT_FORMATS = _OUTPUT_FORMATS + ("patch",)


@dataclass
class _State:
    settings: Settings
    accessor: Any


def build_accessor(settings: Settings) -> KubectlAccessor:
    return KubectlAccessor(settings)


@app.callback()
def main(
    ctx: typer.Context,
    kubeconfig: Optional[Path] = typer.Option(
        None,
        "--kubeconfig",
        "-k",
        help="Path to the kubeconfig file (kubectl's own default when omitted).",
    ),
    context: Optional[str] = typer.Option(
        None,
        "--context",
        envvar="PSPMIGRATOR_CONTEXT",
        help="Kubeconfig context to use.",
    ),
    kubectl_cmd: Optional[str] = typer.Option(
        None,
        "--kubectl",
        envvar="PSPMIGRATOR_KUBECTL",
        help="Command used to invoke kubectl.",
    ),
    request_timeout: Optional[str] = typer.Option(
        None,
        "--request-timeout",
        help="Timeout for each API request, passed to kubectl (e.g. 30s).",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        help="YAML file with default settings.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging.",
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = load_settings(
        config,
        kubectl_cmd=kubectl_cmd,
        kubeconfig=kubeconfig,
        context=context,
        request_timeout=request_timeout,
    )
    ctx.obj = _State(settings=settings, accessor=build_accessor(settings))


@mutating_app.command("pod")
def pod(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the pod."),
    namespace: str = typer.Option(
        ...,
        "--namespace",
        "-n",
        help="K8s namespace (required).",
    ),
    containers_to_ignore: str = typer.Option(
        "",
        "--containersToIgnore",
        "-c",
        help="Comma-separated list of containers to ignore in the live pod spec at comparison time.",
    ),
    fields_to_ignore: str = typer.Option(
        "",
        "--fieldsToIgnore",
        help="Comma-separated list of fields (e.g. runAsUser,capabilities.drop) to leave out of the comparison.",
    ),
    output: str = typer.Option(
        "text",
        "--output",
        "-o",
        help="Output format: text, json, or patch (the JSON patch admission would apply).",
    ),
) -> None:
    """Check if a pod is being mutated by a PSP policy."""

    _check_output(output, _POD_OUTPUT_FORMATS)
    state = _state(ctx)
    try:
        pod_obj = state.accessor.get_pod(namespace, name)
    except NotFound:
        _fail(f"Pod {name} in namespace {namespace} not found")
    except AccessorError as exc:
        _fail(f"Error getting pod {name} in namespace {namespace}: {exc}")

    ignored = split_csv(containers_to_ignore) or state.settings.containers_to_ignore
    detector = PodMutationDetector(state.accessor)
    try:
        report = detector.detect(
            pod_obj,
            ignore_containers=ignored,
            ignore_fields=split_csv(fields_to_ignore),
        )
    except PspMigratorError as exc:
        _fail(str(exc))

    if output == "json":
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    if output == "patch":
        typer.echo(json.dumps(list(report.patch), indent=2))
        return
    if report.policy_name is None:
        typer.echo(f"Pod {name} in namespace {namespace} has no kubernetes.io/psp annotation; nothing to check")
        return
    for line in describe_report(report):
        typer.echo(line)
    if report.analysis is not None:
        typer.echo(describe_policy(report.analysis))


@mutating_app.command("pods")
def pods(
    ctx: typer.Context,
    containers_to_ignore: str = typer.Option(
        "",
        "--containersToIgnore",
        "-c",
        help="Comma-separated list of containers to ignore in every pod.",
    ),
    jobs: int = typer.Option(
        1,
        "--jobs",
        "-j",
        min=1,
        help="Number of pods to check in parallel (default: 1).",
    ),
    output: str = typer.Option("text", "--output", "-o", help="Output format: text or json."),
) -> None:
    """Check all pods across all namespaces in a cluster are being mutated by a PSP policy."""

    _check_output(output)
    state = _state(ctx)
    try:
        pod_objs = state.accessor.list_pods()
    except AccessorError as exc:
        _fail(f"Error getting pods: {exc}")

    ignored = split_csv(containers_to_ignore) or state.settings.containers_to_ignore
    rows = check_pods(
        PodMutationDetector(state.accessor),
        pod_objs,
        ignore_containers=ignored,
        jobs=jobs,
    )
    if output == "json":
        typer.echo(json.dumps([row.to_dict() for row in rows], indent=2))
        return
    typer.echo(f"There are {len(pod_objs)} pods in the cluster")
    typer.echo(render_pod_rows(rows))


@mutating_app.command("psp")
def psp(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the PSP object."),
    output: str = typer.Option("text", "--output", "-o", help="Output format: text or json."),
) -> None:
    """Check if a PSP object is potentially mutating pods."""

    _check_output(output)
    state = _state(ctx)
    try:
        policy = state.accessor.get_policy(name)
    except NotFound:
        _fail(f"PodSecurityPolicy {name} not found")
    except AccessorError as exc:
        _fail(f"Error getting PodSecurityPolicy {name}: {exc}")

    try:
        analysis = analyze(policy)
    except MalformedPolicy as exc:
        _fail(str(exc))

    if output == "json":
        typer.echo(json.dumps(analysis.to_dict(), indent=2))
        return
    typer.echo(describe_policy(analysis))


@mutating_app.command("psps")
def psps(
    ctx: typer.Context,
    output: str = typer.Option("text", "--output", "-o", help="Output format: text or json."),
) -> None:
    """Check every PSP object in the cluster for mutating fields."""

    _check_output(output)
    state = _state(ctx)
    try:
        policies = state.accessor.list_policies()
    except AccessorError as exc:
        _fail(f"Error getting PodSecurityPolicies: {exc}")

    results: List[Tuple[str, Optional[PolicyAnalysis]]] = []
    records: List[dict] = []
    for policy in policies:
        name = str((policy.get("metadata") or {}).get("name", "<unnamed>"))
        try:
            analysis = analyze(policy)
        except MalformedPolicy as exc:
            logger.warning("%s", exc)
            results.append((name, None))
            records.append({"policy": name, "error": str(exc)})
            continue
        results.append((name, analysis))
        records.append(analysis.to_dict())

    if output == "json":
        typer.echo(json.dumps(records, indent=2))
        return
    typer.echo(f"There are {len(policies)} PodSecurityPolicies in the cluster")
    typer.echo(render_policy_rows(results))
    analyses = [analysis for _, analysis in results if analysis is not None]
    fields = mutating_field_names(analyses)
    typer.echo(f"Mutating fields in use: {', '.join(fields) or 'none'}")


def _state(ctx: typer.Context) -> _State:
    state = ctx.find_root().obj
    if not isinstance(state, _State):
        raise typer.BadParameter("pspmigrator was not initialised")
    return state


def _check_output(output: str, allowed: Tuple[str, ...] = _OUTPUT_FORMATS) -> None:
    if output not in allowed:
        raise typer.BadParameter(f"Unsupported output format: {output} (expected one of {', '.join(allowed)})")


def _fail(message: str) -> NoReturn:
    typer.echo(message, err=True)
    raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover
    app()
