import copy
import json
import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from typer.testing import CliRunner

from pspmigrator import cli, config
from pspmigrator.common.errors import AccessorError, NotFound


RESTRICTED_PSP = {
    "kind": "PodSecurityPolicy",
    "metadata": {"name": "restricted"},
    "spec": {
        "runAsUser": {"rule": "MustRunAs", "ranges": [{"min": 1000, "max": 1000}]},
        "seLinux": {"rule": "RunAsAny"},
        "supplementalGroups": {"rule": "RunAsAny"},
        "fsGroup": {"rule": "RunAsAny"},
    },
}

PRIVILEGED_PSP = {
    "kind": "PodSecurityPolicy",
    "metadata": {"name": "privileged"},
    "spec": {
        "privileged": True,
        "allowedCapabilities": ["*"],
        "runAsUser": {"rule": "RunAsAny"},
        "seLinux": {"rule": "RunAsAny"},
        "supplementalGroups": {"rule": "RunAsAny"},
        "fsGroup": {"rule": "RunAsAny"},
    },
}

BROKEN_PSP = {
    "kind": "PodSecurityPolicy",
    "metadata": {"name": "broken"},
    "spec": {"runAsUser": {"rule": "MustRunAs"}},
}


def make_pod(name, namespace="default", psp=None, containers=None):
    annotations = {"kubernetes.io/psp": psp} if psp else {}
    return {
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "annotations": annotations},
        "spec": {"containers": containers or [{"name": "app", "image": "nginx:1.25"}]},
    }


class FakeAccessor:
    def __init__(self, pods=(), policies=(), list_error=None):
        self.pods = {(pod["metadata"]["namespace"], pod["metadata"]["name"]): pod for pod in pods}
        self.policies = {policy["metadata"]["name"]: policy for policy in policies}
        self.list_error = list_error

    def get_pod(self, namespace, name):
        if (namespace, name) not in self.pods:
            raise NotFound("pod", name, namespace)
        return copy.deepcopy(self.pods[(namespace, name)])

    def get_policy(self, name):
        if name not in self.policies:
            raise NotFound("podsecuritypolicy", name)
        return copy.deepcopy(self.policies[name])

    def list_pods(self):
        if self.list_error is not None:
            raise self.list_error
        return [copy.deepcopy(pod) for pod in self.pods.values()]

    def list_policies(self):
        return [copy.deepcopy(policy) for policy in self.policies.values()]


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = CliRunner()
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.accessor = FakeAccessor(
            pods=[
                make_pod("web", psp="restricted"),
                make_pod("tuned", psp="restricted", containers=[{"name": "app", "securityContext": {"runAsUser": 1000}}]),
                make_pod("legacy", namespace="ops", psp="broken"),
                make_pod("plain"),
                make_pod("orphan", psp="deleted"),
            ],
            policies=[RESTRICTED_PSP, PRIVILEGED_PSP, BROKEN_PSP],
        )
        patchers = [
            mock.patch.object(cli, "build_accessor", side_effect=lambda settings: self.accessor),
            mock.patch.object(cli.logging, "basicConfig"),
            mock.patch.object(config, "DEFAULT_CONFIG_PATH", Path(tmpdir.name) / "config.yaml"),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)
        # Keep batch warnings out of the captured output that the tests parse.
        logging.disable(logging.CRITICAL)
        self.addCleanup(logging.disable, logging.NOTSET)

    def _invoke(self, *args):
        return self.runner.invoke(cli.app, list(args))

    def test_pod_reports_mutation_and_policy_fields(self) -> None:
        result = self._invoke("mutating", "pod", "web", "-n", "default")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Pod web is mutated by PSP restricted: true", result.output)
        self.assertIn("spec.containers[app].securityContext.runAsUser: expected 1000, actual <unset>", result.output)
        self.assertIn("PSP profile restricted has the following mutating fields: runAsUser", result.output)

    def test_pod_with_matching_value_is_not_mutated(self) -> None:
        result = self._invoke("mutating", "pod", "tuned", "--namespace", "default")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Pod tuned is mutated by PSP restricted: false", result.output)

    def test_pod_containers_to_ignore(self) -> None:
        result = self._invoke("mutating", "pod", "web", "-n", "default", "-c", "app", "-o", "json")
        self.assertEqual(result.exit_code, 0, result.output)
        payload = json.loads(result.output)
        self.assertFalse(payload["mutated"])
        self.assertEqual(payload["diff"], [])

    def test_pod_patch_output(self) -> None:
        result = self._invoke("mutating", "pod", "web", "-n", "default", "--output", "patch")
        self.assertEqual(result.exit_code, 0, result.output)
        patch = json.loads(result.output)
        self.assertEqual(patch[0]["path"], "/spec/containers/0/securityContext")
        self.assertEqual(patch[0]["value"], {"runAsUser": 1000})

    def test_pod_without_annotation(self) -> None:
        result = self._invoke("mutating", "pod", "plain", "-n", "default")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("no kubernetes.io/psp annotation", result.output)

    def test_pod_not_found_exits_non_zero(self) -> None:
        result = self._invoke("mutating", "pod", "ghost", "-n", "default")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Pod ghost in namespace default not found", result.output)

    def test_pod_bound_to_missing_policy_exits_non_zero(self) -> None:
        result = self._invoke("mutating", "pod", "orphan", "-n", "default")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("PodSecurityPolicy deleted bound to pod default/orphan not found", result.output)

    def test_pod_requires_namespace(self) -> None:
        result = self._invoke("mutating", "pod", "web")
        self.assertNotEqual(result.exit_code, 0)

    def test_pods_batch_continues_past_failures(self) -> None:
        result = self._invoke("mutating", "pods")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("There are 5 pods in the cluster", result.output)
        rows = {
            cells[0]: cells
            for cells in (
                [cell.strip() for cell in line.strip("|").split("|")]
                for line in result.output.splitlines()
                if line.startswith("| ")
            )
        }
        self.assertEqual(rows["web"], ["web", "default", "true", "restricted"])
        self.assertEqual(rows["tuned"], ["tuned", "default", "false", "restricted"])
        self.assertEqual(rows["legacy"], ["legacy", "ops", "error", "broken"])
        self.assertEqual(rows["orphan"], ["orphan", "default", "error", "deleted"])
        self.assertNotIn("plain", rows)

    def test_pods_parallel_json(self) -> None:
        result = self._invoke("mutating", "pods", "--jobs", "3", "-o", "json")
        self.assertEqual(result.exit_code, 0, result.output)
        payload = json.loads(result.output)
        self.assertEqual([row["name"] for row in payload], ["web", "tuned", "legacy", "orphan"])
        self.assertIn("error", payload[2])

    def test_pods_list_failure_exits_non_zero(self) -> None:
        self.accessor.list_error = AccessorError("Unable to connect to the server")
        result = self._invoke("mutating", "pods")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Error getting pods: Unable to connect to the server", result.output)

    def test_psp_lists_mutating_fields(self) -> None:
        result = self._invoke("mutating", "psp", "restricted")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn(
            "PSP profile restricted has the following mutating fields: runAsUser and annotations: none",
            result.output,
        )

    def test_psp_not_found(self) -> None:
        result = self._invoke("mutating", "psp", "ghost")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("PodSecurityPolicy ghost not found", result.output)

    def test_psp_malformed(self) -> None:
        result = self._invoke("mutating", "psp", "broken")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("malformed", result.output)

    def test_psps_table(self) -> None:
        result = self._invoke("mutating", "psps")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("There are 3 PodSecurityPolicies in the cluster", result.output)
        self.assertIn("| privileged", result.output)
        self.assertIn("error", result.output)
        self.assertIn("Mutating fields in use: runAsUser", result.output)

    def test_unknown_output_format(self) -> None:
        result = self._invoke("mutating", "psp", "restricted", "-o", "yaml")
        self.assertEqual(result.exit_code, 2)


if __name__ == "__main__":
    unittest.main()
