import tempfile
import unittest
from pathlib import Path
from unittest import mock

import typer

from pspmigrator import config
from pspmigrator.config import Settings, load_settings, split_csv


class ConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.tmpdir.name) / "config.yaml"

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_yaml_values_are_loaded(self) -> None:
        self.config_path.write_text(
            """
kubectl: /usr/local/bin/kubectl
kubeconfig: /etc/kube/admin.conf
context: staging
request_timeout: 20s
containers_to_ignore:
  - istio-proxy
  - linkerd-proxy
""".strip(),
            encoding="utf-8",
        )
        settings = load_settings(self.config_path)
        self.assertEqual(settings.kubectl_cmd, "/usr/local/bin/kubectl")
        self.assertEqual(settings.kubeconfig, Path("/etc/kube/admin.conf"))
        self.assertEqual(settings.context, "staging")
        self.assertEqual(settings.request_timeout, "20s")
        self.assertEqual(settings.containers_to_ignore, ["istio-proxy", "linkerd-proxy"])

    def test_explicit_values_override_file(self) -> None:
        self.config_path.write_text("context: staging\ncontainers_to_ignore: istio-proxy, vault-agent\n", encoding="utf-8")
        settings = load_settings(self.config_path, context="prod", kubectl_cmd="oc")
        self.assertEqual(settings.context, "prod")
        self.assertEqual(settings.kubectl_cmd, "oc")
        self.assertEqual(settings.containers_to_ignore, ["istio-proxy", "vault-agent"])

    def test_default_file_is_read_when_no_path_given(self) -> None:
        self.config_path.write_text("context: from-home\n", encoding="utf-8")
        with mock.patch.object(config, "DEFAULT_CONFIG_PATH", self.config_path):
            self.assertEqual(load_settings().context, "from-home")

    def test_missing_default_file_gives_builtin_settings(self) -> None:
        with mock.patch.object(config, "DEFAULT_CONFIG_PATH", Path(self.tmpdir.name) / "absent.yaml"):
            self.assertEqual(load_settings(), Settings())

    def test_missing_explicit_file_is_rejected(self) -> None:
        with self.assertRaises(typer.BadParameter):
            load_settings(Path(self.tmpdir.name) / "absent.yaml")

    def test_non_mapping_file_is_rejected(self) -> None:
        self.config_path.write_text("- just\n- a list\n", encoding="utf-8")
        with self.assertRaises(typer.BadParameter):
            load_settings(self.config_path)

    def test_kubectl_flags(self) -> None:
        settings = Settings(kubeconfig=Path("/k"), context="c", request_timeout="5s")
        self.assertEqual(
            settings.kubectl_flags(),
            ["--kubeconfig", "/k", "--context", "c", "--request-timeout", "5s"],
        )
        self.assertEqual(Settings().kubectl_flags(), [])

    def test_split_csv(self) -> None:
        self.assertEqual(split_csv(" a, ,b,"), ["a", "b"])
        self.assertEqual(split_csv(""), [])
        self.assertEqual(split_csv(None), [])


if __name__ == "__main__":
    unittest.main()
