from __future__ import annotations

import json
import logging
import re
import subprocess
from typing import Any, Dict, List, Optional, Sequence

from pspmigrator.common.errors import AccessorError, NotFound
from pspmigrator.config import Settings

logger = logging.getLogger(__name__)

_NOT_FOUND_PATTERN = re.compile(r"\(NotFound\)", re.IGNORECASE)

POD_RESOURCE = "pod"
POLICY_RESOURCE = "podsecuritypolicy"


class KubectlAccessor:
    """Read-only cluster access through ``kubectl get -o json``.

    Failures are classified here, once: a missing object raises :class:`NotFound`,
    anything else (missing binary, auth, network, API server errors) raises
    :class:`AccessorError` carrying kubectl's own message. Nothing is retried.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()

    def get_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._get_object([POD_RESOURCE, name, "--namespace", namespace], POD_RESOURCE, name, namespace)

    def get_policy(self, name: str) -> Dict[str, Any]:
        return self._get_object([POLICY_RESOURCE, name], POLICY_RESOURCE, name)

    def list_pods(self) -> List[Dict[str, Any]]:
        return self._list_objects(["pods", "--all-namespaces"])

    def list_policies(self) -> List[Dict[str, Any]]:
        return self._list_objects(["podsecuritypolicies"])

    def _get_object(
        self,
        args: Sequence[str],
        resource: str,
        name: str,
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            document = self._kubectl_json(args)
        except AccessorError as exc:
            if _NOT_FOUND_PATTERN.search(str(exc)):
                raise NotFound(resource, name, namespace) from exc
            raise
        if not isinstance(document, dict):
            raise AccessorError(f"kubectl returned a non-object for {resource} {name}")
        return document

    def _list_objects(self, args: Sequence[str]) -> List[Dict[str, Any]]:
        document = self._kubectl_json(args)
        items = document.get("items") if isinstance(document, dict) else None
        if not isinstance(items, list):
            raise AccessorError(f"kubectl get {' '.join(args)} returned no item list")
        return [item for item in items if isinstance(item, dict)]

    def _kubectl_json(self, args: Sequence[str]) -> Any:
        command = [self.settings.kubectl_cmd, *self.settings.kubectl_flags(), "get", *args, "-o", "json"]
        logger.debug("Running %s", " ".join(command))
        stdout = self._run_command(command)
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise AccessorError(f"kubectl returned invalid JSON: {exc}") from exc

    @staticmethod
    def _run_command(command: Sequence[str]) -> str:
        try:
            completed = subprocess.run(
                list(command),
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise AccessorError(f"Required binary not found: {command[0]}") from exc
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.strip() if exc.stderr else ""
            stdout = exc.stdout.strip() if exc.stdout else ""
            raise AccessorError(stderr or stdout or f"Command failed ({' '.join(command)})") from exc
        return completed.stdout


__all__ = ["KubectlAccessor", "POD_RESOURCE", "POLICY_RESOURCE"]
