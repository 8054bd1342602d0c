from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml


DEFAULT_CONFIG_PATH = Path("~/.config/pspmigrator/config.yaml")


@dataclass
class Settings:
    kubectl_cmd: str = "kubectl"
    kubeconfig: Optional[Path] = None
    context: Optional[str] = None
    request_timeout: Optional[str] = None
    containers_to_ignore: List[str] = field(default_factory=list)

    def kubectl_flags(self) -> List[str]:
        flags: List[str] = []
        if self.kubeconfig is not None:
            flags.extend(["--kubeconfig", str(self.kubeconfig)])
        if self.context:
            flags.extend(["--context", self.context])
        if self.request_timeout:
            flags.extend(["--request-timeout", self.request_timeout])
        return flags


def load_settings(
    config_path: Optional[Path] = None,
    *,
    kubectl_cmd: Optional[str] = None,
    kubeconfig: Optional[Path] = None,
    context: Optional[str] = None,
    request_timeout: Optional[str] = None,
) -> Settings:
    """Build settings from the YAML config file, then apply explicit (CLI or env) values on top."""

    data = _load_config(config_path)
    settings = Settings(
        kubectl_cmd=_string(data, "kubectl") or "kubectl",
        kubeconfig=_path(data, "kubeconfig"),
        context=_string(data, "context"),
        request_timeout=_string(data, "request_timeout"),
        containers_to_ignore=_string_list(data, "containers_to_ignore"),
    )
    if kubectl_cmd:
        settings.kubectl_cmd = kubectl_cmd
    if kubeconfig is not None:
        settings.kubeconfig = kubeconfig.expanduser()
    if context:
        settings.context = context
    if request_timeout:
        settings.request_timeout = request_timeout
    return settings


def _load_config(path: Optional[Path]) -> Dict[str, Any]:
    explicit = path is not None
    candidate = (path or DEFAULT_CONFIG_PATH).expanduser()
    if not candidate.exists():
        if explicit:
            raise typer.BadParameter(f"Config file not found: {candidate}")
        return {}
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise typer.BadParameter(f"Config file {candidate} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise typer.BadParameter("Config file must contain a mapping")
    return data


def _string(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int, float)):
        raise typer.BadParameter(f"Config key {key} must be a scalar")
    text = str(value).strip()
    return text or None


def _path(data: Dict[str, Any], key: str) -> Optional[Path]:
    value = _string(data, key)
    return Path(value).expanduser() if value else None


def _string_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        return split_csv(value)
    if not isinstance(value, list):
        raise typer.BadParameter(f"Config key {key} must be a list or comma-separated string")
    return [str(item).strip() for item in value if str(item).strip()]


def split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


__all__ = ["DEFAULT_CONFIG_PATH", "Settings", "load_settings", "split_csv"]
