from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .constants import (
    DEFAULT_NAMESPACE,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RESULT_ROOT,
    DEFAULT_TIMEOUT,
    MANAGER_SERVICE_ACCOUNT,
)
from .database import DEFAULT_DATABASE_URL, resolve_database_url

DEFAULT_RECONCILE_INTERVAL = 3
DEFAULT_JOB_IMAGE = "kubespheredev/kubeeye-job:latest"


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class JobConfig:
    image: str = DEFAULT_JOB_IMAGE
    image_pull_policy: str = "IfNotPresent"
    command: List[str] = field(default_factory=lambda: ["ke"])
    service_account: str = MANAGER_SERVICE_ACCOUNT
    cpu_request: Optional[str] = "50m"
    memory_request: Optional[str] = "64Mi"
    cpu_limit: Optional[str] = "1000m"
    memory_limit: Optional[str] = "512Mi"
    backoff_limit: int = 0
    ttl_seconds_after_finished: int = 600


@dataclass
class EngineConfig:
    namespace: str = DEFAULT_NAMESPACE
    result_root: Path = Path(DEFAULT_RESULT_ROOT)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    default_timeout: str = DEFAULT_TIMEOUT
    reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL
    kubeconfig: Optional[str] = None
    clusters: Dict[str, str] = field(default_factory=dict)
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    log_timezone: str = "UTC"
    job: JobConfig = field(default_factory=JobConfig)


def _load_yaml_config(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"config file not found: {file_path}")
    with file_path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError("config file must contain a YAML mapping.")
    return data


def _load_job_config(raw: Dict[str, Any]) -> JobConfig:
    defaults = JobConfig()
    command = raw.get("command", defaults.command)
    if isinstance(command, str):
        command = command.split()
    resources = raw.get("resources", {}) or {}
    requests = resources.get("requests", {}) or {}
    limits = resources.get("limits", {}) or {}
    return JobConfig(
        image=os.getenv("INSPECTOR_JOB_IMAGE", raw.get("image") or defaults.image),
        image_pull_policy=raw.get("image_pull_policy") or defaults.image_pull_policy,
        command=[str(part) for part in command],
        service_account=raw.get("service_account") or defaults.service_account,
        cpu_request=requests.get("cpu", defaults.cpu_request),
        memory_request=requests.get("memory", defaults.memory_request),
        cpu_limit=limits.get("cpu", defaults.cpu_limit),
        memory_limit=limits.get("memory", defaults.memory_limit),
        backoff_limit=_as_int(raw.get("backoff_limit"), defaults.backoff_limit),
        ttl_seconds_after_finished=_as_int(
            raw.get("ttl_seconds_after_finished"), defaults.ttl_seconds_after_finished
        ),
    )


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """Load the engine configuration; environment variables win over the file."""
    raw = _load_yaml_config(config_path or os.getenv("INSPECTOR_CONFIG"))
    engine_cfg = raw.get("engine", {}) or {}
    logging_cfg = raw.get("logging", {}) or {}
    clusters_cfg = raw.get("clusters", {}) or {}
    if not isinstance(clusters_cfg, dict):
        raise ValueError("clusters must map cluster names to kubeconfig paths.")

    kubeconfig = os.getenv("INSPECTOR_KUBECONFIG", engine_cfg.get("kubeconfig"))
    return EngineConfig(
        namespace=os.getenv("INSPECTOR_NAMESPACE", engine_cfg.get("namespace") or DEFAULT_NAMESPACE),
        result_root=Path(
            os.getenv("INSPECTOR_RESULT_ROOT", engine_cfg.get("result_root") or DEFAULT_RESULT_ROOT)
        ).expanduser(),
        poll_interval=_as_float(
            os.getenv("INSPECTOR_POLL_INTERVAL", engine_cfg.get("poll_interval")),
            DEFAULT_POLL_INTERVAL,
        ),
        default_timeout=os.getenv(
            "INSPECTOR_DEFAULT_TIMEOUT", engine_cfg.get("default_timeout") or DEFAULT_TIMEOUT
        ),
        reconcile_interval=_as_float(
            os.getenv("INSPECTOR_RECONCILE_INTERVAL", engine_cfg.get("reconcile_interval")),
            DEFAULT_RECONCILE_INTERVAL,
        ),
        kubeconfig=str(Path(kubeconfig).expanduser()) if kubeconfig else None,
        clusters={
            str(name): str(Path(str(path)).expanduser()) for name, path in clusters_cfg.items()
        },
        database_url=os.getenv("INSPECTOR_DATABASE_URL")
        or engine_cfg.get("database_url")
        or resolve_database_url(),
        log_level=os.getenv("INSPECTOR_LOG_LEVEL", logging_cfg.get("level") or "INFO").upper(),
        log_timezone=os.getenv("INSPECTOR_LOG_TIMEZONE", logging_cfg.get("timezone") or "UTC"),
        job=_load_job_config(raw.get("job", {}) or {}),
    )
