from pathlib import Path

import pytest

from inspector.config import load_config
from inspector.constants import DEFAULT_NAMESPACE, DEFAULT_POLL_INTERVAL
from inspector.database import DEFAULT_DATABASE_URL

CONFIG = """
engine:
  namespace: inspect-system
  result_root: /var/lib/inspector/results
  poll_interval: 2
  default_timeout: 30m
  database_url: sqlite:////var/lib/inspector/inspector.db
clusters:
  east: /etc/kube/east.yaml
logging:
  level: debug
  timezone: Asia/Shanghai
job:
  image: registry.local/inspect-job:1.0
  command: ke inspect
  backoff_limit: oops
  resources:
    limits:
      cpu: 2
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "INSPECTOR_CONFIG",
        "INSPECTOR_NAMESPACE",
        "INSPECTOR_RESULT_ROOT",
        "INSPECTOR_POLL_INTERVAL",
        "INSPECTOR_DEFAULT_TIMEOUT",
        "INSPECTOR_RECONCILE_INTERVAL",
        "INSPECTOR_KUBECONFIG",
        "INSPECTOR_DATABASE_URL",
        "INSPECTOR_LOG_LEVEL",
        "INSPECTOR_LOG_TIMEZONE",
        "INSPECTOR_JOB_IMAGE",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_file():
    config = load_config()
    assert config.namespace == DEFAULT_NAMESPACE
    assert config.poll_interval == DEFAULT_POLL_INTERVAL
    assert config.database_url == DEFAULT_DATABASE_URL
    assert config.clusters == {}
    assert config.job.backoff_limit == 0


def test_yaml_file_is_read(tmp_path):
    path = tmp_path / "inspector.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    config = load_config(str(path))

    assert config.namespace == "inspect-system"
    assert config.result_root == Path("/var/lib/inspector/results")
    assert config.poll_interval == 2.0
    assert config.database_url == "sqlite:////var/lib/inspector/inspector.db"
    assert config.default_timeout == "30m"
    assert config.clusters == {"east": "/etc/kube/east.yaml"}
    assert config.log_level == "DEBUG"
    assert config.log_timezone == "Asia/Shanghai"
    assert config.job.image == "registry.local/inspect-job:1.0"
    assert config.job.command == ["ke", "inspect"]
    assert config.job.backoff_limit == 0
    assert config.job.cpu_limit == 2
    assert config.job.memory_limit == "512Mi"


def test_environment_wins_over_file(tmp_path, monkeypatch):
    path = tmp_path / "inspector.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    monkeypatch.setenv("INSPECTOR_CONFIG", str(path))
    monkeypatch.setenv("INSPECTOR_NAMESPACE", "override")
    monkeypatch.setenv("INSPECTOR_POLL_INTERVAL", "not-a-number")
    monkeypatch.setenv("INSPECTOR_JOB_IMAGE", "other:2.0")

    config = load_config()
    assert config.namespace == "override"
    assert config.poll_interval == DEFAULT_POLL_INTERVAL
    assert config.job.image == "other:2.0"
    assert config.default_timeout == "30m"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.yaml"))


def test_non_mapping_file_is_rejected(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))
