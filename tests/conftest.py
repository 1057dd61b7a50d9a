import json
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "backend"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from sqlalchemy.orm import sessionmaker  # noqa: E402

from inspector.constants import (  # noqa: E402
    DEFAULT_NAMESPACE,
    LABEL_NODE_NAME,
    LABEL_RULE_TYPE,
    LABEL_TASK_NAME,
    Category,
)
from inspector.database import Base, build_engine  # noqa: E402
from inspector.kube import AlreadyExistsError, ClusterClientError, NotFoundError  # noqa: E402
from inspector.schemas import ConfigArtifact, JobStatus, Node  # noqa: E402
from inspector.timeutil import utcnow  # noqa: E402


def _matches(labels: Dict[str, str], selector: Dict[str, str]) -> bool:
    return all(labels.get(key) == value for key, value in selector.items())


class FakeClusterClient:
    """In-memory cluster: every created job completes at once and writes its result."""

    def __init__(
        self,
        nodes: Optional[List[Node]] = None,
        namespace: str = DEFAULT_NAMESPACE,
        results: Optional[Dict[Category, object]] = None,
        failing: tuple = (),
        hanging: tuple = (),
        create_errors: tuple = (),
    ) -> None:
        self.namespace = namespace
        self.nodes = list(nodes or [])
        self.results = dict(results or {})
        self.failing = set(failing)
        self.hanging = set(hanging)
        self.create_errors = set(create_errors)
        self.version = "1.27"
        self.namespaces = {"default", "kube-system"}
        self.cluster_roles: Dict[str, dict] = {}
        self.cluster_role_bindings: Dict[str, dict] = {}
        self.service_accounts: Dict[tuple, dict] = {}
        self.jobs: Dict[str, dict] = {}
        self.job_status: Dict[str, JobStatus] = {}
        self.artifacts: Dict[str, ConfigArtifact] = {}
        self.created_jobs: List[str] = []
        self.deleted_jobs: List[tuple] = []
        self.deleted_selectors: List[dict] = []
        self._lock = threading.Lock()

    def list_nodes(self):
        return list(self.nodes)

    def _payload(self, category: Category, node_name: Optional[str]) -> bytes:
        result = self.results.get(category)
        if callable(result):
            result = result(node_name)
        if result is None:
            if category is Category.COMPONENT:
                result = {"dangerous": 0, "warning": 0, "ignore": 0, "results": []}
            else:
                result = [{"name": f"{category.value}-check", "assert": False}]
        return json.dumps(result).encode("utf-8")

    def create_job(self, manifest):
        name = manifest["metadata"]["name"]
        labels = manifest["metadata"]["labels"]
        category = Category(labels[LABEL_RULE_TYPE])
        node_name = manifest["spec"]["template"]["spec"].get("nodeName")
        if category in self.create_errors:
            raise ClusterClientError(f"create job {name} rejected")
        with self._lock:
            if name in self.jobs:
                raise AlreadyExistsError(f"job {name} exists")
            self.jobs[name] = manifest
            self.created_jobs.append(name)
            if category in self.hanging:
                self.job_status[name] = JobStatus(name=name, active=1)
                return
            if category in self.failing:
                self.job_status[name] = JobStatus(name=name, failed=1)
                return
            self.job_status[name] = JobStatus(name=name, completion_time=utcnow(), succeeded=1)
            artifact_labels = {LABEL_TASK_NAME: labels[LABEL_TASK_NAME], LABEL_RULE_TYPE: category.value}
            if node_name:
                artifact_labels[LABEL_NODE_NAME] = node_name
            self.artifacts[name] = ConfigArtifact(
                name=name,
                namespace=self.namespace,
                labels=artifact_labels,
                payload=self._payload(category, node_name),
            )

    def get_job(self, name):
        with self._lock:
            status = self.job_status.get(name)
        if status is None:
            raise NotFoundError(f"job {name} not found")
        return status

    def delete_job(self, name, propagation="Background"):
        with self._lock:
            self.deleted_jobs.append((name, propagation))
            self.jobs.pop(name, None)
            self.job_status.pop(name, None)

    def create_config_artifact(self, name, namespace, payload, labels):
        with self._lock:
            if name in self.artifacts:
                raise AlreadyExistsError(f"configmap {name} exists")
            self.artifacts[name] = ConfigArtifact(
                name=name, namespace=namespace, labels=dict(labels), payload=payload
            )

    def get_config_artifact(self, name):
        with self._lock:
            artifact = self.artifacts.get(name)
        if artifact is None:
            raise NotFoundError(f"configmap {name} not found")
        return artifact

    def delete_config_artifact(self, name):
        with self._lock:
            if name not in self.artifacts:
                raise NotFoundError(f"configmap {name} not found")
            del self.artifacts[name]

    def list_config_artifacts(self, labels):
        with self._lock:
            return [a for a in self.artifacts.values() if _matches(a.labels, labels)]

    def delete_config_artifacts(self, labels):
        with self._lock:
            self.deleted_selectors.append(dict(labels))
            for name in [n for n, a in self.artifacts.items() if _matches(a.labels, labels)]:
                del self.artifacts[name]

    def ensure_namespace(self, name):
        self.namespaces.add(name)

    def get_cluster_role(self, name):
        return self.cluster_roles.get(name)

    def create_cluster_role(self, manifest):
        self.cluster_roles[manifest["metadata"]["name"]] = manifest

    def get_cluster_role_binding(self, name):
        return self.cluster_role_bindings.get(name)

    def create_cluster_role_binding(self, manifest):
        self.cluster_role_bindings[manifest["metadata"]["name"]] = manifest

    def get_service_account(self, name, namespace):
        return self.service_accounts.get((namespace, name))

    def create_service_account(self, manifest):
        metadata = manifest["metadata"]
        self.service_accounts[(metadata["namespace"], metadata["name"])] = manifest

    def get_server_version(self):
        return self.version

    def count_objects(self, kind):
        if kind == "nodes":
            return len(self.nodes)
        if kind == "namespaces":
            return len(self.namespaces)
        raise ClusterClientError(f"unsupported object kind {kind!r}")


class FakeClientProvider:
    def __init__(self, home: FakeClusterClient, clusters: Optional[Dict[str, FakeClusterClient]] = None):
        self._home = home
        self.clusters = dict(clusters or {})

    def home(self):
        return self._home

    def for_cluster(self, name):
        client = self.clusters.get(name)
        if client is None:
            raise ClusterClientError(f"no kubeconfig configured for cluster {name!r}")
        return client


@pytest.fixture
def two_nodes():
    return [
        Node(name="node-a", labels={"role": "worker", "zone": "a"}),
        Node(name="node-b", labels={"role": "worker", "zone": "b"}),
    ]


@pytest.fixture
def fake_client(two_nodes):
    return FakeClusterClient(nodes=two_nodes)


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'inspector.db'}")
    from inspector import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def result_root(tmp_path):
    path = tmp_path / "results"
    path.mkdir()
    return path


@pytest.fixture
def client_factory(two_nodes):
    def _build(**kwargs):
        kwargs.setdefault("nodes", two_nodes)
        return FakeClusterClient(**kwargs)

    return _build
