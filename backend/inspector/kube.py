from __future__ import annotations

import base64
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from . import templates
from .constants import CONFIG_DATA_KEY, DEFAULT_CLUSTER_NAME, DEFAULT_NAMESPACE
from .schemas import ConfigArtifact, JobStatus, Node

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 3.0
READ_TIMEOUT = 30.0


class ClusterClientError(Exception):
    """Raised when the cluster API rejects or fails a request."""


class NotFoundError(ClusterClientError):
    pass


class AlreadyExistsError(ClusterClientError):
    pass


class ClusterClient(Protocol):
    namespace: str

    def list_nodes(self) -> List[Node]: ...

    def get_job(self, name: str) -> JobStatus: ...

    def create_job(self, manifest: Dict[str, Any]) -> None: ...

    def delete_job(self, name: str, propagation: str = "Background") -> None: ...

    def create_config_artifact(
        self, name: str, namespace: str, payload: bytes, labels: Mapping[str, str]
    ) -> None: ...

    def get_config_artifact(self, name: str) -> ConfigArtifact: ...

    def delete_config_artifact(self, name: str) -> None: ...

    def list_config_artifacts(self, labels: Mapping[str, str]) -> List[ConfigArtifact]: ...

    def delete_config_artifacts(self, labels: Mapping[str, str]) -> None: ...

    def ensure_namespace(self, name: str) -> None: ...

    def get_cluster_role(self, name: str) -> Optional[Dict[str, Any]]: ...

    def create_cluster_role(self, manifest: Dict[str, Any]) -> None: ...

    def get_cluster_role_binding(self, name: str) -> Optional[Dict[str, Any]]: ...

    def create_cluster_role_binding(self, manifest: Dict[str, Any]) -> None: ...

    def get_service_account(self, name: str, namespace: str) -> Optional[Dict[str, Any]]: ...

    def create_service_account(self, manifest: Dict[str, Any]) -> None: ...

    def get_server_version(self) -> str: ...

    def count_objects(self, kind: str) -> int: ...


def format_labels(labels: Mapping[str, str]) -> str:
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def _translate_error(exc: ApiException, action: str) -> ClusterClientError:
    reason = exc.reason or exc.body or str(exc)
    message = f"{action} failed: {reason}"
    if exc.status == 404:
        return NotFoundError(message)
    if exc.status == 409:
        return AlreadyExistsError(message)
    return ClusterClientError(message)


@contextmanager
def _api_call(action: str) -> Iterator[None]:
    try:
        yield
    except ApiException as exc:
        raise _translate_error(exc, action) from exc
    except urllib3.exceptions.HTTPError as exc:
        raise ClusterClientError(f"{action} failed: {exc}") from exc


def _decode_config_map(item: Any) -> ConfigArtifact:
    metadata = item.metadata
    payload = b""
    binary = item.binary_data or {}
    if CONFIG_DATA_KEY in binary:
        payload = base64.b64decode(binary[CONFIG_DATA_KEY])
    elif item.data and CONFIG_DATA_KEY in item.data:
        payload = item.data[CONFIG_DATA_KEY].encode("utf-8")
    return ConfigArtifact(
        name=metadata.name,
        namespace=metadata.namespace or "",
        labels=dict(metadata.labels or {}),
        payload=payload,
    )


def _naive(value: Any) -> Any:
    if value is None:
        return None
    return value.replace(tzinfo=None) if value.tzinfo else value


class KubernetesClusterClient:
    """ClusterClient backed by the official kubernetes Python client."""

    def __init__(self, api_client: k8s_client.ApiClient, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.namespace = namespace
        self.api_client = api_client
        self.core = k8s_client.CoreV1Api(api_client)
        self.batch = k8s_client.BatchV1Api(api_client)
        self.rbac = k8s_client.RbacAuthorizationV1Api(api_client)
        self.version = k8s_client.VersionApi(api_client)

    @classmethod
    def from_kubeconfig(
        cls, kubeconfig_path: Optional[str], namespace: str = DEFAULT_NAMESPACE
    ) -> "KubernetesClusterClient":
        if kubeconfig_path:
            api_client = k8s_config.new_client_from_config(config_file=kubeconfig_path)
        else:
            try:
                k8s_config.load_incluster_config()
            except ConfigException:
                k8s_config.load_kube_config()
            api_client = k8s_client.ApiClient()
        rest_client = getattr(api_client, "rest_client", None)
        pool_manager = getattr(rest_client, "pool_manager", None)
        if pool_manager and hasattr(pool_manager, "connection_pool_kw"):
            pool_manager.connection_pool_kw["timeout"] = urllib3.Timeout(
                connect=CONNECT_TIMEOUT,
                read=READ_TIMEOUT,
            )
        return cls(api_client, namespace=namespace)

    def list_nodes(self) -> List[Node]:
        with _api_call("list nodes"):
            nodes = self.core.list_node()
        return [
            Node(name=item.metadata.name, labels=dict(item.metadata.labels or {}))
            for item in nodes.items
        ]

    def get_job(self, name: str) -> JobStatus:
        with _api_call(f"get job {name}"):
            job = self.batch.read_namespaced_job(name, self.namespace)
        status = job.status
        return JobStatus(
            name=job.metadata.name,
            created_at=_naive(job.metadata.creation_timestamp),
            completion_time=_naive(status.completion_time) if status else None,
            active=(status.active or 0) if status else 0,
            succeeded=(status.succeeded or 0) if status else 0,
            failed=(status.failed or 0) if status else 0,
        )

    def create_job(self, manifest: Dict[str, Any]) -> None:
        name = manifest.get("metadata", {}).get("name")
        with _api_call(f"create job {name}"):
            self.batch.create_namespaced_job(self.namespace, body=manifest)

    def delete_job(self, name: str, propagation: str = "Background") -> None:
        with _api_call(f"delete job {name}"):
            self.batch.delete_namespaced_job(
                name,
                self.namespace,
                body=k8s_client.V1DeleteOptions(propagation_policy=propagation),
            )

    def create_config_artifact(
        self, name: str, namespace: str, payload: bytes, labels: Mapping[str, str]
    ) -> None:
        body = templates.binary_config_map(name, namespace, payload, labels)
        with _api_call(f"create configmap {name}"):
            self.core.create_namespaced_config_map(namespace, body=body)

    def get_config_artifact(self, name: str) -> ConfigArtifact:
        with _api_call(f"get configmap {name}"):
            item = self.core.read_namespaced_config_map(name, self.namespace)
        return _decode_config_map(item)

    def delete_config_artifact(self, name: str) -> None:
        with _api_call(f"delete configmap {name}"):
            self.core.delete_namespaced_config_map(name, self.namespace)

    def list_config_artifacts(self, labels: Mapping[str, str]) -> List[ConfigArtifact]:
        with _api_call("list configmaps"):
            items = self.core.list_namespaced_config_map(
                self.namespace, label_selector=format_labels(labels)
            )
        return [_decode_config_map(item) for item in items.items]

    def delete_config_artifacts(self, labels: Mapping[str, str]) -> None:
        with _api_call("delete configmaps"):
            self.core.delete_collection_namespaced_config_map(
                self.namespace, label_selector=format_labels(labels)
            )

    def ensure_namespace(self, name: str) -> None:
        try:
            with _api_call(f"get namespace {name}"):
                self.core.read_namespace(name)
            return
        except NotFoundError:
            pass
        try:
            with _api_call(f"create namespace {name}"):
                self.core.create_namespace(body={"metadata": {"name": name}})
        except AlreadyExistsError:
            logger.debug("Namespace %s created concurrently.", name)

    def _read_or_none(self, action: str, reader, *args) -> Optional[Dict[str, Any]]:
        try:
            with _api_call(action):
                obj = reader(*args)
        except NotFoundError:
            return None
        return self.api_client.sanitize_for_serialization(obj)

    def get_cluster_role(self, name: str) -> Optional[Dict[str, Any]]:
        return self._read_or_none(f"get clusterrole {name}", self.rbac.read_cluster_role, name)

    def create_cluster_role(self, manifest: Dict[str, Any]) -> None:
        with _api_call("create clusterrole"):
            self.rbac.create_cluster_role(body=manifest)

    def get_cluster_role_binding(self, name: str) -> Optional[Dict[str, Any]]:
        return self._read_or_none(
            f"get clusterrolebinding {name}", self.rbac.read_cluster_role_binding, name
        )

    def create_cluster_role_binding(self, manifest: Dict[str, Any]) -> None:
        with _api_call("create clusterrolebinding"):
            self.rbac.create_cluster_role_binding(body=manifest)

    def get_service_account(self, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        return self._read_or_none(
            f"get serviceaccount {name}",
            self.core.read_namespaced_service_account,
            name,
            namespace,
        )

    def create_service_account(self, manifest: Dict[str, Any]) -> None:
        namespace = manifest.get("metadata", {}).get("namespace") or self.namespace
        with _api_call("create serviceaccount"):
            self.core.create_namespaced_service_account(namespace, body=manifest)

    def get_server_version(self) -> str:
        with _api_call("get server version"):
            info = self.version.get_code()
        return f"{info.major}.{info.minor}"

    def count_objects(self, kind: str) -> int:
        listers = {
            "nodes": self.core.list_node,
            "namespaces": self.core.list_namespace,
        }
        lister = listers.get(kind)
        if lister is None:
            raise ClusterClientError(f"unsupported object kind {kind!r}")
        with _api_call(f"list {kind}"):
            return len(lister().items)


class ClusterClientFactory:
    """Builds and caches one client per target cluster.

    ``kubeconfigs`` maps cluster names to kubeconfig paths; the home cluster
    uses ``home_kubeconfig`` (``None`` means in-cluster or default loading).
    """

    def __init__(
        self,
        home_kubeconfig: Optional[str] = None,
        kubeconfigs: Optional[Mapping[str, str]] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self.home_kubeconfig = home_kubeconfig
        self.kubeconfigs = dict(kubeconfigs or {})
        self.namespace = namespace
        self._lock = threading.Lock()
        self._clients: Dict[str, ClusterClient] = {}

    def home(self) -> ClusterClient:
        return self._get_or_build(DEFAULT_CLUSTER_NAME, self.home_kubeconfig)

    def for_cluster(self, name: str) -> ClusterClient:
        if name == DEFAULT_CLUSTER_NAME:
            return self.home()
        kubeconfig = self.kubeconfigs.get(name)
        if not kubeconfig:
            raise ClusterClientError(f"no kubeconfig configured for cluster {name!r}")
        return self._get_or_build(name, kubeconfig)

    def _get_or_build(self, name: str, kubeconfig: Optional[str]) -> ClusterClient:
        with self._lock:
            client = self._clients.get(name)
            if client is None:
                try:
                    client = KubernetesClusterClient.from_kubeconfig(kubeconfig, self.namespace)
                except (ConfigException, OSError) as exc:
                    raise ClusterClientError(
                        f"failed to load kubeconfig for cluster {name!r}: {exc}"
                    ) from exc
                self._clients[name] = client
                logger.info("Cluster client for %s initialised.", name)
            return client
