from __future__ import annotations

import base64
from typing import Any, Dict, Mapping

from .config import JobConfig
from .constants import CLUSTER_SCOPED, CONFIG_DATA_KEY, LABEL_RULE_TYPE, LABEL_TASK_NAME, Category
from .schemas import JobSpec

HOST_ROOT_MOUNT = "/hosts/rootfs"

# Node scoped checks that read the host filesystem.
_HOST_FS_CATEGORIES = {
    Category.FILE_CHANGE,
    Category.FILE_FILTER,
    Category.SYSCTL,
    Category.SYSTEMD,
    Category.NODE_INFO,
    Category.CUSTOM_COMMAND,
}


def binary_config_map(
    name: str, namespace: str, payload: bytes, labels: Mapping[str, str]
) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels)},
        "binaryData": {CONFIG_DATA_KEY: base64.b64encode(payload).decode("ascii")},
        "immutable": True,
    }


def _resources(job_config: JobConfig) -> Dict[str, Dict[str, str]]:
    resources: Dict[str, Dict[str, str]] = {}
    requests = {k: v for k, v in (("cpu", job_config.cpu_request), ("memory", job_config.memory_request)) if v}
    limits = {k: v for k, v in (("cpu", job_config.cpu_limit), ("memory", job_config.memory_limit)) if v}
    if requests:
        resources["requests"] = requests
    if limits:
        resources["limits"] = limits
    return resources


def inspect_job(job_spec: JobSpec, task_name: str, namespace: str, job_config: JobConfig) -> Dict[str, Any]:
    """Render the batch/v1 Job that runs one job spec on the target cluster."""
    labels = {LABEL_TASK_NAME: task_name, LABEL_RULE_TYPE: job_spec.category.value}
    container: Dict[str, Any] = {
        "name": "inspect-job",
        "image": job_config.image,
        "imagePullPolicy": job_config.image_pull_policy,
        "command": list(job_config.command),
        "args": [
            "create",
            job_spec.category.value,
            "--task-name",
            task_name,
            "--task-namespace",
            namespace,
            "--result-name",
            job_spec.job_name,
        ],
        "env": [
            {
                "name": "KUBERNETES_POD_NAMESPACE",
                "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}},
            }
        ],
    }
    resources = _resources(job_config)
    if resources:
        container["resources"] = resources

    pod_spec: Dict[str, Any] = {
        "restartPolicy": "Never",
        "serviceAccountName": job_config.service_account,
        "containers": [container],
    }
    if job_spec.category not in CLUSTER_SCOPED and job_spec.node_name:
        pod_spec["nodeName"] = job_spec.node_name
        pod_spec["tolerations"] = [{"operator": "Exists"}]
        if job_spec.category in _HOST_FS_CATEGORIES:
            pod_spec["hostPID"] = True
            pod_spec["volumes"] = [{"name": "root", "hostPath": {"path": "/"}}]
            container["volumeMounts"] = [
                {"name": "root", "mountPath": HOST_ROOT_MOUNT, "readOnly": True}
            ]

    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {"name": job_spec.job_name, "namespace": namespace, "labels": labels},
        "spec": {
            "backoffLimit": job_config.backoff_limit,
            "ttlSecondsAfterFinished": job_config.ttl_seconds_after_finished,
            "template": {"metadata": {"labels": labels}, "spec": pod_spec},
        },
    }
