import base64

from inspector.config import JobConfig
from inspector.constants import CONFIG_DATA_KEY, LABEL_RULE_TYPE, LABEL_TASK_NAME, Category
from inspector.coordinator import _as_template
from inspector.schemas import JobSpec
from inspector.templates import HOST_ROOT_MOUNT, binary_config_map, inspect_job


def test_binary_config_map_encodes_payload():
    manifest = binary_config_map("daily", "ns", b'[{"a": 1}]', {"k": "v"})
    assert manifest["metadata"] == {"name": "daily", "namespace": "ns", "labels": {"k": "v"}}
    assert base64.b64decode(manifest["binaryData"][CONFIG_DATA_KEY]) == b'[{"a": 1}]'
    assert manifest["immutable"] is True


def test_cluster_scoped_job_has_no_node_pinning():
    spec = JobSpec(job_name="daily-opa-abcde", category=Category.POLICY, node_name="node-a")
    manifest = inspect_job(spec, "daily", "ns", JobConfig())
    pod_spec = manifest["spec"]["template"]["spec"]
    assert "nodeName" not in pod_spec
    assert manifest["metadata"]["labels"] == {LABEL_TASK_NAME: "daily", LABEL_RULE_TYPE: "opa"}
    assert pod_spec["containers"][0]["args"][:2] == ["create", "opa"]


def test_host_checks_mount_the_root_filesystem():
    spec = JobSpec(job_name="daily-systemd-abcde", category=Category.SYSTEMD, node_name="node-b")
    manifest = inspect_job(spec, "daily", "ns", JobConfig(cpu_limit=None, memory_limit=None))
    pod_spec = manifest["spec"]["template"]["spec"]
    container = pod_spec["containers"][0]
    assert pod_spec["nodeName"] == "node-b"
    assert container["volumeMounts"][0]["mountPath"] == HOST_ROOT_MOUNT
    assert "limits" not in container["resources"]
    assert manifest["spec"]["backoffLimit"] == 0


def test_template_drops_server_managed_fields():
    obj = {
        "metadata": {"name": "sa", "namespace": "home", "uid": "x", "resourceVersion": "3"},
        "status": {"ready": True},
        "secrets": [],
    }
    assert _as_template(obj, namespace="remote") == {
        "metadata": {"name": "sa", "namespace": "remote"},
        "secrets": [],
    }
