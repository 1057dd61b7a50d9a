from __future__ import annotations

from enum import Enum
from typing import FrozenSet


class Category(str, Enum):
    POLICY = "opa"
    METRICS = "prometheus"
    SERVICE_CONNECT = "serviceconnect"
    FILE_CHANGE = "filechange"
    SYSCTL = "sysctl"
    SYSTEMD = "systemd"
    FILE_FILTER = "filefilter"
    CUSTOM_COMMAND = "customcommand"
    NODE_INFO = "nodeinfo"
    COMPONENT = "component"


class Phase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class Level(str, Enum):
    DANGER = "danger"
    WARNING = "warning"
    IGNORE = "ignore"


# Categories that run as a single job for the whole cluster.
CLUSTER_SCOPED: FrozenSet[Category] = frozenset(
    {Category.POLICY, Category.METRICS, Category.SERVICE_CONNECT}
)

DEFAULT_NAMESPACE = "kubeeye-system"
DEFAULT_CLUSTER_NAME = "default"
DEFAULT_TIMEOUT = "10m"
DEFAULT_POLL_INTERVAL = 10
DEFAULT_RESULT_ROOT = "data/results"

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

FINALIZER = "kubeeye.finalizers.kubesphere.io"

LABEL_TASK_NAME = "kubeeye.kubesphere.io/task-name"
LABEL_RULE_TYPE = "kubeeye.kubesphere.io/rule-type"
LABEL_NODE_NAME = "kubeeye.kubesphere.io/node-name"
LABEL_RULE_GROUP = "kubeeye.kubesphere.io/rule-group"
LABEL_INSPECT_RULE_GROUP = "kubeeye.kubesphere.io/inspect-rule-group"
RULE_GROUP_TEMP = "inspect-rule-temp"

ANNOTATION_START_TIME = "kubeeye.kubesphere.io/task-start-time"
ANNOTATION_END_TIME = "kubeeye.kubesphere.io/task-end-time"
ANNOTATION_INSPECT_POLICY = "kubeeye.kubesphere.io/task-inspect-policy"
ANNOTATION_INSPECT_CLUSTER = "kubeeye.kubesphere.io/task-inspect-cluster"

CONFIG_DATA_KEY = "data"

MANAGER_CLUSTER_ROLE = "kubeeye-manager-role"
MANAGER_CLUSTER_ROLE_BINDING = "kubeeye-manager-rolebinding"
MANAGER_SERVICE_ACCOUNT = "kubeeye-controller-manager"
