from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import DEFAULT_CLUSTER_NAME, DEFAULT_TIMEOUT, Category, Level, Phase

_LEVEL_ALIASES = {"dangerous": Level.DANGER}


def normalise_level(value: Any) -> Any:
    """Accept level labels in any case, e.g. ``Warning`` or ``DANGER``."""
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return None
        return _LEVEL_ALIASES.get(text, text)
    return value


class RuleItem(BaseModel):
    """One leaf check. ``name`` is the deduplication key inside its category."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    node_name: Optional[str] = Field(None, alias="nodeName")
    node_selector: Optional[Dict[str, str]] = Field(None, alias="nodeSelector")
    desc: Optional[str] = None
    level: Optional[Level] = None

    check_level = field_validator("level", mode="before")(normalise_level)

    @property
    def has_target(self) -> bool:
        return bool(self.node_name) or self.node_selector is not None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class PolicyRule(RuleItem):
    rule: Optional[str] = None
    module: Optional[str] = None


class MetricsRule(RuleItem):
    rule: Optional[str] = None
    endpoint: Optional[str] = None


class ServiceConnectRule(RuleItem):
    namespace: Optional[str] = None
    workspace: Optional[str] = None


class FileChangeRule(RuleItem):
    path: Optional[str] = None


class SysctlRule(RuleItem):
    rule: Optional[str] = None


class SystemdRule(RuleItem):
    rule: Optional[str] = None


class FileFilterRule(RuleItem):
    path: Optional[str] = None
    rule: Optional[str] = None


class CustomCommandRule(RuleItem):
    command: Optional[str] = None
    rule: Optional[str] = None


class NodeInfoRule(RuleItem):
    resources_type: Optional[str] = Field(None, alias="resourcesType")
    mount: Optional[str] = None
    rule: Optional[str] = None


class ComponentRule(RuleItem):
    """A component excluded from the implicit component check."""


ITEM_TYPES: Dict[Category, Type[RuleItem]] = {
    Category.POLICY: PolicyRule,
    Category.METRICS: MetricsRule,
    Category.SERVICE_CONNECT: ServiceConnectRule,
    Category.FILE_CHANGE: FileChangeRule,
    Category.SYSCTL: SysctlRule,
    Category.SYSTEMD: SystemdRule,
    Category.FILE_FILTER: FileFilterRule,
    Category.CUSTOM_COMMAND: CustomCommandRule,
    Category.NODE_INFO: NodeInfoRule,
    Category.COMPONENT: ComponentRule,
}

_SPEC_ATTRIBUTES: Dict[Category, str] = {
    Category.POLICY: "opas",
    Category.METRICS: "prometheus",
    Category.SERVICE_CONNECT: "service_connect",
    Category.FILE_CHANGE: "file_change",
    Category.SYSCTL: "sysctl",
    Category.SYSTEMD: "systemd",
    Category.FILE_FILTER: "file_filter",
    Category.CUSTOM_COMMAND: "custom_command",
    Category.NODE_INFO: "node_info",
}


class RuleSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prometheus_endpoint: Optional[str] = Field(None, alias="prometheusEndpoint")
    opas: List[PolicyRule] = Field(default_factory=list)
    prometheus: List[MetricsRule] = Field(default_factory=list)
    service_connect: List[ServiceConnectRule] = Field(default_factory=list, alias="serviceConnect")
    file_change: List[FileChangeRule] = Field(default_factory=list, alias="fileChange")
    sysctl: List[SysctlRule] = Field(default_factory=list)
    systemd: List[SystemdRule] = Field(default_factory=list)
    file_filter: List[FileFilterRule] = Field(default_factory=list, alias="fileFilter")
    custom_command: List[CustomCommandRule] = Field(default_factory=list, alias="customCommand")
    node_info: List[NodeInfoRule] = Field(default_factory=list, alias="nodeInfo")
    component_exclude: List[str] = Field(default_factory=list, alias="componentExclude")

    def items(self, category: Category) -> List[RuleItem]:
        if category is Category.COMPONENT:
            return [ComponentRule(name=name) for name in self.component_exclude]
        return list(getattr(self, _SPEC_ATTRIBUTES[category]))

    def items_by_category(self) -> Dict[Category, List[RuleItem]]:
        return {category: self.items(category) for category in Category}

    def with_items(self, category: Category, items: List[RuleItem]) -> "RuleSpec":
        if category is Category.COMPONENT:
            return self.model_copy(update={"component_exclude": [item.name for item in items]})
        return self.model_copy(update={_SPEC_ATTRIBUTES[category]: list(items)})


class Rule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    rule_group: Optional[str] = Field(None, alias="ruleGroup")
    spec: RuleSpec = Field(default_factory=RuleSpec)


class RuleRef(BaseModel):
    """A rule requested by a task, with an optional node targeting override."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    node_name: Optional[str] = Field(None, alias="nodeName")
    node_selector: Optional[Dict[str, str]] = Field(None, alias="nodeSelector")

    @property
    def has_override(self) -> bool:
        return bool(self.node_name) or self.node_selector is not None


class TaskSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rule_names: List[RuleRef] = Field(default_factory=list, alias="ruleNames")
    cluster_names: List[str] = Field(default_factory=list, alias="clusterName")
    timeout: str = DEFAULT_TIMEOUT
    inspect_policy: str = Field("single", alias="inspectPolicy")


class ClusterInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cluster_version: str = Field("", alias="clusterVersion")
    nodes_count: int = Field(0, alias="nodesCount")
    namespaces_count: int = Field(0, alias="namespacesCount")


class JobOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_name: str = Field(..., alias="jobName")
    category: Category = Field(..., alias="ruleType")
    phase: Phase
    cluster_name: str = Field(DEFAULT_CLUSTER_NAME, alias="clusterName")


class TaskStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phase: Phase = Phase.PENDING
    start_timestamp: Optional[datetime] = Field(None, alias="startTimestamp")
    end_timestamp: Optional[datetime] = Field(None, alias="endTimestamp")
    job_phases: List[JobOutcome] = Field(default_factory=list, alias="jobPhase")
    requested_categories: List[Category] = Field(default_factory=list, alias="requestedCategories")
    complete_item_count: int = Field(0, alias="completeItemCount")
    cluster_info: ClusterInfo = Field(default_factory=ClusterInfo, alias="clusterInfo")


class Task(BaseModel):
    name: str
    rule_group: Optional[str] = None
    spec: TaskSpec = Field(default_factory=TaskSpec)
    status: TaskStatus = Field(default_factory=TaskStatus)
    creation_timestamp: datetime
    deletion_timestamp: Optional[datetime] = None
    finalizers: List[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.phase in {Phase.SUCCEEDED, Phase.FAILED}


class JobSpec(BaseModel):
    """One dispatchable unit; ``run_rule`` is the JSON encoded item list."""

    model_config = ConfigDict(populate_by_name=True)

    job_name: str = Field(..., alias="jobName")
    category: Category = Field(..., alias="ruleType")
    node_name: Optional[str] = Field(None, alias="nodeName")
    run_rule: str = Field("[]", alias="runRule")

    def rule_items(self) -> List[Dict[str, Any]]:
        return json.loads(self.run_rule)


class Node(BaseModel):
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)


class JobStatus(BaseModel):
    name: str
    created_at: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    active: int = 0
    succeeded: int = 0
    failed: int = 0


class ConfigArtifact(BaseModel):
    name: str
    namespace: str
    labels: Dict[str, str] = Field(default_factory=dict)
    payload: bytes = b""


class ResultItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = ""
    node_name: Optional[str] = Field(None, alias="nodeName")
    assert_: Optional[bool] = Field(None, alias="assert")
    level: Optional[Level] = None
    message: Optional[str] = None
    value: Optional[str] = None

    check_level = field_validator("level", mode="before")(normalise_level)


class ResultSummary(BaseModel):
    dangerous: int = 0
    warning: int = 0
    ignore: int = 0


class Report(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    task_name: str = Field(..., alias="taskName")
    cluster_name: str = Field(..., alias="clusterName")
    policy: str = ""
    start_time: str = Field(..., alias="taskStartTime")
    end_time: str = Field(..., alias="taskEndTime")
    duration: Optional[str] = None
    complete: bool = False
    rule_totals: Dict[Category, int] = Field(default_factory=dict, alias="inspectRuleTotal")
    levels: Dict[Level, int] = Field(default_factory=dict, alias="level")
    component_summary: ResultSummary = Field(default_factory=ResultSummary, alias="componentSummary")
    results: Dict[Category, List[ResultItem]] = Field(default_factory=dict)

    def merge(self, category: Category, items: List[ResultItem]) -> None:
        self.results.setdefault(category, []).extend(items)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    @classmethod
    def from_json(cls, text: str | bytes) -> "Report":
        return cls.model_validate_json(text)


class TaskCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=150)
    rule_group: Optional[str] = Field(None, alias="ruleGroup")
    spec: TaskSpec = Field(default_factory=TaskSpec)


class TaskOut(BaseModel):
    name: str
    rule_group: Optional[str] = None
    spec: TaskSpec
    status: TaskStatus
    creation_timestamp: datetime
    deletion_timestamp: Optional[datetime] = None
    finalizers: List[str] = Field(default_factory=list)


class RuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    rule_group: Optional[str] = None
    spec: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime


class ResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    task_name: str
    cluster_name: str
    policy: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[str] = None
    rule_totals: Dict[str, int] = Field(default_factory=dict)
    levels: Dict[str, int] = Field(default_factory=dict)
    complete: bool = False
    report: Optional[Dict[str, Any]] = None


class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    entity_type: str
    entity_name: Optional[str]
    description: Optional[str]
    created_at: datetime
