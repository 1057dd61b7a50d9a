from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set

from pydantic import ValidationError

from .aggregator import ResultAggregator, collect_cluster_report
from .allocator import JobAllocator
from .config import EngineConfig
from .constants import (
    DEFAULT_CLUSTER_NAME,
    MANAGER_CLUSTER_ROLE,
    MANAGER_CLUSTER_ROLE_BINDING,
    MANAGER_SERVICE_ACCOUNT,
    Category,
)
from .dispatcher import Dispatcher
from .kube import AlreadyExistsError, ClusterClient, ClusterClientError
from .rules import RuleEngine, create_rule_artifact
from .schemas import JobOutcome, Report, Rule, Task
from .timeutil import parse_timeout, utcnow

logger = logging.getLogger(__name__)

_SERVER_MANAGED_METADATA = (
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "managedFields",
    "generation",
    "selfLink",
    "ownerReferences",
)


class BootstrapError(Exception):
    """Raised when a remote cluster cannot be prepared for inspection."""


class ClientProvider(Protocol):
    def home(self) -> ClusterClient: ...

    def for_cluster(self, name: str) -> ClusterClient: ...


def _as_template(obj: Dict[str, Any], namespace: Optional[str] = None) -> Dict[str, Any]:
    manifest = {key: value for key, value in obj.items() if key != "status"}
    metadata = {
        key: value
        for key, value in (obj.get("metadata") or {}).items()
        if key not in _SERVER_MANAGED_METADATA
    }
    if namespace is not None:
        metadata["namespace"] = namespace
    manifest["metadata"] = metadata
    return manifest


def _mirror(
    kind: str,
    name: str,
    read_remote: Callable[[], Optional[Dict[str, Any]]],
    read_home: Callable[[], Optional[Dict[str, Any]]],
    create_remote: Callable[[Dict[str, Any]], None],
    namespace: Optional[str] = None,
) -> None:
    if read_remote() is not None:
        return
    template = read_home()
    if template is None:
        raise BootstrapError(f"{kind} {name} is missing on the home cluster")
    try:
        create_remote(_as_template(template, namespace))
        logger.info("Created %s %s on remote cluster.", kind, name)
    except AlreadyExistsError:
        logger.debug("%s %s created concurrently.", kind, name)


def bootstrap_cluster(home: ClusterClient, remote: ClusterClient, namespace: str) -> None:
    """Make sure the remote cluster has the namespace and RBAC the jobs run with."""
    remote.ensure_namespace(namespace)
    _mirror(
        "clusterrole",
        MANAGER_CLUSTER_ROLE,
        lambda: remote.get_cluster_role(MANAGER_CLUSTER_ROLE),
        lambda: home.get_cluster_role(MANAGER_CLUSTER_ROLE),
        remote.create_cluster_role,
    )
    _mirror(
        "clusterrolebinding",
        MANAGER_CLUSTER_ROLE_BINDING,
        lambda: remote.get_cluster_role_binding(MANAGER_CLUSTER_ROLE_BINDING),
        lambda: home.get_cluster_role_binding(MANAGER_CLUSTER_ROLE_BINDING),
        remote.create_cluster_role_binding,
    )
    _mirror(
        "serviceaccount",
        MANAGER_SERVICE_ACCOUNT,
        lambda: remote.get_service_account(MANAGER_SERVICE_ACCOUNT, namespace),
        lambda: home.get_service_account(MANAGER_SERVICE_ACCOUNT, home.namespace),
        remote.create_service_account,
        namespace=namespace,
    )


@dataclass
class ClusterRun:
    cluster_name: str
    outcomes: List[JobOutcome] = field(default_factory=list)
    categories: Set[Category] = field(default_factory=set)
    report: Optional[Report] = None
    error: Optional[str] = None
    # Jobs ran but their results could not be turned into a report.
    report_failed: bool = False


class MultiClusterCoordinator:
    """Runs the resolve, allocate, dispatch and aggregate pipeline on every target cluster."""

    def __init__(
        self,
        clients: ClientProvider,
        aggregator: ResultAggregator,
        config: Optional[EngineConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.clients = clients
        self.aggregator = aggregator
        self.config = config or EngineConfig()
        self.clock = clock
        self.sleep = sleep

    def run(self, task: Task, rules: Sequence[Rule]) -> List[ClusterRun]:
        names = list(task.spec.cluster_names)
        if not names:
            return [self._run_guarded(DEFAULT_CLUSTER_NAME, task, rules, remote=False)]

        runs: List[ClusterRun] = []
        lock = threading.Lock()

        def _worker(name: str) -> None:
            run = self._run_guarded(name, task, rules, remote=True)
            with lock:
                runs.append(run)

        with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="cluster") as pool:
            futures = [pool.submit(_worker, name) for name in names]
        for future in futures:
            future.result()
        logger.info("All clusters finished for task %s.", task.name)
        return runs

    def _run_guarded(self, name: str, task: Task, rules: Sequence[Rule], remote: bool) -> ClusterRun:
        try:
            if remote:
                client = self.clients.for_cluster(name)
                bootstrap_cluster(self.clients.home(), client, self.config.namespace)
            else:
                client = self.clients.home()
            return self._run_cluster(name, client, task, rules)
        except (ClusterClientError, BootstrapError, ValidationError, ValueError) as exc:
            logger.error("Inspection of cluster %s failed: %s", name, exc)
            return ClusterRun(cluster_name=name, error=str(exc))

    def _run_cluster(
        self, name: str, client: ClusterClient, task: Task, rules: Sequence[Rule]
    ) -> ClusterRun:
        rule_set = RuleEngine(task.spec.rule_names).resolve(rules)
        nodes = client.list_nodes()
        job_specs = JobAllocator(task.name, nodes).partition(rule_set.category_items)
        job_specs = create_rule_artifact(client, task.name, job_specs)

        dispatcher = Dispatcher(
            client,
            task.name,
            self.config.job,
            cluster_name=name,
            poll_interval=self.config.poll_interval,
            clock=self.clock,
            sleep=self.sleep,
        )
        timeout = parse_timeout(task.spec.timeout, self.config.default_timeout)
        outcomes = dispatcher.run(job_specs, task.creation_timestamp, timeout, node_count=len(nodes))
        end_time = self.clock()

        categories = {spec.category for spec in job_specs}
        try:
            report = collect_cluster_report(
                self.aggregator, name, task, outcomes, client, rule_set.totals, end_time
            )
        except (ValidationError, ValueError) as exc:
            logger.error("Aggregating results of cluster %s failed: %s", name, exc)
            return ClusterRun(
                cluster_name=name,
                outcomes=outcomes,
                categories=categories,
                error=str(exc),
                report_failed=True,
            )
        return ClusterRun(
            cluster_name=name,
            outcomes=outcomes,
            categories=categories,
            report=report,
        )
