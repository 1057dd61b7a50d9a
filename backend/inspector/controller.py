from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

from sqlalchemy.orm import Session

from . import crud
from .aggregator import ResultAggregator
from .constants import DEFAULT_TIMEOUT, FINALIZER, Category, Phase
from .coordinator import ClientProvider, MultiClusterCoordinator
from .kube import ClusterClientError
from .models import InspectTaskRecord
from .schemas import ClusterInfo, JobOutcome, Task, TaskStatus
from .timeutil import is_timeout, parse_timeout, utcnow

logger = logging.getLogger(__name__)


class NotificationRegistry(Protocol):
    def register(self, task_name: str) -> None: ...

    def discard(self, task_name: str) -> None: ...


class InMemoryNotificationRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._names: Set[str] = set()

    def register(self, task_name: str) -> None:
        with self._lock:
            self._names.add(task_name)

    def discard(self, task_name: str) -> None:
        with self._lock:
            self._names.discard(task_name)

    def __contains__(self, task_name: object) -> bool:
        with self._lock:
            return task_name in self._names


def completed_categories(outcomes: Iterable[JobOutcome]) -> Set[Category]:
    outcomes = list(outcomes)
    succeeded = {outcome.category for outcome in outcomes if outcome.phase is Phase.SUCCEEDED}
    return succeeded - failed_categories(outcomes)


def failed_categories(outcomes: Iterable[JobOutcome]) -> Set[Category]:
    return {outcome.category for outcome in outcomes if outcome.phase is Phase.FAILED}


def evaluate_phase(status: TaskStatus, finished: bool) -> Phase:
    """Decide the task phase from its recorded outcomes.

    Any failed category fails the task. ``finished`` means no further
    outcomes can arrive, either because the run joined or the timeout passed.
    """
    if failed_categories(status.job_phases):
        return Phase.FAILED
    requested = set(status.requested_categories)
    if requested and status.complete_item_count == len(requested):
        return Phase.SUCCEEDED
    if finished:
        return Phase.FAILED
    return Phase.RUNNING


class TaskController:
    """Drives inspect tasks through Pending, Running and a terminal phase."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        coordinator: MultiClusterCoordinator,
        aggregator: ResultAggregator,
        clients: ClientProvider,
        registry: Optional[NotificationRegistry] = None,
        *,
        default_timeout: str = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.coordinator = coordinator
        self.aggregator = aggregator
        self.clients = clients
        self.registry = registry or InMemoryNotificationRegistry()
        self.default_timeout = default_timeout
        self.clock = clock
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._pending_results: Dict[str, List[str]] = {}

    def pending_results(self, name: str) -> List[str]:
        with self._lock:
            return list(self._pending_results.get(name, []))

    def is_in_flight(self, name: str) -> bool:
        with self._lock:
            return name in self._in_flight

    def _forget(self, name: str) -> None:
        with self._lock:
            self._pending_results.pop(name, None)
            self._in_flight.discard(name)

    def reconcile(self, name: str) -> Optional[Phase]:
        db = self.session_factory()
        try:
            record = crud.get_task(db, name)
            if record is None:
                self._forget(name)
                return None
            task = crud.to_task(record)

            if task.deletion_timestamp is not None:
                self._finalize_deletion(db, record)
                return None

            if FINALIZER not in task.finalizers:
                crud.add_finalizer(db, record, FINALIZER)
                logger.info("Added finalizer to inspect task %s.", name)
                return task.status.phase

            if task.is_terminal:
                with self._lock:
                    self._in_flight.discard(name)
                return task.status.phase

            if task.status.start_timestamp is None:
                return self._start(db, record, task)
            return self._check_running(db, record, task)
        finally:
            db.close()

    def _finalize_deletion(self, db: Session, record: InspectTaskRecord) -> None:
        name = record.name
        logger.info("Inspect task %s is being deleted.", name)
        self._forget(name)
        self.registry.discard(name)
        removed = self.aggregator.purge_task_results(name)
        if removed:
            logger.info("Removed %d results of inspect task %s.", removed, name)
        if FINALIZER in record.finalizers:
            record = crud.remove_finalizer(db, record, FINALIZER)
        if crud.erase_task_if_released(db, record):
            logger.info("Inspect task %s erased.", name)

    def _cluster_info(self) -> ClusterInfo:
        info = ClusterInfo()
        try:
            client = self.clients.home()
        except ClusterClientError as exc:
            logger.error("Failed to get home cluster client: %s", exc)
            return info
        try:
            info.cluster_version = client.get_server_version()
        except ClusterClientError as exc:
            logger.error("Failed to get Kubernetes server version: %s", exc)
        try:
            info.nodes_count = client.count_objects("nodes")
        except ClusterClientError as exc:
            logger.error("Failed to get node number: %s", exc)
        try:
            info.namespaces_count = client.count_objects("namespaces")
        except ClusterClientError as exc:
            logger.error("Failed to get namespace number: %s", exc)
        return info

    def _start(self, db: Session, record: InspectTaskRecord, task: Task) -> Phase:
        name = task.name
        with self._lock:
            if name in self._in_flight:
                return Phase.RUNNING
            self._in_flight.add(name)
        try:
            status = task.status.model_copy(deep=True)
            status.phase = Phase.RUNNING
            status.start_timestamp = self.clock()
            status.cluster_info = self._cluster_info()
            record = crud.save_task_status(db, record, status)
            task = task.model_copy(update={"status": status})
            self.registry.register(name)
            logger.info("Inspect task %s started.", name)

            rules = [crud.to_rule(item) for item in crud.list_rules(db, rule_group=task.rule_group)]
            runs = self.coordinator.run(task, rules)

            outcomes: List[JobOutcome] = []
            categories: Set[Category] = set()
            for run in runs:
                outcomes.extend(run.outcomes)
                categories |= run.categories
            with self._lock:
                self._pending_results[name] = [run.report.name for run in runs if run.report]

            status.job_phases = outcomes
            status.requested_categories = sorted(categories, key=lambda category: category.value)
            status.complete_item_count = len(completed_categories(outcomes) & categories)
            status.end_timestamp = self.clock()
            status.phase = evaluate_phase(status, finished=True)
            if any(run.report_failed for run in runs):
                status.phase = Phase.FAILED
            crud.save_task_status(db, record, status)
            logger.info("All jobs finished for inspect task %s, phase %s.", name, status.phase.value)
            return status.phase
        finally:
            with self._lock:
                self._in_flight.discard(name)

    def _check_running(self, db: Session, record: InspectTaskRecord, task: Task) -> Phase:
        if self.is_in_flight(task.name):
            return Phase.RUNNING
        timeout = parse_timeout(task.spec.timeout, self.default_timeout)
        timed_out = is_timeout(task.creation_timestamp, timeout, self.clock())
        status = task.status.model_copy(deep=True)
        phase = evaluate_phase(status, finished=timed_out)
        if phase is Phase.RUNNING:
            return phase
        status.phase = phase
        status.end_timestamp = status.end_timestamp or self.clock()
        crud.save_task_status(db, record, status)
        logger.info("Inspect task %s settled as %s.", task.name, phase.value)
        return phase
