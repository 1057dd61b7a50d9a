from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from . import templates
from .config import JobConfig
from .constants import (
    DEFAULT_CLUSTER_NAME,
    DEFAULT_POLL_INTERVAL,
    LABEL_INSPECT_RULE_GROUP,
    RULE_GROUP_TEMP,
    Phase,
)
from .kube import AlreadyExistsError, ClusterClient, ClusterClientError, NotFoundError
from .schemas import JobOutcome, JobSpec
from .timeutil import is_timeout, utcnow

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 5


def compute_concurrency(node_count: int, category_count: int) -> int:
    # Half rounds up, unlike round().
    budget = int(math.floor(node_count + 0.1 * category_count + 0.5))
    return max(MIN_CONCURRENCY, budget)


class Dispatcher:
    """Runs job specs on one cluster and reports a terminal phase for each."""

    def __init__(
        self,
        client: ClusterClient,
        task_name: str,
        job_config: Optional[JobConfig] = None,
        *,
        cluster_name: str = DEFAULT_CLUSTER_NAME,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.task_name = task_name
        self.job_config = job_config or JobConfig()
        self.cluster_name = cluster_name
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep
        self._lock = threading.Lock()
        self._outcomes: List[JobOutcome] = []

    def run(
        self,
        job_specs: Sequence[JobSpec],
        task_created_at: datetime,
        timeout: timedelta,
        node_count: Optional[int] = None,
    ) -> List[JobOutcome]:
        if node_count is None:
            node_count = len(self.client.list_nodes())
        categories = {spec.category for spec in job_specs}
        concurrency = compute_concurrency(node_count, len(categories))
        logger.info(
            "Dispatching %d jobs for task %s on cluster %s (concurrency=%d).",
            len(job_specs),
            self.task_name,
            self.cluster_name,
            concurrency,
        )

        with self._lock:
            self._outcomes = []
        with ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix=f"dispatch-{self.cluster_name}"
        ) as pool:
            futures = [
                pool.submit(self._run_job, spec, task_created_at, timeout) for spec in job_specs
            ]
            wait(futures)
        for future in futures:
            future.result()

        self._clear_rule_artifacts()
        with self._lock:
            return list(self._outcomes)

    def _record(self, spec: JobSpec, phase: Phase) -> None:
        outcome = JobOutcome(
            job_name=spec.job_name,
            category=spec.category,
            phase=phase,
            cluster_name=self.cluster_name,
        )
        with self._lock:
            self._outcomes.append(outcome)

    def _run_job(self, spec: JobSpec, task_created_at: datetime, timeout: timedelta) -> None:
        if is_timeout(task_created_at, timeout, self.clock()):
            logger.warning("Task %s timed out before job %s started.", self.task_name, spec.job_name)
            self._record(spec, Phase.FAILED)
            return

        try:
            self.client.get_config_artifact(spec.job_name)
        except NotFoundError:
            pass
        except ClusterClientError as exc:
            logger.error("Failed to look up result of job %s: %s", spec.job_name, exc)
            self._record(spec, Phase.FAILED)
            return
        else:
            logger.info("Job %s already has a result, skipping creation.", spec.job_name)
            self._record(spec, Phase.SUCCEEDED)
            return

        manifest = templates.inspect_job(spec, self.task_name, self.client.namespace, self.job_config)
        try:
            self.client.create_job(manifest)
        except AlreadyExistsError:
            logger.info("Job %s already exists, treating as completed.", spec.job_name)
            self._record(spec, Phase.SUCCEEDED)
            return
        except ClusterClientError as exc:
            logger.error("Failed to create job %s: %s", spec.job_name, exc)
            self._record(spec, Phase.FAILED)
            return
        logger.info("Job %s created.", spec.job_name)

        phase = self._wait_for_completion(spec.job_name, task_created_at, timeout)
        logger.info("Job %s finished with phase %s.", spec.job_name, phase.value)
        self._record(spec, phase)

    def _wait_for_completion(self, job_name: str, task_created_at: datetime, timeout: timedelta) -> Phase:
        while True:
            logger.debug("Waiting for job %s to complete.", job_name)
            try:
                status = self.client.get_job(job_name)
            except ClusterClientError as exc:
                logger.error("Failed to poll job %s: %s", job_name, exc)
                return Phase.FAILED
            if status.completion_time is not None and status.active == 0:
                return Phase.SUCCEEDED
            if status.failed and status.active == 0:
                logger.warning("Job %s reported %d failed pods.", job_name, status.failed)
                return Phase.FAILED
            if is_timeout(task_created_at, timeout, self.clock()):
                logger.warning("Job %s timed out, deleting it.", job_name)
                try:
                    self.client.delete_job(job_name, propagation="Background")
                except ClusterClientError as exc:
                    logger.error("Failed to delete timed out job %s: %s", job_name, exc)
                return Phase.FAILED
            self.sleep(self.poll_interval)

    def _clear_rule_artifacts(self) -> None:
        try:
            self.client.delete_config_artifacts({LABEL_INSPECT_RULE_GROUP: RULE_GROUP_TEMP})
        except ClusterClientError as exc:
            logger.warning("Failed to clear rule artifacts for task %s: %s", self.task_name, exc)
