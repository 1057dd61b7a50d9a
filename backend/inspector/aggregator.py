from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import crud
from .constants import (
    LABEL_NODE_NAME,
    LABEL_RULE_TYPE,
    LABEL_TASK_NAME,
    Category,
    Level,
    Phase,
)
from .inspections import ResultExtractor, build_default_registry
from .kube import ClusterClient, ClusterClientError
from .schemas import JobOutcome, Report, Task
from .timeutil import format_duration, format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


def report_name(cluster_name: str, task_name: str) -> str:
    return f"{cluster_name}-{task_name}-result"


def count_levels(report: Report) -> Dict[Level, int]:
    """Count asserted results per level, seeded with the component counters."""
    counts: Dict[Level, int] = {
        Level.DANGER: report.component_summary.dangerous,
        Level.WARNING: report.component_summary.warning,
        Level.IGNORE: report.component_summary.ignore,
    }
    for items in report.results.values():
        for item in items:
            if not item.assert_:
                continue
            level = item.level or Level.DANGER
            counts[level] = counts.get(level, 0) + 1
    return counts


class ResultAggregator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        result_root: Path,
        registry: Optional[Mapping[Category, ResultExtractor]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.result_root = Path(result_root)
        self.registry = dict(registry) if registry is not None else build_default_registry()

    def aggregate(
        self,
        cluster_name: str,
        task: Task,
        outcomes: Sequence[JobOutcome],
        client: ClusterClient,
        totals: Mapping[Category, int],
        end_time: Optional[datetime] = None,
    ) -> Report:
        artifacts = {
            artifact.name: artifact
            for artifact in client.list_config_artifacts({LABEL_TASK_NAME: task.name})
        }
        started = task.status.start_timestamp or task.creation_timestamp
        report = Report(
            name=report_name(cluster_name, task.name),
            task_name=task.name,
            cluster_name=cluster_name,
            policy=task.spec.inspect_policy,
            start_time=format_timestamp(started),
            end_time=format_timestamp(end_time or utcnow()),
            rule_totals=dict(totals),
        )

        for outcome in outcomes:
            if outcome.phase is not Phase.SUCCEEDED:
                continue
            artifact = artifacts.get(outcome.job_name)
            if artifact is None:
                logger.warning("No result artifact found for job %s.", outcome.job_name)
                continue
            raw_type = artifact.labels.get(LABEL_RULE_TYPE, "")
            try:
                category = Category(raw_type)
            except ValueError:
                logger.warning("Unknown rule type %r on artifact %s, skipping.", raw_type, artifact.name)
                continue
            extractor = self.registry.get(category)
            if extractor is None:
                logger.warning("No result extractor registered for %s, skipping.", category.value)
                continue
            logger.info("Collecting %s result data from %s.", category.value, artifact.name)
            try:
                fragment = extractor.extract(artifact.labels.get(LABEL_NODE_NAME), artifact.payload)
            except (ValueError, ValidationError) as exc:
                logger.error("Failed to read result of job %s: %s", outcome.job_name, exc)
                raise
            report.merge(category, fragment.items)
            if fragment.summary is not None:
                summary = report.component_summary
                summary.dangerous += fragment.summary.dangerous
                summary.warning += fragment.summary.warning
                summary.ignore += fragment.summary.ignore
        return report

    def report_path(self, name: str) -> Path:
        return self.result_root / name

    def write_report(self, report: Report) -> Path:
        """Write the report atomically; a failed write leaves no partial file."""
        self.result_root.mkdir(parents=True, exist_ok=True)
        target = self.report_path(report.name)
        data = report.to_json()
        fd, tmp_path = tempfile.mkstemp(dir=self.result_root, prefix=f".{report.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
            os.replace(tmp_path, target)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        return target

    def read_report(self, name: str) -> Report:
        return Report.from_json(self.report_path(name).read_bytes())

    def persist(self, report: Report, client: ClusterClient) -> None:
        path = self.write_report(report)
        db = self.session_factory()
        try:
            crud.create_result(
                db,
                name=report.name,
                task_name=report.task_name,
                cluster_name=report.cluster_name,
                policy=report.policy,
                start_time=report.start_time,
                end_time=report.end_time,
                rule_totals={category.value: total for category, total in report.rule_totals.items()},
                file_path=str(path),
            )
        finally:
            db.close()
        logger.info("Saved result %s to %s.", report.name, path)
        client.delete_config_artifacts({LABEL_TASK_NAME: report.task_name})

    def finalize_result(self, name: str) -> Optional[Report]:
        """Fill in duration and level counts; a completed result is left untouched."""
        db = self.session_factory()
        try:
            record = crud.get_result(db, name)
            if record is None:
                logger.warning("Result %s not found.", name)
                return None
            if record.complete:
                return None
            report = self.read_report(name)
            started = parse_timestamp(report.start_time)
            ended = parse_timestamp(report.end_time)
            report.duration = format_duration(ended - started)
            report.levels = count_levels(report)
            report.complete = True
            self.write_report(report)
            crud.complete_result(
                db,
                record,
                duration=report.duration,
                levels={level.value: count for level, count in report.levels.items()},
            )
        finally:
            db.close()
        logger.info("Result %s complete (duration %s).", name, report.duration)
        return report

    def delete_result(self, name: str) -> bool:
        db = self.session_factory()
        try:
            record = crud.get_result(db, name)
            if record is None:
                return False
            Path(record.file_path).unlink(missing_ok=True)
            crud.delete_result(db, record)
        finally:
            db.close()
        logger.info("Deleted result %s.", name)
        return True

    def purge_task_results(self, task_name: str) -> int:
        db = self.session_factory()
        try:
            names = [record.name for record in crud.list_results_for_task(db, task_name)]
        finally:
            db.close()
        for name in names:
            self.delete_result(name)
        return len(names)


def collect_cluster_report(
    aggregator: ResultAggregator,
    cluster_name: str,
    task: Task,
    outcomes: Sequence[JobOutcome],
    client: ClusterClient,
    totals: Mapping[Category, int],
    end_time: Optional[datetime] = None,
) -> Optional[Report]:
    """Aggregate, persist and finalize one cluster's report."""
    report = aggregator.aggregate(cluster_name, task, outcomes, client, totals, end_time)
    try:
        aggregator.persist(report, client)
    except ClusterClientError as exc:
        logger.error("Failed to clean up result artifacts for %s: %s", report.name, exc)
    return aggregator.finalize_result(report.name) or report
