from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from . import models, schemas
from .constants import Phase


def log_action(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_name: Optional[str] = None,
    description: Optional[str] = None,
) -> None:
    entry = models.AuditLog(
        action=action,
        entity_type=entity_type,
        entity_name=entity_name,
        description=description,
    )
    db.add(entry)
    db.commit()


def list_audit_logs(db: Session, limit: int = 100) -> List[models.AuditLog]:
    return (
        db.query(models.AuditLog)
        .order_by(models.AuditLog.created_at.desc(), models.AuditLog.id.desc())
        .limit(limit)
        .all()
    )


# Rules


def get_rule(db: Session, name: str) -> Optional[models.InspectRuleRecord]:
    return db.query(models.InspectRuleRecord).filter(models.InspectRuleRecord.name == name).first()


def upsert_rule(db: Session, rule: schemas.Rule) -> models.InspectRuleRecord:
    record = get_rule(db, rule.name)
    spec_json = rule.spec.model_dump_json(by_alias=True, exclude_none=True)
    if record is None:
        record = models.InspectRuleRecord(name=rule.name)
        action = "create"
    else:
        action = "update"
    record.rule_group = rule.rule_group
    record.spec_json = spec_json
    record.updated_at = datetime.utcnow()
    db.add(record)
    db.commit()
    db.refresh(record)
    log_action(
        db,
        action=action,
        entity_type="inspect_rule",
        entity_name=rule.name,
        description=f"Stored rule '{rule.name}'.",
    )
    return record


def list_rules(db: Session, rule_group: Optional[str] = None) -> List[models.InspectRuleRecord]:
    query = db.query(models.InspectRuleRecord)
    if rule_group is not None:
        query = query.filter(models.InspectRuleRecord.rule_group == rule_group)
    return query.order_by(models.InspectRuleRecord.id).all()


def to_rule(record: models.InspectRuleRecord) -> schemas.Rule:
    return schemas.Rule(
        name=record.name,
        rule_group=record.rule_group,
        spec=schemas.RuleSpec.model_validate(record.spec),
    )


# Tasks


def create_task(
    db: Session,
    *,
    name: str,
    spec: schemas.TaskSpec,
    rule_group: Optional[str] = None,
) -> models.InspectTaskRecord:
    record = models.InspectTaskRecord(
        name=name,
        rule_group=rule_group,
        spec_json=spec.model_dump_json(by_alias=True),
        status_json=schemas.TaskStatus().model_dump_json(by_alias=True),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    log_action(
        db,
        action="create",
        entity_type="inspect_task",
        entity_name=name,
        description=f"Created inspect task '{name}'.",
    )
    return record


def get_task(db: Session, name: str) -> Optional[models.InspectTaskRecord]:
    return db.query(models.InspectTaskRecord).filter(models.InspectTaskRecord.name == name).first()


def to_task(record: models.InspectTaskRecord) -> schemas.Task:
    return schemas.Task(
        name=record.name,
        rule_group=record.rule_group,
        spec=schemas.TaskSpec.model_validate(record.spec),
        status=schemas.TaskStatus.model_validate(record.status),
        creation_timestamp=record.created_at,
        deletion_timestamp=record.deletion_requested_at,
        finalizers=record.finalizers,
    )


def list_active_tasks(db: Session) -> List[models.InspectTaskRecord]:
    """Tasks that still need reconciling: unfinished ones and those awaiting deletion."""
    terminal = {Phase.SUCCEEDED.value, Phase.FAILED.value}
    records = db.query(models.InspectTaskRecord).order_by(models.InspectTaskRecord.id).all()
    return [
        record
        for record in records
        if record.deletion_requested_at is not None
        or record.status.get("phase") not in terminal
    ]


def save_task_status(
    db: Session, record: models.InspectTaskRecord, status: schemas.TaskStatus
) -> models.InspectTaskRecord:
    record.status_json = status.model_dump_json(by_alias=True)
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def add_finalizer(
    db: Session, record: models.InspectTaskRecord, finalizer: str
) -> models.InspectTaskRecord:
    finalizers = record.finalizers
    if finalizer not in finalizers:
        finalizers.append(finalizer)
        record.set_finalizers(finalizers)
        db.add(record)
        db.commit()
        db.refresh(record)
    return record


def remove_finalizer(
    db: Session, record: models.InspectTaskRecord, finalizer: str
) -> models.InspectTaskRecord:
    finalizers = [item for item in record.finalizers if item != finalizer]
    record.set_finalizers(finalizers)
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def request_task_deletion(
    db: Session, record: models.InspectTaskRecord, when: Optional[datetime] = None
) -> models.InspectTaskRecord:
    if record.deletion_requested_at is None:
        record.deletion_requested_at = when or datetime.utcnow()
        db.add(record)
        db.commit()
        db.refresh(record)
        log_action(
            db,
            action="delete",
            entity_type="inspect_task",
            entity_name=record.name,
            description=f"Requested deletion of inspect task '{record.name}'.",
        )
    return record


def erase_task_if_released(db: Session, record: models.InspectTaskRecord) -> bool:
    """Erase the task once deletion was requested and every finalizer is gone."""
    if record.deletion_requested_at is None or record.finalizers:
        return False
    db.delete(record)
    db.commit()
    return True


# Results


def create_result(
    db: Session,
    *,
    name: str,
    task_name: str,
    cluster_name: str,
    policy: Optional[str],
    start_time: Optional[str],
    end_time: Optional[str],
    rule_totals: Mapping[str, int],
    file_path: str,
) -> models.InspectResultRecord:
    task = get_task(db, task_name)
    record = models.InspectResultRecord(
        name=name,
        task_id=task.id if task else None,
        task_name=task_name,
        cluster_name=cluster_name,
        policy=policy,
        start_time=start_time,
        end_time=end_time,
        rule_totals_json=json.dumps(dict(rule_totals)),
        file_path=file_path,
        complete=False,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def get_result(db: Session, name: str) -> Optional[models.InspectResultRecord]:
    return (
        db.query(models.InspectResultRecord)
        .filter(models.InspectResultRecord.name == name)
        .first()
    )


def list_results_for_task(db: Session, task_name: str) -> List[models.InspectResultRecord]:
    return (
        db.query(models.InspectResultRecord)
        .filter(models.InspectResultRecord.task_name == task_name)
        .order_by(models.InspectResultRecord.id)
        .all()
    )


def complete_result(
    db: Session,
    record: models.InspectResultRecord,
    *,
    duration: str,
    levels: Dict[str, int],
) -> models.InspectResultRecord:
    record.duration = duration
    record.levels_json = json.dumps(levels)
    record.complete = True
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def delete_result(db: Session, record: models.InspectResultRecord) -> None:
    db.delete(record)
    db.commit()
