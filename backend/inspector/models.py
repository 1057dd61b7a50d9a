from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base


def _load_json(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


class InspectRuleRecord(Base):
    __tablename__ = "inspect_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), unique=True, nullable=False)
    rule_group = Column(String(150), nullable=True)
    spec_json = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    @property
    def spec(self) -> dict:
        return _load_json(self.spec_json, {})


class InspectTaskRecord(Base):
    __tablename__ = "inspect_tasks"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), unique=True, nullable=False)
    rule_group = Column(String(150), nullable=True)
    spec_json = Column(Text, nullable=False, default="{}")
    status_json = Column(Text, nullable=True)
    finalizers_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    deletion_requested_at = Column(DateTime, nullable=True)

    results = relationship(
        "InspectResultRecord", back_populates="task", cascade="all, delete-orphan"
    )

    @property
    def spec(self) -> dict:
        return _load_json(self.spec_json, {})

    @property
    def status(self) -> dict:
        return _load_json(self.status_json, {})

    @property
    def finalizers(self) -> list[str]:
        return _load_json(self.finalizers_json, [])

    def set_finalizers(self, value: list[str]) -> None:
        self.finalizers_json = json.dumps(value) if value else None


class InspectResultRecord(Base):
    __tablename__ = "inspect_results"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)
    task_id = Column(
        Integer,
        ForeignKey("inspect_tasks.id", ondelete="CASCADE"),
        nullable=True,
    )
    task_name = Column(String(150), nullable=False, index=True)
    cluster_name = Column(String(150), nullable=False)
    policy = Column(String(50), nullable=True)
    start_time = Column(String(32), nullable=True)
    end_time = Column(String(32), nullable=True)
    duration = Column(String(50), nullable=True)
    rule_totals_json = Column(Text, nullable=True)
    levels_json = Column(Text, nullable=True)
    file_path = Column(String(255), nullable=False)
    complete = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    task = relationship("InspectTaskRecord", back_populates="results")

    @property
    def rule_totals(self) -> dict[str, int]:
        return _load_json(self.rule_totals_json, {})

    @property
    def levels(self) -> dict[str, int]:
        return _load_json(self.levels_json, {})


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
