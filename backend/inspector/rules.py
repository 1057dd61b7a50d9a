from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Tuple

from .constants import (
    LABEL_INSPECT_RULE_GROUP,
    RULE_GROUP_TEMP,
    Category,
)
from .kube import ClusterClient, NotFoundError
from .schemas import JobSpec, Rule, RuleItem, RuleRef

logger = logging.getLogger(__name__)

# The implicit component check always counts as one rule.
COMPONENT_MIN_TOTAL = 1


def select_rules(available: Sequence[Rule], requested: Sequence[RuleRef]) -> List[Rule]:
    """Pick rules by name in the requested order; unknown names are skipped."""
    by_name: Dict[str, Rule] = {}
    for rule in available:
        by_name.setdefault(rule.name, rule)
    selected: List[Rule] = []
    for ref in requested:
        rule = by_name.get(ref.name)
        if rule is None:
            logger.debug("Requested rule %s not found, skipping.", ref.name)
            continue
        selected.append(rule)
    return selected


def apply_node_override(rule: Rule, override: RuleRef) -> Rule:
    if not override.has_override:
        return rule
    spec = rule.spec
    for category in Category:
        if category is Category.COMPONENT:
            continue
        items = spec.items(category)
        if not items:
            continue
        updated: List[RuleItem] = []
        for item in items:
            if item.has_target:
                updated.append(item)
                continue
            updated.append(
                item.model_copy(
                    update={
                        "node_name": override.node_name,
                        "node_selector": dict(override.node_selector)
                        if override.node_selector is not None
                        else None,
                    }
                )
            )
        spec = spec.with_items(category, updated)
    return rule.model_copy(update={"spec": spec})


def propagate_default_endpoint(rules: Iterable[Rule]) -> List[Rule]:
    propagated: List[Rule] = []
    for rule in rules:
        endpoint = rule.spec.prometheus_endpoint
        if not endpoint or not rule.spec.prometheus:
            propagated.append(rule)
            continue
        items = [
            item if item.endpoint else item.model_copy(update={"endpoint": endpoint})
            for item in rule.spec.prometheus
        ]
        propagated.append(
            rule.model_copy(update={"spec": rule.spec.model_copy(update={"prometheus": items})})
        )
    return propagated


def dedup_items(items: Iterable[RuleItem]) -> List[RuleItem]:
    unique: List[RuleItem] = []
    for item in items:
        if not any(existing.name == item.name for existing in unique):
            unique.append(item)
    return unique


def merge_and_dedup(
    rules: Sequence[Rule],
) -> Tuple[Dict[Category, List[RuleItem]], Dict[Category, int]]:
    merged: Dict[Category, List[RuleItem]] = {}
    for rule in rules:
        for category, items in rule.spec.items_by_category().items():
            if items:
                merged.setdefault(category, []).extend(items)

    category_items: Dict[Category, List[RuleItem]] = {}
    totals: Dict[Category, int] = {}
    for category, items in merged.items():
        category_items[category] = dedup_items(items)
        totals[category] = len(category_items[category])
    category_items.setdefault(Category.COMPONENT, [])
    totals[Category.COMPONENT] = COMPONENT_MIN_TOTAL
    return category_items, totals


@dataclass
class RuleSet:
    category_items: Dict[Category, List[RuleItem]] = field(default_factory=dict)
    totals: Dict[Category, int] = field(default_factory=dict)


class RuleEngine:
    """Resolves the rules a task asks for into one merged item list per category."""

    def __init__(self, requested: Sequence[RuleRef]) -> None:
        self.requested = list(requested)

    def resolve(self, available: Sequence[Rule]) -> RuleSet:
        scheduled: List[Rule] = []
        for ref in self.requested:
            for rule in select_rules(available, [ref]):
                scheduled.append(apply_node_override(rule.model_copy(deep=True), ref))
        category_items, totals = merge_and_dedup(propagate_default_endpoint(scheduled))
        logger.info(
            "Resolved %d of %d requested rules into %d categories.",
            len(scheduled),
            len(self.requested),
            len(totals),
        )
        return RuleSet(category_items=category_items, totals=totals)


def order_policy_last(job_specs: Sequence[JobSpec]) -> List[JobSpec]:
    ordered = [spec for spec in job_specs if spec.category is not Category.POLICY]
    ordered.extend(spec for spec in job_specs if spec.category is Category.POLICY)
    return ordered


def create_rule_artifact(
    client: ClusterClient, task_name: str, job_specs: Sequence[JobSpec]
) -> List[JobSpec]:
    """Publish the merged job list for the job pods, replacing any stale copy."""
    ordered = order_policy_last(job_specs)
    payload = json.dumps(
        [spec.model_dump(by_alias=True, mode="json") for spec in ordered]
    ).encode("utf-8")
    try:
        client.delete_config_artifact(task_name)
        logger.info("Removed stale rule artifact for task %s.", task_name)
    except NotFoundError:
        pass
    client.create_config_artifact(
        task_name,
        client.namespace,
        payload,
        {LABEL_INSPECT_RULE_GROUP: RULE_GROUP_TEMP},
    )
    return ordered
