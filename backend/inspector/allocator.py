from __future__ import annotations

import json
import logging
import random
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .constants import CLUSTER_SCOPED, Category
from .schemas import JobSpec, Node, RuleItem

logger = logging.getLogger(__name__)

# Same alphabet Kubernetes uses for generated name suffixes.
SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
SUFFIX_LENGTH = 5


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(random.choice(SUFFIX_ALPHABET) for _ in range(length))


def generate_job_name(task_name: str, category: Category) -> str:
    return f"{task_name}-{category.value}-{random_suffix()}"


def node_matches(node: Node, selector: Mapping[str, str]) -> bool:
    if not selector:
        return False
    return all(node.labels.get(key) == value for key, value in selector.items())


class JobAllocator:
    """Turns merged rule items into job specs.

    Cluster scoped categories get one job each. Node scoped categories get
    one job per node bucket, plus one job per node for untargeted items.
    """

    def __init__(self, task_name: str, nodes: Sequence[Node]) -> None:
        self.task_name = task_name
        self.nodes = list(nodes)
        self._issued: Set[str] = set()

    def partition(self, category_items: Mapping[Category, Sequence[RuleItem]]) -> List[JobSpec]:
        jobs: List[JobSpec] = []
        for category, items in category_items.items():
            if category is Category.COMPONENT:
                continue
            if category in CLUSTER_SCOPED:
                if items:
                    jobs.append(self._job(category, [item.to_payload() for item in items]))
                continue
            jobs.extend(self._per_node(category, items))
        component_items = category_items.get(Category.COMPONENT, [])
        jobs.append(self._job(Category.COMPONENT, [item.name for item in component_items]))
        logger.info("Allocated %d jobs for task %s.", len(jobs), self.task_name)
        return jobs

    def _job(self, category: Category, payload: List[Any], node_name: Optional[str] = None) -> JobSpec:
        return JobSpec(
            job_name=self._unique_name(category),
            category=category,
            node_name=node_name,
            run_rule=json.dumps(payload),
        )

    def _unique_name(self, category: Category) -> str:
        # Names stay unique across partition calls on the same allocator.
        name = generate_job_name(self.task_name, category)
        while name in self._issued:
            name = generate_job_name(self.task_name, category)
        self._issued.add(name)
        return name

    def _per_node(self, category: Category, items: Sequence[RuleItem]) -> List[JobSpec]:
        buckets: Dict[str, List[Dict[str, Any]]] = {}
        broadcast: List[RuleItem] = []
        for item in items:
            if item.node_name:
                buckets.setdefault(item.node_name, []).append(item.to_payload())
            elif item.node_selector is not None:
                matched = [node for node in self.nodes if node_matches(node, item.node_selector)]
                if not matched:
                    logger.warning(
                        "No node matches selector %s for %s item %s.",
                        item.node_selector,
                        category.value,
                        item.name,
                    )
                for node in matched:
                    payload = item.to_payload()
                    payload["nodeName"] = node.name
                    buckets.setdefault(node.name, []).append(payload)
            else:
                broadcast.append(item)

        jobs = [
            self._job(category, bucket, node_name=node_name)
            for node_name, bucket in buckets.items()
            if bucket
        ]
        if broadcast:
            for node in self.nodes:
                payload = []
                for item in broadcast:
                    entry = item.to_payload()
                    entry["nodeName"] = node.name
                    payload.append(entry)
                jobs.append(self._job(category, payload, node_name=node.name))
        return jobs
