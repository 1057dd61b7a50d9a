from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ..constants import CLUSTER_SCOPED, Category
from ..schemas import ResultItem, ResultSummary


@dataclass
class ResultFragment:
    items: List[ResultItem] = field(default_factory=list)
    summary: Optional[ResultSummary] = None


class ResultExtractor(Protocol):
    def extract(self, node_name: Optional[str], payload: bytes) -> ResultFragment: ...


def _load_payload(payload: bytes) -> Any:
    if not payload:
        return []
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"result payload is not valid JSON: {exc}") from exc


def _result_list(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, dict):
        data = data.get("results") or []
    if not isinstance(data, list):
        raise ValueError("result payload must be a list or an object with 'results'.")
    return [entry for entry in data if isinstance(entry, dict)]


class ItemListExtractor:
    """Reads a flat list of check results.

    Node scoped results are stamped with the node the job ran on when the
    job did not report one itself.
    """

    def __init__(self, node_scoped: bool) -> None:
        self.node_scoped = node_scoped

    def extract(self, node_name: Optional[str], payload: bytes) -> ResultFragment:
        items: List[ResultItem] = []
        for entry in _result_list(_load_payload(payload)):
            item = ResultItem.model_validate(entry)
            if self.node_scoped and node_name and not item.node_name:
                item = item.model_copy(update={"node_name": node_name})
            items.append(item)
        return ResultFragment(items=items)


class ComponentExtractor:
    """Reads the component check payload, which carries its own level counters."""

    def extract(self, node_name: Optional[str], payload: bytes) -> ResultFragment:
        data = _load_payload(payload)
        if isinstance(data, list):
            return ResultFragment(items=[ResultItem.model_validate(e) for e in _result_list(data)])
        if not isinstance(data, dict):
            raise ValueError("component payload must be an object.")
        summary = ResultSummary(
            dangerous=int(data.get("dangerous") or 0),
            warning=int(data.get("warning") or 0),
            ignore=int(data.get("ignore") or 0),
        )
        items = [ResultItem.model_validate(entry) for entry in _result_list(data)]
        return ResultFragment(items=items, summary=summary)


def build_default_registry() -> Dict[Category, ResultExtractor]:
    registry: Dict[Category, ResultExtractor] = {}
    for category in Category:
        if category is Category.COMPONENT:
            registry[category] = ComponentExtractor()
        else:
            registry[category] = ItemListExtractor(node_scoped=category not in CLUSTER_SCOPED)
    return registry
