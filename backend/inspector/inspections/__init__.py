"""Result extractors for the payloads written back by inspection jobs."""

from .engine import (
    ComponentExtractor,
    ItemListExtractor,
    ResultExtractor,
    ResultFragment,
    build_default_registry,
)

__all__ = [
    "ComponentExtractor",
    "ItemListExtractor",
    "ResultExtractor",
    "ResultFragment",
    "build_default_registry",
]
