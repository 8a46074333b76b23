"""Storage - aggregate documents and their projects."""

from storage.aggregates import AggregateStore
from storage.projects import ProjectStore

__all__ = [
    "AggregateStore",
    "ProjectStore",
]
