"""
Per-project aggregation and cross-project accumulation.
"""
import copy
import logging
import threading
from typing import Iterable, Optional

from .constants import DEFAULT_TOP_N
from .models import (
    Consumer,
    EnumerationFailure,
    GrandTotals,
    ProjectTotals,
    ResourceRecord,
    ResourceType,
    merge_top_consumers,
)

logger = logging.getLogger(__name__)


class ProjectAggregator:
    """
    Folds one project's records into ProjectTotals.

    Each record is emitted to the sink exactly once, as it is folded, so
    errored and empty resources still get a report row. The fold is
    commutative: totals do not depend on arrival order.
    """

    def __init__(self, project_id: str, sink=None, top_n: int = DEFAULT_TOP_N):
        self.project_id = project_id
        self.sink = sink
        self.top_n = top_n
        self._totals = ProjectTotals(project_id=project_id)
        self._consumers = []
        self._lock = threading.Lock()

    def add(self, record: ResourceRecord) -> None:
        if record.project_id != self.project_id:
            raise ValueError(f"Record for {record.project_id} added to aggregator for {self.project_id}")
        # Emit first: a record the sink rejects is not counted either
        if self.sink is not None:
            self.sink.emit(record)
        with self._lock:
            self._totals.by_type[record.resource_type].add(record)
            if record.size_bytes > 0:
                self._consumers.append(
                    Consumer(record.project_id, record.resource_type, record.name, record.size_bytes)
                )

    def aggregate(self, records: Iterable[ResourceRecord]) -> ProjectTotals:
        for record in records:
            self.add(record)
        return self.totals()

    def skip(self, resource_type: ResourceType, cause: str) -> None:
        """Record that a resource type could not be enumerated."""
        with self._lock:
            self._totals.skipped_types[resource_type] = cause

    def totals(self) -> ProjectTotals:
        """Snapshot of the totals folded so far."""
        with self._lock:
            snapshot = copy.deepcopy(self._totals)
            snapshot.top_consumers = merge_top_consumers([], self._consumers, self.top_n)
        return snapshot


class CrossProjectAccumulator:
    """
    Owns the audit-wide GrandTotals.

    accumulate() calls are serialized through one lock, so projects may be
    scanned in parallel without lost updates.
    """

    def __init__(self, top_n: int = DEFAULT_TOP_N):
        self.top_n = top_n
        self._grand = GrandTotals()
        self._lock = threading.Lock()

    def accumulate(self, project_totals: ProjectTotals) -> None:
        with self._lock:
            for resource_type, totals in project_totals.by_type.items():
                self._grand.by_type[resource_type].merge(totals)
            for resource_type, cause in project_totals.skipped_types.items():
                self._grand.enumeration_failures.append(
                    EnumerationFailure(project_totals.project_id, resource_type, cause)
                )
            self._grand.top_consumers = merge_top_consumers(
                self._grand.top_consumers, project_totals.top_consumers, self.top_n
            )
            self._grand.projects.append(copy.deepcopy(project_totals))
            self._grand.projects_processed += 1
        logger.debug(f"Accumulated {project_totals.project_id}: {project_totals.total_bytes} bytes")

    def snapshot(self) -> GrandTotals:
        """Point-in-time copy of the grand totals."""
        with self._lock:
            return copy.deepcopy(self._grand)

    def project_totals(self, project_id: str) -> Optional[ProjectTotals]:
        with self._lock:
            for totals in self._grand.projects:
                if totals.project_id == project_id:
                    return copy.deepcopy(totals)
        return None
