"""
Bounded-concurrency scheduler for resource probes.
"""
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .constants import DEFAULT_CONCURRENCY
from .errors import describe_error
from .models import ResourceRecord, ScanTask

logger = logging.getLogger(__name__)


class BoundedScheduler:
    """
    Runs a probe over scan tasks with at most `concurrency_limit` in flight.

    When the ceiling is reached the submitter blocks until `release_batch`
    tasks finish (half the ceiling by default), then admits the next burst.
    Every task yields exactly one record: exceptions escaping the probe
    become ERROR records for that task only.
    """

    def __init__(self, concurrency_limit: int = DEFAULT_CONCURRENCY, release_batch: Optional[int] = None):
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {concurrency_limit}")
        self.concurrency_limit = concurrency_limit
        if release_batch is None:
            release_batch = max(1, concurrency_limit // 2)
        self.release_batch = min(max(1, release_batch), concurrency_limit)

    def run(
        self,
        tasks: Iterable[ScanTask],
        probe: Callable[[ScanTask], ResourceRecord],
        on_record: Optional[Callable[[ResourceRecord], None]] = None,
    ) -> List[ResourceRecord]:
        """
        Probe every task and return their records in submission order.

        Args:
            tasks: scan tasks to run
            probe: callable producing a ResourceRecord for one task
            on_record: optional callback invoked once per finished record

        Returns:
            One record per task
        """
        tasks = list(tasks)
        results: Dict[int, ResourceRecord] = {}
        pending: Dict[Future, Tuple[int, ScanTask]] = {}

        with ThreadPoolExecutor(max_workers=self.concurrency_limit, thread_name_prefix="scan") as executor:
            for position, task in enumerate(tasks):
                if len(pending) >= self.concurrency_limit:
                    self._release(pending, results, on_record, self.release_batch)
                pending[executor.submit(probe, task)] = (position, task)

            self._release(pending, results, on_record, len(pending))

        return [results[position] for position in range(len(tasks))]

    def _release(self, pending, results, on_record, count: int) -> None:
        """Block until `count` pending tasks have finished and collect them."""
        finished = 0
        while pending and finished < count:
            done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
            for future in done:
                position, task = pending.pop(future)
                record = self._collect(future, task)
                results[position] = record
                finished += 1
                if on_record is not None:
                    self._notify(on_record, record)

    @staticmethod
    def _collect(future: Future, task: ScanTask) -> ResourceRecord:
        try:
            record = future.result()
        except Exception as e:
            logger.warning(f"Probe for {task.resource.name} in {task.project_id} raised: {describe_error(e)}")
            return ResourceRecord.failed(task, describe_error(e))

        if not isinstance(record, ResourceRecord):
            return ResourceRecord.failed(task, f"probe returned {type(record).__name__}, not a record")
        record.sequence_index = task.sequence_index
        return record

    @staticmethod
    def _notify(on_record, record: ResourceRecord) -> None:
        try:
            on_record(record)
        except Exception as e:
            logger.warning(f"Progress callback failed for {record.name}: {e}")
