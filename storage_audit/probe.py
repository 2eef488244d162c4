"""
Resource probe: turns one ScanTask into exactly one ResourceRecord.

Buckets are measured by two independent strategies while their metadata
is fetched, all three in parallel. Disks and Filestore instances carry
their provisioned size in the listing, so only metadata is fetched.

probe() never raises for a per-resource failure; failures become
ERROR records with the cause preserved.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .constants import (
    DEFAULT_PROBE_TIMEOUT,
    STRATEGY_CAPACITY,
    UNKNOWN,
    gb_to_bytes,
)
from .errors import AuditError, ParseError, ProbeTimeoutError, describe_error
from .models import ProbeStatus, ResourceRecord, ResourceType, ScanTask
from .parsing import extract_metadata, get_path, parse_gb_value, parse_size_output

logger = logging.getLogger(__name__)


@dataclass
class Measurement:
    """Outcome of one size strategy for one bucket."""
    source: str
    size_bytes: Optional[int] = None
    error: Optional[BaseException] = None

    @property
    def completed(self) -> bool:
        """The tool ran and produced output (parseable or not)."""
        return self.size_bytes is not None or isinstance(self.error, ParseError)

    @property
    def positive(self) -> bool:
        return bool(self.size_bytes)


class ResourceProber:
    """
    Measures and describes resources through a StorageBackend.

    Args:
        backend: enumeration/metadata backend
        primary: preferred bucket size strategy
        secondary: fallback bucket size strategy (optional)
        probe_timeout: seconds allowed per measurement attempt
    """

    def __init__(self, backend, primary, secondary=None, probe_timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.backend = backend
        self.primary = primary
        self.secondary = secondary
        self.probe_timeout = probe_timeout

    def __call__(self, task: ScanTask) -> ResourceRecord:
        return self.probe(task)

    def probe(self, task: ScanTask) -> ResourceRecord:
        probes = {
            ResourceType.BUCKET: self._probe_bucket,
            ResourceType.DISK: self._probe_disk,
            ResourceType.FILE_SHARE: self._probe_file_share,
        }
        try:
            return probes[task.resource_type](task)
        except Exception as e:
            logger.debug(f"Probe of {task.resource.name} failed: {e}")
            return ResourceRecord.failed(task, describe_error(e))

    # -------------------------------------------------------------------------
    # Buckets
    # -------------------------------------------------------------------------

    def _measure(self, strategy, task: ScanTask, deadline: float) -> int:
        remaining = max(0.0, deadline - time.monotonic())
        raw = strategy.measure(task.project_id, task.resource, timeout=remaining)
        return parse_size_output(raw)

    def _collect(self, future, operation: str, deadline: float):
        """Wait for a future until the shared deadline. Returns (value, error)."""
        remaining = max(0.0, deadline - time.monotonic())
        try:
            return future.result(timeout=remaining), None
        except FutureTimeout:
            future.cancel()
            return None, ProbeTimeoutError(operation, self.probe_timeout)
        except Exception as e:
            return None, e

    def _probe_bucket(self, task: ScanTask) -> ResourceRecord:
        ref = task.resource
        strategies = [s for s in (self.primary, self.secondary) if s is not None]

        executor = ThreadPoolExecutor(
            max_workers=len(strategies) + 1,
            thread_name_prefix=f"probe-{task.sequence_index}",
        )
        try:
            deadline = time.monotonic() + self.probe_timeout
            describe_future = executor.submit(self.backend.describe, task.project_id, task.resource_type, ref)
            measure_futures = [(s, executor.submit(self._measure, s, task, deadline)) for s in strategies]

            measurements = []
            for strategy, future in measure_futures:
                size, error = self._collect(future, f"{strategy.name} {ref.identifier}", deadline)
                measurements.append(Measurement(strategy.name, size, error))

            details, details_error = self._collect(describe_future, f"describe {ref.identifier}", deadline)
        finally:
            # Every attempt is time-limited; hold the slot until all of them have ended.
            executor.shutdown(wait=True)

        if details_error is not None:
            logger.debug(f"Describe failed for bucket {ref.name}: {describe_error(details_error)}")

        record = self._build_record(task, details or {}, ref.payload)
        return self._reconcile(record, measurements)

    def _reconcile(self, record: ResourceRecord, measurements) -> ResourceRecord:
        """Apply the primary/secondary policy to a record's size fields."""
        primary = measurements[0]
        secondary = measurements[1] if len(measurements) > 1 else None

        if primary.positive:
            record.status = ProbeStatus.SUCCESS
            record.size_bytes = primary.size_bytes
            record.size_source = primary.source
            return record

        if secondary is not None and secondary.positive:
            logger.debug(
                f"{record.name}: {primary.source} reported nothing usable, "
                f"using {secondary.source} ({secondary.size_bytes} bytes)"
            )
            record.status = ProbeStatus.SUCCESS
            record.size_bytes = secondary.size_bytes
            record.size_source = secondary.source
            record.fallback_used = True
            return record

        completed = [m for m in measurements if m.completed]
        if completed:
            record.status = ProbeStatus.EMPTY_OR_ZERO
            record.size_bytes = 0
            zero = [m for m in completed if m.size_bytes == 0]
            if zero:
                record.confirmed_empty = True
                record.size_source = zero[0].source
            else:
                return self._unparseable(record, completed[0].error)
            return record

        cause = describe_error(primary.error) if primary.error else "no size strategy configured"
        for other in measurements[1:]:
            logger.debug(f"{record.name}: {other.source} also failed: {describe_error(other.error)}")
        record.status = ProbeStatus.ERROR
        record.size_bytes = 0
        record.error = cause
        return record

    # -------------------------------------------------------------------------
    # Disks / Filestore
    # -------------------------------------------------------------------------

    def _probe_disk(self, task: ScanTask) -> ResourceRecord:
        ref = task.resource

        details: Dict[str, Any] = {}
        try:
            details = self.backend.describe(task.project_id, task.resource_type, ref) or {}
        except AuditError as e:
            # Size came from the listing; only the metadata degrades.
            logger.debug(f"Describe failed for disk {ref.name}: {e}")

        record = self._build_record(task, details, ref.payload)
        try:
            size_gb = parse_gb_value(get_path(ref.payload, 'sizeGb'))
        except ParseError as e:
            return self._unparseable(record, e)
        return self._capacity_record(record, gb_to_bytes(size_gb))

    def _probe_file_share(self, task: ScanTask) -> ResourceRecord:
        ref = task.resource
        record = self._build_record(task, ref.payload)
        shares = ref.payload.get('fileShares') or []
        try:
            if not shares:
                raise ParseError(f"Filestore instance {ref.name} lists no file shares")
            capacity_gb = sum(parse_gb_value(share.get('capacityGb')) for share in shares)
        except ParseError as e:
            return self._unparseable(record, e)
        return self._capacity_record(record, gb_to_bytes(capacity_gb))

    @staticmethod
    def _capacity_record(record: ResourceRecord, size_bytes: int) -> ResourceRecord:
        record.size_bytes = size_bytes
        record.size_source = STRATEGY_CAPACITY
        if size_bytes > 0:
            record.status = ProbeStatus.SUCCESS
        else:
            record.status = ProbeStatus.EMPTY_OR_ZERO
            record.confirmed_empty = True
        return record

    @staticmethod
    def _unparseable(record: ResourceRecord, error: ParseError) -> ResourceRecord:
        logger.warning(f"Size of {record.name} could not be parsed: {error}")
        record.status = ProbeStatus.EMPTY_OR_ZERO
        record.size_bytes = 0
        record.error = f"unparseable output: {describe_error(error)}"
        return record

    @staticmethod
    def _build_record(task: ScanTask, *payloads: Dict[str, Any]) -> ResourceRecord:
        meta = extract_metadata(task.resource_type, *payloads)
        ref = task.resource
        return ResourceRecord(
            project_id=task.project_id,
            resource_type=task.resource_type,
            name=ref.name or meta['name'],
            location=meta['location'] if meta['location'] != UNKNOWN else ref.location,
            created_at=meta['created_at'],
            created_by=meta['created_by'],
            updated_at=meta['updated_at'],
            class_or_type=meta['class_or_type'],
            labels=meta['labels'],
            sequence_index=task.sequence_index,
        )
