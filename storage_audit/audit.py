"""
Audit orchestration: project loop, enumeration, scanning and outputs.

Flow per project:
    enumerate resources per type (retried) -> BoundedScheduler runs the
    ResourceProber over every resource -> ProjectAggregator folds records
    and streams rows to the report sink -> CrossProjectAccumulator.
"""
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .aggregate import CrossProjectAccumulator, ProjectAggregator
from .backends import CommandRunner, StorageBackend, build_backend, build_strategy
from .config import AuditSettings
from .constants import DEFAULT_RETRY_ATTEMPTS, DEFAULT_TOP_N, bytes_to_gb
from .errors import ApiDisabledError, SetupError, TransportError, describe_error
from .models import GrandTotals, ProjectTotals, ResourceRecord, ResourceType, ScanTask
from .probe import ResourceProber
from .report import CsvReportSink, FanOutSink, MemoryReportSink
from .scheduler import BoundedScheduler
from .utils import (
    ProgressTracker,
    generate_run_id,
    get_timestamp,
    retry_with_backoff,
    write_json,
)

logger = logging.getLogger(__name__)


class StorageAuditor:
    """
    Scans projects and accumulates their totals.

    Args:
        backend: StorageBackend used for enumeration
        prober: callable turning a ScanTask into a ResourceRecord
        scheduler: BoundedScheduler running the prober
        sink: ReportSink receiving one row per record
        resource_types: resource types to enumerate
        project_workers: projects scanned in parallel (1 = sequential)
        retry_attempts: attempts for transient enumeration failures
        retry_wait: minimum backoff between enumeration attempts (seconds)
        top_n: number of top consumers to keep
        tracker: optional ProgressTracker
    """

    def __init__(
        self,
        backend: StorageBackend,
        prober,
        scheduler: BoundedScheduler,
        sink=None,
        resource_types: Optional[Sequence[ResourceType]] = None,
        project_workers: int = 1,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_wait: float = 1,
        top_n: int = DEFAULT_TOP_N,
        tracker: Optional[ProgressTracker] = None,
    ):
        self.backend = backend
        self.prober = prober
        self.scheduler = scheduler
        self.sink = sink
        self.resource_types = list(resource_types or ResourceType)
        self.project_workers = max(1, project_workers)
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait
        self.top_n = top_n
        self.tracker = tracker
        self.accumulator = CrossProjectAccumulator(top_n=top_n)

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def resolve_projects(
        self,
        projects: Optional[Sequence[str]] = None,
        skip_projects: Optional[Sequence[str]] = None,
        all_projects: bool = False,
    ) -> List[str]:
        """
        Decide which projects to scan.

        Explicit projects are used as given unless all_projects is set;
        otherwise every accessible project is listed. Raises SetupError when nothing is left to scan.
        """
        if projects and not all_projects:
            candidates = list(dict.fromkeys(projects))
        else:
            try:
                candidates = self.backend.list_projects()
            except TransportError as e:
                raise SetupError(f"Could not list projects: {describe_error(e)}")
            logger.info(f"Found {len(candidates)} accessible projects")

        skip = set(skip_projects or [])
        selected = [p for p in candidates if p not in skip]
        skipped = len(candidates) - len(selected)
        if skipped:
            logger.info(f"Skipping {skipped} project(s) per configuration")

        if not selected:
            raise SetupError("No projects accessible to audit")
        return selected

    # -------------------------------------------------------------------------
    # Scanning
    # -------------------------------------------------------------------------

    def list_resources(self, project_id: str, resource_type: ResourceType):
        """List resources with retries for transient transport failures."""
        lister = retry_with_backoff(
            max_attempts=self.retry_attempts,
            min_wait=self.retry_wait,
            max_wait=self.retry_wait * 30,
        )(self.backend.list_resources)
        return lister(project_id, resource_type)

    def build_tasks(self, project_id: str, aggregator: ProjectAggregator) -> List[ScanTask]:
        """Enumerate every configured resource type into scan tasks."""
        tasks: List[ScanTask] = []
        for resource_type in self.resource_types:
            try:
                refs = self.list_resources(project_id, resource_type)
            except ApiDisabledError as e:
                logger.warning(
                    f"{resource_type.label} API disabled or denied in {project_id}. "
                    f"Skipping: {describe_error(e)}"
                )
                aggregator.skip(resource_type, describe_error(e))
                continue
            except TransportError as e:
                logger.error(f"Failed to list {resource_type.label} in {project_id}: {describe_error(e)}")
                aggregator.skip(resource_type, describe_error(e))
                continue

            logger.info(f"Found {len(refs)} {resource_type.label} resources in {project_id}")
            for ref in refs:
                tasks.append(ScanTask(project_id, resource_type, ref, sequence_index=len(tasks)))
        return tasks

    def scan_project(self, project_id: str, aggregator: Optional[ProjectAggregator] = None) -> ProjectTotals:
        """Scan one project and return its totals. Rows go to the sink."""
        if aggregator is None:
            aggregator = ProjectAggregator(project_id, sink=self.sink, top_n=self.top_n)
        tasks = self.build_tasks(project_id, aggregator)

        if self.tracker:
            self.tracker.start_project(project_id, len(tasks))

        on_record = self.tracker.record_done if self.tracker else None
        records = self.scheduler.run(tasks, self.prober, on_record=on_record)
        totals = aggregator.aggregate(records)

        logger.info(
            f"Project {project_id}: {totals.resource_count} resources, "
            f"{bytes_to_gb(totals.total_bytes):,.2f} GB, {totals.error_count} errors"
        )
        if self.tracker:
            self.tracker.complete_project(project_id, totals.total_bytes, totals.resource_count, totals.error_count)
        return totals

    def _scan_and_accumulate(self, project_id: str) -> None:
        aggregator = ProjectAggregator(project_id, sink=self.sink, top_n=self.top_n)
        try:
            totals = self.scan_project(project_id, aggregator)
        except Exception as e:
            logger.error(f"Failed to scan project {project_id}: {e}")
            # Keep what was already reported; types with nothing folded are marked skipped
            totals = aggregator.totals()
            for resource_type in self.resource_types:
                if resource_type in totals.skipped_types:
                    continue
                if totals.by_type[resource_type].resource_count == 0:
                    totals.skipped_types[resource_type] = describe_error(e)
        self.accumulator.accumulate(totals)

    def run(self, project_ids: Sequence[str]) -> GrandTotals:
        """Scan every project and return the grand totals."""
        if self.project_workers <= 1 or len(project_ids) <= 1:
            for project_id in project_ids:
                self._scan_and_accumulate(project_id)
        else:
            with ThreadPoolExecutor(max_workers=self.project_workers, thread_name_prefix="project") as executor:
                futures = [executor.submit(self._scan_and_accumulate, p) for p in project_ids]
                for future in as_completed(futures):
                    future.result()
        return self.accumulator.snapshot()


# =============================================================================
# Audit Run
# =============================================================================

@dataclass
class AuditResult:
    """Everything a finished audit produced."""
    run_id: str
    grand_totals: GrandTotals
    records: List[ResourceRecord]
    duration_seconds: float
    outputs: Dict[str, str] = field(default_factory=dict)


def build_summary(result: AuditResult, settings: AuditSettings, started_at: str) -> Dict:
    """Summary JSON document for a finished audit."""
    return {
        'run_id': result.run_id,
        'started_at': started_at,
        'finished_at': get_timestamp(),
        'duration_seconds': round(result.duration_seconds, 2),
        'settings': {
            'backend': settings.backend,
            'resource_types': [t.label for t in settings.resource_types],
            'concurrency': settings.concurrency,
            'project_workers': settings.project_workers,
            'probe_timeout': settings.probe_timeout,
            'primary_strategy': settings.primary_strategy,
            'secondary_strategy': settings.secondary_strategy,
        },
        **result.grand_totals.to_dict(),
    }


def run_audit(
    settings: AuditSettings,
    backend: Optional[StorageBackend] = None,
    strategies=None,
    show_progress: bool = True,
    retry_wait: float = 1,
) -> AuditResult:
    """
    Run a full audit and write its outputs into settings.output.

    Args:
        settings: validated settings
        backend: enumeration backend (built from settings when omitted)
        strategies: (primary, secondary) size strategies (built from settings when omitted)
        show_progress: display progress on a TTY
        retry_wait: minimum backoff between enumeration attempts

    Raises:
        SetupError: tooling missing, no projects, or unusable configuration
    """
    runner = CommandRunner(timeout=settings.probe_timeout)
    if backend is None:
        backend = build_backend(settings.backend, timeout=settings.probe_timeout, runner=runner)
    if strategies is None:
        primary = build_strategy(settings.primary_strategy, runner, settings.probe_timeout)
        secondary = None
        if settings.secondary_strategy:
            secondary = build_strategy(settings.secondary_strategy, runner, settings.probe_timeout)
    else:
        primary, secondary = strategies

    scan_strategies = [primary, secondary] if ResourceType.BUCKET in settings.resource_types else []
    backend.preflight([s for s in scan_strategies if s is not None])

    run_id = generate_run_id()
    started_at = get_timestamp()
    start = time.monotonic()

    prober = ResourceProber(backend, primary, secondary, probe_timeout=settings.probe_timeout)
    scheduler = BoundedScheduler(settings.concurrency)

    os.makedirs(settings.output, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
    csv_path = os.path.join(settings.output, f"gcp_storage_audit_{stamp}.csv")
    inventory_path = os.path.join(settings.output, f"gcp_storage_inventory_{stamp}.json")
    summary_path = os.path.join(settings.output, f"gcp_storage_summary_{stamp}.json")

    auditor = StorageAuditor(
        backend,
        prober,
        scheduler,
        resource_types=settings.resource_types,
        project_workers=settings.project_workers,
        retry_attempts=settings.retry_attempts,
        retry_wait=retry_wait,
        top_n=settings.top_n,
    )
    project_ids = auditor.resolve_projects(settings.projects, settings.skip_projects, settings.all_projects)
    logger.info(f"Auditing {len(project_ids)} project(s) with concurrency {settings.concurrency}")

    memory = MemoryReportSink()
    with FanOutSink(CsvReportSink(csv_path), memory) as sink:
        auditor.sink = sink
        with ProgressTracker(total_projects=len(project_ids), show_progress=show_progress) as tracker:
            auditor.tracker = tracker
            grand = auditor.run(project_ids)

    result = AuditResult(
        run_id=run_id,
        grand_totals=grand,
        records=list(memory.records),
        duration_seconds=time.monotonic() - start,
        outputs={'CSV report': csv_path, 'Inventory': inventory_path, 'Summary': summary_path},
    )

    write_json({
        'run_id': run_id,
        'generated_at': get_timestamp(),
        'resources': [r.to_dict() for r in result.records],
    }, inventory_path)
    write_json(build_summary(result, settings, started_at), summary_path)

    if grand.error_count:
        logger.warning(f"{grand.error_count} resource(s) could not be measured; see the 'detail' column")
    if grand.enumeration_failures:
        logger.warning(f"{len(grand.enumeration_failures)} resource type listing(s) failed or were denied")
    return result
