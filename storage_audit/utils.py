"""
Utility functions for the GCP storage audit.

Logging Level Standards:
------------------------
- ERROR: Failures that stop an entire resource type or project
         "Failed to list buckets in my-project: {e}"
- WARNING: Partial failures, skipped APIs, unparseable probe output
           "Compute API disabled in my-project. Skipping disks..."
- INFO: Progress messages, resource counts
        "Found 42 buckets in my-project"
- DEBUG: Per-item failures that don't affect overall collection
         "Describe failed for disk {name}: {e}"
"""
import json
import logging
import os
import sys
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .constants import SECONDS_PER_HOUR, SECONDS_PER_MINUTE, bytes_to_gb, bytes_to_tb
from .errors import ApiDisabledError, TransportError
from .models import GrandTotals, ProbeStatus, ResourceRecord, ResourceType

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])


def is_retryable(exc: BaseException) -> bool:
    """Transport failures are retried; disabled APIs and denials are not."""
    return isinstance(exc, TransportError) and not isinstance(exc, ApiDisabledError)


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    predicate: Callable[[BaseException], bool] = is_retryable,
) -> Callable[[F], F]:
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 60)
        predicate: Decides whether an exception is worth retrying

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_attempts=5)
        def list_buckets():
            ...
    """
    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max(1, max_attempts)),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception(predicate),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)
    return decorator


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress display for an audit run.

    Uses rich when stdout is a TTY and falls back to plain print
    statements otherwise (e.g., when piping output). Safe to update from
    scheduler worker threads.

    Usage:
        with ProgressTracker(total_projects=3) as tracker:
            for project in projects:
                tracker.start_project(project, resource_count)
                scheduler.run(tasks, prober, on_record=tracker.record_done)
                tracker.complete_project(project, totals.total_bytes, totals.resource_count)
    """

    def __init__(self, total_projects: int = 0, show_progress: bool = True):
        self.total_projects = total_projects
        self.show_progress = show_progress and sys.stdout.isatty()

        # Counters
        self.completed_projects = 0
        self.completed_resources = 0
        self.total_bytes = 0
        self.error_count = 0
        self.current_project = ""

        self._lock = threading.Lock()
        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._project_task = None
        self._scan_tasks: Dict[str, Any] = {}

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._project_task = self._progress.add_task("Projects", total=self.total_projects or 1)
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print("GCP Storage Audit Starting")
            print(f"{'='*60}")
            if self.total_projects:
                print(f"Projects: {self.total_projects}")
            print()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._progress is not None:
            self._progress.stop()
        return False

    def start_project(self, project_id: str, resource_count: int = 0):
        """Mark the start of scanning a project."""
        self.current_project = project_id
        if self._progress is not None:
            task_id = self._progress.add_task(f"  {project_id}", total=resource_count or 1)
            with self._lock:
                self._scan_tasks[project_id] = task_id
        else:
            print(f"  [{project_id}] Scanning {resource_count} resources...")

    def record_done(self, record: ResourceRecord):
        """Scheduler callback: one resource finished."""
        with self._lock:
            self.completed_resources += 1
            self.total_bytes += record.size_bytes
            if record.status == ProbeStatus.ERROR:
                self.error_count += 1
            task_id = self._scan_tasks.get(record.project_id)
        if self._progress is not None and task_id is not None:
            self._progress.update(task_id, advance=1)

    def complete_project(self, project_id: str, total_bytes: int, resource_count: int, error_count: int = 0):
        """Mark a project as complete."""
        with self._lock:
            self.completed_projects += 1
            task_id = self._scan_tasks.pop(project_id, None)
        if self._progress is not None:
            if task_id is not None:
                self._progress.remove_task(task_id)
            self._progress.update(self._project_task, advance=1)
        else:
            errors = f", {error_count} errors" if error_count else ""
            print(
                f"  [{project_id}] Complete - {resource_count:,} resources, "
                f"{bytes_to_tb(total_bytes):.4f} TB{errors}"
            )


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def format_duration(seconds: float) -> str:
    """Render elapsed seconds as "1h 02m 03s"."""
    seconds = int(round(seconds))
    hours, rest = divmod(seconds, SECONDS_PER_HOUR)
    minutes, secs = divmod(rest, SECONDS_PER_MINUTE)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(threadName)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Console handler (stderr)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"gcp_storage_audit_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


def write_json(data: Any, filepath: str) -> None:
    """Write data to JSON file with secure permissions."""
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)

    # Owner read/write only: inventory data includes labels and creator identities
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    logger.info(f"Wrote {filepath}")


# =============================================================================
# Summary Output
# =============================================================================

def _tb(size_bytes: int) -> str:
    return f"{bytes_to_tb(size_bytes):,.4f} TB"


def summary_lines(grand: GrandTotals, duration_seconds: float, outputs: Dict[str, str]) -> list:
    """Plain-text audit summary, one line per entry."""
    lines = [
        "=" * 60,
        "GCP Storage Audit Complete",
        "=" * 60,
        f"  Projects processed: {grand.projects_processed}",
    ]
    for resource_type in ResourceType:
        totals = grand.by_type[resource_type]
        lines.append(
            f"  {resource_type.label + ':':<17} {totals.resource_count:>6,} resources  {_tb(totals.total_bytes)}"
        )
    lines.append(
        f"  {'Grand total:':<17} {grand.resource_count:>6,} resources  {_tb(grand.total_bytes)} "
        f"({bytes_to_gb(grand.total_bytes):,.2f} GB)"
    )
    lines.append(f"  Errored resources: {grand.error_count}")
    if grand.enumeration_failures:
        lines.append(f"  Enumeration failures: {len(grand.enumeration_failures)}")
        for failure in grand.enumeration_failures:
            lines.append(f"    - {failure.project_id} / {failure.resource_type.label}: {failure.cause}")
    if grand.top_consumers:
        lines.append(f"  Top {len(grand.top_consumers)} storage consumers:")
        for index, consumer in enumerate(grand.top_consumers, start=1):
            lines.append(
                f"    {index:>2}. {consumer.project_id} / {consumer.resource_type.label} / "
                f"{consumer.name}: {bytes_to_gb(consumer.size_bytes):,.2f} GB"
            )
    lines.append(f"  Duration: {format_duration(duration_seconds)}")
    for name, path in outputs.items():
        lines.append(f"  {name}: {path}")
    return lines


def print_audit_summary(grand: GrandTotals, duration_seconds: float, outputs: Dict[str, str],
                        console: Optional[Console] = None) -> None:
    """Print the final summary, with rich tables on a TTY."""
    if console is None and not sys.stdout.isatty():
        print()
        for line in summary_lines(grand, duration_seconds, outputs):
            print(line)
        print()
        return

    console = console or Console()

    projects = Table(title="Per-Project Totals")
    projects.add_column("Project", style="cyan")
    for resource_type in ResourceType:
        projects.add_column(resource_type.label, justify="right")
    projects.add_column("Errors", justify="right", style="red")
    projects.add_column("Skipped", style="yellow")
    for project in grand.projects:
        projects.add_row(
            project.project_id,
            *[_tb(project.by_type[t].total_bytes) for t in ResourceType],
            str(project.error_count),
            ", ".join(t.label for t in project.skipped_types) or "-",
        )
    console.print(projects)

    totals = Table(title="GCP Storage Audit Summary", show_header=False)
    totals.add_column("Metric", style="cyan")
    totals.add_column("Value", style="green")
    totals.add_row("Projects processed", str(grand.projects_processed))
    for resource_type in ResourceType:
        type_totals = grand.by_type[resource_type]
        totals.add_row(resource_type.label, f"{type_totals.resource_count:,} resources, {_tb(type_totals.total_bytes)}")
    totals.add_row("Grand total", f"{_tb(grand.total_bytes)} ({bytes_to_gb(grand.total_bytes):,.2f} GB)")
    totals.add_row("Errored resources", str(grand.error_count))
    totals.add_row("Enumeration failures", str(len(grand.enumeration_failures)))
    totals.add_row("Duration", format_duration(duration_seconds))
    for name, path in outputs.items():
        totals.add_row(name, path)
    console.print(Panel(totals))

    if grand.top_consumers:
        top = Table(title=f"Top {len(grand.top_consumers)} Storage Consumers")
        top.add_column("#", justify="right")
        top.add_column("Project", style="cyan")
        top.add_column("Type")
        top.add_column("Name")
        top.add_column("Size (GB)", justify="right", style="green")
        for index, consumer in enumerate(grand.top_consumers, start=1):
            top.add_row(
                str(index), consumer.project_id, consumer.resource_type.label,
                consumer.name, f"{bytes_to_gb(consumer.size_bytes):,.2f}",
            )
        console.print(top)

    for failure in grand.enumeration_failures:
        console.print(
            f"[yellow]Skipped {failure.resource_type.label} in {failure.project_id}: {failure.cause}[/yellow]"
        )
