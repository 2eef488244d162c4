"""
GCP storage audit library.
"""
# Import constants module for easy access
from . import constants
from .aggregate import CrossProjectAccumulator, ProjectAggregator
from .audit import AuditResult, StorageAuditor, run_audit
from .backends import (
    CommandRunner,
    GcloudCliBackend,
    GcloudDuStrategy,
    GoogleCloudBackend,
    GsutilDuStrategy,
    ObjectListingStrategy,
    SizeStrategy,
    StorageBackend,
    build_backend,
    build_strategy,
)
from .config import AuditSettings, generate_sample_config, load_config
from .constants import (
    BYTES_PER_GB,
    BYTES_PER_TB,
    REPORT_COLUMNS,
    bytes_to_gb,
    bytes_to_tb,
)
from .errors import (
    ApiDisabledError,
    AuditError,
    ParseError,
    ProbeTimeoutError,
    SetupError,
    TransportError,
)
from .models import (
    GrandTotals,
    ProbeStatus,
    ProjectTotals,
    ResourceRecord,
    ResourceRef,
    ResourceType,
    ScanTask,
    TypeTotals,
    format_labels,
)
from .parsing import extract_field, extract_metadata, parse_size_output
from .probe import ResourceProber
from .report import CsvReportSink, FanOutSink, MemoryReportSink, ReportSink, read_report
from .scheduler import BoundedScheduler
from .utils import (
    ProgressTracker,
    print_audit_summary,
    retry_with_backoff,
    setup_logging,
    write_json,
)

__all__ = [
    # Constants
    'constants',
    'BYTES_PER_GB',
    'BYTES_PER_TB',
    'REPORT_COLUMNS',
    'bytes_to_gb',
    'bytes_to_tb',
    # Models
    'GrandTotals',
    'ProbeStatus',
    'ProjectTotals',
    'ResourceRecord',
    'ResourceRef',
    'ResourceType',
    'ScanTask',
    'TypeTotals',
    'format_labels',
    # Errors
    'ApiDisabledError',
    'AuditError',
    'ParseError',
    'ProbeTimeoutError',
    'SetupError',
    'TransportError',
    # Engine
    'BoundedScheduler',
    'CrossProjectAccumulator',
    'ProjectAggregator',
    'ResourceProber',
    'StorageAuditor',
    'AuditResult',
    'run_audit',
    # Parsing
    'extract_field',
    'extract_metadata',
    'parse_size_output',
    # Backends
    'CommandRunner',
    'GcloudCliBackend',
    'GcloudDuStrategy',
    'GoogleCloudBackend',
    'GsutilDuStrategy',
    'ObjectListingStrategy',
    'SizeStrategy',
    'StorageBackend',
    'build_backend',
    'build_strategy',
    # Reports
    'CsvReportSink',
    'FanOutSink',
    'MemoryReportSink',
    'ReportSink',
    'read_report',
    # Config
    'AuditSettings',
    'generate_sample_config',
    'load_config',
    # Utils
    'ProgressTracker',
    'print_audit_summary',
    'retry_with_backoff',
    'setup_logging',
    'write_json',
]
