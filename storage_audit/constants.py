"""
Constants for the GCP storage audit.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Byte/Size Conversion Constants
# =============================================================================

BYTES_PER_KB = 1024
BYTES_PER_MB = 1024 ** 2
BYTES_PER_GB = 1024 ** 3
BYTES_PER_TB = 1024 ** 4

# Decimal places kept for the size_gb report column
SIZE_GB_PRECISION = 6

# =============================================================================
# Time Constants
# =============================================================================

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_CONCURRENCY = 32
DEFAULT_PROJECT_WORKERS = 1
DEFAULT_PROBE_TIMEOUT = 600  # seconds, per measurement attempt
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_TOP_N = 10
DEFAULT_BACKEND = "sdk"
DEFAULT_PRIMARY_STRATEGY = "gcloud-du"
DEFAULT_SECONDARY_STRATEGY = "gsutil-du"

BACKENDS = ("sdk", "cli")

# =============================================================================
# Resource Type Labels (report column values)
# =============================================================================

LABEL_BUCKET = "GCS_Bucket"
LABEL_DISK = "Persistent_Disk"
LABEL_FILE_SHARE = "Filestore"

# =============================================================================
# Size Strategy Names
# =============================================================================

STRATEGY_GCLOUD_DU = "gcloud-du"
STRATEGY_GSUTIL_DU = "gsutil-du"
STRATEGY_OBJECT_LISTING = "object-listing"
STRATEGY_CAPACITY = "capacity"  # disk sizeGb / Filestore capacityGb
SIZE_SOURCE_NONE = "none"

SIZE_STRATEGIES = (STRATEGY_GCLOUD_DU, STRATEGY_GSUTIL_DU, STRATEGY_OBJECT_LISTING)

# =============================================================================
# Report Values
# =============================================================================

UNKNOWN = "unknown"
NO_LABELS = "none"

REPORT_COLUMNS = [
    "project",
    "resource_type",
    "resource_name",
    "location",
    "creation_time",
    "created_by",
    "last_updated",
    "class_or_type",
    "labels",
    "size_gb",
    "size_bytes",
    "status",
    "size_source",
    "fallback",
    "detail",
]

# =============================================================================
# API Error Markers
# =============================================================================

# gcloud stderr fragments that mean "API disabled or access denied"
API_DISABLED_MARKERS = (
    "SERVICE_DISABLED",
    "has not been used in project",
    "it is disabled",
    "PERMISSION_DENIED",
    "AccessDeniedException",
    "does not have storage.buckets.list access",
    "Required 'compute.disks.list' permission",
)

# HTTP 403 as reported by gcloud/gsutil; a bare "403" also occurs inside project numbers
API_DENIED_STATUS_PATTERN = r'(?:HTTPError|HTTP Error|"code":)\s*403\b|\b403 Forbidden\b'

# google-api-core exception types that indicate disabled API / auth issues
GCP_DENIED_EXCEPTION_NAMES = {'PermissionDenied', 'Unauthenticated', 'Forbidden'}


# =============================================================================
# Helper Functions
# =============================================================================

def bytes_to_gb(bytes_value: float) -> float:
    """Convert bytes to gigabytes."""
    return bytes_value / BYTES_PER_GB


def bytes_to_tb(bytes_value: float) -> float:
    """Convert bytes to terabytes."""
    return bytes_value / BYTES_PER_TB


def gb_to_bytes(gb_value: float) -> int:
    """Convert gigabytes to whole bytes."""
    return int(gb_value * BYTES_PER_GB)
