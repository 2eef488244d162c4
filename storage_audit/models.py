"""
Data models for the GCP storage audit.
"""
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .constants import (
    LABEL_BUCKET,
    LABEL_DISK,
    LABEL_FILE_SHARE,
    NO_LABELS,
    SIZE_GB_PRECISION,
    SIZE_SOURCE_NONE,
    UNKNOWN,
    bytes_to_gb,
)


class ResourceType(Enum):
    """Category of storage asset."""
    BUCKET = "bucket"
    DISK = "disk"
    FILE_SHARE = "file_share"

    @property
    def label(self) -> str:
        """Value written to the report's resource_type column."""
        return _TYPE_LABELS[self]

    @classmethod
    def parse(cls, value: str) -> "ResourceType":
        """Accept enum values ("disk") as well as report labels ("Persistent_Disk")."""
        needle = value.strip().lower()
        for member in cls:
            if needle in (member.value, member.label.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown resource type: {value}")


_TYPE_LABELS = {
    ResourceType.BUCKET: LABEL_BUCKET,
    ResourceType.DISK: LABEL_DISK,
    ResourceType.FILE_SHARE: LABEL_FILE_SHARE,
}


def format_labels(labels: Dict[str, str]) -> str:
    """Render labels as "k=v; k2=v2" in key order, or "none" when empty."""
    if not labels:
        return NO_LABELS
    return "; ".join(f"{k}={v}" for k, v in sorted(labels.items()))


class ProbeStatus(Enum):
    """Terminal outcome of probing one resource."""
    SUCCESS = "success"
    EMPTY_OR_ZERO = "empty"
    ERROR = "error"


@dataclass
class ResourceRef:
    """
    One enumerated resource, as returned by a backend's listing call.

    payload holds the raw listing entry so probes can read sizes or
    metadata that the listing already carries.
    """
    identifier: str  # e.g. "gs://bucket-name" or a disk self link
    name: str
    location: str = UNKNOWN
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScanTask:
    """Unit of work submitted to the scheduler."""
    project_id: str
    resource_type: ResourceType
    resource: ResourceRef
    sequence_index: int


@dataclass
class ResourceRecord:
    """
    One scanned resource, normalized for the report.
    """
    project_id: str
    resource_type: ResourceType
    name: str
    location: str = UNKNOWN
    created_at: str = UNKNOWN
    created_by: str = UNKNOWN
    updated_at: str = UNKNOWN
    class_or_type: str = UNKNOWN
    labels: Dict[str, str] = field(default_factory=dict)
    size_bytes: int = 0
    status: ProbeStatus = ProbeStatus.EMPTY_OR_ZERO

    # Provenance of the measurement
    sequence_index: int = -1
    size_source: str = SIZE_SOURCE_NONE
    fallback_used: bool = False
    confirmed_empty: bool = False
    error: Optional[str] = None

    def __post_init__(self):
        if self.size_bytes < 0:
            raise ValueError(f"size_bytes must be non-negative, got {self.size_bytes}")
        if self.status == ProbeStatus.ERROR:
            self.size_bytes = 0
            if not self.error:
                self.error = "unknown error"

    @classmethod
    def failed(cls, task: ScanTask, cause: str) -> "ResourceRecord":
        """Error record for a task whose probe could not produce anything."""
        return cls(
            project_id=task.project_id,
            resource_type=task.resource_type,
            name=task.resource.name,
            location=task.resource.location,
            status=ProbeStatus.ERROR,
            sequence_index=task.sequence_index,
            error=cause,
        )

    @property
    def size_gb(self) -> float:
        return round(bytes_to_gb(self.size_bytes), SIZE_GB_PRECISION)

    @property
    def labels_text(self) -> str:
        return format_labels(self.labels)

    def to_row(self) -> Dict[str, Any]:
        """Flatten into a report row keyed by REPORT_COLUMNS."""
        return {
            "project": self.project_id,
            "resource_type": self.resource_type.label,
            "resource_name": self.name,
            "location": self.location,
            "creation_time": self.created_at,
            "created_by": self.created_by,
            "last_updated": self.updated_at,
            "class_or_type": self.class_or_type,
            "labels": self.labels_text,
            "size_gb": f"{self.size_gb:.{SIZE_GB_PRECISION}f}",
            "size_bytes": str(self.size_bytes),
            "status": self.status.value,
            "size_source": self.size_source,
            "fallback": "yes" if self.fallback_used else "no",
            "detail": self.error or "",
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["resource_type"] = self.resource_type.label
        data["status"] = self.status.value
        data["size_gb"] = self.size_gb
        return data


@dataclass(frozen=True)
class Consumer:
    """A large resource kept for the top-consumers listing."""
    project_id: str
    resource_type: ResourceType
    name: str
    size_bytes: int

    @property
    def sort_key(self):
        return (-self.size_bytes, self.project_id, self.resource_type.value, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project_id,
            "resource_type": self.resource_type.label,
            "resource_name": self.name,
            "size_bytes": self.size_bytes,
            "size_gb": round(bytes_to_gb(self.size_bytes), 2),
        }


def merge_top_consumers(current: List[Consumer], incoming: List[Consumer], limit: int) -> List[Consumer]:
    """Merge two consumer lists, keeping the `limit` largest in a stable order."""
    if limit <= 0:
        return []
    merged = sorted(set(current) | set(incoming), key=lambda c: c.sort_key)
    return merged[:limit]


@dataclass
class TypeTotals:
    """Running sums for one resource type."""
    total_bytes: int = 0
    resource_count: int = 0
    error_count: int = 0
    empty_count: int = 0
    fallback_count: int = 0

    def add(self, record: ResourceRecord) -> None:
        """Fold one record in. Error records count but contribute 0 bytes."""
        self.resource_count += 1
        if record.status == ProbeStatus.ERROR:
            self.error_count += 1
            return
        if record.status == ProbeStatus.EMPTY_OR_ZERO:
            self.empty_count += 1
        if record.fallback_used:
            self.fallback_count += 1
        self.total_bytes += record.size_bytes

    def merge(self, other: "TypeTotals") -> None:
        self.total_bytes += other.total_bytes
        self.resource_count += other.resource_count
        self.error_count += other.error_count
        self.empty_count += other.empty_count
        self.fallback_count += other.fallback_count

    @property
    def total_gb(self) -> float:
        return bytes_to_gb(self.total_bytes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_gb"] = round(self.total_gb, 2)
        return data


def _empty_type_totals() -> Dict[ResourceType, TypeTotals]:
    return {resource_type: TypeTotals() for resource_type in ResourceType}


@dataclass
class ProjectTotals:
    """Per-project totals, handed to the accumulator once the project is done."""
    project_id: str
    by_type: Dict[ResourceType, TypeTotals] = field(default_factory=_empty_type_totals)
    skipped_types: Dict[ResourceType, str] = field(default_factory=dict)
    top_consumers: List[Consumer] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(t.total_bytes for t in self.by_type.values())

    @property
    def resource_count(self) -> int:
        return sum(t.resource_count for t in self.by_type.values())

    @property
    def error_count(self) -> int:
        return sum(t.error_count for t in self.by_type.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project_id,
            "totals": {t.label: totals.to_dict() for t, totals in self.by_type.items()},
            "skipped": {t.label: cause for t, cause in self.skipped_types.items()},
            "total_bytes": self.total_bytes,
            "resource_count": self.resource_count,
            "error_count": self.error_count,
        }


@dataclass
class EnumerationFailure:
    """A resource type that could not be listed for a project."""
    project_id: str
    resource_type: ResourceType
    cause: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project_id,
            "resource_type": self.resource_type.label,
            "cause": self.cause,
        }


@dataclass
class GrandTotals:
    """Audit-wide totals across every processed project."""
    by_type: Dict[ResourceType, TypeTotals] = field(default_factory=_empty_type_totals)
    projects_processed: int = 0
    projects: List[ProjectTotals] = field(default_factory=list)
    enumeration_failures: List[EnumerationFailure] = field(default_factory=list)
    top_consumers: List[Consumer] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(t.total_bytes for t in self.by_type.values())

    @property
    def resource_count(self) -> int:
        return sum(t.resource_count for t in self.by_type.values())

    @property
    def error_count(self) -> int:
        return sum(t.error_count for t in self.by_type.values())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "projects_processed": self.projects_processed,
            "total_bytes": self.total_bytes,
            "total_gb": round(bytes_to_gb(self.total_bytes), 2),
            "resource_count": self.resource_count,
            "error_count": self.error_count,
            "totals": {t.label: totals.to_dict() for t, totals in self.by_type.items()},
            "projects": [p.to_dict() for p in self.projects],
            "enumeration_failures": [f.to_dict() for f in self.enumeration_failures],
            "top_consumers": [c.to_dict() for c in self.top_consumers],
        }
