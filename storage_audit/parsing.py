"""
Parsing helpers for probe output and resource metadata.

Size output from the measurement tools comes in several shapes:

    12345  gs://my-bucket            (gcloud storage du --summarize / gsutil du -s)
    12345                            (bare number)
    Total: 999 objects, 42 bytes     (labelled summary)

parse_size_output() applies one deterministic rule to all of them:

    1. the last line that starts with digits -> its leading integer
    2. else the last line mentioning "total" -> the last integer on it
    3. else the last integer anywhere in the text
    4. else ParseError
"""
import re
from typing import Any, Dict, Mapping, Optional, Sequence

from .constants import UNKNOWN
from .errors import ParseError
from .models import ResourceType

_LEADING_INT = re.compile(r'^\s*(\d+)')
_ANY_INT = re.compile(r'\d+')
_TOTAL_WORD = re.compile(r'\btotal\b', re.IGNORECASE)


def parse_size_output(text: Optional[str]) -> int:
    """Extract a byte count from raw tool output.

    Raises:
        ParseError: no digits could be found
    """
    if not text or not text.strip():
        raise ParseError("empty output", raw=text or "")

    lines = [line for line in text.splitlines() if line.strip()]

    leading = [m.group(1) for m in (_LEADING_INT.match(line) for line in lines) if m]
    if leading:
        return int(leading[-1])

    total_lines = [line for line in lines if _TOTAL_WORD.search(line)]
    for line in reversed(total_lines):
        numbers = _ANY_INT.findall(line)
        if numbers:
            return int(numbers[-1])

    numbers = _ANY_INT.findall(text)
    if numbers:
        return int(numbers[-1])

    raise ParseError(f"no numeric content in output: {text.strip()[:80]!r}", raw=text)


def parse_gb_value(value: Any) -> float:
    """Parse a GB quantity from listing JSON ("100", 100, "1.5").

    Raises:
        ParseError: value is missing or not a non-negative number
    """
    if value is None or isinstance(value, bool):
        raise ParseError(f"not a size: {value!r}")
    try:
        number = float(str(value).strip())
    except ValueError:
        raise ParseError(f"not a size: {value!r}", raw=str(value))
    if number != number or number < 0:  # NaN or negative
        raise ParseError(f"not a size: {value!r}", raw=str(value))
    return number


# =============================================================================
# Metadata Extraction
# =============================================================================

def get_path(data: Any, path: str) -> Any:
    """Get a nested value using dot notation; numeric parts index lists."""
    value = data
    for key in path.split('.'):
        if isinstance(value, Mapping):
            if key not in value:
                return None
            value = value[key]
        elif isinstance(value, (list, tuple)) and key.isdigit():
            index = int(key)
            if index >= len(value):
                return None
            value = value[index]
        else:
            return None
    return value


def extract_field(data: Mapping[str, Any], candidates: Sequence[str], default: str = UNKNOWN) -> str:
    """Return the first present, non-null, non-empty candidate as a string."""
    for path in candidates:
        value = get_path(data, path)
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text and text.lower() != 'null':
            return text
    return default


def basename(value: str) -> str:
    """Reduce a resource URL to its last path segment."""
    if not value or value == UNKNOWN:
        return value
    return value.rstrip('/').rsplit('/', 1)[-1]


def location_from_name(name: str) -> Optional[str]:
    """Pull the location out of "projects/p/locations/<loc>/instances/x"."""
    parts = name.split('/')
    if 'locations' in parts:
        index = parts.index('locations') + 1
        if index < len(parts) and parts[index]:
            return parts[index]
    return None


def normalize_labels(labels: Any) -> Dict[str, str]:
    """Convert a labels payload into an ordered str->str dict, sorted by key."""
    if not labels or not isinstance(labels, Mapping):
        return {}
    return {str(k): str(v) for k, v in sorted(labels.items(), key=lambda kv: str(kv[0]))}


def bucket_uri(name: str) -> str:
    """Return gs://name/ for a bucket name or URI."""
    if name.startswith('gs://'):
        return name if name.endswith('/') else f"{name}/"
    return f"gs://{name}/"


def bucket_name(uri: str) -> str:
    """Return the bare bucket name for gs://name/ or name."""
    if uri.startswith('gs://'):
        uri = uri[len('gs://'):]
    return uri.strip('/').split('/', 1)[0]


# Candidate paths per report field. Both the JSON API representation
# (camelCase) and the gcloud describe representation (snake_case) appear.
_CREATOR_LABELS = ['labels.created-by', 'labels.createdBy', 'labels.creator']

FIELD_CANDIDATES: Dict[ResourceType, Dict[str, Sequence[str]]] = {
    ResourceType.BUCKET: {
        'name': ['name', 'id'],
        'location': ['location', 'locationType', 'location_type'],
        'class_or_type': ['default_storage_class', 'storageClass', 'defaultStorageClass', 'storage_class'],
        'created_at': ['creation_time', 'timeCreated', 'createTime', 'created', 'creationTimestamp'],
        'updated_at': ['update_time', 'updated', 'timeUpdated', 'updateTime', 'lastModified'],
        'created_by': ['owner.entity', 'owner.entityId', 'createdBy', 'created_by'] + _CREATOR_LABELS,
    },
    ResourceType.DISK: {
        'name': ['name'],
        'location': ['zone', 'region'],
        'class_or_type': ['type', 'type_'],
        'created_at': ['creationTimestamp', 'creation_timestamp'],
        'updated_at': ['lastAttachTimestamp', 'last_attach_timestamp'],
        'created_by': ['createdBy', 'owner.entity', 'owner.entityId'] + _CREATOR_LABELS,
    },
    ResourceType.FILE_SHARE: {
        'name': ['name'],
        'location': ['location', 'networks.0.zones.0'],
        'class_or_type': ['tier'],
        'created_at': ['createTime', 'create_time'],
        'updated_at': ['updateTime', 'update_time'],
        'created_by': ['createdBy'] + _CREATOR_LABELS,
    },
}

# Fields that hold resource URLs and should be reduced to their last segment
_URL_FIELDS = {
    ResourceType.DISK: ('location', 'class_or_type'),
    ResourceType.FILE_SHARE: ('name',),
}


def extract_metadata(resource_type: ResourceType, *payloads: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Pull report fields out of one or more metadata payloads.

    Payloads are consulted in order for each field, so a detailed describe
    result can be passed ahead of the listing entry it refines.
    """
    candidates = FIELD_CANDIDATES[resource_type]
    merged: Dict[str, Any] = {}
    for field_name, paths in candidates.items():
        value = UNKNOWN
        for payload in payloads:
            if not payload:
                continue
            value = extract_field(payload, paths)
            if value != UNKNOWN:
                break
        merged[field_name] = value

    for field_name in _URL_FIELDS.get(resource_type, ()):
        merged[field_name] = basename(merged[field_name])

    if resource_type == ResourceType.FILE_SHARE and merged['location'] == UNKNOWN:
        for payload in payloads:
            location = location_from_name(str((payload or {}).get('name', '')))
            if location:
                merged['location'] = location
                break

    if resource_type == ResourceType.BUCKET and merged['location'] != UNKNOWN:
        merged['location'] = merged['location'].lower()

    labels: Dict[str, str] = {}
    for payload in payloads:
        labels = normalize_labels((payload or {}).get('labels'))
        if labels:
            break
    merged['labels'] = labels
    return merged

