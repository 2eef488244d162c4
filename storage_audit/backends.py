"""
Backends for listing projects/resources and measuring bucket sizes.

Two interchangeable enumeration backends are provided:

- GoogleCloudBackend: google-cloud client libraries (default)
- GcloudCliBackend:   the gcloud CLI with --format=json

Bucket sizes come from SizeStrategy objects. Each strategy returns the
raw text the tool printed; parsing and reconciliation happen in the probe
so every strategy is held to the same parsing rules.

All backend and strategy calls are read-only.
"""
import json
import logging
import re
import shutil
import subprocess
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from google.api_core import exceptions as google_exceptions
from google.cloud import compute_v1
from google.cloud import filestore_v1
from google.cloud import resourcemanager_v3
from google.cloud import storage

from .constants import (
    API_DENIED_STATUS_PATTERN,
    API_DISABLED_MARKERS,
    DEFAULT_PROBE_TIMEOUT,
    GCP_DENIED_EXCEPTION_NAMES,
    STRATEGY_GCLOUD_DU,
    STRATEGY_GSUTIL_DU,
    STRATEGY_OBJECT_LISTING,
    UNKNOWN,
)
from .errors import ApiDisabledError, ProbeTimeoutError, SetupError, TransportError
from .models import ResourceRef, ResourceType
from .parsing import basename, bucket_name, bucket_uri, location_from_name

logger = logging.getLogger(__name__)

_DENIED_STATUS = re.compile(API_DENIED_STATUS_PATTERN)


# =============================================================================
# Command Execution
# =============================================================================

def is_api_disabled(stderr: str) -> bool:
    """Check whether CLI error output means "API disabled / access denied"."""
    stderr = stderr or ''
    if any(marker in stderr for marker in API_DISABLED_MARKERS):
        return True
    return _DENIED_STATUS.search(stderr) is not None


class CommandRunner:
    """
    Runs CLI commands with an enforced timeout.

    Non-zero exits become TransportError (ApiDisabledError when stderr says
    the API is disabled or access was denied), timeouts become
    ProbeTimeoutError. Nothing is retried here.
    """

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.timeout = timeout

    def run(self, args: Sequence[str], timeout: Optional[float] = None) -> str:
        """Run a command and return its stdout."""
        timeout = timeout if timeout is not None else self.timeout
        operation = ' '.join(args[:3])
        logger.debug(f"Running: {' '.join(args)}")
        try:
            completed = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise ProbeTimeoutError(operation, timeout)
        except OSError as e:
            raise TransportError(f"{operation} could not be started: {e}", operation=operation)

        if completed.returncode != 0:
            stderr = (completed.stderr or '').strip()
            summary = stderr.splitlines()[-1] if stderr else 'no error output'
            error_cls = ApiDisabledError if is_api_disabled(stderr) else TransportError
            raise error_cls(
                f"{operation} exited with {completed.returncode}: {summary}",
                operation=operation,
                exit_code=completed.returncode,
                stderr=stderr,
            )
        return completed.stdout or ''

    def run_json(self, args: Sequence[str], timeout: Optional[float] = None) -> Any:
        """Run a command that prints JSON and decode it."""
        output = self.run(args, timeout=timeout)
        if not output.strip():
            return []
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise TransportError(f"{' '.join(args[:3])} returned invalid JSON: {e}")


# =============================================================================
# Size Strategies
# =============================================================================

class SizeStrategy:
    """A way of measuring a bucket's size that yields raw text."""

    name = ""
    required_binaries: Tuple[str, ...] = ()

    def measure(self, project_id: str, ref: ResourceRef, timeout: Optional[float] = None) -> str:
        """Return the tool's raw output. Must give up after `timeout` seconds."""
        raise NotImplementedError


class GcloudDuStrategy(SizeStrategy):
    """gcloud storage du --summarize gs://bucket/"""

    name = STRATEGY_GCLOUD_DU
    required_binaries = ('gcloud',)

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def measure(self, project_id: str, ref: ResourceRef, timeout: Optional[float] = None) -> str:
        return self.runner.run(
            ['gcloud', 'storage', 'du', '--summarize', bucket_uri(ref.identifier)], timeout=timeout
        )


class GsutilDuStrategy(SizeStrategy):
    """gsutil du -s gs://bucket/ (older implementation, different code path)"""

    name = STRATEGY_GSUTIL_DU
    required_binaries = ('gsutil',)

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def measure(self, project_id: str, ref: ResourceRef, timeout: Optional[float] = None) -> str:
        return self.runner.run(['gsutil', 'du', '-s', bucket_uri(ref.identifier)], timeout=timeout)


class ObjectListingStrategy(SizeStrategy):
    """Sum object sizes by listing the bucket through the Storage API."""

    name = STRATEGY_OBJECT_LISTING

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT, client_factory: Optional[Callable[[str], Any]] = None):
        self.timeout = timeout
        self._client_factory = client_factory or (lambda project_id: storage.Client(project=project_id))

    def measure(self, project_id: str, ref: ResourceRef, timeout: Optional[float] = None) -> str:
        operation = f"list objects in {bucket_uri(ref.identifier)}"
        limit = timeout if timeout is not None else self.timeout
        deadline = time.monotonic() + limit
        try:
            client = self._client_factory(project_id)
            total = 0
            # The request timeout bounds each page; the deadline bounds the whole listing.
            for blob in client.list_blobs(bucket_name(ref.identifier), timeout=limit):
                if time.monotonic() > deadline:
                    raise ProbeTimeoutError(operation, limit)
                total += blob.size or 0
        except google_exceptions.GoogleAPIError as e:
            raise translate_google_error(e, operation)
        return f"{total}\n"


def build_strategy(name: str, runner: CommandRunner, timeout: float = DEFAULT_PROBE_TIMEOUT) -> SizeStrategy:
    """Create a size strategy by name."""
    if name == STRATEGY_GCLOUD_DU:
        return GcloudDuStrategy(runner)
    if name == STRATEGY_GSUTIL_DU:
        return GsutilDuStrategy(runner)
    if name == STRATEGY_OBJECT_LISTING:
        return ObjectListingStrategy(timeout=timeout)
    raise SetupError(f"Unknown size strategy: {name}")


# =============================================================================
# Backends
# =============================================================================

def translate_google_error(exc: Exception, operation: str) -> TransportError:
    """Map a google-api-core exception onto the audit's error taxonomy."""
    if type(exc).__name__ in GCP_DENIED_EXCEPTION_NAMES:
        return ApiDisabledError(f"{operation} denied: {exc}", operation=operation)
    if isinstance(exc, google_exceptions.DeadlineExceeded):
        return TransportError(f"{operation} deadline exceeded: {exc}", operation=operation)
    return TransportError(f"{operation} failed: {exc}", operation=operation)


def _timestamp(value: Any) -> Optional[str]:
    """Render SDK timestamps (datetime or DatetimeWithNanoseconds) as ISO strings."""
    if not value:
        return None
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return str(value)


class StorageBackend:
    """
    Enumerates projects and storage resources.

    list_resources() must raise ApiDisabledError when the API is disabled
    or access is denied, and return [] only when the project genuinely has
    no resources of that type.
    """

    name = ""
    required_binaries: Tuple[str, ...] = ()

    def preflight(self, strategies: Sequence[SizeStrategy] = ()) -> None:
        """Fail fast when required tooling is not installed."""
        needed = set(self.required_binaries)
        for strategy in strategies:
            needed.update(strategy.required_binaries)
        missing = sorted(b for b in needed if shutil.which(b) is None)
        if missing:
            raise SetupError(f"Required tools not found on PATH: {', '.join(missing)}")

    def list_projects(self) -> List[str]:
        raise NotImplementedError

    def list_resources(self, project_id: str, resource_type: ResourceType) -> List[ResourceRef]:
        listers = {
            ResourceType.BUCKET: self.list_buckets,
            ResourceType.DISK: self.list_disks,
            ResourceType.FILE_SHARE: self.list_file_shares,
        }
        return listers[resource_type](project_id)

    def describe(self, project_id: str, resource_type: ResourceType, ref: ResourceRef) -> Dict[str, Any]:
        """Fetch detailed metadata. Defaults to the listing payload."""
        return dict(ref.payload)

    def list_buckets(self, project_id: str) -> List[ResourceRef]:
        raise NotImplementedError

    def list_disks(self, project_id: str) -> List[ResourceRef]:
        raise NotImplementedError

    def list_file_shares(self, project_id: str) -> List[ResourceRef]:
        raise NotImplementedError


def _bucket_ref(payload: Dict[str, Any]) -> ResourceRef:
    name = payload.get('name') or bucket_name(payload.get('id', ''))
    location = payload.get('location') or UNKNOWN
    return ResourceRef(identifier=bucket_uri(name), name=name, location=str(location).lower(), payload=payload)


def _disk_ref(payload: Dict[str, Any]) -> ResourceRef:
    location = basename(payload.get('zone') or payload.get('region') or UNKNOWN)
    return ResourceRef(
        identifier=payload.get('selfLink') or payload.get('name', ''),
        name=payload.get('name', ''),
        location=location,
        payload=payload,
    )


def _file_share_ref(payload: Dict[str, Any]) -> ResourceRef:
    full_name = payload.get('name', '')
    return ResourceRef(
        identifier=full_name,
        name=basename(full_name),
        location=location_from_name(full_name) or UNKNOWN,
        payload=payload,
    )


class GoogleCloudBackend(StorageBackend):
    """Enumeration through the google-cloud client libraries."""

    name = "sdk"

    def __init__(self, credentials=None, timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.credentials = credentials
        self.timeout = timeout

    def list_projects(self) -> List[str]:
        """Get all accessible, active projects."""
        client = resourcemanager_v3.ProjectsClient(credentials=self.credentials)
        projects = []
        try:
            for project in client.search_projects(timeout=self.timeout):
                if project.state.name == 'ACTIVE':
                    projects.append(project.project_id)
        except google_exceptions.GoogleAPIError as e:
            raise translate_google_error(e, "search projects")
        return sorted(projects)

    def list_buckets(self, project_id: str) -> List[ResourceRef]:
        refs = []
        try:
            client = storage.Client(project=project_id, credentials=self.credentials)
            for bucket in client.list_buckets(timeout=self.timeout):
                payload = {
                    'name': bucket.name,
                    'location': bucket.location,
                    'locationType': bucket.location_type,
                    'storageClass': bucket.storage_class,
                    'timeCreated': _timestamp(bucket.time_created),
                    'updated': _timestamp(bucket.updated),
                    'owner': bucket.owner,
                    'labels': dict(bucket.labels) if bucket.labels else {},
                }
                refs.append(_bucket_ref(payload))
        except google_exceptions.GoogleAPIError as e:
            raise translate_google_error(e, f"list buckets in {project_id}")
        return refs

    def list_disks(self, project_id: str) -> List[ResourceRef]:
        refs = []
        try:
            client = compute_v1.DisksClient(credentials=self.credentials)
            request = compute_v1.AggregatedListDisksRequest(project=project_id)
            for _scope, response in client.aggregated_list(request=request, timeout=self.timeout):
                for disk in response.disks or []:
                    payload = {
                        'name': disk.name,
                        'zone': disk.zone,
                        'region': disk.region,
                        'sizeGb': disk.size_gb,
                        'type': disk.type_,
                        'status': disk.status,
                        'creationTimestamp': disk.creation_timestamp,
                        'lastAttachTimestamp': disk.last_attach_timestamp,
                        'selfLink': disk.self_link,
                        'users': list(disk.users) if disk.users else [],
                        'labels': dict(disk.labels) if disk.labels else {},
                    }
                    refs.append(_disk_ref(payload))
        except google_exceptions.GoogleAPIError as e:
            raise translate_google_error(e, f"list disks in {project_id}")
        return refs

    def list_file_shares(self, project_id: str) -> List[ResourceRef]:
        refs = []
        try:
            client = filestore_v1.CloudFilestoreManagerClient(credentials=self.credentials)
            parent = f"projects/{project_id}/locations/-"
            for instance in client.list_instances(parent=parent, timeout=self.timeout):
                payload = {
                    'name': instance.name,
                    'tier': instance.tier.name if instance.tier else None,
                    'state': instance.state.name if instance.state else None,
                    'createTime': _timestamp(instance.create_time),
                    'fileShares': [
                        {'name': share.name, 'capacityGb': share.capacity_gb}
                        for share in instance.file_shares
                    ] if instance.file_shares else [],
                    'labels': dict(instance.labels) if instance.labels else {},
                }
                refs.append(_file_share_ref(payload))
        except google_exceptions.GoogleAPIError as e:
            raise translate_google_error(e, f"list Filestore instances in {project_id}")
        return refs


class GcloudCliBackend(StorageBackend):
    """Enumeration through the gcloud CLI."""

    name = "cli"
    required_binaries = ('gcloud',)

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def list_projects(self) -> List[str]:
        projects = self.runner.run_json(['gcloud', 'projects', 'list', '--format=json'])
        return sorted(
            p['projectId'] for p in projects
            if p.get('projectId') and p.get('lifecycleState', 'ACTIVE') == 'ACTIVE'
        )

    def list_buckets(self, project_id: str) -> List[ResourceRef]:
        items = self.runner.run_json(
            ['gcloud', 'storage', 'buckets', 'list', f'--project={project_id}', '--format=json']
        )
        return [_bucket_ref(item) for item in items if item.get('name') or item.get('id')]

    def list_disks(self, project_id: str) -> List[ResourceRef]:
        items = self.runner.run_json(
            ['gcloud', 'compute', 'disks', 'list', f'--project={project_id}', '--format=json']
        )
        return [_disk_ref(item) for item in items if item.get('name')]

    def list_file_shares(self, project_id: str) -> List[ResourceRef]:
        items = self.runner.run_json(
            ['gcloud', 'filestore', 'instances', 'list', f'--project={project_id}', '--format=json']
        )
        return [_file_share_ref(item) for item in items if item.get('name')]

    def describe(self, project_id: str, resource_type: ResourceType, ref: ResourceRef) -> Dict[str, Any]:
        if resource_type == ResourceType.BUCKET:
            return self.runner.run_json(
                ['gcloud', 'storage', 'buckets', 'describe', bucket_uri(ref.identifier), '--format=json']
            )
        if resource_type == ResourceType.DISK:
            if ref.payload.get('region') and not ref.payload.get('zone'):
                scope = f"--region={basename(ref.payload['region'])}"
            else:
                scope = f"--zone={ref.location}"
            return self.runner.run_json(
                ['gcloud', 'compute', 'disks', 'describe', ref.name, scope,
                 f'--project={project_id}', '--format=json']
            )
        return dict(ref.payload)


def build_backend(name: str, timeout: float = DEFAULT_PROBE_TIMEOUT,
                  runner: Optional[CommandRunner] = None) -> StorageBackend:
    """Create an enumeration backend by name ("sdk" or "cli")."""
    if name == 'sdk':
        return GoogleCloudBackend(timeout=timeout)
    if name == 'cli':
        return GcloudCliBackend(runner or CommandRunner(timeout=timeout))
    raise SetupError(f"Unknown backend: {name}")
