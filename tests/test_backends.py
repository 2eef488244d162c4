"""
Tests for backends and size strategies using unittest.mock.

Covers:
- CommandRunner exit codes, timeouts and disabled-API detection
- gcloud CLI backend listing and describe commands
- google-cloud SDK backend listing (storage, compute, filestore, projects)
- SDK permission errors mapped to ApiDisabledError
- Size strategy commands and object listing sums
- Tooling preflight
"""
import os
import subprocess
import sys
import time
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from google.api_core import exceptions as google_exceptions

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from storage_audit.backends import (
    CommandRunner,
    GcloudCliBackend,
    GcloudDuStrategy,
    GoogleCloudBackend,
    GsutilDuStrategy,
    ObjectListingStrategy,
    build_backend,
    build_strategy,
    is_api_disabled,
)
from storage_audit.errors import ApiDisabledError, ProbeTimeoutError, SetupError, TransportError
from storage_audit.models import ResourceRef, ResourceType
from storage_audit.utils import is_retryable


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def project_id():
    """Test project ID."""
    return "my-test-project"


@pytest.fixture
def runner():
    """Mock command runner."""
    return Mock(spec=CommandRunner)


def completed(returncode=0, stdout="", stderr=""):
    result = Mock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


# =============================================================================
# CommandRunner
# =============================================================================

class TestCommandRunner:
    """Tests for subprocess execution."""

    def test_returns_stdout(self):
        with patch('storage_audit.backends.subprocess.run', return_value=completed(stdout="123  gs://b/\n")) as run:
            output = CommandRunner(timeout=30).run(['gcloud', 'storage', 'du', 'gs://b/'])

        assert output == "123  gs://b/\n"
        assert run.call_args.kwargs['timeout'] == 30

    def test_nonzero_exit_is_transport_error(self):
        result = completed(returncode=1, stderr="ERROR: network unreachable")
        with patch('storage_audit.backends.subprocess.run', return_value=result):
            with pytest.raises(TransportError) as exc_info:
                CommandRunner().run(['gsutil', 'du', '-s', 'gs://b/'])

        assert not isinstance(exc_info.value, ApiDisabledError)
        assert exc_info.value.exit_code == 1
        assert "network unreachable" in str(exc_info.value)

    def test_disabled_api_detected(self):
        stderr = "ERROR: (gcloud.compute.disks.list) Compute Engine API has not been used in project 123"
        with patch('storage_audit.backends.subprocess.run', return_value=completed(returncode=1, stderr=stderr)):
            with pytest.raises(ApiDisabledError):
                CommandRunner().run(['gcloud', 'compute', 'disks', 'list'])

    def test_timeout(self):
        error = subprocess.TimeoutExpired(cmd='gcloud', timeout=5)
        with patch('storage_audit.backends.subprocess.run', side_effect=error):
            with pytest.raises(ProbeTimeoutError) as exc_info:
                CommandRunner(timeout=5).run(['gcloud', 'storage', 'du', 'gs://b/'])
        assert "timed out after 5s" in str(exc_info.value)

    def test_missing_binary(self):
        with patch('storage_audit.backends.subprocess.run', side_effect=FileNotFoundError("gsutil")):
            with pytest.raises(TransportError):
                CommandRunner().run(['gsutil', 'du', '-s', 'gs://b/'])

    def test_run_json(self):
        with patch('storage_audit.backends.subprocess.run', return_value=completed(stdout='[{"name": "b1"}]')):
            assert CommandRunner().run_json(['gcloud', 'storage', 'buckets', 'list']) == [{'name': 'b1'}]

    def test_run_json_empty_and_invalid(self):
        with patch('storage_audit.backends.subprocess.run', return_value=completed(stdout='')):
            assert CommandRunner().run_json(['gcloud', 'projects', 'list']) == []
        with patch('storage_audit.backends.subprocess.run', return_value=completed(stdout='not json')):
            with pytest.raises(TransportError):
                CommandRunner().run_json(['gcloud', 'projects', 'list'])

    def test_is_api_disabled(self):
        assert is_api_disabled("SERVICE_DISABLED: file.googleapis.com")
        assert not is_api_disabled("connection reset by peer")
        assert not is_api_disabled("")

    @pytest.mark.parametrize("stderr", [
        "ERROR: HTTPError 403: Access Not Configured.",
        'ERROR: {"code": 403, "message": "denied"}',
        "ERROR: 403 Forbidden",
    ])
    def test_http_403_is_denial(self, stderr):
        assert is_api_disabled(stderr)

    @pytest.mark.parametrize("stderr", [
        "HTTPError 503: backend unavailable for project 824031337",
        "ERROR: bucket logs-403-archive: connection reset",
        "copied 40312 bytes before the stream closed",
    ])
    def test_403_inside_other_text_is_not_denial(self, stderr):
        assert not is_api_disabled(stderr)

    def test_unavailable_with_403_digits_is_retryable(self):
        stderr = "ERROR: HTTPError 503: backend unavailable for project 824031337"
        with patch('storage_audit.backends.subprocess.run', return_value=completed(returncode=1, stderr=stderr)):
            with pytest.raises(TransportError) as exc_info:
                CommandRunner().run(['gcloud', 'storage', 'buckets', 'list'])
        assert not isinstance(exc_info.value, ApiDisabledError)
        assert is_retryable(exc_info.value)


# =============================================================================
# gcloud CLI Backend
# =============================================================================

class TestGcloudCliBackend:
    """Tests for CLI enumeration."""

    def test_list_projects_active_only(self, runner):
        runner.run_json.return_value = [
            {'projectId': 'b-proj', 'lifecycleState': 'ACTIVE'},
            {'projectId': 'a-proj', 'lifecycleState': 'ACTIVE'},
            {'projectId': 'gone', 'lifecycleState': 'DELETE_REQUESTED'},
        ]
        assert GcloudCliBackend(runner).list_projects() == ['a-proj', 'b-proj']

    def test_list_buckets(self, runner, project_id):
        runner.run_json.return_value = [{'name': 'b1', 'location': 'US-EAST1'}, {'name': 'b2'}]
        refs = GcloudCliBackend(runner).list_resources(project_id, ResourceType.BUCKET)

        assert [r.identifier for r in refs] == ['gs://b1/', 'gs://b2/']
        assert refs[0].location == 'us-east1'
        assert refs[1].location == 'unknown'
        assert f'--project={project_id}' in runner.run_json.call_args.args[0]

    def test_list_disks(self, runner, project_id):
        runner.run_json.return_value = [
            {'name': 'd1', 'zone': 'https://compute/projects/p/zones/us-central1-a', 'sizeGb': '10'},
        ]
        refs = GcloudCliBackend(runner).list_resources(project_id, ResourceType.DISK)
        assert refs[0].name == 'd1'
        assert refs[0].location == 'us-central1-a'
        assert refs[0].payload['sizeGb'] == '10'

    def test_list_file_shares(self, runner, project_id):
        runner.run_json.return_value = [{'name': 'projects/p/locations/us-west1-b/instances/fs1'}]
        refs = GcloudCliBackend(runner).list_resources(project_id, ResourceType.FILE_SHARE)
        assert refs[0].name == 'fs1'
        assert refs[0].location == 'us-west1-b'

    def test_disabled_api_propagates(self, runner, project_id):
        runner.run_json.side_effect = ApiDisabledError("SERVICE_DISABLED")
        with pytest.raises(ApiDisabledError):
            GcloudCliBackend(runner).list_resources(project_id, ResourceType.FILE_SHARE)

    def test_describe_zonal_disk(self, runner, project_id):
        runner.run_json.return_value = {'name': 'd1'}
        ref = ResourceRef('d1', 'd1', 'us-central1-a', {'zone': 'zones/us-central1-a'})
        GcloudCliBackend(runner).describe(project_id, ResourceType.DISK, ref)

        command = runner.run_json.call_args.args[0]
        assert command[:5] == ['gcloud', 'compute', 'disks', 'describe', 'd1']
        assert '--zone=us-central1-a' in command

    def test_describe_regional_disk(self, runner, project_id):
        runner.run_json.return_value = {}
        ref = ResourceRef('d1', 'd1', 'us-east1', {'region': 'https://compute/regions/us-east1'})
        GcloudCliBackend(runner).describe(project_id, ResourceType.DISK, ref)
        assert '--region=us-east1' in runner.run_json.call_args.args[0]

    def test_describe_bucket(self, runner, project_id):
        runner.run_json.return_value = {'name': 'b1', 'default_storage_class': 'STANDARD'}
        ref = ResourceRef('gs://b1/', 'b1')
        details = GcloudCliBackend(runner).describe(project_id, ResourceType.BUCKET, ref)

        assert details['default_storage_class'] == 'STANDARD'
        assert runner.run_json.call_args.args[0][:5] == ['gcloud', 'storage', 'buckets', 'describe', 'gs://b1/']

    def test_describe_file_share_uses_listing(self, runner, project_id):
        ref = ResourceRef('x', 'fs1', payload={'tier': 'BASIC_SSD'})
        assert GcloudCliBackend(runner).describe(project_id, ResourceType.FILE_SHARE, ref) == {'tier': 'BASIC_SSD'}
        runner.run_json.assert_not_called()


# =============================================================================
# google-cloud SDK Backend
# =============================================================================

def create_mock_disk(name="disk-1", zone="us-central1-a", size_gb=100, labels=None):
    """Create a mock Compute Engine disk."""
    disk = Mock()
    disk.name = name
    disk.zone = f"https://www.googleapis.com/compute/v1/projects/p/zones/{zone}"
    disk.region = ""
    disk.size_gb = size_gb
    disk.type_ = f"https://www.googleapis.com/compute/v1/projects/p/zones/{zone}/diskTypes/pd-ssd"
    disk.status = "READY"
    disk.creation_timestamp = "2024-01-01T00:00:00.000-07:00"
    disk.last_attach_timestamp = ""
    disk.self_link = f"projects/p/zones/{zone}/disks/{name}"
    disk.users = []
    disk.labels = labels or {}
    return disk


class TestGoogleCloudBackend:
    """Tests for SDK enumeration."""

    def test_list_projects(self):
        active = Mock(project_id="b-proj")
        active.state.name = "ACTIVE"
        other = Mock(project_id="a-proj")
        other.state.name = "ACTIVE"
        deleted = Mock(project_id="old")
        deleted.state.name = "DELETE_REQUESTED"

        with patch('storage_audit.backends.resourcemanager_v3') as mock_rm:
            mock_rm.ProjectsClient.return_value.search_projects.return_value = [active, other, deleted]
            assert GoogleCloudBackend().list_projects() == ['a-proj', 'b-proj']

    def test_list_buckets(self, project_id):
        bucket = Mock()
        bucket.name = "prod-bucket"
        bucket.location = "US"
        bucket.location_type = "multi-region"
        bucket.storage_class = "STANDARD"
        bucket.time_created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        bucket.updated = None
        bucket.owner = {'entity': 'project-owners-123'}
        bucket.labels = {'env': 'prod'}

        with patch('storage_audit.backends.storage') as mock_storage:
            mock_storage.Client.return_value.list_buckets.return_value = [bucket]
            refs = GoogleCloudBackend().list_resources(project_id, ResourceType.BUCKET)

        assert len(refs) == 1
        assert refs[0].identifier == 'gs://prod-bucket/'
        assert refs[0].location == 'us'
        assert refs[0].payload['timeCreated'] == '2024-01-01T00:00:00+00:00'
        assert refs[0].payload['updated'] is None
        assert refs[0].payload['labels'] == {'env': 'prod'}

    def test_list_disks(self, project_id):
        scoped = Mock()
        scoped.disks = [create_mock_disk("d1"), create_mock_disk("d2", zone="europe-west1-b", size_gb=500)]
        empty = Mock()
        empty.disks = []

        with patch('storage_audit.backends.compute_v1') as mock_compute:
            client = mock_compute.DisksClient.return_value
            client.aggregated_list.return_value = [('zones/us-central1-a', scoped), ('zones/asia-east1-a', empty)]
            refs = GoogleCloudBackend().list_resources(project_id, ResourceType.DISK)

        assert [r.name for r in refs] == ['d1', 'd2']
        assert refs[1].location == 'europe-west1-b'
        assert refs[1].payload['sizeGb'] == 500

    def test_list_disks_permission_denied(self, project_id):
        with patch('storage_audit.backends.compute_v1') as mock_compute:
            mock_compute.DisksClient.return_value.aggregated_list.side_effect = google_exceptions.PermissionDenied(
                "Compute Engine API has not been used in project"
            )
            with pytest.raises(ApiDisabledError):
                GoogleCloudBackend().list_resources(project_id, ResourceType.DISK)

    def test_list_disks_unavailable_is_transport_error(self, project_id):
        with patch('storage_audit.backends.compute_v1') as mock_compute:
            mock_compute.DisksClient.return_value.aggregated_list.side_effect = (
                google_exceptions.ServiceUnavailable("try again")
            )
            with pytest.raises(TransportError) as exc_info:
                GoogleCloudBackend().list_resources(project_id, ResourceType.DISK)
        assert not isinstance(exc_info.value, ApiDisabledError)

    def test_list_file_shares(self, project_id):
        share = Mock()
        share.name = "vol1"
        share.capacity_gb = 1024
        instance = Mock()
        instance.name = f"projects/{project_id}/locations/us-central1-b/instances/fs1"
        instance.tier.name = "BASIC_HDD"
        instance.state.name = "READY"
        instance.create_time = datetime(2024, 5, 1, tzinfo=timezone.utc)
        instance.file_shares = [share]
        instance.labels = {}

        with patch('storage_audit.backends.filestore_v1') as mock_filestore:
            client = mock_filestore.CloudFilestoreManagerClient.return_value
            client.list_instances.return_value = [instance]
            refs = GoogleCloudBackend().list_resources(project_id, ResourceType.FILE_SHARE)

        assert refs[0].name == 'fs1'
        assert refs[0].location == 'us-central1-b'
        assert refs[0].payload['fileShares'] == [{'name': 'vol1', 'capacityGb': 1024}]
        assert refs[0].payload['tier'] == 'BASIC_HDD'
        assert client.list_instances.call_args.kwargs['parent'] == f"projects/{project_id}/locations/-"


# =============================================================================
# Size Strategies
# =============================================================================

class TestSizeStrategies:
    """Tests for bucket size strategies."""

    def test_gcloud_du_command(self, runner, project_id):
        runner.run.return_value = "42  gs://b1/\n"
        output = GcloudDuStrategy(runner).measure(project_id, ResourceRef('gs://b1/', 'b1'), timeout=42)

        assert output == "42  gs://b1/\n"
        runner.run.assert_called_once_with(['gcloud', 'storage', 'du', '--summarize', 'gs://b1/'], timeout=42)

    def test_gsutil_du_command(self, runner, project_id):
        runner.run.return_value = "42  gs://b1"
        GsutilDuStrategy(runner).measure(project_id, ResourceRef('b1', 'b1'))
        runner.run.assert_called_once_with(['gsutil', 'du', '-s', 'gs://b1/'], timeout=None)

    def test_object_listing_sums_sizes(self, project_id):
        client = Mock()
        client.list_blobs.return_value = [Mock(size=10), Mock(size=None), Mock(size=5)]
        strategy = ObjectListingStrategy(timeout=30, client_factory=lambda p: client)

        assert strategy.measure(project_id, ResourceRef('gs://b1/', 'b1')) == "15\n"
        assert client.list_blobs.call_args.args[0] == 'b1'

    def test_object_listing_denied(self, project_id):
        client = Mock()
        client.list_blobs.side_effect = google_exceptions.Forbidden("no storage.objects.list")
        strategy = ObjectListingStrategy(client_factory=lambda p: client)
        with pytest.raises(ApiDisabledError):
            strategy.measure(project_id, ResourceRef('gs://b1/', 'b1'))

    def test_object_listing_stops_at_deadline(self, project_id):
        def slow_pages(*args, **kwargs):
            for _ in range(100):
                time.sleep(0.02)
                yield Mock(size=1)

        client = Mock()
        client.list_blobs.side_effect = slow_pages
        strategy = ObjectListingStrategy(timeout=600, client_factory=lambda p: client)

        start = time.monotonic()
        with pytest.raises(ProbeTimeoutError):
            strategy.measure(project_id, ResourceRef('gs://b1/', 'b1'), timeout=0.1)
        assert time.monotonic() - start < 1.0
        assert client.list_blobs.call_args.kwargs['timeout'] == 0.1

    def test_build_strategy(self, runner):
        assert isinstance(build_strategy('gcloud-du', runner), GcloudDuStrategy)
        assert isinstance(build_strategy('gsutil-du', runner), GsutilDuStrategy)
        assert isinstance(build_strategy('object-listing', runner), ObjectListingStrategy)
        with pytest.raises(SetupError):
            build_strategy('tape-measure', runner)

    def test_build_backend(self):
        assert isinstance(build_backend('sdk'), GoogleCloudBackend)
        assert isinstance(build_backend('cli'), GcloudCliBackend)
        with pytest.raises(SetupError):
            build_backend('terraform')


# =============================================================================
# Preflight
# =============================================================================

class TestPreflight:
    """Tests for the tooling check before scanning."""

    def test_missing_tools(self, runner):
        backend = GcloudCliBackend(runner)
        with patch('storage_audit.backends.shutil.which', return_value=None):
            with pytest.raises(SetupError) as exc_info:
                backend.preflight([GsutilDuStrategy(runner)])
        assert "gcloud" in str(exc_info.value)
        assert "gsutil" in str(exc_info.value)

    def test_tools_present(self, runner):
        with patch('storage_audit.backends.shutil.which', return_value='/usr/bin/tool'):
            GcloudCliBackend(runner).preflight([GcloudDuStrategy(runner), GsutilDuStrategy(runner)])

    def test_sdk_with_object_listing_needs_nothing(self):
        with patch('storage_audit.backends.shutil.which', return_value=None):
            GoogleCloudBackend().preflight([ObjectListingStrategy()])
