"""
Tests for report sinks.

Covers:
- CSV header and column order
- Lossless round-trip of delimiters, quotes and newlines
- Concurrent emits produce intact rows
- Memory and fan-out sinks
"""
import csv
import os
import sys
import threading

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from storage_audit.constants import REPORT_COLUMNS
from storage_audit.models import ProbeStatus, ResourceRecord, ResourceType
from storage_audit.report import CsvReportSink, FanOutSink, MemoryReportSink, read_report


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def awkward_record():
    """Record whose text fields need quoting."""
    return ResourceRecord(
        project_id="proj-a",
        resource_type=ResourceType.BUCKET,
        name='bucket, with "quotes"\nand a newline',
        location="us",
        created_at="2024-01-01T00:00:00Z",
        created_by="alice@example.com",
        class_or_type="STANDARD",
        labels={'note': 'a,b', 'quote': 'say "hi"'},
        size_bytes=1_500_000_000,
        status=ProbeStatus.SUCCESS,
        size_source="gsutil-du",
        fallback_used=True,
    )


@pytest.fixture
def error_record():
    return ResourceRecord(
        project_id="proj-a",
        resource_type=ResourceType.DISK,
        name="disk-1",
        status=ProbeStatus.ERROR,
        error="compute describe timed out after 600s",
    )


# =============================================================================
# CsvReportSink
# =============================================================================

class TestCsvReportSink:
    """Tests for the streaming CSV sink."""

    def test_header_written_on_open(self, tmp_path):
        path = str(tmp_path / "report.csv")
        with CsvReportSink(path):
            pass
        with open(path, newline='') as f:
            assert next(csv.reader(f)) == REPORT_COLUMNS

    def test_round_trip(self, tmp_path, awkward_record, error_record):
        path = str(tmp_path / "report.csv")
        with CsvReportSink(path) as sink:
            sink.emit(awkward_record)
            sink.emit(error_record)

        rows = read_report(path)
        assert rows == [awkward_record.to_row(), error_record.to_row()]
        assert rows[0]['resource_name'] == 'bucket, with "quotes"\nand a newline'
        assert rows[0]['labels'] == 'note=a,b; quote=say "hi"'
        assert rows[0]['size_bytes'] == '1500000000'
        assert rows[0]['fallback'] == 'yes'
        assert rows[1]['status'] == 'error'
        assert rows[1]['size_bytes'] == '0'
        assert rows[1]['labels'] == 'none'

    def test_rows_flushed_before_close(self, tmp_path, error_record):
        path = str(tmp_path / "report.csv")
        sink = CsvReportSink(path)
        try:
            sink.emit(error_record)
            assert len(read_report(path)) == 1
        finally:
            sink.close()

    def test_emit_after_close_raises(self, tmp_path, error_record):
        sink = CsvReportSink(str(tmp_path / "report.csv"))
        sink.close()
        with pytest.raises(ValueError):
            sink.emit(error_record)

    def test_creates_output_directory(self, tmp_path):
        path = str(tmp_path / "nested" / "dir" / "report.csv")
        with CsvReportSink(path):
            pass
        assert os.path.exists(path)

    def test_concurrent_emits(self, tmp_path):
        path = str(tmp_path / "report.csv")
        records = [
            ResourceRecord("proj-a", ResourceType.BUCKET, f"bucket-{i}\nline2", size_bytes=i,
                           status=ProbeStatus.SUCCESS if i else ProbeStatus.EMPTY_OR_ZERO)
            for i in range(200)
        ]

        with CsvReportSink(path) as sink:
            threads = [
                threading.Thread(target=lambda chunk: [sink.emit(r) for r in chunk], args=(records[i::8],))
                for i in range(8)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
            assert sink.rows_written == 200

        rows = read_report(path)
        assert len(rows) == 200
        assert sorted(int(r['size_bytes']) for r in rows) == list(range(200))
        assert all(r['resource_name'].endswith("\nline2") for r in rows)


# =============================================================================
# Other Sinks
# =============================================================================

class TestOtherSinks:
    """Tests for memory and fan-out sinks."""

    def test_memory_sink_keeps_order(self, awkward_record, error_record):
        sink = MemoryReportSink()
        sink.emit(error_record)
        sink.emit(awkward_record)
        assert sink.records == [error_record, awkward_record]
        assert sink.rows()[0]['resource_type'] == 'Persistent_Disk'

    def test_fan_out(self, tmp_path, error_record):
        memory = MemoryReportSink()
        path = str(tmp_path / "report.csv")
        with FanOutSink(CsvReportSink(path), memory) as sink:
            sink.emit(error_record)

        assert memory.records == [error_record]
        assert len(read_report(path)) == 1
