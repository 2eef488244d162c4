"""
Report sinks: append-only destinations for resource records.

Rows are written in REPORT_COLUMNS order with csv quoting, so values that
contain commas, quotes or newlines read back unchanged.
"""
import csv
import logging
import os
import threading
from typing import Dict, List

from .constants import REPORT_COLUMNS
from .models import ResourceRecord

logger = logging.getLogger(__name__)


class ReportSink:
    """Append-only record destination."""

    def emit(self, record: ResourceRecord) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class CsvReportSink(ReportSink):
    """
    Streams records into a CSV file as they arrive.

    The header is written on open; each row is flushed immediately so a
    partially completed audit still leaves a usable report behind.
    """

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.Lock()
        self._file = open(path, 'w', newline='', encoding='utf-8')
        self._writer = csv.DictWriter(self._file, fieldnames=REPORT_COLUMNS)
        self._writer.writeheader()
        self._file.flush()
        self.rows_written = 0
        logger.debug(f"Opened report {path}")

    def emit(self, record: ResourceRecord) -> None:
        row = record.to_row()
        with self._lock:
            if self._file.closed:
                raise ValueError(f"Report {self.path} is closed")
            self._writer.writerow(row)
            self._file.flush()
            self.rows_written += 1

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()
                logger.info(f"Wrote {self.rows_written} rows to {self.path}")


class MemoryReportSink(ReportSink):
    """Keeps records in emission order."""

    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[ResourceRecord] = []

    def emit(self, record: ResourceRecord) -> None:
        with self._lock:
            self.records.append(record)

    def rows(self) -> List[Dict[str, str]]:
        with self._lock:
            return [r.to_row() for r in self.records]


class FanOutSink(ReportSink):
    """Forwards every record to several sinks."""

    def __init__(self, *sinks: ReportSink):
        self.sinks = list(sinks)

    def emit(self, record: ResourceRecord) -> None:
        for sink in self.sinks:
            sink.emit(record)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


def read_report(path: str) -> List[Dict[str, str]]:
    """Read a CSV report back into row dicts."""
    with open(path, newline='', encoding='utf-8') as f:
        return list(csv.DictReader(f))
