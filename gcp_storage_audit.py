#!/usr/bin/env python3
"""
GCP Storage Audit - Cloud Storage, Persistent Disk and Filestore inventory

Scans projects concurrently, measures every bucket with two independent
size strategies, and writes a CSV report plus inventory/summary JSON.

Usage:
    python3 gcp_storage_audit.py --all-projects
    python3 gcp_storage_audit.py --project my-project-id --project other-project
    python3 gcp_storage_audit.py --config gsa-config.yaml --output ./audit
    python3 gcp_storage_audit.py --generate-config > gsa-config.yaml
"""
import argparse
import logging
import sys
from typing import List, Optional

from storage_audit.config import AuditSettings, generate_sample_config, load_config
from storage_audit.constants import BACKENDS, SIZE_STRATEGIES
from storage_audit.audit import run_audit
from storage_audit.errors import SetupError
from storage_audit.utils import print_audit_summary, setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='GCP Storage Audit - buckets, persistent disks and Filestore across projects'
    )
    parser.add_argument('--config', help='YAML config file (default: ./gsa-config.yaml or ~/.gsa/config.yaml)')
    parser.add_argument('--generate-config', action='store_true', help='Print a sample config file and exit')
    parser.add_argument(
        '--project', dest='projects', action='append',
        help='GCP project ID; repeat or comma-separate for several'
    )
    parser.add_argument('--all-projects', action='store_true', help='Audit every accessible project')
    parser.add_argument('--skip-projects', help='Comma-separated project IDs to skip')
    parser.add_argument(
        '--resource-types',
        help='Comma-separated resource types: bucket, disk, file_share (default: all)'
    )
    parser.add_argument('--backend', choices=BACKENDS, help='Enumeration backend (default: sdk)')
    parser.add_argument('--concurrency', type=int, help='Parallel probes per project (default: 32)')
    parser.add_argument('--project-workers', type=int, help='Projects scanned in parallel (default: 1)')
    parser.add_argument('--probe-timeout', type=float, help='Seconds per size measurement attempt (default: 600)')
    parser.add_argument('--retry-attempts', type=int, help='Attempts for failing listing calls (default: 3)')
    parser.add_argument('--primary-strategy', choices=SIZE_STRATEGIES, help='Bucket size strategy (default: gcloud-du)')
    parser.add_argument(
        '--secondary-strategy', choices=SIZE_STRATEGIES + ('none',),
        help='Fallback bucket size strategy (default: gsutil-du)'
    )
    parser.add_argument('--top-n', type=int, help='Largest resources listed in the summary (default: 10)')
    parser.add_argument('--output', help='Output directory (default: current directory)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.generate_config:
        print(generate_sample_config())
        return 0

    setup_logging(args.log_level or 'INFO')

    try:
        settings = AuditSettings.from_config(load_config(args))
        setup_logging(settings.log_level, settings.output)
        result = run_audit(settings)
    except SetupError as e:
        logger.error(f"Audit setup failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"Audit failed: {e}", exc_info=True)
        return 1

    print_audit_summary(result.grand_totals, result.duration_seconds, result.outputs)
    return 0


if __name__ == '__main__':
    sys.exit(main())
