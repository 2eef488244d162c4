"""
GCP Storage Audit - Configuration Management

Supports loading configuration from:
1. YAML config file (--config, or ./gsa-config.yaml / ~/.gsa/config.yaml)
2. Environment variables (GSA_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./audit"
backend: sdk
projects:
  - prod-data
  - ${EXTRA_PROJECT:-analytics}
skip_projects:
  - sandbox-123
concurrency: 32
probe_timeout: 600
```
"""
import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .constants import (
    BACKENDS,
    DEFAULT_BACKEND,
    DEFAULT_CONCURRENCY,
    DEFAULT_PRIMARY_STRATEGY,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_PROJECT_WORKERS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_SECONDARY_STRATEGY,
    DEFAULT_TOP_N,
    SIZE_STRATEGIES,
)
from .errors import SetupError
from .models import ResourceType

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './gsa-config.yaml',
    './gsa-config.yml',
    '~/.gsa/config.yaml',
    '~/.gsa/config.yml',
]

# Environment variable prefix
ENV_PREFIX = 'GSA_'

CONFIG_KEYS = (
    'output',
    'log_level',
    'backend',
    'projects',
    'all_projects',
    'skip_projects',
    'resource_types',
    'concurrency',
    'project_workers',
    'probe_timeout',
    'retry_attempts',
    'primary_strategy',
    'secondary_strategy',
    'top_n',
)

LIST_KEYS = ('projects', 'skip_projects', 'resource_types')
INT_KEYS = ('concurrency', 'project_workers', 'retry_attempts', 'top_n')
FLOAT_KEYS = ('probe_timeout',)
BOOL_KEYS = ('all_projects',)

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {key: f"{ENV_PREFIX}{key.upper()}" for key in CONFIG_KEYS}

_ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${VAR} and ${VAR:-default} patterns in string values."""
    if isinstance(value, str):
        def replace(match):
            return os.environ.get(match.group(1), match.group(2) or '')
        return _ENV_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def split_list(value: Any) -> List[str]:
    """Accept "a,b", ["a", "b"] or ["a,b", "c"] and return a flat list."""
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple)) else [value]
    result = []
    for item in items:
        result.extend(v.strip() for v in str(item).split(',') if v.strip())
    return result


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise SetupError(f"Config file not found: {config_path}")

    # Warn if config file is readable by group or others
    if path.stat().st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise SetupError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(config, dict):
        raise SetupError(f"Config file {config_path} must contain a mapping")

    unknown = sorted(set(config) - set(CONFIG_KEYS))
    if unknown:
        logger.warning(f"Ignoring unknown config keys in {config_path}: {', '.join(unknown)}")

    return _substitute_env_vars({k: v for k, v in config.items() if k in CONFIG_KEYS})


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from GSA_* environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        if config_key in LIST_KEYS:
            config[config_key] = split_list(value)
        elif config_key in BOOL_KEYS:
            config[config_key] = value.lower() in ('true', '1', 'yes')
        else:
            config[config_key] = value

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    for key in CONFIG_KEYS:
        value = getattr(args, key, None)
        if value is None or value is False:
            continue
        if key in LIST_KEYS:
            value = split_list(value)
            if not value:
                continue
        config[key] = value

    return config


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file (--config or default location)

    Returns merged config dict.
    """
    configs = []

    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    configs.append(args_to_config(args))

    return merge_configs(*configs)


@dataclass
class AuditSettings:
    """Validated audit settings."""
    output: str = '.'
    log_level: str = 'INFO'
    backend: str = DEFAULT_BACKEND
    projects: List[str] = field(default_factory=list)
    all_projects: bool = False
    skip_projects: List[str] = field(default_factory=list)
    resource_types: List[ResourceType] = field(default_factory=lambda: list(ResourceType))
    concurrency: int = DEFAULT_CONCURRENCY
    project_workers: int = DEFAULT_PROJECT_WORKERS
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    primary_strategy: str = DEFAULT_PRIMARY_STRATEGY
    secondary_strategy: Optional[str] = DEFAULT_SECONDARY_STRATEGY
    top_n: int = DEFAULT_TOP_N

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "AuditSettings":
        """Build settings from a merged config dict, raising SetupError on bad values."""
        values: Dict[str, Any] = {}

        for key in INT_KEYS:
            if key in config:
                values[key] = _to_number(key, config[key], int, minimum=1 if key != 'top_n' else 0)
        for key in FLOAT_KEYS:
            if key in config:
                values[key] = _to_number(key, config[key], float, minimum=0.001)

        for key in ('output', 'log_level', 'backend', 'primary_strategy'):
            if key in config:
                values[key] = str(config[key])
        if 'log_level' in values:
            values['log_level'] = values['log_level'].upper()

        if 'secondary_strategy' in config:
            secondary = config['secondary_strategy']
            values['secondary_strategy'] = None if str(secondary).lower() in ('', 'none') else str(secondary)

        for key in ('projects', 'skip_projects'):
            if key in config:
                values[key] = split_list(config[key])

        if 'all_projects' in config:
            all_projects = config['all_projects']
            if isinstance(all_projects, str):
                all_projects = all_projects.lower() in ('true', '1', 'yes')
            values['all_projects'] = bool(all_projects)

        if 'resource_types' in config:
            names = split_list(config['resource_types'])
            try:
                types = [ResourceType.parse(name) for name in names]
            except ValueError as e:
                raise SetupError(str(e))
            # Keep declaration order, drop duplicates
            values['resource_types'] = [t for t in ResourceType if t in types]

        settings = cls(**values)
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.backend not in BACKENDS:
            raise SetupError(f"Unknown backend '{self.backend}', expected one of: {', '.join(BACKENDS)}")
        for strategy in (self.primary_strategy, self.secondary_strategy):
            if strategy is not None and strategy not in SIZE_STRATEGIES:
                raise SetupError(
                    f"Unknown size strategy '{strategy}', expected one of: {', '.join(SIZE_STRATEGIES)}"
                )
        if self.secondary_strategy == self.primary_strategy:
            raise SetupError("primary_strategy and secondary_strategy must differ")
        if self.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR'):
            raise SetupError(f"Unknown log level: {self.log_level}")
        if not self.resource_types:
            raise SetupError("No resource types selected")


def _to_number(key: str, value: Any, kind, minimum: float):
    if isinstance(value, bool):
        raise SetupError(f"{key} must be a number, got {value!r}")
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise SetupError(f"{key} must be a number, got {value!r}")
    if number < minimum:
        raise SetupError(f"{key} must be >= {minimum:g}, got {number}")
    return number


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# GCP Storage Audit Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value
#
# Every key can also be set with a GSA_<KEY> environment variable,
# e.g. GSA_CONCURRENCY=16 or GSA_PROJECTS=proj-a,proj-b

# Output directory for the CSV report, JSON files and log
output: "./audit"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

# Enumeration backend: sdk (google-cloud client libraries) or cli (gcloud)
backend: sdk

# Projects to audit (leave empty and set all_projects to scan everything)
# projects:
#   - my-project-id
# all_projects: true

# Project IDs to skip
# skip_projects:
#   - sandbox-project

# Resource types: bucket, disk, file_share
resource_types:
  - bucket
  - disk
  - file_share

# Parallel probes per project, and projects scanned at once
concurrency: 32
project_workers: 1

# Seconds allowed per size measurement attempt
probe_timeout: 600

# Attempts for listing calls that fail transiently
retry_attempts: 3

# Bucket size strategies: gcloud-du, gsutil-du, object-listing
# The secondary is used when the primary reports zero or fails.
primary_strategy: gcloud-du
secondary_strategy: gsutil-du

# Number of largest resources listed in the summary
top_n: 10
'''
