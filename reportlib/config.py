"""
M365 Reports - Configuration Management

Supports loading configuration from:
1. Environment variables (M365R_*, MS365_TENANT_ID, MS365_CLIENT_ID)
2. YAML config file (--config or a default location)
3. Command-line arguments (highest priority)

Config file example:
```yaml
tenant_id: ${MS365_TENANT_ID}
client_id: ${MS365_CLIENT_ID}
output: "./m365_reports"

licenses:
  sku_file: ./SkuDataComplete.csv
  service_plan_file: ./ServicePlanDataComplete.csv
  currency: EUR
  stale_days: 60

  # Departments / countries always listed in the cost rollups, even when
  # no licensed account belongs to them
  # departments:
  #   - Finance
  #   - Legal
  # countries:
  #   - NL

groups:
  inbox_stale_days: 365
  spo_activity_days: 90
```

The client secret is never read from a file or the command line; it comes
from MS365_CLIENT_SECRET only.
"""
import copy
import logging
import os
import re
import stat
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .constants import (
    DEFAULT_INBOX_STALE_DAYS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SERVICE_PLAN_FILE,
    DEFAULT_SKU_FILE,
    DEFAULT_SPO_ACTIVITY_DAYS,
    DEFAULT_STALE_DAYS,
)

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './m365-report-config.yaml',
    './m365-report-config.yml',
    '~/.m365-reports/config.yaml',
    '~/.m365-reports/config.yml',
]

SECRET_ENV_VAR = 'MS365_CLIENT_SECRET'

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'tenant_id': 'MS365_TENANT_ID',
    'client_id': 'MS365_CLIENT_ID',
    'output': 'M365R_OUTPUT',
    'log_level': 'M365R_LOG_LEVEL',
    'licenses.sku_file': 'M365R_SKU_FILE',
    'licenses.service_plan_file': 'M365R_SERVICE_PLAN_FILE',
    'licenses.currency': 'M365R_CURRENCY',
    'licenses.stale_days': 'M365R_STALE_DAYS',
    'licenses.departments': 'M365R_DEPARTMENTS',
    'licenses.countries': 'M365R_COUNTRIES',
    'groups.inbox_stale_days': 'M365R_INBOX_STALE_DAYS',
    'groups.spo_activity_days': 'M365R_SPO_ACTIVITY_DAYS',
}

INT_KEYS = ('licenses.stale_days', 'groups.inbox_stale_days', 'groups.spo_activity_days')

# Comma separated in env vars and on the CLI, YAML lists in the config file
LIST_KEYS = ('licenses.departments', 'licenses.countries')

DEFAULTS: Dict[str, Any] = {
    'output': DEFAULT_OUTPUT_DIR,
    'log_level': 'INFO',
    'licenses': {
        'sku_file': DEFAULT_SKU_FILE,
        'service_plan_file': DEFAULT_SERVICE_PLAN_FILE,
        'stale_days': DEFAULT_STALE_DAYS,
    },
    'groups': {
        'inbox_stale_days': DEFAULT_INBOX_STALE_DAYS,
        'spo_activity_days': DEFAULT_SPO_ACTIVITY_DAYS,
    },
}


class ConfigError(Exception):
    """Raised for config values that cannot be used."""


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Get a nested value from a dict using dot notation."""
    value = data
    for key in key_path.split('.'):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    if 'client_secret' in config:
        logger.warning(f"Ignoring client_secret in {config_path}; set {SECRET_ENV_VAR} instead")
        config.pop('client_secret')

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value = os.environ.get(env_var)
        if value is not None and value != '':
            _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    arg_mapping = {
        'tenant_id': 'tenant_id',
        'client_id': 'client_id',
        'output_dir': 'output',
        'log_level': 'log_level',
        'sku_file': 'licenses.sku_file',
        'service_plan_file': 'licenses.service_plan_file',
        'currency': 'licenses.currency',
        'stale_days': 'licenses.stale_days',
        'departments': 'licenses.departments',
        'countries': 'licenses.countries',
        'inbox_stale_days': 'groups.inbox_stale_days',
        'spo_activity_days': 'groups.spo_activity_days',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            _set_nested(config, config_key, value)

    return config


def _coerce_ints(config: Dict[str, Any]) -> None:
    for key in INT_KEYS:
        value = get_nested(config, key)
        if value is None:
            continue
        if isinstance(value, bool):
            raise ConfigError(f"{key} must be a whole number of days, got {value!r}")
        try:
            number = value if isinstance(value, int) else int(str(value).strip())
        except ValueError:
            raise ConfigError(f"{key} must be a whole number of days, got {value!r}")
        if number < 0:
            raise ConfigError(f"{key} must not be negative, got {number}")
        _set_nested(config, key, number)


def _coerce_lists(config: Dict[str, Any]) -> None:
    for key in LIST_KEYS:
        value = get_nested(config, key)
        if value is None:
            continue
        items = value.split(',') if isinstance(value, str) else value
        if not isinstance(items, list):
            raise ConfigError(f"{key} must be a list of names, got {value!r}")
        _set_nested(config, key, [str(item).strip() for item in items if str(item).strip()])


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables
    4. Built-in defaults

    Returns merged config dict.

    Raises:
        FileNotFoundError: If --config names a file that does not exist
        ConfigError: If a threshold is not a non-negative whole number or a
            rollup name list is malformed
    """
    configs = [copy.deepcopy(DEFAULTS)]

    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    configs.append(args_to_config(args))

    merged = merge_configs(*configs)
    _coerce_ints(merged)
    _coerce_lists(merged)
    return merged


def get_client_secret() -> Optional[str]:
    """Client secret from the environment, or None."""
    return os.environ.get(SECRET_ENV_VAR) or None


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# M365 Reports Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# =============================================================================
# Tenant Access (both reports)
# =============================================================================
# Requires an Azure AD App Registration with Microsoft Graph permissions.
# Client secret MUST be set via MS365_CLIENT_SECRET, never in this file.
#
# Required API permissions (Application type):
#   - User.Read.All, AuditLog.Read.All, Organization.Read.All (license report)
#   - Group.Read.All, GroupMember.Read.All, Sites.Read.All,
#     ChannelMessage.Read.All (group activity report)
#
tenant_id: ${MS365_TENANT_ID}
client_id: ${MS365_CLIENT_ID}

# Output directory for HTML, CSV, JSON summary and run log
output: "./m365_reports"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO


# =============================================================================
# License Report (license_report.py)
# =============================================================================
licenses:
  # Reference tables: SkuId,DisplayName[,Price,Currency] and
  # ServicePlanId,ServicePlanDisplayName
  sku_file: ./SkuDataComplete.csv
  service_plan_file: ./ServicePlanDataComplete.csv

  # Currency shown with prices (default EUR, or the table's Currency column)
  # currency: EUR

  # Accounts without sign-in for more than this many days are flagged
  stale_days: 60


# =============================================================================
# Group Activity Report (group_activity_report.py)
# =============================================================================
groups:
  # Newest inbox conversation older than this marks the mailbox unused
  inbox_stale_days: 365

  # Window for document library file activity
  spo_activity_days: 90
'''
