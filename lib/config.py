"""
Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (AHUB_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
subscription_ids:
  - "00000000-0000-0000-0000-000000000000"
throttle_limit: 10
mode: Both
output: ./reports
dry_run: false
```
"""
import logging
import os
import re
import stat
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .constants import (
    DEFAULT_MODE,
    DEFAULT_THROTTLE_LIMIT,
    MAX_THROTTLE_LIMIT,
    MIN_THROTTLE_LIMIT,
    SUBSCRIPTION_ID_PATTERN,
    VALID_MODES,
)

logger = logging.getLogger(__name__)

# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './ahub-config.yaml',
    './ahub-config.yml',
    '~/.ahub/config.yaml',
    '~/.ahub/config.yml',
]

ENV_VAR_MAPPING = {
    'subscription_ids': 'AHUB_SUBSCRIPTION_IDS',
    'throttle_limit': 'AHUB_THROTTLE_LIMIT',
    'mode': 'AHUB_MODE',
    'output': 'AHUB_OUTPUT',
    'log_level': 'AHUB_LOG_LEVEL',
    'dry_run': 'AHUB_DRY_RUN',
}

DEFAULTS: Dict[str, Any] = {
    'subscription_ids': None,
    'throttle_limit': DEFAULT_THROTTLE_LIMIT,
    'mode': DEFAULT_MODE,
    'output': '.',
    'log_level': 'INFO',
    'dry_run': False,
}

_SUBSCRIPTION_ID_RE = re.compile(SUBSCRIPTION_ID_PATTERN)


# =============================================================================
# Validation
# =============================================================================

def parse_subscription_ids(value: Union[str, List[str], None]) -> Optional[List[str]]:
    """Split and validate subscription ids; raises ValueError on a malformed id."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(',')
    ids = [str(v).strip() for v in value if str(v).strip()]
    for sub_id in ids:
        if not _SUBSCRIPTION_ID_RE.match(sub_id):
            raise ValueError(f"Invalid subscription id '{sub_id}' (expected xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx)")
    return ids or None


def parse_throttle_limit(value: Union[str, int]) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Throttle limit must be an integer, got '{value}'")
    if not MIN_THROTTLE_LIMIT <= limit <= MAX_THROTTLE_LIMIT:
        raise ValueError(
            f"Throttle limit must be between {MIN_THROTTLE_LIMIT} and {MAX_THROTTLE_LIMIT}, got {limit}"
        )
    return limit


def parse_mode(value: str) -> str:
    """Case-insensitive match against OS, SQL, Both."""
    for mode in VALID_MODES:
        if str(value).strip().lower() == mode.lower():
            return mode
    raise ValueError(f"Invalid mode '{value}' (expected one of: {', '.join(VALID_MODES)})")


def parse_bool(value: Union[str, bool]) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes')


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize merged config values; raises ValueError on invalid input."""
    validated = dict(DEFAULTS)
    validated.update({k: v for k, v in config.items() if v is not None})
    validated['subscription_ids'] = parse_subscription_ids(validated['subscription_ids'])
    validated['throttle_limit'] = parse_throttle_limit(validated['throttle_limit'])
    validated['mode'] = parse_mode(validated['mode'])
    validated['dry_run'] = parse_bool(validated['dry_run'])
    validated['output'] = str(validated['output'])
    validated['log_level'] = str(validated['log_level']).upper()
    return validated


# =============================================================================
# Loading
# =============================================================================

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
        raise ValueError(f"Config file {config_path} must contain a mapping")

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
        if value is not None:
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
    """Convert argparse args to config dict format (unset flags are skipped)."""
    config: Dict[str, Any] = {}
    for key in DEFAULTS:
        value = getattr(args, key, None)
        if key == 'dry_run' and value is False:
            continue
        if value is not None:
            config[key] = value
    return config


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources, merge and validate.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables

    Raises:
        ValueError: a merged value failed validation
        FileNotFoundError: --config points at a missing file
    """
    configs = []

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

    return validate_config(merge_configs(*configs))


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return f'''# Azure Hybrid Benefit remediation configuration
#
# Environment variable substitution supported:
#   ${{VAR_NAME}}           - required env var
#   ${{VAR_NAME:-default}}  - env var with default value

# Subscriptions to process (default: every enabled subscription)
# subscription_ids:
#   - "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"

# Parallel workers per stage ({MIN_THROTTLE_LIMIT}-{MAX_THROTTLE_LIMIT})
throttle_limit: {DEFAULT_THROTTLE_LIMIT}

# Licenses to convert: OS, SQL or Both
mode: {DEFAULT_MODE}

# Directory for the CSV report and log file
output: "."

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

# Evaluate only, make no changes
dry_run: false
'''
