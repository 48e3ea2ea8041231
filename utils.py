"""
Utility functions for the IPS backtester: config loading, logging setup and
config-file validation.
"""

import logging
import logging.handlers
import os
import re
from pathlib import Path
from typing import Dict

import colorlog
import yaml
from dotenv import load_dotenv

from shared.constants import CONFIG_PATH, LOGS_DIR

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')

_LOG_FORMAT = '%(asctime)s - %(name)s [%(threadName)s] - %(levelname)s - %(message)s'


def _resolve_env_vars(obj):
    """Recursively resolve ${ENV_VAR} references in config values.

    Unset variables without a fallback are left untouched.
    """
    if isinstance(obj, str):
        def replacer(m):
            if m.group(1) in os.environ:
                return os.environ[m.group(1)]
            return m.group(2) if m.group(2) is not None else m.group(0)
        return _ENV_REF.sub(replacer, obj)
    if isinstance(obj, dict):
        return {k: _resolve_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_resolve_env_vars(i) for i in obj]
    return obj


def load_config(config_file: str = CONFIG_PATH) -> Dict:
    """Read the YAML config, after loading ``.env`` into the environment."""
    load_dotenv()

    config_path = Path(config_file)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_path, 'r') as f:
        raw = yaml.safe_load(f) or {}

    return _resolve_env_vars(raw)


def setup_logging(config: Dict):
    """Route logging to a rotating file and, unless disabled, a colored console."""
    log_config = config.get('logging', {})
    level_name = str(log_config.get('level', 'INFO')).upper()

    log_file = Path(log_config.get('file', Path(LOGS_DIR) / 'ips_backtest.log'))
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handlers = []

    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=log_config.get('max_bytes', 10 * 1024 * 1024),
        backupCount=log_config.get('backup_count', 5),
    )
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    handlers.append(file_handler)

    if log_config.get('console', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(colorlog.ColoredFormatter(
            '%(log_color)s' + _LOG_FORMAT + '%(reset)s',
            datefmt='%H:%M:%S',
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            },
        ))
        handlers.append(console_handler)

    logging.basicConfig(level=getattr(logging, level_name), handlers=handlers, force=True)


def validate_config(config: Dict) -> None:
    """
    Validate configuration.  Raises ``ValueError`` on invalid input.

    Only the shape of the file is checked here; the backtest section's
    values are validated by ``BacktestConfig.from_dict``.

    Args:
        config: Configuration dictionary
    """
    required_sections = ['backtest', 'database', 'logging']

    for section in required_sections:
        if section not in config:
            raise ValueError(f"Missing required config section: {section}")

    backtest = config['backtest']
    for key in ('ips_id', 'ips_config', 'start_date', 'end_date'):
        if key not in backtest:
            raise ValueError(f"Missing required backtest parameter: {key}")

    factors = (backtest['ips_config'] or {}).get('factors')
    if not factors:
        raise ValueError("IPS must define at least one factor")

    for factor in factors:
        if 'key' not in factor or 'operator' not in factor:
            raise ValueError(f"Factor needs a key and an operator: {factor}")

    portfolio_size = backtest.get('portfolio_size', 1)
    if portfolio_size <= 0:
        raise ValueError("portfolio_size must be positive")

    risk_per_trade = backtest.get('risk_per_trade', 1)
    if risk_per_trade <= 0 or risk_per_trade > 100:
        raise ValueError("risk_per_trade must be between 0 and 100")

    if 'path' not in config['database']:
        raise ValueError("Missing required database parameter: path")

    level = str(config['logging'].get('level', 'INFO')).upper()
    if not isinstance(getattr(logging, level, None), int):
        raise ValueError(f"Invalid logging level: {level}")
