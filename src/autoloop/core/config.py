# src/autoloop/core/config.py
"""
Configuration loading: YAML file plus .env, with defaults filled in place.
"""
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

API_KEY_ENV = "AUTOLOOP_API_KEY"

DEFAULT_CONFIG: Dict[str, Any] = {
    'oracle': {
        'base_url': 'https://api.deepseek.com',
        'model': 'deepseek-chat',
        'api_key': '${AUTOLOOP_API_KEY}',  # Will be replaced by env var
        'timeout': 60.0
    },
    'generation': {
        'max_tokens': 4096,
        'temperature': 0.7
    },
    'retry': {
        'max_attempts': 3,
        'base_delay': 1.0,
        'multiplier': 2.0,
        'max_delay': 30.0
    },
    'workflow': {
        'max_healing_iterations': 5
    },
    'loop': {
        'interval_seconds': 60.0,
        'performance_score': 0.85,
        'simulation_delay': 0.0
    }
}


def load_env() -> Optional[Path]:
    """Try to load .env file from multiple locations."""
    possible_paths = [
        Path.cwd() / ".env",          # Current directory
        Path(__file__).parent.parent.parent.parent / ".env",  # Project root
        Path.home() / ".autoloop.env",  # User home directory
    ]

    for env_path in possible_paths:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)
            logger.debug(f"Loaded .env from: {env_path}")
            return env_path

    logger.debug("No .env file found in standard locations")
    return None


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """Load configuration from YAML file, filling in defaults.

    A missing file is not an error: the defaults are returned unchanged and
    nothing is written to disk.
    """
    load_env()

    config: Any = {}
    path = Path(config_path)
    if not path.exists():
        path = Path.cwd() / "config.yaml"

    if path.exists():
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
        logger.debug(f"Loaded config from: {path}")

    # Ensure required structure
    if not isinstance(config, dict):
        config = {}

    for section, defaults in DEFAULT_CONFIG.items():
        if not isinstance(config.get(section), dict):
            config[section] = {}
        for key, value in defaults.items():
            config[section].setdefault(key, value)

    return config


def resolve_api_key(config: Dict[str, Any]) -> Optional[str]:
    """Get API key: first from environment, then from config."""
    api_key = os.getenv(API_KEY_ENV)
    if api_key:
        return api_key

    api_key = config.get('oracle', {}).get('api_key')
    # If it's a template string, try to resolve it
    if isinstance(api_key, str) and api_key.startswith('${') and api_key.endswith('}'):
        api_key = os.getenv(api_key[2:-1])
    return api_key


def mask_key(api_key: Optional[str]) -> str:
    if not api_key:
        return "<not set>"
    return api_key[:8] + "..." + api_key[-4:] if len(api_key) > 12 else "***"
