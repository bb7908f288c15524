"""
Configuration loading for the staging queue.

Settings come from a YAML file, with ${VAR} and ${VAR:-default} references
expanded from the environment (a .env file is loaded first if present).
"""

import copy
import logging
import os
import re
from pathlib import Path
from typing import Dict, Any, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "DOC_STAGE_CONFIG_PATH"
DATABASE_URL_ENV = "DOC_STAGE_DATABASE_URL"

DEFAULT_CONFIG: Dict[str, Any] = {
    'database': {
        'url': 'sqlite:///doc_stage.db',
        'echo': False,
    },
    'staging': {
        'table_name': 'staged_documents',
        'spool_threshold': 1024 * 1024,
        'chunk_size': 100,
    },
    'retry': {
        'max_attempts': None,
        'max_elapsed': None,
        'initial_delay': 0.05,
        'max_delay': 2.0,
        'multiplier': 2.0,
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    },
}

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _expand_env(value: Any) -> Any:
    """Recursively replace ${VAR} / ${VAR:-default} in string values."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


class Config:
    """Staging queue configuration."""

    def __init__(self, config_path: Optional[str] = None, load_env: bool = True):
        """
        Load configuration.

        Args:
            config_path: Path to a YAML file. Falls back to $DOC_STAGE_CONFIG_PATH,
                then ./config.yaml. A missing file means defaults.
            load_env: Load a .env file into the environment first
        """
        if load_env:
            load_dotenv()

        self.config_path = config_path or os.environ.get(CONFIG_PATH_ENV, 'config.yaml')
        file_config: Dict[str, Any] = {}

        path = Path(self.config_path)
        if path.exists():
            with open(path, 'r') as f:
                file_config = yaml.safe_load(f) or {}
            if not isinstance(file_config, dict):
                raise ValueError(f"Configuration file {path} must contain a mapping")
            logger.debug(f"Loaded configuration from {path}")
        else:
            logger.debug(f"No configuration file at {path}, using defaults")

        self.config = _expand_env(_merge(DEFAULT_CONFIG, file_config))

        url_override = os.environ.get(DATABASE_URL_ENV)
        if url_override:
            self.config['database']['url'] = url_override

    def get(self, key: str, default: Any = None) -> Any:
        """
        Look up a value by dotted key, e.g. ``staging.chunk_size``.
        """
        node: Any = self.config
        for part in key.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def configure_logging(self) -> None:
        level = str(self.get('logging.level', 'INFO')).upper()
        logging.basicConfig(level=getattr(logging, level, logging.INFO),
                            format=self.get('logging.format'))

    def get_store(self):
        """Create the relational store described by the ``database`` section."""
        from .store import SQLAlchemyStore

        return SQLAlchemyStore(self.get('database.url'), echo=bool(self.get('database.echo', False)))

    def get_retry_policy(self):
        """Create the retry policy described by the ``retry`` section."""
        from .staging.retry import RetryPolicy, exponential_backoff

        max_attempts = self.get('retry.max_attempts')
        max_elapsed = self.get('retry.max_elapsed')
        return RetryPolicy(
            max_attempts=int(max_attempts) if max_attempts not in (None, '') else None,
            max_elapsed=float(max_elapsed) if max_elapsed not in (None, '') else None,
            backoff=exponential_backoff(
                initial=float(self.get('retry.initial_delay', 0.05)),
                maximum=float(self.get('retry.max_delay', 2.0)),
                multiplier=float(self.get('retry.multiplier', 2.0)),
            ),
        )

    def get_chunk_manager(self, store=None):
        """
        Create a DocumentChunkManager from this configuration.

        Args:
            store: Existing store to use (a new one is created if None)
        """
        from .staging.chunk_manager import DocumentChunkManager

        return DocumentChunkManager(
            store or self.get_store(),
            table_name=self.get('staging.table_name'),
            retry_policy=self.get_retry_policy(),
            spool_threshold=int(self.get('staging.spool_threshold')),
            chunk_size=int(self.get('staging.chunk_size')),
        )
