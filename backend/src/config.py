"""Configuration management for the question logic backend."""

import os
import logging
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Repository root (project root containing this backend/ directory)
REPO_ROOT = Path(__file__).resolve().parents[2]

# Load .env file from the home directory location only, so secrets never
# live inside the repository.
#
# Location: ~/.question_logic/.env

_env_loaded_from: Optional[str] = None


def _load_env_file() -> Optional[str]:
    """Load .env from the home directory location if present."""
    env_path = Path.home() / '.question_logic' / '.env'

    if env_path.exists():
        load_dotenv(env_path)
        return str(env_path)

    return None


_env_loaded_from = _load_env_file()

logger = logging.getLogger(__name__)


def get_log_level() -> str:
    """Get log level from environment, default to INFO."""
    level = os.getenv('LOG_LEVEL', 'INFO').upper()
    valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

    if level not in valid_levels:
        logger.warning(f"Invalid log level '{level}', defaulting to INFO")
        return 'INFO'

    return level


def get_log_format() -> str:
    """Get log output format ('json' or 'simple'), default to json."""
    log_format = os.getenv('LOG_FORMAT', '').lower()
    if log_format not in ('json', 'simple'):
        return 'json'
    return log_format


def get_database_url() -> str:
    """Get the database URL used by the SQLAlchemy repository.

    Reads from DATABASE_URL, falling back to an in-memory SQLite database so
    the engine can run without any external service.
    """
    return os.getenv('DATABASE_URL', 'sqlite+pysqlite:///:memory:')


def get_question_logic_config_path() -> Path:
    """Return the path of the question logic YAML settings file.

    Order of precedence:
    1. QUESTION_LOGIC_CONFIG_PATH environment variable
    2. config/question_logic.yaml under the repository root
    """
    env_path = os.getenv('QUESTION_LOGIC_CONFIG_PATH')
    if env_path:
        return Path(env_path)

    return REPO_ROOT / 'config' / 'question_logic.yaml'
