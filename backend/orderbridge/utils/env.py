"""Local .env loading for processes started outside a configured environment."""

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BACKEND_ROOT = Path(__file__).resolve().parents[2]


def find_env_file() -> Optional[Path]:
    """First existing .env: current directory, then backend/."""
    for candidate in (Path.cwd() / ".env", BACKEND_ROOT / ".env"):
        if candidate.is_file():
            return candidate
    return None


def load_env_file() -> bool:
    """Load a local .env into os.environ without overwriting exported variables.

    WHY: The API, the worker and one-off scripts (alembic, --once) may be
    started from either the repo root or backend/.

    Returns:
        True when a file was found and loaded
    """
    env_file = find_env_file()
    if env_file is None:
        logger.debug("No local .env file found")
        return False

    load_dotenv(env_file, override=False)
    logger.info(f"Loaded {env_file} (existing variables were NOT overwritten)")
    return True
