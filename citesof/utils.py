import os
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Crossref's documented ceiling for concurrent requests in the polite pool
DEFAULT_MAX_CONCURRENT = 5
CACHE_TTL_DAYS = 7
PAGE_SIZE = 20
# Crossref accepts up to 50 DOIs in a single filter query
CROSSREF_BATCH_SIZE = 50
ANONYMOUS_EMAIL = "anonymous@example.com"


def load_env_file(env_path: Optional[Path] = None) -> Dict[str, str]:
    """
    Load settings from a .env file.

    Args:
        env_path: Path to the .env file. If None, looks in the working directory,
            the project root and ``~/.citesof.env``.

    Returns:
        Dictionary of KEY=VALUE pairs found in the file.
    """
    if env_path is None:
        possible_locations = [
            Path.cwd() / ".env",
            Path(__file__).parent.parent / ".env",
            Path.home() / ".citesof.env",
        ]
        for loc in possible_locations:
            if loc.exists():
                env_path = loc
                logger.debug(f"Found .env file at {env_path}")
                break

    env_vars = {}
    if env_path and env_path.exists():
        try:
            with open(env_path, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    key, value = line.split('=', 1)
                    key = key.strip()
                    value = value.strip()
                    if value and value[0] == value[-1] and value[0] in ('"', "'"):
                        value = value[1:-1]
                    env_vars[key] = value
            logger.debug(f"Loaded {len(env_vars)} settings from {env_path}")
        except OSError as e:
            logger.warning(f"Error loading .env file at {env_path}: {e}")
    else:
        logger.debug("No .env file found")

    return env_vars


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read a setting from the environment, then from the .env file."""
    value = os.environ.get(name)
    if not value:
        value = load_env_file().get(name)
        if value:
            os.environ[name] = value
    return value or default


def get_contact_email() -> str:
    """
    Email address sent as the courtesy contact to Crossref and NCBI.

    Falls back to an anonymous address when CITESOF_EMAIL is unset or invalid.
    """
    email = get_setting("CITESOF_EMAIL")
    if not email or '@' not in email:
        logger.debug("Using anonymous contact email for provider requests")
        return ANONYMOUS_EMAIL
    return email


def get_cache_path() -> Path:
    path = get_setting("CITESOF_CACHE_PATH")
    if path:
        return Path(path).expanduser()
    return Path.home() / ".cache" / "citesof" / "cache.json"


def get_proxy_url() -> Optional[str]:
    """Optional relay prefix placed in front of citation-graph requests."""
    return get_setting("CITESOF_PROXY_URL")


def get_max_concurrent() -> int:
    raw = get_setting("CITESOF_MAX_CONCURRENT")
    if raw is None:
        return DEFAULT_MAX_CONCURRENT
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid CITESOF_MAX_CONCURRENT={raw!r}")
        return DEFAULT_MAX_CONCURRENT
    return max(1, value)
