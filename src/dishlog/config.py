import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_EXTRACTION_TIMEOUT = 30.0


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    repository-level config files like `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: Optional[str]) -> Dict[str, str]:
    """Read the nearest .env without mutating os.environ."""
    path = _find_upwards(dotenv_dir or os.getcwd(), ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir or '.')}")
        return {}
    values = {k: v.strip() for k, v in dotenv_values(path).items() if v is not None}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _lookup(key: str, dotenv_dir: Optional[str], env: Optional[Dict[str, str]] = None) -> Optional[str]:
    v = os.environ.get(key)
    if v and v.strip():
        return v.strip()
    if env is None:
        env = _read_dotenv(dotenv_dir)
    v = env.get(key) or env.get(key.lower())
    return v.strip() if v else None


def load_db_path(dotenv_dir: Optional[str] = None) -> Optional[str]:
    """Return DISHLOG_DB_PATH if configured; callers fall back to var/dishdb."""
    return _lookup("DISHLOG_DB_PATH", dotenv_dir)


@dataclass
class ExtractionSettings:
    api_key: Optional[str]
    base_url: Optional[str]
    model: str = DEFAULT_MODEL
    timeout: float = DEFAULT_EXTRACTION_TIMEOUT
    http_debug: bool = False


def _coerce_timeout(raw: Optional[str]) -> float:
    if not raw:
        return DEFAULT_EXTRACTION_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        log.warning(f"DISHLOG_EXTRACTION_TIMEOUT={raw!r} is not a number; using {DEFAULT_EXTRACTION_TIMEOUT}s")
        return DEFAULT_EXTRACTION_TIMEOUT
    if value <= 0:
        log.warning(f"DISHLOG_EXTRACTION_TIMEOUT must be positive; using {DEFAULT_EXTRACTION_TIMEOUT}s")
        return DEFAULT_EXTRACTION_TIMEOUT
    return value


def load_extraction_settings(dotenv_dir: Optional[str] = None) -> ExtractionSettings:
    """Collect everything the receipt extractor needs from env/.env."""
    env = _read_dotenv(dotenv_dir)
    api_key = _lookup("OPENAI_API_KEY", dotenv_dir, env)
    if api_key:
        log.info("Using OPENAI_API_KEY from environment/.env")
    else:
        log.debug("OPENAI_API_KEY not found in env or .env")
    return ExtractionSettings(
        api_key=api_key,
        base_url=_lookup("OPENAI_BASE_URL", dotenv_dir, env),
        model=_lookup("DISHLOG_MODEL", dotenv_dir, env) or DEFAULT_MODEL,
        timeout=_coerce_timeout(_lookup("DISHLOG_EXTRACTION_TIMEOUT", dotenv_dir, env)),
        http_debug=(_lookup("DISHLOG_OPENAI_LOG", dotenv_dir, env) or "").lower() == "debug",
    )
