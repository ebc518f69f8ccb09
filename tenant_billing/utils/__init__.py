"""Environment parsing helpers for configuration."""
from os import getenv


def env_bool(key: str, default: bool = False) -> bool:
    val = getenv(key)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def env_int(key: str, default: int) -> int:
    """Read an integer setting; blank or malformed values fall back to ``default``."""
    val = (getenv(key) or "").strip()
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        return default
