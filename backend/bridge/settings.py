"""Environment-driven settings for the memory bridge."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .keys import MIN_PREFIX_LENGTH

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip() or default


@dataclass(frozen=True)
class BridgeSettings:
    database_url: Optional[str]
    default_page_limit: int = 50
    max_page_limit: int = 200
    key_prefix_length: int = MIN_PREFIX_LENGTH
    schema: str = "program"

    @classmethod
    def from_env(cls) -> "BridgeSettings":
        default_limit = _env_int("MEMORY_DEFAULT_PAGE_LIMIT", 50, minimum=1)
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            default_page_limit=default_limit,
            max_page_limit=_env_int("MEMORY_MAX_PAGE_LIMIT", 200, minimum=default_limit),
            key_prefix_length=_env_int(
                "MEMORY_KEY_PREFIX_LENGTH", MIN_PREFIX_LENGTH, minimum=MIN_PREFIX_LENGTH
            ),
            schema=_env_str("MEMORY_SCHEMA", "program").lower(),
        )
