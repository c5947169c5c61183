"""Load settings from ``~/.config/video-hook-mcp/.env`` into the environment.

MCP hosts often launch the server without the user's shell profile, so the
Gemini key and queue limits are read from a per-user file as a fallback.
Values already present in the process environment always win.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_ENV_PATH = Path.home() / ".config" / "video-hook-mcp" / ".env"

_QUOTES = ('"', "'")


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
        return value[1:-1]
    return value


def _needs_value(key: str, current: str | None) -> bool:
    """True when *current* is missing, blank, or an unexpanded ``$KEY`` placeholder."""
    if current is None:
        return True
    value = _strip_quotes(current.strip()).strip()
    if not value:
        return True
    if value in (f"${key}", f"${{{key}}}"):
        return True
    return value.startswith(f"${{{key}:-") and value.endswith("}")


def parse_dotenv(path: Path) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines from *path*.

    Blank lines, ``#`` comments and an ``export`` prefix are accepted.
    Surrounding quotes are removed; no variable expansion happens.
    A missing file yields an empty dict.
    """
    if not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw in path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        line = line.removeprefix("export ").strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        values[key] = _strip_quotes(value.strip())
    return values


def load_dotenv(path: Path | None = None) -> dict[str, str]:
    """Inject vars from *path* (default :data:`DEFAULT_ENV_PATH`) that are unset.

    Returns:
        The subset of variables that were written to ``os.environ``.
    """
    parsed = parse_dotenv(path or DEFAULT_ENV_PATH)
    injected = {
        key: value for key, value in parsed.items() if _needs_value(key, os.environ.get(key))
    }
    os.environ.update(injected)
    return injected
