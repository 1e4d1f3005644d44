import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOG_PREFIX = "[SSH-MCP]"
LEVEL_RANK: Dict[str, int] = {"trace": 10, "debug": 20, "info": 30, "warn": 40, "error": 50}

_log_level = "info"
_log_json = False


def configure_logging(level: str = "info", json_mode: bool = False) -> None:
    global _log_level, _log_json
    _log_level = level.lower() if level and level.lower() in LEVEL_RANK else "info"
    _log_json = json_mode


def should_log(level: str) -> bool:
    return LEVEL_RANK.get(level, 30) >= LEVEL_RANK.get(_log_level, 30)


def log(level: str, message: str, **meta: Any) -> None:
    """Write one log line to stderr. stdout stays free for protocol traffic."""
    if not should_log(level):
        return
    if _log_json:
        payload: Dict[str, Any] = {"ts": iso_now(), "level": level, "msg": message}
        payload.update(meta)
        line = json.dumps(payload, ensure_ascii=False, default=str)
    else:
        extra = " " + json.dumps(meta, ensure_ascii=False, default=str) if meta else ""
        line = f"{LOG_PREFIX} [{level.upper()}] {message}{extra}"
    print(line, file=sys.stderr, flush=True)


def log_error(message: str, **meta: Any) -> None:
    log("error", message, **meta)


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def parse_int(value: Any, name: str, default: Optional[int] = None) -> Optional[int]:
    """Parse a numeric flag. Raises ValueError naming the flag on garbage input."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid {name}: {value!r}") from None


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def preview(text: str, limit: int = 200) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
