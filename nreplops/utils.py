import sys
import json
from datetime import datetime
from typing import Any, Dict
from nreplops.config import config

def log_error(message: str) -> None:
    print(f"[nr] {message}", file=sys.stderr, flush=True)

def log_debug(message: str) -> None:
    if config.VERBOSE:
        print(f"[nr] {message}", file=sys.stderr, flush=True)

def as_text(value: Any) -> Any:
    """Render decoded wire values (bytes, nested lists/maps) as text."""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, list):
        return [as_text(item) for item in value]
    if isinstance(value, dict):
        return {as_text(k): as_text(v) for k, v in value.items()}
    return value

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(as_text(payload), ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"trace write failed ({path}): {exc}")
