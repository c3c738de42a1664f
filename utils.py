import json
import time
import logging
from pathlib import Path
from typing import Any, Optional, Union
import contextvars

logger = logging.getLogger(__name__)

# Context variable for request ID propagation
request_id_ctx = contextvars.ContextVar("request_id", default="-")

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


def get_path(doc: Any, *keys: Union[str, int]) -> Optional[Any]:
    """Walk nested dicts/lists, returning None as soon as the shape doesn't match"""
    cur = doc
    for key in keys:
        if isinstance(key, int):
            if not isinstance(cur, list) or not -len(cur) <= key < len(cur):
                return None
            cur = cur[key]
        else:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(key)
    return cur


def dump_json(obj: Any) -> bytes:
    """Compact UTF-8 JSON, non-ASCII kept as-is"""
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def format_json_for_log(body: bytes) -> str:
    """Pretty JSON when the body parses, raw text otherwise"""
    try:
        return json.dumps(json.loads(body), ensure_ascii=False, indent=2)
    except (ValueError, UnicodeDecodeError, RecursionError):
        return body.decode("utf-8", errors="replace")


def write_debug_trace(
    request_body: bytes,
    status_code: int,
    response_body: bytes,
    debug_dir: Path,
    request_id: str
):
    """
    Write a human-readable text file containing:
    - the request body as forwarded upstream
    - upstream status code
    - the response body relayed to the client
    """
    try:
        lines: list[str] = []
        lines.append("=== REQUEST ===")
        lines.append(format_json_for_log(request_body))
        lines.append("")

        lines.append(f"=== RESPONSE (status {status_code}) ===")
        lines.append(format_json_for_log(response_body))

        fname = debug_dir / f"{int(time.time())}-{request_id}.txt"
        fname.write_text("\n".join(lines), encoding="utf-8")
    except Exception as exc:      # never break main flow
        logger.exception("Failed to write debug trace: %s", exc)
