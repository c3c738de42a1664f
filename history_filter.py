import json
from typing import Any, Dict, List, Optional, Tuple

from utils import THINK_CLOSE, THINK_OPEN, dump_json


def find_turn_boundary(messages: List[Any]) -> int:
    """Index of the last user message, -1 when the conversation has none"""
    for idx in range(len(messages) - 1, -1, -1):
        msg = messages[idx]
        if isinstance(msg, dict) and msg.get("role") == "user":
            return idx
    return -1


def split_think_block(content: Any) -> Optional[Tuple[str, str]]:
    """
    Split the first <think>...</think> pair out of a content string.
    Returns (reasoning, remaining content) or None when there is no matched pair.
    """
    if not isinstance(content, str):
        return None
    start = content.find(THINK_OPEN)
    if start == -1:
        return None
    end = content.find(THINK_CLOSE, start + len(THINK_OPEN))
    if end == -1:
        return None

    reasoning = content[start + len(THINK_OPEN):end].strip()
    remaining = (content[:start] + content[end + len(THINK_CLOSE):]).strip()
    return reasoning, remaining


def _strip_history(msg: Dict[str, Any]) -> bool:
    changed = False
    split = split_think_block(msg.get("content"))
    if split is not None:
        msg["content"] = split[1]
        changed = True
    if "reasoning_content" in msg:
        del msg["reasoning_content"]
        changed = True
    return changed


def _restore_current(msg: Dict[str, Any]) -> bool:
    changed = False
    split = split_think_block(msg.get("content"))
    if split is not None:
        msg["reasoning_content"], msg["content"] = split
        changed = True
    if "reasoning_content" not in msg:
        # Upstream rejects current-turn assistant messages without the field
        msg["reasoning_content"] = ""
        changed = True
    return changed


def normalize_messages(messages: List[Any], mode: str = "inline") -> bool:
    """Rewrite assistant messages in place. Returns True if anything changed."""
    changed = False

    if mode == "clear":
        for msg in messages:
            if isinstance(msg, dict) and msg.get("role") == "assistant":
                if "reasoning_content" not in msg:
                    msg["reasoning_content"] = ""
                    changed = True
        return changed

    boundary = find_turn_boundary(messages)
    for idx, msg in enumerate(messages):
        if not isinstance(msg, dict) or msg.get("role") != "assistant":
            continue
        if idx < boundary:
            changed = _strip_history(msg) or changed
        else:
            changed = _restore_current(msg) or changed
    return changed


def normalize_request_body(body: bytes, mode: str = "inline") -> bytes:
    """
    Normalize the conversation history of a raw request body.
    Anything that isn't a JSON object with a `messages` list is returned untouched,
    and so is a body that needed no rewrite.
    """
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError, RecursionError):
        return body

    if not isinstance(data, dict):
        return body
    messages = data.get("messages")
    if not isinstance(messages, list):
        return body

    if not normalize_messages(messages, mode):
        return body
    return dump_json(data)
