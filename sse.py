import json
import logging
from typing import AsyncIterator, Optional, Tuple

from reasoning_filter import BaseReasoningFilter
from utils import dump_json

logger = logging.getLogger(__name__)

DATA_PREFIX = b"data: "
DONE_SENTINEL = b"[DONE]"


async def aiter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Re-split arbitrary byte chunks into lines, keeping each line's terminator."""
    buffer = b""
    async for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        while True:
            idx = buffer.find(b"\n")
            if idx == -1:
                break
            yield buffer[:idx + 1]
            buffer = buffer[idx + 1:]
    if buffer:
        yield buffer


def _split_terminator(line: bytes) -> Tuple[bytes, bytes]:
    body = line.rstrip(b"\r\n")
    return body, line[len(body):]


def format_event(event: dict) -> bytes:
    return DATA_PREFIX + dump_json(event) + b"\n\n"


def rewrite_data_line(line: bytes, reasoning_filter: BaseReasoningFilter) -> Optional[bytes]:
    """
    Apply the filter to one `data: {...}` line.
    Returns None when the payload isn't a JSON object, so the caller forwards it verbatim.
    """
    body, terminator = _split_terminator(line)
    payload = body[len(DATA_PREFIX):].strip()
    try:
        event = json.loads(payload)
    except (ValueError, UnicodeDecodeError, RecursionError):
        return None
    if not isinstance(event, dict):
        return None

    event = reasoning_filter.stream(event)
    return DATA_PREFIX + dump_json(event) + terminator


async def transform_sse_stream(
    chunks: AsyncIterator[bytes],
    reasoning_filter: BaseReasoningFilter
) -> AsyncIterator[bytes]:
    """Yield the rewritten stream line by line; nothing is held back beyond one line."""
    finished = False
    async for line in aiter_lines(chunks):
        if not line.startswith(DATA_PREFIX):
            yield line
            continue

        body, _ = _split_terminator(line)
        if body[len(DATA_PREFIX):].strip() == DONE_SENTINEL:
            closing = reasoning_filter.close()
            if closing is not None:
                logger.debug("Stream ended inside reasoning block, closing marker injected")
                yield format_event(closing)
            finished = True
            yield line
            continue

        rewritten = rewrite_data_line(line, reasoning_filter)
        if rewritten is None:
            logger.debug("Passing through malformed frame: %r", line[:200])
            yield line
        else:
            yield rewritten

    if not finished:
        closing = reasoning_filter.close()
        if closing is not None:
            logger.debug("Upstream closed without [DONE] inside reasoning block")
            yield format_event(closing)
