"""Server-sent-events frame parsing.

Only ``data:`` fields matter to the engine stream: each frame's data
lines are joined, parsed as JSON and yielded. Comments, ``event:`` and
``id:`` fields are ignored. A frame that is not valid JSON is logged
and skipped rather than ending the stream.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)


async def iter_sse_data(lines: AsyncIterable[bytes]) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON payload of each complete SSE frame from raw lines."""
    data_buffer: list[str] = []
    async for raw_line in lines:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        if line.startswith("data:"):
            data_buffer.append(line[5:].lstrip(" "))
        elif line == "" and data_buffer:
            raw = "\n".join(data_buffer)
            data_buffer.clear()
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed SSE frame: %.200s", raw)
                continue
            if isinstance(parsed, dict):
                yield parsed
            else:
                logger.debug("Skipping non-object SSE frame: %.200s", raw)
    if data_buffer:
        logger.debug("Event stream ended with %d unterminated data line(s)", len(data_buffer))
