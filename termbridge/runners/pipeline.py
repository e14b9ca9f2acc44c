"""Shared runner pipeline helpers."""

from __future__ import annotations

import asyncio
import codecs
import json
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, TypeVar

from termbridge.runners.base import RunState

T = TypeVar("T")

MAX_NON_JSON_LINES = 50


@dataclass
class JSONLineStats:
    emitted_any: bool = False
    non_json_lines: list[str] = field(default_factory=list)


async def iter_json_lines(
    *,
    byte_stream: asyncio.StreamReader,
    state: RunState,
    parse_event: Callable[[dict, RunState], list[T]],
    stats: JSONLineStats,
) -> AsyncIterator[T]:
    """Parse a newline-delimited JSON stream into runner events.

    Lines that are not JSON objects are kept (bounded) in `stats` so callers
    can surface raw CLI output when no structured event was produced.
    """

    async for raw_line in byte_stream:
        line = raw_line.decode(errors="replace").strip()
        if not line:
            continue

        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            if len(stats.non_json_lines) < MAX_NON_JSON_LINES:
                stats.non_json_lines.append(line)
            continue
        if not isinstance(event, dict):
            continue

        for result in parse_event(event, state):
            stats.emitted_any = True
            yield result


async def iter_text_chunks(
    byte_stream: asyncio.StreamReader, *, chunk_size: int = 4096
) -> AsyncIterator[str]:
    """Yield decoded text as it arrives; multi-byte characters never split."""

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await byte_stream.read(chunk_size)
        if not data:
            break
        text = decoder.decode(data)
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail
