"""
SSE Helpers for Tests

Parses the text written to a frame sink back into (event, data) pairs and
turns plain lists into upstream event iterators.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable

import orjson

from src.chat.services.stream_relay import QueueFrameSink
from src.upstream.base_client import UpstreamEvent


def parse_frames(raw: str) -> list[tuple[str, dict]]:
    """Split SSE text into (event, data) tuples, in order."""
    frames = []
    for block in raw.split("\n\n"):
        if not block.strip():
            continue
        event, data = None, None
        for line in block.split("\n"):
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = orjson.loads(line[len("data: "):])
        frames.append((event, data))
    return frames


async def drain_sink(sink: QueueFrameSink) -> list[tuple[str, dict]]:
    """Read a closed sink to the end and parse what was written."""
    chunks = [chunk async for chunk in sink]
    return parse_frames("".join(chunks))


def kinds(frames: list[tuple[str, dict]]) -> list[str]:
    return [event for event, _ in frames]


def answers(frames: list[tuple[str, dict]], kind: str = "delta-answer") -> list[str]:
    return [data["answer"] for event, data in frames if event == kind]


async def iterate(events: Iterable[UpstreamEvent], delay: float = 0.0) -> AsyncIterator[UpstreamEvent]:
    """Async iterator over `events`, optionally pausing before each one."""
    for event in events:
        if delay:
            await asyncio.sleep(delay)
        yield event
