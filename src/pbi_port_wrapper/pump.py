"""Directional pumps: move bytes from one stream to its peer.

Two flavours:
- raw: forward each chunk as soon as it arrives
- rewriting: hold bytes until the SOAP envelope closes, rewrite database
  references, then forward the whole message at once

Both stop on EOF, on a stream fault, or when the session's stopping event is
set. Neither closes anything; the relay that owns the sockets does that.

Debug mode:
Set PBI_WRAPPER_CAPTURE_MESSAGES=1 to dump every rewritten message (before and
after) to PBI_WRAPPER_CAPTURE_DIR.
"""

import asyncio
import json
from datetime import datetime
from typing import Awaitable

import logfire

from . import config
from .errors import StreamFault
from .framing import MessageAccumulator, encode_message, has_envelope_end
from .rewrite import REWRITE_RULES, RewriteRule, rewrite_with_report

CHUNK_SIZE = 8192


async def read_chunk(reader: asyncio.StreamReader) -> bytes:
    """Read up to CHUNK_SIZE bytes. Empty bytes means EOF."""
    try:
        return await reader.read(CHUNK_SIZE)
    except OSError as e:
        raise StreamFault(f"read failed: {e}") from e


async def write_all(writer: asyncio.StreamWriter, data: bytes) -> None:
    """Write ``data`` and wait until it has been handed to the socket."""
    try:
        writer.write(data)
        await writer.drain()
    except OSError as e:
        raise StreamFault(f"write failed: {e}") from e


async def pump_raw(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    stopping: asyncio.Event,
) -> None:
    """Copy bytes unchanged until EOF or until ``stopping`` is set."""
    while not stopping.is_set():
        data = await read_chunk(reader)
        if not data:
            break
        await write_all(writer, data)


async def pump_rewriting(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    stopping: asyncio.Event,
    target_database: str,
    accumulator: MessageAccumulator | None = None,
    rules: tuple[RewriteRule, ...] = REWRITE_RULES,
) -> None:
    """Buffer until an envelope closes, rewrite it, forward it whole.

    Nothing is written until a closing marker shows up. Messages are forwarded
    in the order their markers were seen. If the message text is unchanged by
    the rewrite we forward the original bytes, not a re-encoded copy.
    """
    if accumulator is None:
        accumulator = MessageAccumulator()

    while not stopping.is_set():
        data = await read_chunk(reader)
        if not data:
            break

        accumulator.append(data)
        text = accumulator.text()
        if not has_envelope_end(text):
            continue

        original = accumulator.take()
        rewritten, counts = rewrite_with_report(text, target_database, rules)

        if rewritten == text:
            payload = original
        else:
            payload = encode_message(rewritten)
            logfire.debug(
                f"Rewrote database references ({len(original)} -> {len(payload)} bytes)",
                **counts,
            )
            if config.CAPTURE_MESSAGES:
                _capture_message(text, rewritten)

        await write_all(writer, payload)

    if accumulator:
        logfire.debug(f"Dropped {len(accumulator)} bytes of unterminated message")
        accumulator.clear()


async def run_pump(name: str, pump: Awaitable[None]) -> None:
    """Await a pump coroutine, turning stream faults into a quiet disconnect."""
    try:
        await pump
    except StreamFault as e:
        logfire.debug(f"Stream error on {name}: {e}")


def _capture_message(before: str, after: str) -> None:
    """Dump a rewritten message to a JSON file for debugging."""
    try:
        config.CAPTURE_DIR.mkdir(parents=True, exist_ok=True)
        filepath = config.CAPTURE_DIR / f"{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.json"
        filepath.write_text(json.dumps({"before": before, "after": after}, indent=2))
        logfire.debug(f"Captured message to {filepath}")
    except OSError as e:
        logfire.warning(f"Failed to capture message: {e}")
