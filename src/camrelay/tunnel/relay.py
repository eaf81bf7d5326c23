"""Bidirectional stream binding utilities."""

import asyncio

from camrelay.utils.logger import get_logger

logger = get_logger(__name__)

RELAY_CHUNK_SIZE = 65536

# How long to let the second direction drain after the first one ends
RELAY_DRAIN_TIMEOUT = 1.0


async def bind_reader_writer(reader, writer) -> int:
    """
    Pipe data from reader to writer until EOF or error.

    Works with asyncio streams and asyncssh SSHReader/SSHWriter alike.

    Args:
        reader: Stream reader.
        writer: Stream writer.

    Returns:
        Number of bytes copied.
    """
    copied = 0
    while True:
        try:
            data = await reader.read(RELAY_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
            copied += len(data)
        except (OSError, EOFError):
            break
    return copied


async def close_writer(writer, timeout: float = 1.0) -> None:
    """Close a stream writer and wait briefly for it to finish closing."""
    try:
        writer.close()
    except OSError:
        return
    wait_closed = getattr(writer, "wait_closed", None)
    if wait_closed is None:
        return
    try:
        await asyncio.wait_for(wait_closed(), timeout=timeout)
    except (OSError, EOFError, asyncio.TimeoutError):
        pass


async def relay_streams(
    origin: tuple,
    destination: tuple,
    label: str = "Relay",
) -> tuple[int, int]:
    """
    Relay bytes between two connected endpoints until either side closes.

    Both directions are copied concurrently. Whichever direction finishes
    first closes both endpoints; the call returns once both copy tasks have
    completed. A relay is one-shot and keeps no shared state.

    Args:
        origin: (reader, writer) of the accepted connection.
        destination: (reader, writer) of the dialed connection.
        label: Log prefix.

    Returns:
        (bytes origin->destination, bytes destination->origin)
    """
    origin_reader, origin_writer = origin
    dest_reader, dest_writer = destination

    upstream = asyncio.create_task(bind_reader_writer(origin_reader, dest_writer))
    downstream = asyncio.create_task(bind_reader_writer(dest_reader, origin_writer))

    try:
        await asyncio.wait([upstream, downstream], return_when=asyncio.FIRST_COMPLETED)
    finally:
        await close_writer(origin_writer)
        await close_writer(dest_writer)

        pending = [t for t in (upstream, downstream) if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=RELAY_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()

        results = await asyncio.gather(upstream, downstream, return_exceptions=True)

    sent, received = (r if isinstance(r, int) else 0 for r in results)
    for result in results:
        if isinstance(result, Exception):
            logger.debug(f"[{label}] Copy direction ended with error: {result}")

    logger.debug(f"[{label}] Relay finished: {sent} bytes up, {received} bytes down")
    return sent, received
