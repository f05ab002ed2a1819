from __future__ import annotations

import asyncio
import time

from chunkmerge.assembler import ChunkAssembler
from chunkmerge.cleanup import safe_remove_directory
from chunkmerge.events import log_event
from chunkmerge.metrics import stale_sessions_swept_total


async def sweep_stale_sessions(assembler: ChunkAssembler, ttl_seconds: int, now: float | None = None) -> dict[str, int]:
    """Remove staging sessions that have seen no chunk for longer than ``ttl_seconds``."""
    now = time.time() if now is None else now
    stale_before = now - ttl_seconds
    storage = assembler.storage

    deleted = 0
    skipped_busy = 0
    errors = 0
    for session in await asyncio.to_thread(storage.list_sessions):
        if session.last_activity >= stale_before:
            continue
        key = (session.user_id, session.file_name)
        if assembler.locks.is_locked(key):
            skipped_busy += 1
            continue
        async with assembler.locks.hold(key):
            last_activity = await asyncio.to_thread(storage.last_activity, session.path)
            if last_activity is None or last_activity >= stale_before:
                # a chunk landed or the session merged after the listing
                continue
            try:
                await safe_remove_directory(
                    session.path, assembler.cleanup_max_attempts, assembler.cleanup_backoff_seconds
                )
            except Exception as exc:
                # Keep sweeping the remaining sessions.
                errors += 1
                log_event(
                    {
                        "event": "sweep_error",
                        "path": str(session.path),
                        "detail": str(exc),
                        "error_class": "maintenance_error",
                    }
                )
                continue
        deleted += 1

    await asyncio.to_thread(storage.prune_empty_user_dirs)
    stale_sessions_swept_total.inc(deleted)
    stats = {
        "stale_sessions_deleted": deleted,
        "sessions_skipped_busy": skipped_busy,
        "sweep_errors": errors,
    }
    log_event({"event": "sweep_completed", **stats})
    return stats
