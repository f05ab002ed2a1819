import asyncio
import errno
import shutil
from pathlib import Path

from chunkmerge.errors import CleanupExhausted, TransientRemovalConflict
from chunkmerge.events import log_event
from chunkmerge.metrics import cleanup_retries_total

_NOT_EMPTY_ERRNOS = {errno.ENOTEMPTY, errno.EEXIST}


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        if exc.errno in _NOT_EMPTY_ERRNOS:
            raise TransientRemovalConflict(str(exc)) from exc
        raise


async def safe_remove_directory(path: Path, max_attempts: int = 5, backoff_seconds: float = 1.0) -> None:
    """Recursively remove ``path``, retrying while the directory is reported non-empty.

    Anything other than a not-empty conflict propagates on the first attempt.
    After ``max_attempts`` conflicts, CleanupExhausted is raised.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            await asyncio.to_thread(_remove_tree, path)
            return
        except TransientRemovalConflict as exc:
            if attempt >= attempts:
                raise CleanupExhausted(str(path), attempts) from exc
            cleanup_retries_total.inc()
            log_event(
                {
                    "event": "cleanup_retry",
                    "path": str(path),
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "detail": str(exc),
                }
            )
            await asyncio.sleep(backoff_seconds)
