import asyncio
import time
from dataclasses import dataclass
from pathlib import Path

from chunkmerge.auth import AccessKeyValidator
from chunkmerge.cleanup import safe_remove_directory
from chunkmerge.errors import ChecksumMismatch, FilesystemError, InvalidChunkRequest
from chunkmerge.events import log_event
from chunkmerge.locks import SessionLocks
from chunkmerge.metrics import (
    bytes_received_total,
    chunk_write_latency_seconds,
    chunks_received_total,
    cleanup_failures_total,
    merge_failures_total,
    merge_latency_seconds,
    merges_completed_total,
)
from chunkmerge.storage import LocalStagingStorage

_FORBIDDEN_NAMES = {"", ".", ".."}
_FORBIDDEN_CHARS = ("/", "\\", "\x00")


@dataclass(frozen=True)
class ArtifactLocation:
    name: str
    path: Path
    url: str


@dataclass(frozen=True)
class ChunkOutcome:
    user_id: str
    file_name: str
    chunk_index: int
    total_chunks: int
    completed: bool
    artifact: ArtifactLocation | None = None

    @property
    def message(self) -> str:
        if self.completed:
            return "File uploaded and merged successfully!"
        return f"Chunk {self.chunk_index + 1}/{self.total_chunks} uploaded"


def _check_identifier(field: str, value: str) -> None:
    if value in _FORBIDDEN_NAMES or any(char in value for char in _FORBIDDEN_CHARS):
        raise InvalidChunkRequest(f"{field} is not a valid path component")


def _chunk_sort_key(name: str) -> int:
    return int(name)


class ChunkAssembler:
    """Accumulates chunks per (user_id, file_name) on disk and merges complete sessions."""

    def __init__(
        self,
        storage: LocalStagingStorage,
        access_keys: AccessKeyValidator,
        public_url_prefix: str = "uploads",
        cleanup_max_attempts: int = 5,
        cleanup_backoff_seconds: float = 1.0,
    ) -> None:
        self.storage = storage
        self.access_keys = access_keys
        self.public_url_prefix = public_url_prefix.strip("/")
        self.cleanup_max_attempts = cleanup_max_attempts
        self.cleanup_backoff_seconds = cleanup_backoff_seconds
        self.locks = SessionLocks()

    async def receive(
        self,
        user_id: str,
        file_name: str,
        chunk_index: int,
        total_chunks: int,
        key: str | None,
        data: bytes,
        checksum: str | None = None,
    ) -> ChunkOutcome:
        self.access_keys.check(key)
        _check_identifier("userId", user_id)
        _check_identifier("fileName", file_name)
        if total_chunks < 1:
            raise InvalidChunkRequest("totalChunks must be at least 1")
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise InvalidChunkRequest("chunkIndex out of bounds")

        async with self.locks.hold((user_id, file_name)):
            start = time.perf_counter()
            try:
                await asyncio.to_thread(self.storage.write_chunk, user_id, file_name, chunk_index, data)
            except OSError as exc:
                raise FilesystemError(f"failed to stage chunk {chunk_index}: {exc}") from exc
            chunk_write_latency_seconds.observe(time.perf_counter() - start)
            chunks_received_total.inc()
            bytes_received_total.inc(len(data))
            log_event(
                {
                    "event": "chunk_received",
                    "user_id": user_id,
                    "file_name": file_name,
                    "chunk_index": chunk_index,
                    "total_chunks": total_chunks,
                    "size_bytes": len(data),
                }
            )

            if not await self.is_complete(user_id, file_name, total_chunks):
                return ChunkOutcome(user_id, file_name, chunk_index, total_chunks, completed=False)

            artifact = await self.merge(user_id, file_name, total_chunks, checksum=checksum)
            return ChunkOutcome(user_id, file_name, chunk_index, total_chunks, completed=True, artifact=artifact)

    async def is_complete(self, user_id: str, file_name: str, total_chunks: int) -> bool:
        try:
            names = await asyncio.to_thread(self.storage.list_chunks, user_id, file_name)
        except OSError as exc:
            raise FilesystemError(f"failed to list staging directory: {exc}") from exc
        return set(names) == {str(index) for index in range(total_chunks)}

    async def merge(
        self, user_id: str, file_name: str, total_chunks: int, checksum: str | None = None
    ) -> ArtifactLocation:
        """Concatenate the staged chunks in index order into a new artifact.

        Callers must hold the session lock and have seen ``is_complete`` return True.
        """
        start = time.perf_counter()
        try:
            names = await asyncio.to_thread(self.storage.list_chunks, user_id, file_name)
            ordered = sorted(names, key=_chunk_sort_key)
            partial, digest = await asyncio.to_thread(self.storage.stage_artifact, user_id, file_name, ordered)
        except OSError as exc:
            merge_failures_total.inc()
            raise FilesystemError(f"failed to merge chunks: {exc}") from exc

        if checksum and checksum.strip().lower() != digest:
            merge_failures_total.inc()
            await asyncio.to_thread(self.storage.discard, partial)
            await self._cleanup(user_id, file_name)
            raise ChecksumMismatch(f"expected {checksum}, merged {digest}")

        try:
            name = await asyncio.to_thread(
                self.storage.commit_artifact, partial, user_id, int(time.time() * 1000), file_name
            )
        except OSError as exc:
            merge_failures_total.inc()
            raise FilesystemError(f"failed to write merged file: {exc}") from exc

        merges_completed_total.inc()
        merge_latency_seconds.observe(time.perf_counter() - start)
        log_event(
            {
                "event": "merge_completed",
                "user_id": user_id,
                "file_name": file_name,
                "total_chunks": total_chunks,
                "artifact": name,
                "sha256": digest,
            }
        )
        await self._cleanup(user_id, file_name)
        return ArtifactLocation(
            name=name,
            path=self.storage.upload_root / name,
            url=f"{self.public_url_prefix}/{name}",
        )

    async def _cleanup(self, user_id: str, file_name: str) -> None:
        # The merge outcome is already decided here; a stuck staging dir is left for the sweep.
        path = self.storage.session_dir(user_id, file_name)
        try:
            await safe_remove_directory(path, self.cleanup_max_attempts, self.cleanup_backoff_seconds)
        except Exception as exc:
            cleanup_failures_total.inc()
            log_event(
                {
                    "event": "cleanup_error",
                    "user_id": user_id,
                    "file_name": file_name,
                    "path": str(path),
                    "detail": str(exc),
                    "error_class": type(exc).__name__,
                }
            )
