import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

PART_SUFFIX = ".part"
MERGE_PART_NAME = f".merge{PART_SUFFIX}"
_READ_BLOCK = 1024 * 1024


@dataclass(frozen=True)
class StagedSession:
    user_id: str
    file_name: str
    path: Path
    last_activity: float


class LocalStagingStorage:
    """Chunk staging and artifact files on the local filesystem.

    Staged chunks live under ``staging_root/<user_id>/<file_name>/<index>``; merged
    artifacts are written flat into ``upload_root``. Every method is blocking and is
    meant to be called through ``asyncio.to_thread``.
    """

    def __init__(self, upload_root: str, staging_root: str) -> None:
        self.upload_root = Path(upload_root)
        self.staging_root = Path(staging_root)
        self.upload_root.mkdir(parents=True, exist_ok=True)
        self.staging_root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, user_id: str, file_name: str) -> Path:
        return self.staging_root / user_id / file_name

    def write_chunk(self, user_id: str, file_name: str, chunk_index: int, data: bytes) -> Path:
        session = self.session_dir(user_id, file_name)
        session.mkdir(parents=True, exist_ok=True)
        target = session / str(chunk_index)
        partial = session / f"{chunk_index}{PART_SUFFIX}"
        partial.write_bytes(data)
        os.replace(partial, target)
        return target

    def list_chunks(self, user_id: str, file_name: str) -> list[str]:
        session = self.session_dir(user_id, file_name)
        if not session.is_dir():
            return []
        return [entry.name for entry in session.iterdir() if not entry.name.endswith(PART_SUFFIX)]

    def stage_artifact(self, user_id: str, file_name: str, chunk_names: list[str]) -> tuple[Path, str]:
        """Concatenate chunks into a .part file inside the session dir, deleting each chunk once copied.

        Returns the .part path and the SHA-256 hex digest of what was written.
        """
        session = self.session_dir(user_id, file_name)
        partial = session / MERGE_PART_NAME
        digest = hashlib.sha256()
        try:
            with partial.open("wb") as out:
                for name in chunk_names:
                    chunk_path = session / name
                    with chunk_path.open("rb") as src:
                        while True:
                            block = src.read(_READ_BLOCK)
                            if not block:
                                break
                            digest.update(block)
                            out.write(block)
                    chunk_path.unlink()
        except OSError:
            partial.unlink(missing_ok=True)
            raise
        return partial, digest.hexdigest()

    def commit_artifact(self, partial: Path, user_id: str, timestamp_ms: int, file_name: str) -> str:
        name = f"{user_id}_{timestamp_ms}_{file_name}"
        while (self.upload_root / name).exists():
            timestamp_ms += 1
            name = f"{user_id}_{timestamp_ms}_{file_name}"
        try:
            os.replace(partial, self.upload_root / name)
        except OSError:
            partial.unlink(missing_ok=True)
            raise
        return name

    def discard(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def last_activity(self, session: Path) -> float | None:
        """Newest mtime among the session dir and its entries, or None once it is gone."""
        try:
            mtimes = [session.stat().st_mtime]
            mtimes.extend(entry.stat().st_mtime for entry in session.iterdir())
        except FileNotFoundError:
            return None
        return max(mtimes)

    def list_sessions(self) -> list[StagedSession]:
        sessions: list[StagedSession] = []
        for user_dir in self.staging_root.iterdir():
            if not user_dir.is_dir():
                continue
            for session in user_dir.iterdir():
                if not session.is_dir():
                    continue
                last_activity = self.last_activity(session)
                if last_activity is None:
                    # merged and removed while we were listing
                    continue
                sessions.append(
                    StagedSession(
                        user_id=user_dir.name,
                        file_name=session.name,
                        path=session,
                        last_activity=last_activity,
                    )
                )
        return sessions

    def prune_empty_user_dirs(self) -> int:
        pruned = 0
        for user_dir in self.staging_root.iterdir():
            if user_dir.is_dir() and not any(user_dir.iterdir()):
                try:
                    user_dir.rmdir()
                    pruned += 1
                except OSError:
                    # a new session appeared or another sweep got there first
                    continue
        return pruned
