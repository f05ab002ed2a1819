from pathlib import Path

from chunkmerge.storage import LocalStagingStorage


def test_local_storage_write_and_list(tmp_path: Path) -> None:
    storage = LocalStagingStorage(str(tmp_path / "uploads"), str(tmp_path / "staging"))

    path = storage.write_chunk("u1", "file.bin", 2, b"payload")
    assert path == tmp_path / "staging" / "u1" / "file.bin" / "2"
    assert path.read_bytes() == b"payload"
    assert storage.list_chunks("u1", "file.bin") == ["2"]
    assert storage.list_chunks("u1", "missing.bin") == []


def test_stage_artifact_consumes_chunks(tmp_path: Path) -> None:
    storage = LocalStagingStorage(str(tmp_path / "uploads"), str(tmp_path / "staging"))
    storage.write_chunk("u1", "file.bin", 0, b"ab")
    storage.write_chunk("u1", "file.bin", 1, b"cd")

    partial, digest = storage.stage_artifact("u1", "file.bin", ["0", "1"])

    assert partial.read_bytes() == b"abcd"
    assert len(digest) == 64
    assert storage.list_chunks("u1", "file.bin") == []


def test_commit_artifact_never_overwrites(tmp_path: Path) -> None:
    storage = LocalStagingStorage(str(tmp_path / "uploads"), str(tmp_path / "staging"))
    (tmp_path / "uploads" / "u1_1000_file.bin").write_bytes(b"older")
    partial = tmp_path / "uploads" / "pending.part"
    partial.write_bytes(b"newer")

    name = storage.commit_artifact(partial, "u1", 1000, "file.bin")

    assert name == "u1_1001_file.bin"
    assert (tmp_path / "uploads" / "u1_1000_file.bin").read_bytes() == b"older"
    assert (tmp_path / "uploads" / name).read_bytes() == b"newer"
    assert not partial.exists()


def test_prune_empty_user_dirs(tmp_path: Path) -> None:
    storage = LocalStagingStorage(str(tmp_path / "uploads"), str(tmp_path / "staging"))
    (tmp_path / "staging" / "empty-user").mkdir()
    storage.write_chunk("busy-user", "file.bin", 0, b"x")

    assert storage.prune_empty_user_dirs() == 1
    assert [p.name for p in (tmp_path / "staging").iterdir()] == ["busy-user"]


def test_stage_artifact_writes_inside_session_dir(tmp_path: Path) -> None:
    storage = LocalStagingStorage(str(tmp_path / "uploads"), str(tmp_path / "staging"))
    storage.write_chunk("a_b", "c", 0, b"first")
    storage.write_chunk("a", "b_c", 0, b"second")

    first, _ = storage.stage_artifact("a_b", "c", ["0"])
    second, _ = storage.stage_artifact("a", "b_c", ["0"])

    assert first != second
    assert first.parent == storage.session_dir("a_b", "c")
    assert second.parent == storage.session_dir("a", "b_c")
    assert first.read_bytes() == b"first"
    assert second.read_bytes() == b"second"
    assert list((tmp_path / "uploads").iterdir()) == []
    assert storage.list_chunks("a_b", "c") == []


def test_last_activity_tracks_newest_entry(tmp_path: Path) -> None:
    storage = LocalStagingStorage(str(tmp_path / "uploads"), str(tmp_path / "staging"))
    path = storage.write_chunk("u1", "file.bin", 0, b"x")

    assert storage.last_activity(path.parent) >= path.stat().st_mtime
    assert storage.last_activity(storage.session_dir("u1", "missing.bin")) is None
