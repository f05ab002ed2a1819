import asyncio
from pathlib import Path

import pytest

from chunkmerge.assembler import ChunkAssembler
from chunkmerge.auth import AccessKeyValidator
from chunkmerge.errors import InvalidChunkRequest, Unauthorized
from chunkmerge.storage import LocalStagingStorage


def _assembler(tmp_path: Path) -> ChunkAssembler:
    storage = LocalStagingStorage(str(tmp_path / "uploads"), str(tmp_path / "staging"))
    return ChunkAssembler(storage, AccessKeyValidator(["k"]), cleanup_backoff_seconds=0)


def _artifacts(tmp_path: Path) -> list[Path]:
    return [p for p in (tmp_path / "uploads").iterdir() if not p.name.endswith(".part")]


def test_receive_reports_progress_then_completion(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)

    async def scenario():
        first = await assembler.receive("u1", "video.mp4", 1, 3, "k", b"B1")
        second = await assembler.receive("u1", "video.mp4", 0, 3, "k", b"B0")
        third = await assembler.receive("u1", "video.mp4", 2, 3, "k", b"B2")
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first.message == "Chunk 2/3 uploaded"
    assert second.message == "Chunk 1/3 uploaded"
    assert not first.completed and not second.completed
    assert third.completed
    assert third.artifact is not None
    assert third.artifact.url == f"uploads/{third.artifact.name}"
    assert third.artifact.path.read_bytes() == b"B0B1B2"
    assert len(assembler.locks) == 0


def test_is_complete_requires_exact_index_set(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)
    storage = assembler.storage
    storage.write_chunk("u1", "f.bin", 0, b"a")
    storage.write_chunk("u1", "f.bin", 4, b"stale total")

    assert asyncio.run(assembler.is_complete("u1", "f.bin", 2)) is False
    storage.write_chunk("u1", "f.bin", 1, b"b")
    assert asyncio.run(assembler.is_complete("u1", "f.bin", 2)) is False
    assert asyncio.run(assembler.is_complete("u1", "f.bin", 5)) is False


def test_is_complete_ignores_partial_writes(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)
    assembler.storage.write_chunk("u1", "f.bin", 0, b"a")
    (assembler.storage.session_dir("u1", "f.bin") / "1.part").write_bytes(b"half")

    assert asyncio.run(assembler.is_complete("u1", "f.bin", 2)) is False
    assert asyncio.run(assembler.is_complete("u1", "f.bin", 1)) is True


def test_is_complete_false_for_unknown_session(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)
    assert asyncio.run(assembler.is_complete("nobody", "nothing.bin", 1)) is False


def test_concurrent_last_chunks_merge_once(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)

    async def scenario():
        await assembler.receive("u1", "race.bin", 0, 3, "k", b"0")
        return await asyncio.gather(
            assembler.receive("u1", "race.bin", 1, 3, "k", b"1"),
            assembler.receive("u1", "race.bin", 2, 3, "k", b"2"),
            assembler.receive("u1", "race.bin", 2, 3, "k", b"2"),
        )

    outcomes = asyncio.run(scenario())
    assert sum(1 for outcome in outcomes if outcome.completed) == 1
    artifacts = _artifacts(tmp_path)
    assert len(artifacts) == 1
    assert artifacts[0].read_bytes() == b"012"


def test_different_sessions_interleave(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)

    async def upload(user_id: str, payload: list[bytes]):
        outcome = None
        for index, data in enumerate(payload):
            outcome = await assembler.receive(user_id, "shared.bin", index, len(payload), "k", data)
        return outcome

    async def scenario():
        return await asyncio.gather(upload("a", [b"a0", b"a1"]), upload("b", [b"b0", b"b1", b"b2"]))

    first, second = asyncio.run(scenario())
    assert first.artifact.path.read_bytes() == b"a0a1"
    assert second.artifact.path.read_bytes() == b"b0b1b2"


def test_unauthorized_before_any_validation(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)
    with pytest.raises(Unauthorized):
        asyncio.run(assembler.receive("../x", "f.bin", 99, 1, "nope", b"x"))
    assert list((tmp_path / "staging").iterdir()) == []


def test_invalid_requests_raise(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)
    for args in (
        ("u1", "f.bin", 1, 1),
        ("u1", "f.bin", 0, 0),
        ("u1", "", 0, 1),
        ("u1", "a/b", 0, 1),
        (".", "f.bin", 0, 1),
    ):
        with pytest.raises(InvalidChunkRequest):
            asyncio.run(assembler.receive(*args, "k", b"x"))


def test_concurrent_merges_with_overlapping_flat_names_stay_separate(tmp_path: Path) -> None:
    assembler = _assembler(tmp_path)
    first_parts = [b"A" * 64 * 1024 for _ in range(4)]
    second_parts = [b"B" * 64 * 1024 for _ in range(4)]

    async def upload(user_id: str, file_name: str, parts: list[bytes]):
        for index, data in enumerate(parts[:-1]):
            await assembler.receive(user_id, file_name, index, len(parts), "k", data)
        return await assembler.receive(user_id, file_name, len(parts) - 1, len(parts), "k", parts[-1])

    async def scenario():
        return await asyncio.gather(
            upload("a_b", "c", first_parts),
            upload("a", "b_c", second_parts),
        )

    first, second = asyncio.run(scenario())
    assert first.completed and second.completed
    assert first.artifact.path.read_bytes() == b"".join(first_parts)
    assert second.artifact.path.read_bytes() == b"".join(second_parts)
    assert sorted(p.name for p in (tmp_path / "uploads").iterdir()) == sorted(
        [first.artifact.name, second.artifact.name]
    )
