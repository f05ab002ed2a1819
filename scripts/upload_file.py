import argparse
import hashlib
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import httpx


def _chunk_bytes(data: bytes, chunk_size: int) -> list[bytes]:
    return [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)] or [b""]


def _upload_chunk(
    client: httpx.Client,
    base_url: str,
    user_id: str,
    file_name: str,
    key: str,
    index: int,
    total: int,
    chunk: bytes,
    checksum: str | None,
) -> dict:
    form = {
        "chunkIndex": str(index),
        "totalChunks": str(total),
        "fileName": file_name,
        "userId": user_id,
        "key": key,
    }
    if checksum:
        form["checksum"] = checksum
    resp = client.post(
        f"{base_url}/upload-chunk",
        data=form,
        files={"chunk": (file_name, chunk, "application/octet-stream")},
        timeout=60.0,
    )
    resp.raise_for_status()
    return resp.json()


def main() -> int:
    parser = argparse.ArgumentParser(description="Split a file into chunks and upload them to chunkmerge.")
    parser.add_argument("path", help="File to upload")
    parser.add_argument("--base-url", default="http://127.0.0.1:5000", help="Server base URL")
    parser.add_argument("--user-id", default="cli-user", help="Owner of the upload")
    parser.add_argument("--key", default="your_secure_key_1", help="Shared access key")
    parser.add_argument("--chunk-size-bytes", type=int, default=1024 * 1024, help="Chunk size in bytes")
    parser.add_argument("--workers", type=int, default=4, help="Parallel chunk uploads")
    parser.add_argument("--shuffle", action="store_true", help="Send chunks in random order")
    parser.add_argument("--no-checksum", action="store_true", help="Skip sending the SHA-256 of the whole file")
    args = parser.parse_args()

    path = Path(args.path)
    payload = path.read_bytes()
    chunks = _chunk_bytes(payload, args.chunk_size_bytes)
    checksum = None if args.no_checksum else hashlib.sha256(payload).hexdigest()
    order = list(range(len(chunks)))
    if args.shuffle:
        random.shuffle(order)

    started = time.perf_counter()
    file_url = None
    with httpx.Client() as client, ThreadPoolExecutor(max_workers=max(1, args.workers)) as pool:
        futures = [
            pool.submit(
                _upload_chunk,
                client,
                args.base_url,
                args.user_id,
                path.name,
                args.key,
                idx,
                len(chunks),
                chunks[idx],
                checksum,
            )
            for idx in order
        ]
        for fut in as_completed(futures):
            body = fut.result()
            print(f"- {body['message']}")
            if body.get("fileUrl"):
                file_url = body["fileUrl"]

    elapsed = time.perf_counter() - started
    print(f"Uploaded {len(payload)} bytes in {len(chunks)} chunks in {elapsed:.3f}s")
    if not file_url:
        print("[FAIL] server never reported a merged file")
        return 1
    print(f"[OK] {args.base_url}/{file_url}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
