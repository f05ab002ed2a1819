import json
import os

import httpx


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:5000").rstrip("/")
    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        try:
            health = client.get("/health")
        except Exception as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1

        print(f"[INFO] /health status={health.status_code}")
        if health.status_code != 200:
            print("[FAIL] /health is not healthy.")
            return 1

        version = client.get("/version")
        print(f"[INFO] /version status={version.status_code} X-App-Version={version.headers.get('X-App-Version')}")
        if version.status_code == 200:
            print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")

        probe = client.post(
            "/upload-chunk",
            data={"chunkIndex": "0", "totalChunks": "1", "fileName": "probe.bin", "userId": "probe", "key": ""},
            files={"chunk": ("probe.bin", b"", "application/octet-stream")},
        )
        print(f"[INFO] /upload-chunk without key status={probe.status_code}")
        if probe.status_code == 401:
            print("[OK] /upload-chunk rejects requests without a valid key.")
            return 0

        if probe.status_code == 404:
            print("[FAIL] /upload-chunk returned 404. Likely runtime mismatch.")
            return 2

        print(f"[FAIL] /upload-chunk unexpected status: {probe.status_code}")
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
