from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

chunks_received_total = Counter("chunks_received_total", "Total chunks written to staging")
bytes_received_total = Counter("bytes_received_total", "Total chunk bytes written to staging")
merges_completed_total = Counter("merges_completed_total", "Total sessions merged into an artifact")
merge_failures_total = Counter("merge_failures_total", "Total merge attempts that raised")
unauthorized_requests_total = Counter("unauthorized_requests_total", "Total chunk requests with an invalid key")
cleanup_retries_total = Counter("cleanup_retries_total", "Total staging removal retries after ENOTEMPTY")
cleanup_failures_total = Counter("cleanup_failures_total", "Total staging removals that gave up")
stale_sessions_swept_total = Counter("stale_sessions_swept_total", "Total idle staging sessions removed")

chunk_write_latency_seconds = Histogram("chunk_write_latency_seconds", "Staging chunk write latency in seconds")
merge_latency_seconds = Histogram("merge_latency_seconds", "Merge latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
