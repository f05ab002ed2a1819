import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from chunkmerge.assembler import ChunkAssembler
from chunkmerge.auth import AccessKeyValidator
from chunkmerge.config import Settings, parse_key_list, settings
from chunkmerge.errors import ChunkMergeError
from chunkmerge.events import audit_event, log_event
from chunkmerge.maintenance import sweep_stale_sessions
from chunkmerge.metrics import http_request_duration_seconds, metrics_response
from chunkmerge.schemas import ChunkUploadResponse, ErrorResponse, SweepResponse
from chunkmerge.storage import LocalStagingStorage
from chunkmerge.tracing import setup_tracing

COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid chunk request"},
    401: {"model": ErrorResponse, "description": "Invalid access key"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(request: Request, status_code: int, message: str, error_code: str, headers=None) -> JSONResponse:
    body = ErrorResponse(message=message, error_code=error_code, request_id=_request_id(request))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    log_event(
        {
            "event": "loop_exception",
            "detail": str(exc) if exc else context.get("message", ""),
            "error_class": type(exc).__name__ if exc else "unknown",
        }
    )


def create_app(app_settings: Settings | None = None) -> FastAPI:
    app_settings = app_settings or settings
    storage = LocalStagingStorage(app_settings.upload_root, app_settings.staging_root)
    assembler = ChunkAssembler(
        storage,
        AccessKeyValidator(parse_key_list(app_settings.access_keys)),
        public_url_prefix=app_settings.public_url_prefix,
        cleanup_max_attempts=app_settings.cleanup_max_attempts,
        cleanup_backoff_seconds=app_settings.cleanup_backoff_seconds,
    )
    admin_keys = AccessKeyValidator(parse_key_list(app_settings.admin_keys))

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        loop = asyncio.get_running_loop()
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(_log_loop_exception)
        stop_event = asyncio.Event()
        tasks: list[asyncio.Task] = []

        async def _periodic_sweep_loop() -> None:
            while not stop_event.is_set():
                try:
                    await sweep_stale_sessions(assembler, app_settings.stale_session_ttl_seconds)
                except Exception as exc:
                    log_event({"event": "sweep_error", "detail": str(exc), "error_class": "maintenance_error"})
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=max(1, app_settings.cleanup_interval_seconds))
                except asyncio.TimeoutError:
                    pass

        if app_settings.cleanup_enabled:
            tasks.append(asyncio.create_task(_periodic_sweep_loop()))
        yield
        stop_event.set()
        for task in tasks:
            await task
        loop.set_exception_handler(previous_handler)

    app = FastAPI(title=app_settings.app_name, version=app_settings.app_version, lifespan=lifespan)
    app.state.settings = app_settings
    app.state.assembler = assembler
    setup_tracing(app, app_settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(parse_key_list(app_settings.cors_allow_origins)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-App-Version"] = app_settings.app_version
        http_request_duration_seconds.labels(
            method=request.method,
            route=_route_label(request),
            status_code=str(response.status_code),
        ).observe(duration_ms / 1000.0)

        log_event(
            {
                "event": "request_completed",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            }
        )
        return response

    @app.exception_handler(ChunkMergeError)
    async def chunk_merge_error_handler(request: Request, exc: ChunkMergeError):
        _log_request_error(
            request,
            exc.status_code,
            "client_error" if exc.status_code < 500 else type(exc).__name__,
            str(exc),
        )
        return _error_response(request, exc.status_code, exc.public_message, exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = sorted({str(error["loc"][-1]) for error in exc.errors() if error.get("loc")})
        message = f"Bad Request: invalid or missing fields: {', '.join(fields)}" if fields else "Bad Request"
        _log_request_error(request, 400, "client_error", message)
        return _error_response(request, 400, message, "bad_request")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        _log_request_error(
            request,
            exc.status_code,
            "client_error" if 400 <= exc.status_code < 500 else "server_error",
            str(exc.detail),
        )
        return _error_response(
            request,
            exc.status_code,
            str(exc.detail),
            _error_code_for_status(exc.status_code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        _log_request_error(request, 500, "unhandled_exception", str(exc))
        return _error_response(request, 500, "Internal Server Error", "internal_error")

    def require_admin_key(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> str:
        if not x_admin_key:
            raise HTTPException(status_code=401, detail="missing admin key")
        if x_admin_key not in admin_keys:
            raise HTTPException(status_code=403, detail="admin access required")
        return x_admin_key

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/version")
    def version() -> dict[str, str]:
        return {
            "app_name": app_settings.app_name,
            "app_version": app_settings.app_version,
            "public_url_prefix": assembler.public_url_prefix,
        }

    @app.get("/metrics")
    def metrics() -> Response:
        return metrics_response()

    @app.post("/admin/sweep", response_model=SweepResponse, responses={**COMMON_ERROR_RESPONSES})
    async def run_sweep(_: str = Depends(require_admin_key)) -> SweepResponse:
        stats = await sweep_stale_sessions(assembler, app_settings.stale_session_ttl_seconds)
        return SweepResponse(status="ok", **stats)

    @app.post(
        "/upload-chunk",
        response_model=ChunkUploadResponse,
        response_model_exclude_none=True,
        responses={
            **COMMON_ERROR_RESPONSES,
            422: {"model": ErrorResponse, "description": "Merged file checksum mismatch"},
        },
    )
    async def upload_chunk(
        request: Request,
        chunk: UploadFile = File(...),
        chunk_index: int = Form(..., alias="chunkIndex"),
        total_chunks: int = Form(..., alias="totalChunks"),
        file_name: str = Form(..., alias="fileName"),
        user_id: str = Form(..., alias="userId"),
        key: str = Form(default=""),
        checksum: str | None = Form(default=None),
    ) -> ChunkUploadResponse:
        data = await chunk.read()
        outcome = await assembler.receive(
            user_id=user_id,
            file_name=file_name,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            key=key,
            data=data,
            checksum=checksum,
        )
        audit_event(
            {
                "event": "audit",
                "action": "upload_merged" if outcome.completed else "chunk_upload",
                "request_id": _request_id(request),
                "user_id": user_id,
                "file_name": file_name,
                "chunk_index": chunk_index,
                "total_chunks": total_chunks,
                "artifact": outcome.artifact.name if outcome.artifact else None,
            }
        )
        if outcome.artifact is not None:
            return ChunkUploadResponse(message=outcome.message, fileUrl=outcome.artifact.url)
        return ChunkUploadResponse(message=outcome.message)

    app.mount(
        f"/{assembler.public_url_prefix}",
        StaticFiles(directory=app_settings.upload_root),
        name="uploads",
    )
    return app


app = create_app()
