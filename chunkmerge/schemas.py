from pydantic import BaseModel


class ChunkUploadResponse(BaseModel):
    success: bool = True
    message: str
    fileUrl: str | None = None


class SweepResponse(BaseModel):
    status: str
    stale_sessions_deleted: int
    sessions_skipped_busy: int
    sweep_errors: int


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error_code: str
    request_id: str | None = None
