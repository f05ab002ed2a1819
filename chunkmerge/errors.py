class ChunkMergeError(Exception):
    """Base class for failures raised by the chunk reassembly core."""

    status_code = 500
    error_code = "internal_error"
    public_message = "Internal Server Error"


class Unauthorized(ChunkMergeError):
    status_code = 401
    error_code = "unauthorized"
    public_message = "Unauthorized: Invalid key"


class InvalidChunkRequest(ChunkMergeError):
    status_code = 400
    error_code = "bad_request"

    @property
    def public_message(self) -> str:
        return f"Bad Request: {self}"


class ChecksumMismatch(ChunkMergeError):
    status_code = 422
    error_code = "checksum_mismatch"
    public_message = "Checksum mismatch"


class FilesystemError(ChunkMergeError):
    """Wraps an OSError raised while touching staging or artifact files."""


class TransientRemovalConflict(ChunkMergeError):
    """A directory was still non-empty when rmtree tried to remove it."""


class CleanupExhausted(ChunkMergeError):
    def __init__(self, path: str, attempts: int) -> None:
        super().__init__(f"could not remove {path} after {attempts} attempts")
        self.path = path
        self.attempts = attempts
