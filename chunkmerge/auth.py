from collections.abc import Iterable
import hmac

from chunkmerge.errors import Unauthorized
from chunkmerge.metrics import unauthorized_requests_total


class AccessKeyValidator:
    def __init__(self, keys: Iterable[str]) -> None:
        self._keys = frozenset(key for key in keys if key)

    def __contains__(self, key: str | None) -> bool:
        if not key:
            return False
        return any(hmac.compare_digest(key, candidate) for candidate in self._keys)

    def check(self, key: str | None) -> None:
        if key not in self:
            unauthorized_requests_total.inc()
            raise Unauthorized("invalid access key")
