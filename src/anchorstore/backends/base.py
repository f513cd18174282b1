from __future__ import annotations

import http.client
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Sequence, Tuple

from anchorstore.errors import (
    KIND_AUTH,
    KIND_INDEXING_PENDING,
    KIND_INSUFFICIENT_BALANCE,
    KIND_NETWORK,
    KIND_REJECTED,
    KIND_SIZE_LIMIT,
    KIND_TIMEOUT,
    KIND_UNAVAILABLE,
    BackendError,
)
from anchorstore.tagger import Tag

# Raised by urlopen after the request was written, while waiting for or reading
# the response. urlopen wraps connect/send failures in URLError instead.
RESPONSE_PHASE_ERRORS = (TimeoutError, ConnectionError, http.client.HTTPException)


@dataclass(frozen=True)
class WriteReceipt:
    backend: str
    id: str
    locator: str


class StorageBackend(Protocol):
    name: str
    scheme: str
    permanent: bool

    def write(self, data: bytes, tags: Sequence[Tag]) -> WriteReceipt: ...

    def read(self, content_id: str) -> bytes: ...


def http_call(
    url: str,
    *,
    method: str,
    data: Optional[bytes] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout_s: float,
) -> Tuple[int, bytes]:
    """Single HTTP round-trip. Returns (status, body) for any HTTP status.

    Transport failures propagate: URLError for connect/send, RESPONSE_PHASE_ERRORS
    once the request is on the wire.
    """
    req = urllib.request.Request(url=url, method=method, data=data)
    for k, v in (headers or {}).items():
        req.add_header(k, v)
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return int(getattr(resp, "status", 200)), resp.read()
    except urllib.error.HTTPError as e:
        try:
            body = e.read() or b""
        except (OSError, http.client.HTTPException):
            body = b""
        return int(getattr(e, "code", 0) or 0), body


def kind_for_status(status: int) -> str:
    if status == 402:
        return KIND_INSUFFICIENT_BALANCE
    if status == 413:
        return KIND_SIZE_LIMIT
    if status in (401, 403):
        return KIND_AUTH
    if status == 404:
        return KIND_INDEXING_PENDING
    if status in (408, 504):
        return KIND_TIMEOUT
    if status == 429 or status >= 500:
        return KIND_UNAVAILABLE
    return KIND_REJECTED


def send_phase_error(backend: str, e: urllib.error.URLError, details: Optional[Dict[str, str]] = None) -> BackendError:
    """Translate a failure that happened before the request reached the backend."""
    reason = getattr(e, "reason", e)
    kind = KIND_TIMEOUT if isinstance(reason, TimeoutError) else KIND_NETWORK
    return BackendError(backend, str(reason)[:300], dict(details or {}), kind=kind)


def body_excerpt(body: bytes, limit: int = 300) -> str:
    return body.decode("utf-8", errors="replace").strip()[:limit]
