from __future__ import annotations

import hashlib
import json
import urllib.error
import urllib.parse
from typing import Optional, Sequence, Tuple

from anchorstore.backends.base import (
    RESPONSE_PHASE_ERRORS,
    WriteReceipt,
    body_excerpt,
    http_call,
    kind_for_status,
    send_phase_error,
)
from anchorstore.errors import (
    KIND_REJECTED,
    KIND_SIZE_LIMIT,
    KIND_TIMEOUT,
    BackendError,
    NotFound,
    TransientUnavailable,
)
from anchorstore.tagger import Tag
from anchorstore.uri import UriType, make_locator
from anchorstore.util.content_ids import validate_ipfs_cid

_BOUNDARY = "----anchorstore-ipfs-boundary-5c1e9a0d2b7f4e63"


def _multipart(name: str, data: bytes) -> bytes:
    filename = (name or "upload").strip() or "upload"
    preamble = (
        f"--{_BOUNDARY}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
        f"Content-Type: application/json\r\n"
        f"\r\n"
    ).encode("utf-8")
    epilogue = f"\r\n--{_BOUNDARY}--\r\n".encode("utf-8")
    return preamble + data + epilogue


def parse_add_response(raw: bytes) -> Tuple[str, int]:
    """
    /api/v0/add returns NDJSON (one JSON per line).
    The last valid object carries the root Hash + Size.
    """
    txt = raw.decode("utf-8", errors="replace").strip()
    if not txt:
        raise ValueError("ipfs_add_failed:empty_response")

    last_obj: Optional[dict] = None
    for line in txt.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if isinstance(obj, dict):
            last_obj = obj

    if not isinstance(last_obj, dict):
        raise ValueError(f"ipfs_add_failed:bad_response:{txt[:200]}")

    cid = str(last_obj.get("Hash") or "").strip()
    try:
        size = int(str(last_obj.get("Size") or "0").strip())
    except ValueError:
        size = 0
    if not cid:
        raise ValueError("ipfs_add_failed:missing_hash")
    return cid, size


class IpfsBackend:
    """Pinned IPFS storage through the Kubo HTTP API.

    Content addressing makes add idempotent: re-adding the same bytes yields the
    same CID, so every transport failure here is safe to retry. IPFS has no
    native tag storage; tags only travel with the caller's result.
    """

    name = "ipfs"
    scheme = "ipfs://"
    permanent = False

    def __init__(self, *, api_url: str = "http://127.0.0.1:5001", timeout_s: float = 30.0, max_bytes: int = 0) -> None:
        self.api_url = str(api_url or "").strip().rstrip("/")
        if not self.api_url:
            raise ValueError("ipfs api_url is required")
        self.timeout_s = float(timeout_s)
        self.max_bytes = int(max_bytes)

    def write(self, data: bytes, tags: Sequence[Tag]) -> WriteReceipt:
        if self.max_bytes > 0 and len(data) > self.max_bytes:
            raise BackendError(self.name, "document_too_large", {"bytes": len(data), "max_bytes": self.max_bytes}, kind=KIND_SIZE_LIMIT)

        qs = urllib.parse.urlencode({"pin": "true", "wrap-with-directory": "false", "progress": "false"})
        name = f"{hashlib.sha256(data).hexdigest()[:16]}.json"
        try:
            status, body = http_call(
                f"{self.api_url}/api/v0/add?{qs}",
                method="POST",
                data=_multipart(name, data),
                headers={"Content-Type": f"multipart/form-data; boundary={_BOUNDARY}"},
                timeout_s=self.timeout_s,
            )
        except urllib.error.URLError as e:
            raise send_phase_error(self.name, e) from e
        except RESPONSE_PHASE_ERRORS as e:
            raise BackendError(self.name, str(e)[:300] or "response_timeout", kind=KIND_TIMEOUT) from e

        if status < 200 or status >= 300:
            raise BackendError(self.name, f"http_{status}", {"status": status, "body": body_excerpt(body)}, kind=kind_for_status(status))

        try:
            cid, _size = parse_add_response(body)
        except ValueError as e:
            raise BackendError(self.name, str(e)[:300], kind=KIND_REJECTED) from e

        v = validate_ipfs_cid(cid)
        if not v.ok:
            raise BackendError(self.name, v.reason, {"cid": cid}, kind=KIND_REJECTED)
        return WriteReceipt(backend=self.name, id=v.value, locator=make_locator(UriType.IPFS, v.value))

    def read(self, content_id: str) -> bytes:
        qs = urllib.parse.urlencode({"arg": str(content_id).strip()})
        try:
            status, body = http_call(f"{self.api_url}/api/v0/cat?{qs}", method="POST", timeout_s=self.timeout_s)
        except (urllib.error.URLError,) + RESPONSE_PHASE_ERRORS as e:
            raise TransientUnavailable(self.name, str(getattr(e, "reason", e))[:300]) from e
        if status == 404:
            raise NotFound(self.name, "content_not_found", {"cid": content_id})
        if status < 200 or status >= 300:
            # Kubo answers 500 with a JSON message for unknown or malformed CIDs.
            msg = body_excerpt(body)
            if "not found" in msg.lower() or "invalid" in msg.lower():
                raise NotFound(self.name, "content_not_found", {"cid": content_id, "body": msg})
            raise TransientUnavailable(self.name, f"http_{status}", {"cid": content_id})
        return body
