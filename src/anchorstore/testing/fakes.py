from __future__ import annotations

import base64
import hashlib
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from anchorstore.backends.base import WriteReceipt
from anchorstore.crypto.sig import b64url_encode
from anchorstore.errors import NotFound
from anchorstore.tagger import Tag
from anchorstore.uri import ARWEAVE_PREFIX, IPFS_PREFIX, UriType, make_locator


def fake_content_id(uri_type: UriType, data: bytes) -> str:
    """Content id in the real format of the given store (TEST ONLY)."""
    digest = hashlib.sha256(data).digest()
    if uri_type == UriType.ARWEAVE:
        return b64url_encode(digest)
    return "b" + base64.b32encode(digest).decode("ascii").lower().rstrip("=")


class MemoryBackend:
    """Scriptable in-memory storage backend.

    `failures` is consumed one entry per write call: an exception is raised,
    None lets the write succeed. After the script runs out, `fail_with` (if set)
    is raised on every call.
    """

    def __init__(
        self,
        name: str = "arweave",
        *,
        uri_type: UriType = UriType.ARWEAVE,
        permanent: bool = True,
        failures: Iterable[Optional[Exception]] = (),
        fail_with: Optional[Exception] = None,
    ) -> None:
        self.name = name
        self.uri_type = UriType(uri_type)
        self.scheme = ARWEAVE_PREFIX if self.uri_type == UriType.ARWEAVE else IPFS_PREFIX
        self.permanent = permanent
        self._failures: List[Optional[Exception]] = list(failures)
        self.fail_with = fail_with
        self.calls = 0
        self.writes: List[Tuple[bytes, Tuple[Tag, ...]]] = []
        self.objects: Dict[str, bytes] = {}

    def write(self, data: bytes, tags: Sequence[Tag]) -> WriteReceipt:
        self.calls += 1
        if self._failures:
            exc = self._failures.pop(0)
            if exc is not None:
                raise exc
        elif self.fail_with is not None:
            raise self.fail_with

        cid = fake_content_id(self.uri_type, data)
        self.objects[cid] = bytes(data)
        self.writes.append((bytes(data), tuple(tags)))
        return WriteReceipt(backend=self.name, id=cid, locator=make_locator(self.uri_type, cid))

    def read(self, content_id: str) -> bytes:
        if content_id not in self.objects:
            raise NotFound(self.name, "content_not_found", {"id": content_id})
        return self.objects[content_id]


class MemoryGateway:
    """In-memory read gateway (TEST ONLY).

    `hold` blocks every read until the event is set (or `hold_timeout_s`
    passes), which lets tests model a gateway that never answers in time.
    """

    def __init__(
        self,
        name: str,
        kinds: Iterable[UriType],
        objects: Optional[Dict[str, bytes]] = None,
        *,
        fail_with: Optional[Exception] = None,
        hold: Optional[threading.Event] = None,
        hold_timeout_s: float = 5.0,
    ) -> None:
        self.name = name
        self.kinds = tuple(UriType(k) for k in kinds)
        self.objects: Dict[str, bytes] = objects if objects is not None else {}
        self.fail_with = fail_with
        self.hold = hold
        self.hold_timeout_s = float(hold_timeout_s)
        self.calls = 0
        self._lock = threading.Lock()

    def read(self, content_id: str) -> bytes:
        with self._lock:
            self.calls += 1
        if self.hold is not None:
            self.hold.wait(self.hold_timeout_s)
        if self.fail_with is not None:
            raise self.fail_with
        if content_id not in self.objects:
            raise NotFound(self.name, "content_not_found", {"id": content_id})
        return self.objects[content_id]
