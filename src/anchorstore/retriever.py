from __future__ import annotations

"""Multi-gateway retrieval.

A locator is read from every gateway that serves its type, in parallel. The
first `confirmations` byte-identical responses win; any disagreement between
successful responses is an integrity failure, never a silent pick.
"""

import hashlib
import json
import logging
import time
import urllib.error
import urllib.parse
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from anchorstore import metrics
from anchorstore.backends.base import RESPONSE_PHASE_ERRORS, http_call
from anchorstore.errors import (
    AllGatewaysFailed,
    AnchorStoreError,
    IntegrityMismatch,
    NotFound,
    TransientUnavailable,
)
from anchorstore.structured_logging import log_event
from anchorstore.uri import UriType, classify, locator_id

log = logging.getLogger(__name__)

DEFAULT_PATH_TEMPLATES = {
    UriType.ARWEAVE: "{base}/{id}",
    UriType.IPFS: "{base}/ipfs/{id}",
}


class Gateway(Protocol):
    name: str
    kinds: Tuple[UriType, ...]

    def read(self, content_id: str) -> bytes: ...


class HttpGateway:
    def __init__(
        self,
        base_url: str,
        kinds: Iterable[UriType],
        *,
        path_template: str = "",
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        if not self.base_url:
            raise ValueError("gateway base_url is required")
        self.kinds = tuple(UriType(k) for k in kinds)
        if not self.kinds:
            raise ValueError("gateway must serve at least one locator type")
        self.path_template = str(path_template or "")
        if not self.path_template:
            self.path_template = DEFAULT_PATH_TEMPLATES.get(self.kinds[0], "{base}/{id}")
        self.timeout_s = float(timeout_s)
        self.name = self.base_url

    def url_for(self, content_id: str) -> str:
        cid = urllib.parse.quote(str(content_id).strip(), safe="")
        return self.path_template.format(base=self.base_url, id=cid)

    def read(self, content_id: str) -> bytes:
        try:
            status, body = http_call(self.url_for(content_id), method="GET", timeout_s=self.timeout_s)
        except urllib.error.URLError as e:
            raise TransientUnavailable(self.name, str(e.reason)[:300]) from e
        except RESPONSE_PHASE_ERRORS as e:
            raise TransientUnavailable(self.name, str(e)[:300] or "timeout") from e
        if status == 404:
            raise NotFound(self.name, "content_not_found", {"id": content_id})
        if status < 200 or status >= 300:
            raise TransientUnavailable(self.name, f"http_{status}", {"id": content_id})
        return body


@dataclass(frozen=True)
class FetchResult:
    data: bytes
    gateway: str
    agreeing: Tuple[str, ...]

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


class MultiGatewayRetriever:
    def __init__(
        self,
        gateways: Sequence[Gateway],
        *,
        timeout_s: float = 10.0,
        max_workers: Optional[int] = None,
        confirmations: int = 1,
    ) -> None:
        self.gateways: List[Gateway] = list(gateways)
        self.timeout_s = float(timeout_s)
        self.max_workers = max_workers
        self.confirmations = max(1, int(confirmations))

    def gateways_for(self, uri_type: UriType) -> List[Gateway]:
        return [g for g in self.gateways if uri_type in g.kinds]

    def fetch(self, locator: str, *, expected_sha256: Optional[str] = None) -> FetchResult:
        uri_type = classify(locator)
        content_id = locator_id(locator)
        candidates = self.gateways_for(uri_type) if content_id else []
        if not candidates:
            raise AllGatewaysFailed("all_gateways_failed", "no_gateway_for_locator", {"locator": locator, "type": uri_type.value})

        expected = (expected_sha256 or "").strip().lower() or None
        errors: Dict[str, str] = {}
        # digest -> (first data, gateway names in arrival order)
        agreeing: Dict[str, Tuple[bytes, List[str]]] = {}

        pool = ThreadPoolExecutor(max_workers=self.max_workers or len(candidates), thread_name_prefix="anchorstore-fetch")
        pending: Dict[Future, Gateway] = {pool.submit(g.read, content_id): g for g in candidates}
        deadline = time.monotonic() + self.timeout_s
        try:
            while pending:
                remaining = max(0.0, deadline - time.monotonic())
                done, _ = wait(list(pending), timeout=remaining, return_when=FIRST_COMPLETED)
                if not done:
                    for g in pending.values():
                        errors[g.name] = "timeout"
                    break
                for fut in done:
                    g = pending.pop(fut)
                    try:
                        data = fut.result()
                    except (AnchorStoreError, OSError) as e:
                        errors[g.name] = str(e)
                        metrics.inc_counter("gateway.read.failure")
                        continue
                    metrics.inc_counter("gateway.read.ok")

                    digest = hashlib.sha256(data).hexdigest()
                    if expected is not None and digest != expected:
                        metrics.inc_counter("retriever.integrity_mismatch")
                        log_event(log, "gateway_hash_mismatch", level=logging.ERROR, gateway=g.name, locator=locator)
                        raise IntegrityMismatch(
                            "integrity_mismatch",
                            "content_hash_mismatch",
                            {"locator": locator, "gateway": g.name, "expected": expected, "actual": digest},
                        )
                    if agreeing and digest not in agreeing:
                        seen = {n: d for d, (_, names) in agreeing.items() for n in names}
                        seen[g.name] = digest
                        metrics.inc_counter("retriever.integrity_mismatch")
                        log_event(log, "gateway_disagreement", level=logging.ERROR, gateway=g.name, locator=locator)
                        raise IntegrityMismatch(
                            "integrity_mismatch",
                            "gateways_disagree",
                            {"locator": locator, "gateways": seen},
                        )
                    first, names = agreeing.setdefault(digest, (data, []))
                    names.append(g.name)
                    if len(names) >= self.confirmations:
                        return FetchResult(data=first, gateway=names[0], agreeing=tuple(names))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if agreeing:
            # Pool exhausted before enough confirmations; single digest by construction.
            data, names = next(iter(agreeing.values()))
            log_event(log, "gateway_confirmations_short", level=logging.WARNING, locator=locator, agreeing=len(names), wanted=self.confirmations)
            return FetchResult(data=data, gateway=names[0], agreeing=tuple(names))

        metrics.inc_counter("retriever.all_failed")
        log_event(log, "gateways_failed", level=logging.WARNING, locator=locator, errors=errors)
        raise AllGatewaysFailed("all_gateways_failed", "no_gateway_returned_content", {"locator": locator}, errors=errors)

    def fetch_json(self, locator: str, *, expected_sha256: Optional[str] = None) -> Any:
        res = self.fetch(locator, expected_sha256=expected_sha256)
        return json.loads(res.data.decode("utf-8"))
