from __future__ import annotations

"""Priority resolver.

Writes a cleared document to the first storage backend that accepts it.

Per backend, retryable failures (timeouts, network, unavailable, indexing lag)
are retried with capped exponential backoff; structural failures (balance, size,
auth, rejection) fall through to the next backend at once. An ambiguous write
(WriteStatusUnknown) ends the call: nothing is retried and nothing falls
through, so an upload that may already exist is never duplicated.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from anchorstore import metrics
from anchorstore.backends.base import StorageBackend, WriteReceipt
from anchorstore.crypto.sig import canonical_bytes
from anchorstore.errors import (
    AllBackendsExhausted,
    BackendError,
    MissingRequiredTags,
    ValidationRejected,
    WriteStatusUnknown,
)
from anchorstore.gate import Clearance, PreValidationGate
from anchorstore.ledger.types import Operation
from anchorstore.structured_logging import log_event
from anchorstore.tagger import Tag, TagContext, derive_tags, missing_required_tags

log = logging.getLogger(__name__)


def document_bytes(document: Mapping[str, Any]) -> bytes:
    return canonical_bytes(dict(document))


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class StoreResult:
    locator: str
    backend: str
    tags: Tuple[Tag, ...]
    content_hash: str
    attempts: int


class PriorityResolver:
    def __init__(
        self,
        backends: Sequence[StorageBackend],
        *,
        gate: PreValidationGate,
        max_attempts: int = 3,
        backoff_base_ms: int = 250,
        backoff_cap_ms: int = 4000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backends: List[StorageBackend] = list(backends)
        if not self.backends:
            raise ValueError("at least one storage backend is required")
        self.gate = gate
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_ms = int(backoff_base_ms)
        self.backoff_cap_ms = int(backoff_cap_ms)
        self._sleep = sleep

    def _compute_backoff_ms(self, attempts: int) -> int:
        # base * 2^(attempts-1), capped; attempts starts at 1 for the first failure.
        a = max(1, int(attempts))
        base = max(0, self.backoff_base_ms)
        cap = max(base, self.backoff_cap_ms)
        return int(min(base * (2 ** (a - 1)), cap))

    def _require_cleared(self, clearance: Optional[Clearance], operation: Operation) -> None:
        if not self.gate.is_current(clearance, operation):
            metrics.inc_counter("resolver.not_cleared")
            raise ValidationRejected("not_cleared", "no_current_clearance", {"op_type": operation.op_type})

    def _write_once(self, backend: StorageBackend, data: bytes, tags: Tuple[Tag, ...], clearance: Optional[Clearance], operation: Operation) -> WriteReceipt:
        self._require_cleared(clearance, operation)
        missing = missing_required_tags(tags)
        if missing:
            raise MissingRequiredTags("missing_required_tags", "tag_derivation_incomplete", {"missing": missing})
        metrics.inc_counter(f"backend.{backend.name}.attempt")
        return backend.write(data, tags)

    def store(
        self,
        document: Mapping[str, Any],
        *,
        operation: Operation,
        clearance: Optional[Clearance],
        context: TagContext,
    ) -> StoreResult:
        self._require_cleared(clearance, operation)

        tags = derive_tags(document, context)
        data = document_bytes(document)
        digest = content_hash(data)

        failures: List[BackendError] = []
        attempts = 0
        for pos, backend in enumerate(self.backends):
            last: Optional[BackendError] = None
            for attempt in range(1, self.max_attempts + 1):
                attempts += 1
                try:
                    receipt = self._write_once(backend, data, tags, clearance, operation)
                except WriteStatusUnknown as e:
                    metrics.inc_counter("resolver.write_unknown")
                    log_event(
                        log,
                        "backend_write_unknown",
                        level=logging.ERROR,
                        backend=backend.name,
                        content_hash=digest,
                        attempt=attempt,
                        reason=e.reason,
                    )
                    raise
                except BackendError as e:
                    last = e
                    metrics.inc_counter(f"backend.{backend.name}.failure")
                    log_event(
                        log,
                        "backend_write_failed",
                        level=logging.WARNING,
                        backend=backend.name,
                        kind=e.kind,
                        reason=e.reason,
                        attempt=attempt,
                    )
                    if not e.retryable or attempt >= self.max_attempts:
                        break
                    self._sleep(self._compute_backoff_ms(attempt) / 1000.0)
                    continue

                metrics.inc_counter(f"backend.{backend.name}.success")
                log_event(log, "backend_write_ok", backend=backend.name, locator=receipt.locator, content_hash=digest, attempts=attempts)
                return StoreResult(
                    locator=receipt.locator,
                    backend=receipt.backend,
                    tags=tags,
                    content_hash=digest,
                    attempts=attempts,
                )

            if last is not None:
                failures.append(last)
            if pos + 1 < len(self.backends):
                nxt = self.backends[pos + 1]
                metrics.inc_counter("resolver.downgrade")
                log_event(
                    log,
                    "backend_downgrade",
                    level=logging.WARNING,
                    from_backend=backend.name,
                    to_backend=nxt.name,
                    kind=last.kind if last is not None else "",
                    reason=last.reason if last is not None else "",
                )

        metrics.inc_counter("resolver.exhausted")
        log_event(log, "backends_exhausted", level=logging.ERROR, backends=[b.name for b in self.backends], attempts=attempts)
        raise AllBackendsExhausted(
            "all_backends_exhausted",
            "no_backend_accepted_write",
            {"backends": [b.name for b in self.backends], "attempts": attempts},
            failures=failures,
        )
