from __future__ import annotations

"""Publish flow: validate, store, then hand back a commit-ready operation.

    gate.validate(op) -> resolver.store(doc, clearance) -> op.with_locator(...) -> ledger.commit(op)

The ledger commit is a separate step so callers can inspect the locator (or
decide what to do with an empty one) before anything is recorded on-chain.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from anchorstore.errors import AllBackendsExhausted, AnchorStoreError
from anchorstore.gate import Clearance, PreValidationGate
from anchorstore.ledger.types import OP_GIVE_FEEDBACK, LedgerClient, Operation, TxReceipt
from anchorstore.resolver import PriorityResolver, content_hash, document_bytes
from anchorstore.structured_logging import log_event
from anchorstore.tagger import (
    DATA_TYPE_FEEDBACK,
    DATA_TYPE_REGISTRATION,
    DEFAULT_APP_NAME,
    DEFAULT_PROTOCOL,
    Tag,
    TagContext,
)

Json = Dict[str, Any]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteAttempt:
    document: Mapping[str, Any]
    backend: str
    tags: Tuple[Tag, ...]
    clearance: Clearance
    locator: str
    content_hash: str
    operation: Operation
    error: Optional[AnchorStoreError] = None

    @property
    def stored(self) -> bool:
        return self.error is None

    def to_json(self) -> Json:
        return {
            "backend": self.backend,
            "locator": self.locator,
            "content_hash": self.content_hash,
            "tags": [t.to_json() for t in self.tags],
            "operation": self.operation.to_json(),
            "error": self.error.to_json() if self.error is not None else None,
        }


def default_data_type(op: Operation) -> str:
    return DATA_TYPE_FEEDBACK if op.op_type == OP_GIVE_FEEDBACK else DATA_TYPE_REGISTRATION


class Publisher:
    def __init__(
        self,
        *,
        gate: PreValidationGate,
        resolver: PriorityResolver,
        ledger: LedgerClient,
        chain_id: int,
        app_name: str = DEFAULT_APP_NAME,
        protocol: str = DEFAULT_PROTOCOL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gate = gate
        self.resolver = resolver
        self.ledger = ledger
        self.chain_id = int(chain_id)
        self.app_name = app_name
        self.protocol = protocol
        self._clock = clock

    def publish(
        self,
        document: Mapping[str, Any],
        *,
        operation: Operation,
        data_type: Optional[str] = None,
        timestamp: Union[datetime, str, None] = None,
        extra: Optional[Mapping[str, str]] = None,
        allow_empty_locator: bool = False,
    ) -> WriteAttempt:
        """Validate `operation`, then store `document`.

        ValidationRejected propagates before any backend is touched.
        With allow_empty_locator, AllBackendsExhausted is returned inside the
        WriteAttempt (empty locator) instead of raised.
        """
        clearance = self.gate.validate(operation)

        ts = timestamp if timestamp is not None else datetime.fromtimestamp(float(self._clock()), tz=timezone.utc)
        resource_id = operation.payload.get("resource_id")
        context = TagContext(
            chain_id=self.chain_id,
            data_type=data_type or default_data_type(operation),
            timestamp=ts,
            app_name=self.app_name,
            protocol=self.protocol,
            resource_id=str(resource_id) if resource_id else None,
            extra=dict(extra or {}),
        )

        try:
            res = self.resolver.store(document, operation=operation, clearance=clearance, context=context)
        except AllBackendsExhausted as e:
            if not allow_empty_locator:
                raise
            digest = content_hash(document_bytes(document))
            log_event(log, "publish_without_locator", level=logging.WARNING, op_type=operation.op_type, content_hash=digest)
            return WriteAttempt(
                document=document,
                backend="",
                tags=(),
                clearance=clearance,
                locator="",
                content_hash=digest,
                operation=operation.with_locator("", digest),
                error=e,
            )

        log_event(log, "publish_stored", op_type=operation.op_type, backend=res.backend, locator=res.locator)
        return WriteAttempt(
            document=document,
            backend=res.backend,
            tags=res.tags,
            clearance=clearance,
            locator=res.locator,
            content_hash=res.content_hash,
            operation=operation.with_locator(res.locator, res.content_hash),
        )

    def commit(self, attempt: WriteAttempt) -> TxReceipt:
        """Record the stored operation on the ledger. LedgerRevert propagates."""
        receipt = self.ledger.commit(attempt.operation)
        log_event(log, "publish_committed", op_type=receipt.op_type, tx_id=receipt.tx_id, locator=attempt.locator)
        return receipt
