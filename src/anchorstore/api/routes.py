from __future__ import annotations

import json
import logging
from typing import Any, Dict, NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from anchorstore import metrics
from anchorstore.crypto.sig import b64url_encode
from anchorstore.errors import (
    AllBackendsExhausted,
    AllGatewaysFailed,
    AnchorStoreError,
    BackendError,
    IntegrityMismatch,
    LedgerRevert,
    NotFound,
    TransientUnavailable,
    ValidationRejected,
    WriteStatusUnknown,
)
from anchorstore.api.schemas import PublishRequest
from anchorstore.ledger.types import Operation
from anchorstore.runtime import Runtime
from anchorstore.structured_logging import log_event
from anchorstore.uri import classify, locator_id

router = APIRouter()

Json = Dict[str, Any]

log = logging.getLogger(__name__)

# Most specific first.
_STATUS_BY_ERROR = (
    (ValidationRejected, 422),
    (WriteStatusUnknown, 504),
    (AllBackendsExhausted, 502),
    (AllGatewaysFailed, 502),
    (BackendError, 502),
    (IntegrityMismatch, 409),
    (LedgerRevert, 409),
    (NotFound, 404),
    (TransientUnavailable, 503),
)


def _runtime(request: Request) -> Runtime:
    rt = getattr(request.app.state, "runtime", None)
    if rt is None:
        raise HTTPException(status_code=503, detail={"code": "not_ready", "message": "runtime not ready"})
    return rt


def _raise_http(e: AnchorStoreError) -> NoReturn:
    status = 500
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(e, cls):
            status = code
            break
    raise HTTPException(
        status_code=status,
        detail={"code": e.code, "message": e.reason, "error": type(e).__name__, "details": e.to_json()},
    ) from e


@router.get("/health")
def health(request: Request) -> Json:
    rt = getattr(request.app.state, "runtime", None)
    if rt is None:
        return {"ok": True, "service": "anchorstore", "ready": False}
    return {
        "ok": True,
        "service": "anchorstore",
        "ready": True,
        "chain_id": rt.cfg.chain_id,
        "backends": [b.name for b in rt.resolver.backends],
        "gateways": [g.name for g in rt.retriever.gateways],
    }


@router.get("/uri/classify")
def classify_uri(uri: str = Query(default="")) -> Json:
    t = classify(uri)
    return {"ok": True, "uri": uri, "type": t.value, "id": locator_id(uri)}


@router.post("/documents")
def publish_document(req: PublishRequest, request: Request) -> Json:
    rt = _runtime(request)
    try:
        op = Operation.from_json(req.operation.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "bad_operation", "message": str(e)}) from e

    try:
        attempt = rt.publisher.publish(
            req.document,
            operation=op,
            data_type=req.data_type,
            timestamp=req.timestamp,
            extra=req.extra_tags,
            allow_empty_locator=req.allow_empty_locator,
        )
        receipt = rt.publisher.commit(attempt) if req.commit else None
    except AnchorStoreError as e:
        log_event(log, "publish_failed", level=logging.WARNING, op_type=op.op_type, error=str(e))
        _raise_http(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "bad_request", "message": str(e)}) from e

    return {
        "ok": True,
        "attempt": attempt.to_json(),
        "receipt": receipt.to_json() if receipt is not None else None,
    }


@router.get("/documents")
def fetch_document(request: Request, uri: str = Query(...), sha256: Optional[str] = Query(default=None)) -> Json:
    rt = _runtime(request)
    try:
        res = rt.retriever.fetch(uri, expected_sha256=sha256)
    except AnchorStoreError as e:
        _raise_http(e)

    out: Json = {
        "ok": True,
        "uri": uri,
        "type": classify(uri).value,
        "gateway": res.gateway,
        "agreeing": list(res.agreeing),
        "sha256": res.sha256,
        "document": None,
    }
    try:
        out["document"] = json.loads(res.data.decode("utf-8"))
    except ValueError:
        # Not JSON (UnicodeDecodeError is a ValueError too); hand back the raw bytes.
        out["data_b64url"] = b64url_encode(res.data)
    return out


@router.get("/metrics")
def metrics_snapshot() -> Response:
    """Process counters as JSON. Disabled unless ANCHORSTORE_METRICS_ENABLED=1."""
    if not metrics.metrics_enabled():
        return Response(status_code=404, content="not_found\n", media_type="text/plain")
    return JSONResponse(content=metrics.snapshot())
