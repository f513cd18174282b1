from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional, Tuple

from anchorstore.errors import LedgerRevert
from anchorstore.ledger.types import LedgerVerdict, Operation, TxReceipt

Json = Dict[str, Any]


class HttpLedgerClient:
    """LedgerClient over a JSON HTTP node API.

    Endpoints:
      POST {base}/v1/ops/simulate  body: operation -> {"ok", "code", "reason", "details"}
      POST {base}/v1/ops/commit    body: operation -> {"ok", "receipt" | "code"...}
      GET  {base}/v1/resources/{id}                -> {"owner": ...}
    """

    def __init__(self, base_url: str, *, timeout_s: float = 10.0) -> None:
        base = str(base_url or "").strip().rstrip("/")
        if not base:
            raise ValueError("ledger base_url is required")
        self.base_url = base
        self.timeout_s = float(timeout_s)

    def _call(self, method: str, path: str, body: Optional[Json] = None) -> Tuple[int, Json]:
        url = f"{self.base_url}{path}"
        data = None if body is None else json.dumps(body, separators=(",", ":")).encode("utf-8")
        req = urllib.request.Request(url=url, method=method, data=data)
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                raw = resp.read()
        except urllib.error.HTTPError as e:
            status = int(getattr(e, "code", 0) or 0)
            raw = e.read() or b""
        except http.client.HTTPException as e:
            # Malformed or truncated response; not an OSError, so surface it as one.
            raise ConnectionError(f"ledger_bad_response:{type(e).__name__}:{e}") from e

        try:
            obj = json.loads(raw.decode("utf-8")) if raw else {}
        except (ValueError, UnicodeDecodeError):
            obj = {}
        return status, obj if isinstance(obj, dict) else {}

    def simulate(self, op: Operation) -> LedgerVerdict:
        status, obj = self._call("POST", "/v1/ops/simulate", op.to_json())
        if status >= 500 or not obj:
            raise ConnectionError(f"ledger_simulate_failed:http_{status}")
        if bool(obj.get("ok")):
            return LedgerVerdict.accept()
        return LedgerVerdict.revert(
            str(obj.get("code") or "revert"),
            str(obj.get("reason") or "reverted"),
            obj.get("details") if isinstance(obj.get("details"), dict) else None,
        )

    def commit(self, op: Operation) -> TxReceipt:
        status, obj = self._call("POST", "/v1/ops/commit", op.to_json())
        if bool(obj.get("ok")) and isinstance(obj.get("receipt"), dict):
            r = obj["receipt"]
            return TxReceipt(
                tx_id=str(r.get("tx_id") or ""),
                op_type=str(r.get("op_type") or op.op_type),
                height=int(r.get("height") or 0),
                result=dict(r.get("result") or {}),
            )
        raise LedgerRevert(
            str(obj.get("code") or f"http_{status}"),
            str(obj.get("reason") or "commit_failed"),
            obj.get("details") if isinstance(obj.get("details"), dict) else {},
        )

    def owner_of(self, resource_id: str) -> Optional[str]:
        rid = urllib.parse.quote(str(resource_id), safe="")
        status, obj = self._call("GET", f"/v1/resources/{rid}")
        if status == 404:
            return None
        if status >= 400:
            raise ConnectionError(f"ledger_lookup_failed:http_{status}")
        owner = obj.get("owner")
        return str(owner) if owner else None
