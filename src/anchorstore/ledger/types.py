from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, Optional, Protocol

from anchorstore.auth.token import AuthorizationToken
from anchorstore.crypto.sig import canonical_json

Json = Dict[str, Any]

OP_REGISTER_RESOURCE = "REGISTER_RESOURCE"
OP_SET_RESOURCE_URI = "SET_RESOURCE_URI"
OP_GIVE_FEEDBACK = "GIVE_FEEDBACK"

SUPPORTED_OPS = frozenset({OP_REGISTER_RESOURCE, OP_SET_RESOURCE_URI, OP_GIVE_FEEDBACK})

# Payload slots filled in after storage; they never take part in the fingerprint.
LOCATOR_FIELDS = frozenset({"uri", "content_hash"})


@dataclass(frozen=True)
class Operation:
    """An operation destined for the authoritative ledger.

    The delegated capability (if any) travels explicitly in `auth`.
    """

    op_type: str
    sender: str
    payload: Dict[str, Any] = field(default_factory=dict)
    auth: Optional[AuthorizationToken] = None

    @staticmethod
    def from_json(j: Any) -> "Operation":
        if isinstance(j, Operation):
            return j
        if not isinstance(j, dict):
            j = dict(j)  # type: ignore[arg-type]
        auth_raw = j.get("auth")
        auth: Optional[AuthorizationToken] = None
        if isinstance(auth_raw, str) and auth_raw.strip():
            auth = AuthorizationToken.decode(auth_raw)
        elif isinstance(auth_raw, dict):
            auth = AuthorizationToken.from_json(auth_raw)
        return Operation(
            op_type=str(j.get("op_type", "")).strip().upper(),
            sender=str(j.get("sender", "")),
            payload=dict(j.get("payload", {}) or {}),
            auth=auth,
        )

    def to_json(self) -> Json:
        return {
            "op_type": self.op_type,
            "sender": self.sender,
            "payload": dict(self.payload),
            "auth": self.auth.to_json() if self.auth is not None else None,
        }

    def with_locator(self, uri: str, content_hash: str) -> "Operation":
        payload = dict(self.payload)
        payload["uri"] = uri
        payload["content_hash"] = content_hash
        return replace(self, payload=payload)


def operation_fingerprint(op: Operation) -> str:
    """Stable digest of the ledger-side parameters of an operation."""
    j = op.to_json()
    j["payload"] = {k: v for k, v in j["payload"].items() if k not in LOCATOR_FIELDS}
    h = hashlib.sha256(canonical_json(j).encode("utf-8")).hexdigest()
    return f"op:{h}"


@dataclass(frozen=True)
class LedgerVerdict:
    ok: bool
    code: str
    reason: str
    details: Optional[Dict[str, Any]] = None

    def __iter__(self) -> Iterator[Any]:
        """Allow `ok, verdict = ledger.simulate(...)` unpacking."""
        yield self.ok
        yield self

    @staticmethod
    def accept() -> "LedgerVerdict":
        return LedgerVerdict(True, "ok", "accepted", None)

    @staticmethod
    def revert(code: str, reason: str, details: Optional[Dict[str, Any]] = None) -> "LedgerVerdict":
        return LedgerVerdict(False, code, reason, details)

    def to_json(self) -> Json:
        return {"ok": self.ok, "code": self.code, "reason": self.reason, "details": self.details or {}}


@dataclass(frozen=True)
class TxReceipt:
    tx_id: str
    op_type: str
    height: int
    result: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Json:
        return {"tx_id": self.tx_id, "op_type": self.op_type, "height": self.height, "result": dict(self.result)}


class LedgerClient(Protocol):
    """Boundary to the authoritative ledger.

    simulate() must not mutate ledger state. commit() raises LedgerRevert.
    """

    def simulate(self, op: Operation) -> LedgerVerdict: ...

    def commit(self, op: Operation) -> TxReceipt: ...

    def owner_of(self, resource_id: str) -> Optional[str]: ...
