from __future__ import annotations

"""In-process reference ledger.

Implements the LedgerClient protocol over a plain dict state so the publish
flow can run without a chain. The revert rules are the ones the pre-validation
gate must reproduce; simulate() evaluates them without touching state.

State shape:
  accounts[account_id].keys = [{"pubkey": "<hex>", "active": true}, ...]
  resources[resource_id] = {"owner", "active", "uri", "content_hash"}
  feedback[resource_id][client] = [{"index", "score", "uri", ...}, ...]
"""

import copy
import hashlib
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from anchorstore.auth.token import verify_token
from anchorstore.crypto.sig import canonical_json
from anchorstore.errors import LedgerRevert
from anchorstore.ledger.types import (
    OP_GIVE_FEEDBACK,
    OP_REGISTER_RESOURCE,
    OP_SET_RESOURCE_URI,
    SUPPORTED_OPS,
    LedgerVerdict,
    Operation,
    TxReceipt,
)

Json = Dict[str, Any]


def _as_dict(x: Any) -> Json:
    return x if isinstance(x, dict) else {}


def _norm(account: Any) -> str:
    return str(account or "").strip().lower()


def _score(v: Any) -> Optional[int]:
    if isinstance(v, bool):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def extract_active_account_pubkeys(state: Json, account_id: str) -> List[str]:
    acct = _as_dict(_as_dict(state.get("accounts")).get(_norm(account_id)))
    keys = acct.get("keys")
    if not isinstance(keys, list):
        return []

    out: List[str] = []
    seen = set()
    for rec in keys:
        if not isinstance(rec, dict):
            continue
        if not rec.get("active", True):
            continue
        pk = rec.get("pubkey")
        if isinstance(pk, str):
            pk = pk.strip()
            if pk and pk not in seen:
                seen.add(pk)
                out.append(pk)
    return out


class MemoryLedger:
    def __init__(
        self,
        *,
        chain_id: int,
        registry: str = "",
        require_feedback_auth: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain_id = int(chain_id)
        self.registry = str(registry)
        self.require_feedback_auth = bool(require_feedback_auth)
        self._clock = clock
        self._lock = threading.Lock()
        self._state: Json = {"height": 0, "accounts": {}, "resources": {}, "feedback": {}, "next_resource": 1}
        self.simulate_calls = 0
        self.commit_calls = 0

    # ----------------------------
    # Setup helpers
    # ----------------------------

    def add_account_key(self, account_id: str, pubkey: str) -> None:
        with self._lock:
            accounts = self._state["accounts"]
            acct = accounts.setdefault(_norm(account_id), {"keys": []})
            acct["keys"].append({"pubkey": str(pubkey), "active": True})

    def add_resource(self, resource_id: str, *, owner: str, active: bool = True, uri: str = "") -> None:
        with self._lock:
            self._state["resources"][str(resource_id)] = {
                "owner": _norm(owner),
                "active": bool(active),
                "uri": uri,
                "content_hash": "",
            }

    def read_state(self) -> Json:
        with self._lock:
            return copy.deepcopy(self._state)

    def feedback_index(self, resource_id: str, client: str) -> int:
        with self._lock:
            return self._last_index(self._state, resource_id, client)

    # ----------------------------
    # LedgerClient
    # ----------------------------

    def owner_of(self, resource_id: str) -> Optional[str]:
        with self._lock:
            rec = _as_dict(self._state["resources"].get(str(resource_id)))
            owner = rec.get("owner")
            return str(owner) if owner else None

    def simulate(self, op: Operation) -> LedgerVerdict:
        with self._lock:
            self.simulate_calls += 1
            return self._check(self._state, op, self._clock())

    def commit(self, op: Operation) -> TxReceipt:
        with self._lock:
            self.commit_calls += 1
            verdict = self._check(self._state, op, self._clock())
            if not verdict.ok:
                raise LedgerRevert(verdict.code, verdict.reason, dict(verdict.details or {}))
            result = self._apply(self._state, op)
            self._state["height"] = int(self._state["height"]) + 1
            height = int(self._state["height"])
        tx_id = hashlib.sha256(f"{height}:{canonical_json(op.to_json())}".encode("utf-8")).hexdigest()
        return TxReceipt(tx_id=f"0x{tx_id}", op_type=op.op_type, height=height, result=result)

    # ----------------------------
    # Rules
    # ----------------------------

    @staticmethod
    def _last_index(state: Json, resource_id: str, client: str) -> int:
        by_client = _as_dict(_as_dict(state.get("feedback")).get(str(resource_id)))
        records = by_client.get(_norm(client))
        return len(records) if isinstance(records, list) else 0

    def _check(self, state: Json, op: Operation, now: float) -> LedgerVerdict:
        if op.op_type not in SUPPORTED_OPS:
            return LedgerVerdict.revert("unsupported_op", "unsupported_op", {"op_type": op.op_type})
        if not _norm(op.sender):
            return LedgerVerdict.revert("invalid_sender", "missing_sender", None)

        payload = _as_dict(op.payload)
        resources = _as_dict(state.get("resources"))
        resource_id = str(payload.get("resource_id") or "").strip()

        if op.op_type == OP_REGISTER_RESOURCE:
            if resource_id and resource_id in resources:
                return LedgerVerdict.revert("resource_exists", "resource_already_registered", {"resource_id": resource_id})
            return LedgerVerdict.accept()

        if not resource_id:
            return LedgerVerdict.revert("invalid_payload", "missing_resource_id", None)
        rec = resources.get(resource_id)
        if not isinstance(rec, dict):
            return LedgerVerdict.revert("resource_not_found", "resource_not_found", {"resource_id": resource_id})
        owner = str(rec.get("owner") or "")

        if op.op_type == OP_SET_RESOURCE_URI:
            if _norm(op.sender) != owner:
                return LedgerVerdict.revert("not_owner", "sender_is_not_owner", {"resource_id": resource_id})
            return LedgerVerdict.accept()

        # OP_GIVE_FEEDBACK
        if not bool(rec.get("active", True)):
            return LedgerVerdict.revert("resource_inactive", "resource_inactive", {"resource_id": resource_id})
        if _norm(op.sender) == owner:
            return LedgerVerdict.revert("self_feedback", "self_feedback_not_allowed", {"resource_id": resource_id})
        score = _score(payload.get("score"))
        if score is None or not 0 <= score <= 100:
            return LedgerVerdict.revert("score_out_of_range", "score_must_be_0_to_100", {"score": payload.get("score")})

        if op.auth is None:
            if self.require_feedback_auth:
                return LedgerVerdict.revert("auth_required", "feedback_auth_required", {"resource_id": resource_id})
            return LedgerVerdict.accept()

        verdict = verify_token(
            op.auth,
            resource_id=resource_id,
            delegate=op.sender,
            current_index=self._last_index(state, resource_id, op.sender) + 1,
            now=now,
            owner=owner,
            owner_pubkeys=extract_active_account_pubkeys(state, owner),
            chain_id=self.chain_id,
            registry=self.registry,
        )
        if not verdict.ok:
            return LedgerVerdict.revert(verdict.code, verdict.reason, verdict.details)
        return LedgerVerdict.accept()

    def _apply(self, state: Json, op: Operation) -> Json:
        payload = _as_dict(op.payload)
        uri = str(payload.get("uri") or "")
        content_hash = str(payload.get("content_hash") or "")
        resources = state["resources"]

        if op.op_type == OP_REGISTER_RESOURCE:
            resource_id = str(payload.get("resource_id") or "").strip()
            if not resource_id:
                n = int(state.get("next_resource", 1))
                while f"{self.chain_id}:{n}" in resources:
                    n += 1
                resource_id = f"{self.chain_id}:{n}"
                state["next_resource"] = n + 1
            resources[resource_id] = {
                "owner": _norm(op.sender),
                "active": bool(payload.get("active", True)),
                "uri": uri,
                "content_hash": content_hash,
            }
            return {"resource_id": resource_id, "uri": uri}

        resource_id = str(payload.get("resource_id")).strip()
        if op.op_type == OP_SET_RESOURCE_URI:
            resources[resource_id]["uri"] = uri
            resources[resource_id]["content_hash"] = content_hash
            return {"resource_id": resource_id, "uri": uri}

        client = _norm(op.sender)
        by_resource = state["feedback"].setdefault(resource_id, {})
        records = by_resource.setdefault(client, [])
        index = len(records) + 1
        records.append(
            {
                "index": index,
                "score": _score(payload.get("score")),
                "tag1": str(payload.get("tag1") or ""),
                "tag2": str(payload.get("tag2") or ""),
                "uri": uri,
                "content_hash": content_hash,
            }
        )
        return {"feedback_id": f"{resource_id}:{client}:{index}", "index": index, "uri": uri}
