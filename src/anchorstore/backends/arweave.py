from __future__ import annotations

"""Arweave adapter (permanent store, ``ar://`` locators).

Writes go through a bundling upload service; reads go to a plain HTTP gateway;
tag queries go to a GraphQL endpoint. An upload that was sent but never
acknowledged is reported as WriteStatusUnknown because a second upload would
create a second, separately billed permanent copy.
"""

import hashlib
import json
import logging
import urllib.error
import urllib.parse
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from anchorstore import metrics
from anchorstore.backends.base import (
    RESPONSE_PHASE_ERRORS,
    WriteReceipt,
    body_excerpt,
    http_call,
    kind_for_status,
    send_phase_error,
)
from anchorstore.crypto.sig import b64url_encode, canonical_bytes, pubkey_from_privkey, sign_ed25519
from anchorstore.errors import (
    KIND_REJECTED,
    KIND_SIZE_LIMIT,
    KIND_UNAVAILABLE,
    BackendError,
    NotFound,
    TransientUnavailable,
    WriteStatusUnknown,
)
from anchorstore.structured_logging import log_event
from anchorstore.tagger import Tag, tags_to_json
from anchorstore.uri import UriType, make_locator
from anchorstore.util.content_ids import validate_arweave_id

Json = Dict[str, Any]

log = logging.getLogger(__name__)

_TX_TAGS_QUERY = "query($id: ID!) { transaction(id: $id) { id tags { name value } } }"
_FIND_QUERY = (
    "query($tags: [TagFilter!], $first: Int) "
    "{ transactions(tags: $tags, first: $first, sort: HEIGHT_DESC) { edges { node { id } } } }"
)

# Upload responses that do not say whether the data item was stored.
_UNCONFIRMED_STATUSES = frozenset({500, 504})


def upload_signing_message(data: bytes, tags: Sequence[Tag]) -> bytes:
    return hashlib.sha256(data).digest() + canonical_bytes(tags_to_json(tags))


class ArweaveBackend:
    name = "arweave"
    scheme = "ar://"
    permanent = True

    def __init__(
        self,
        *,
        upload_url: str,
        gateway_url: str = "https://arweave.net",
        graphql_url: str = "",
        privkey: str = "",
        timeout_s: float = 30.0,
        read_timeout_s: float = 10.0,
        max_bytes: int = 0,
    ) -> None:
        self.upload_url = str(upload_url or "").strip().rstrip("/")
        if not self.upload_url:
            raise ValueError("arweave upload_url is required")
        self.gateway_url = str(gateway_url or "").strip().rstrip("/")
        self.graphql_url = str(graphql_url or "").strip() or (f"{self.gateway_url}/graphql" if self.gateway_url else "")
        self.privkey = str(privkey or "").strip()
        self.timeout_s = float(timeout_s)
        self.read_timeout_s = float(read_timeout_s)
        self.max_bytes = int(max_bytes)

    def _headers(self, data: bytes, tags: Sequence[Tag]) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/octet-stream",
            "Accept": "application/json",
            "x-anchor-tags": b64url_encode(canonical_bytes(tags_to_json(tags))),
        }
        if self.privkey:
            headers["x-anchor-pubkey"] = pubkey_from_privkey(self.privkey)
            headers["x-anchor-signature"] = sign_ed25519(message=upload_signing_message(data, tags), privkey=self.privkey)
        return headers

    def write(self, data: bytes, tags: Sequence[Tag]) -> WriteReceipt:
        data_sha256 = hashlib.sha256(data).hexdigest()
        if self.max_bytes > 0 and len(data) > self.max_bytes:
            raise BackendError(self.name, "document_too_large", {"bytes": len(data), "max_bytes": self.max_bytes}, kind=KIND_SIZE_LIMIT)

        try:
            status, body = http_call(
                f"{self.upload_url}/v1/tx",
                method="POST",
                data=data,
                headers=self._headers(data, tags),
                timeout_s=self.timeout_s,
            )
        except urllib.error.URLError as e:
            raise send_phase_error(self.name, e, {"data_sha256": data_sha256}) from e
        except RESPONSE_PHASE_ERRORS as e:
            metrics.inc_counter("backend.arweave.write_unknown")
            log_event(log, "arweave_write_unconfirmed", level=logging.WARNING, data_sha256=data_sha256, error=str(e))
            raise WriteStatusUnknown(
                self.name,
                "confirmation_lost",
                {"data_sha256": data_sha256, "error": str(e)[:300]},
            ) from e

        if status in _UNCONFIRMED_STATUSES:
            # The body reached the bundler (or its proxy); the upload may have been accepted.
            metrics.inc_counter("backend.arweave.write_unknown")
            log_event(log, "arweave_write_unconfirmed", level=logging.WARNING, data_sha256=data_sha256, status=status)
            raise WriteStatusUnknown(
                self.name,
                f"http_{status}",
                {"data_sha256": data_sha256, "status": status, "body": body_excerpt(body)},
            )
        if status < 200 or status >= 300:
            raise BackendError(
                self.name,
                f"http_{status}",
                {"status": status, "body": body_excerpt(body)},
                kind=kind_for_status(status),
            )

        try:
            obj = json.loads(body.decode("utf-8")) if body else {}
        except (ValueError, UnicodeDecodeError):
            obj = {}
        tx_id = str(obj.get("id") or "") if isinstance(obj, dict) else ""
        v = validate_arweave_id(tx_id)
        if not v.ok:
            # Accepted by the service but without a usable id: the upload may exist.
            raise WriteStatusUnknown(
                self.name,
                v.reason,
                {"data_sha256": data_sha256, "status": status, "body": body_excerpt(body)},
            )

        return WriteReceipt(backend=self.name, id=v.value, locator=make_locator(UriType.ARWEAVE, v.value))

    def read(self, content_id: str) -> bytes:
        if not self.gateway_url:
            raise TransientUnavailable(self.name, "no_gateway_configured")
        tx = urllib.parse.quote(str(content_id).strip(), safe="")
        try:
            status, body = http_call(f"{self.gateway_url}/{tx}", method="GET", timeout_s=self.read_timeout_s)
        except (urllib.error.URLError,) + RESPONSE_PHASE_ERRORS as e:
            raise TransientUnavailable(self.name, str(getattr(e, "reason", e))[:300]) from e
        if status == 404:
            raise NotFound(self.name, "content_not_found", {"id": content_id})
        if status < 200 or status >= 300:
            raise TransientUnavailable(self.name, f"http_{status}", {"id": content_id})
        return body

    # ----------------------------
    # Tag queries
    # ----------------------------

    def _graphql(self, query: str, variables: Json) -> Json:
        if not self.graphql_url:
            raise BackendError(self.name, "no_graphql_endpoint", kind=KIND_UNAVAILABLE)
        body = json.dumps({"query": query, "variables": variables}, separators=(",", ":")).encode("utf-8")
        try:
            status, raw = http_call(
                self.graphql_url,
                method="POST",
                data=body,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout_s=self.read_timeout_s,
            )
        except urllib.error.URLError as e:
            raise send_phase_error(self.name, e) from e
        except RESPONSE_PHASE_ERRORS as e:
            raise BackendError(self.name, str(e)[:300], kind=KIND_UNAVAILABLE) from e

        if status < 200 or status >= 300:
            raise BackendError(self.name, f"graphql_http_{status}", {"body": body_excerpt(raw)}, kind=kind_for_status(status))
        try:
            obj = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise BackendError(self.name, "graphql_bad_json", {"body": body_excerpt(raw)}, kind=KIND_REJECTED) from e
        if not isinstance(obj, dict):
            raise BackendError(self.name, "graphql_bad_json", kind=KIND_REJECTED)
        if obj.get("errors"):
            raise BackendError(self.name, "graphql_errors", {"errors": str(obj["errors"])[:300]}, kind=KIND_REJECTED)
        data = obj.get("data")
        return data if isinstance(data, dict) else {}

    def read_tags(self, content_id: str) -> Tuple[Tag, ...]:
        """Tags recorded with an upload. NotFound until the gateway has indexed it."""
        data = self._graphql(_TX_TAGS_QUERY, {"id": str(content_id)})
        tx = data.get("transaction")
        if not isinstance(tx, dict):
            raise NotFound(self.name, "transaction_not_indexed", {"id": content_id})
        out: List[Tag] = []
        for t in tx.get("tags") or []:
            if isinstance(t, dict) and "name" in t and "value" in t:
                out.append(Tag(str(t["name"]), str(t["value"])))
        return tuple(out)

    def find_ids(self, tags: Mapping[str, str], *, first: int = 10) -> List[str]:
        """Ids of uploads carrying every given tag (newest first)."""
        filters = [{"name": str(k), "values": [str(v)]} for k, v in sorted(tags.items())]
        data = self._graphql(_FIND_QUERY, {"tags": filters, "first": int(first)})
        conn = data.get("transactions")
        edges = conn.get("edges") if isinstance(conn, dict) else None
        out: List[str] = []
        for edge in edges or []:
            node = edge.get("node") if isinstance(edge, dict) else None
            tx_id = str(node.get("id") or "") if isinstance(node, dict) else ""
            if tx_id:
                out.append(tx_id)
        return out
