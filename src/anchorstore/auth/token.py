from __future__ import annotations

"""Delegated write authorization.

A resource owner issues an AuthorizationToken that lets one delegate perform
operations against that resource while the per-(resource, delegate) index stays
at or below `index_bound` and the current time is before `expiry`.

The token is a signed, versioned capability value. It is passed explicitly
(Operation.auth) and verified downstream by the ledger, never by the issuer.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from anchorstore.crypto.sig import (
    b64url_decode,
    b64url_encode,
    canonical_bytes,
    sign_ed25519,
    verify_ed25519_signature,
)
from anchorstore.errors import NotResourceOwner
from anchorstore.structured_logging import log_event

Json = Dict[str, Any]

TOKEN_VERSION = 1
_ENCODED_PREFIX = "v1."

log = logging.getLogger(__name__)


def _norm(account: Any) -> str:
    return str(account or "").strip().lower()


@dataclass(frozen=True)
class AuthorizationToken:
    resource_id: str
    delegate: str
    index_bound: int
    expiry: int
    chain_id: int
    registry: str
    signer: str
    sig: str = ""
    version: int = TOKEN_VERSION

    def signing_message(self) -> bytes:
        body = asdict(self)
        body.pop("sig", None)
        return canonical_bytes(body)

    def to_json(self) -> Json:
        return asdict(self)

    @staticmethod
    def from_json(j: Any) -> "AuthorizationToken":
        if isinstance(j, AuthorizationToken):
            return j
        if not isinstance(j, dict):
            raise ValueError("token must be an object")
        try:
            return AuthorizationToken(
                resource_id=str(j["resource_id"]),
                delegate=str(j["delegate"]),
                index_bound=int(j["index_bound"]),
                expiry=int(j["expiry"]),
                chain_id=int(j["chain_id"]),
                registry=str(j.get("registry", "")),
                signer=str(j["signer"]),
                sig=str(j.get("sig", "") or ""),
                version=int(j.get("version", TOKEN_VERSION)),
            )
        except KeyError as e:
            raise ValueError(f"token missing field: {e.args[0]}") from e

    def encode(self) -> str:
        """Opaque transport form: "v1." + base64url(canonical JSON)."""
        return _ENCODED_PREFIX + b64url_encode(canonical_bytes(self.to_json()))

    @staticmethod
    def decode(raw: str) -> "AuthorizationToken":
        s = (raw or "").strip()
        if not s.startswith(_ENCODED_PREFIX):
            raise ValueError("unsupported token encoding")
        try:
            obj = json.loads(b64url_decode(s[len(_ENCODED_PREFIX):]).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise ValueError("malformed token") from e
        return AuthorizationToken.from_json(obj)


@dataclass(frozen=True)
class TokenVerdict:
    ok: bool
    code: str
    reason: str
    details: Optional[Dict[str, Any]] = None

    def __iter__(self) -> Iterator[Any]:
        yield self.ok
        yield self

    @staticmethod
    def admit() -> "TokenVerdict":
        return TokenVerdict(True, "ok", "authorized", None)

    @staticmethod
    def reject(code: str, reason: str, details: Optional[Dict[str, Any]] = None) -> "TokenVerdict":
        return TokenVerdict(False, code, reason, details)


def verify_token(
    token: AuthorizationToken,
    *,
    resource_id: str,
    delegate: str,
    current_index: int,
    now: float,
    owner: str,
    owner_pubkeys: Iterable[str],
    chain_id: Optional[int] = None,
    registry: Optional[str] = None,
) -> TokenVerdict:
    """Check a token against the ledger-side context of one operation.

    Pure: no I/O, no clock. `current_index` is the index the operation would
    consume (last consumed index + 1).
    """
    if int(token.version) != TOKEN_VERSION:
        return TokenVerdict.reject("auth_version", "unsupported_token_version", {"version": token.version})
    if str(token.resource_id) != str(resource_id):
        return TokenVerdict.reject("auth_resource_mismatch", "token_for_other_resource", {"token": token.resource_id})
    if _norm(token.delegate) != _norm(delegate):
        return TokenVerdict.reject("auth_delegate_mismatch", "delegate_mismatch", {"delegate": token.delegate})
    if chain_id is not None and int(token.chain_id) != int(chain_id):
        return TokenVerdict.reject("auth_chain_mismatch", "chain_mismatch", {"chain_id": token.chain_id})
    if registry is not None and _norm(token.registry) != _norm(registry):
        return TokenVerdict.reject("auth_registry_mismatch", "registry_mismatch", {"registry": token.registry})
    if _norm(token.signer) != _norm(owner):
        return TokenVerdict.reject("auth_signer_not_owner", "signer_is_not_owner", {"signer": token.signer})
    if not float(now) < float(token.expiry):
        return TokenVerdict.reject("auth_expired", "token_expired", {"expiry": token.expiry})
    if int(current_index) > int(token.index_bound):
        return TokenVerdict.reject(
            "auth_index_exceeded",
            "index_above_bound",
            {"index": int(current_index), "index_bound": int(token.index_bound)},
        )

    msg = token.signing_message()
    for pk in owner_pubkeys:
        if verify_ed25519_signature(message=msg, sig=token.sig, pubkey=pk):
            return TokenVerdict.admit()
    return TokenVerdict.reject("auth_bad_signature", "invalid_signature", None)


class TokenIssuer:
    """Issues tokens on behalf of the holder of resource-owner credentials."""

    def __init__(
        self,
        ledger: Any,
        *,
        account: str,
        privkey: str,
        chain_id: int,
        registry: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.account = str(account)
        self._privkey = privkey
        self.chain_id = int(chain_id)
        self.registry = str(registry)
        self._clock = clock

    def issue(self, resource_id: str, delegate: str, index_bound: int, expiry_hours: float) -> AuthorizationToken:
        if int(index_bound) < 1:
            raise ValueError("index_bound must be >= 1")
        if float(expiry_hours) <= 0:
            raise ValueError("expiry_hours must be positive")
        if not str(delegate or "").strip():
            raise ValueError("delegate is required")

        owner = self.ledger.owner_of(resource_id)
        if owner is None or _norm(owner) != _norm(self.account):
            log_event(log, "auth_issue_denied", resource_id=resource_id, account=self.account)
            raise NotResourceOwner(
                "not_resource_owner",
                "issuer_does_not_own_resource",
                {"resource_id": resource_id, "account": self.account},
            )

        unsigned = AuthorizationToken(
            resource_id=str(resource_id),
            delegate=str(delegate),
            index_bound=int(index_bound),
            expiry=int(self._clock()) + int(float(expiry_hours) * 3600),
            chain_id=self.chain_id,
            registry=self.registry,
            signer=self.account,
        )
        token = replace(unsigned, sig=sign_ed25519(message=unsigned.signing_message(), privkey=self._privkey))
        log_event(
            log,
            "auth_issued",
            resource_id=token.resource_id,
            delegate=token.delegate,
            index_bound=token.index_bound,
            expiry=token.expiry,
        )
        return token
