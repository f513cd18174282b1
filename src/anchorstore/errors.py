from __future__ import annotations

"""Error taxonomy for anchorstore.

Every failure carries a stable `code`, a short `reason` and a JSON-able
`details` dict so callers (and the HTTP layer) can branch on codes instead of
parsing messages.

Propagation rules:
  - ValidationRejected is fatal to a publish attempt and never retried.
  - BackendError is retried by the resolver (retryable kinds only), then the
    resolver falls through to the next backend.
  - WriteStatusUnknown is never retried and never falls through.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

Json = Dict[str, Any]


# BackendError kinds
KIND_TIMEOUT = "timeout"
KIND_NETWORK = "network"
KIND_UNAVAILABLE = "unavailable"
KIND_INDEXING_PENDING = "indexing_pending"
KIND_INSUFFICIENT_BALANCE = "insufficient_balance"
KIND_SIZE_LIMIT = "size_limit"
KIND_AUTH = "auth"
KIND_REJECTED = "rejected"

RETRYABLE_KINDS = frozenset({KIND_TIMEOUT, KIND_NETWORK, KIND_UNAVAILABLE, KIND_INDEXING_PENDING})


@dataclass(eq=False)
class AnchorStoreError(Exception):
    code: str
    reason: str = ""
    details: Json = field(default_factory=dict)

    def __str__(self) -> str:
        if not self.details:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"

    def to_json(self) -> Json:
        return {"code": self.code, "reason": self.reason, "details": dict(self.details)}


class ConfigError(AnchorStoreError):
    """Raised for invalid runtime configuration."""


class ValidationRejected(AnchorStoreError):
    """The authoritative ledger (or its simulation) would reject the operation."""


@dataclass(eq=False)
class BackendError(AnchorStoreError):
    """A storage backend refused or failed a write/read.

    `code` is the backend name; `kind` is one of the KIND_* constants.
    """

    kind: str = KIND_UNAVAILABLE

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __str__(self) -> str:
        return f"{self.code}:{self.kind}:{self.reason}"

    def to_json(self) -> Json:
        out = super().to_json()
        out["kind"] = self.kind
        return out


class WriteStatusUnknown(AnchorStoreError):
    """The write request reached the backend but its confirmation never came back.

    The data may or may not be stored. Callers should re-check (for example by
    tag search on the permanent store) before writing again.
    """


@dataclass(eq=False)
class AllBackendsExhausted(AnchorStoreError):
    failures: List[BackendError] = field(default_factory=list)

    def to_json(self) -> Json:
        out = super().to_json()
        out["failures"] = [f.to_json() for f in self.failures]
        return out


class MissingRequiredTags(AnchorStoreError):
    """A tag set without the required subset reached the write path (defect)."""


class NotFound(AnchorStoreError):
    pass


class TransientUnavailable(AnchorStoreError):
    pass


@dataclass(eq=False)
class AllGatewaysFailed(AnchorStoreError):
    errors: Dict[str, str] = field(default_factory=dict)

    def to_json(self) -> Json:
        out = super().to_json()
        out["errors"] = dict(self.errors)
        return out


class IntegrityMismatch(AnchorStoreError):
    """Two gateways (or a gateway and the expected hash) disagree on content."""


class NotResourceOwner(AnchorStoreError):
    pass


class LedgerRevert(AnchorStoreError):
    """The ledger rejected a commit."""
