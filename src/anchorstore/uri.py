from __future__ import annotations

"""Locator classification.

Locators are persisted on the ledger and read by indexers, so the format is
frozen: ``ar://<id>`` | ``ipfs://<cid>`` | absent.

classify() applies one ordered chain of prefix checks. The first match wins and
later matchers are never consulted, so a compound string such as
``ar://ipfs://x`` is exactly one type.
"""

from enum import Enum
from typing import Optional


class UriType(str, Enum):
    ARWEAVE = "arweave"
    IPFS = "ipfs"
    HTTPS = "https"
    HTTP = "http"
    UNKNOWN = "unknown"


ARWEAVE_PREFIX = "ar://"
IPFS_PREFIX = "ipfs://"

# Order is part of the contract.
_MATCH_ORDER = (
    (ARWEAVE_PREFIX, UriType.ARWEAVE),
    (IPFS_PREFIX, UriType.IPFS),
    ("https://", UriType.HTTPS),
    ("http://", UriType.HTTP),
)

_STORE_PREFIXES = {UriType.ARWEAVE: ARWEAVE_PREFIX, UriType.IPFS: IPFS_PREFIX}


def classify(locator: Optional[str]) -> UriType:
    s = (locator or "").strip()
    if not s:
        return UriType.UNKNOWN
    for prefix, uri_type in _MATCH_ORDER:
        if s.startswith(prefix):
            return uri_type
    return UriType.UNKNOWN


def make_locator(uri_type: UriType, content_id: str) -> str:
    prefix = _STORE_PREFIXES.get(UriType(uri_type))
    if prefix is None:
        raise ValueError(f"no locator scheme for {uri_type}")
    cid = (content_id or "").strip()
    if not cid:
        raise ValueError("content_id is required")
    return f"{prefix}{cid}"


def locator_id(locator: Optional[str]) -> str:
    """Return the backend-native id of a store locator ("" if not a store locator)."""
    s = (locator or "").strip()
    uri_type = classify(s)
    prefix = _STORE_PREFIXES.get(uri_type)
    if prefix is None:
        return ""
    return s[len(prefix):]
