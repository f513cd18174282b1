# src/anchorstore/util/content_ids.py
from __future__ import annotations

"""Content id validation helpers.

Validation stays lightweight:
  - CIDv0 (base58btc) starts with "Qm" and is length 46.
  - CIDv1 (base32 lowercase) starts with "b" and uses a-z2-7.
  - Arweave transaction / data item ids are 32 bytes in base64url: 43 chars.

This is NOT a full multiformats parser. It fails closed on obviously bad input
coming back from a backend before that input becomes a persisted locator.
"""

import re
from dataclasses import dataclass


_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")  # base32 lowercase (bafy..., bagy...)
_ARWEAVE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


@dataclass(frozen=True)
class IdValidation:
    ok: bool
    reason: str
    value: str


def validate_ipfs_cid(cid: str, *, max_len: int = 128) -> IdValidation:
    c = (cid or "").strip()
    if not c:
        return IdValidation(False, "missing_cid", "")
    if len(c) > int(max_len):
        return IdValidation(False, "cid_too_long", c)

    if _CIDV0_RE.match(c):
        return IdValidation(True, "ok", c)
    if _CIDV1_BASE32_RE.match(c):
        return IdValidation(True, "ok", c)
    return IdValidation(False, "invalid_cid_format", c)


def validate_arweave_id(tx_id: str) -> IdValidation:
    t = (tx_id or "").strip()
    if not t:
        return IdValidation(False, "missing_id", "")
    if _ARWEAVE_ID_RE.match(t):
        return IdValidation(True, "ok", t)
    return IdValidation(False, "invalid_arweave_id", t)
