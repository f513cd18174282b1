from __future__ import annotations

from dataclasses import replace

import pytest

from anchorstore.auth.token import AuthorizationToken, TokenIssuer, verify_token
from anchorstore.errors import NotResourceOwner
from anchorstore.ledger.memory import MemoryLedger
from anchorstore.testing.sigtools import deterministic_ed25519_keypair

NOW = 1_700_000_000.0
CHAIN_ID = 11155111
REGISTRY = "0xregistry"
OWNER = "0xowner"
CLIENT = "0xclient"
RID = f"{CHAIN_ID}:7"


def _mk_issuer(account: str = OWNER, label: str = "owner"):
    pub, priv = deterministic_ed25519_keypair(label=label)
    ledger = MemoryLedger(chain_id=CHAIN_ID, registry=REGISTRY, clock=lambda: NOW)
    ledger.add_account_key(OWNER, pub)
    ledger.add_resource(RID, owner=OWNER)
    issuer = TokenIssuer(ledger, account=account, privkey=priv, chain_id=CHAIN_ID, registry=REGISTRY, clock=lambda: NOW)
    return issuer, pub


def _verify(token: AuthorizationToken, pub: str, **kw):
    args = dict(
        resource_id=RID,
        delegate=CLIENT,
        current_index=1,
        now=NOW,
        owner=OWNER,
        owner_pubkeys=[pub],
        chain_id=CHAIN_ID,
        registry=REGISTRY,
    )
    args.update(kw)
    return verify_token(token, **args)


def test_issued_token_binds_fields_and_verifies() -> None:
    issuer, pub = _mk_issuer()
    tok = issuer.issue(RID, CLIENT, 3, 2)

    assert tok.resource_id == RID
    assert tok.delegate == CLIENT
    assert tok.index_bound == 3
    assert tok.expiry == int(NOW) + 2 * 3600
    assert tok.signer == OWNER
    assert tok.sig

    ok, v = _verify(tok, pub)
    assert ok is True
    assert v.code == "ok"


def test_index_bound_is_inclusive() -> None:
    issuer, pub = _mk_issuer()
    tok = issuer.issue(RID, CLIENT, 3, 1)

    assert _verify(tok, pub, current_index=3).ok is True
    v = _verify(tok, pub, current_index=4)
    assert v.ok is False
    assert v.code == "auth_index_exceeded"


def test_expiry_is_exclusive() -> None:
    issuer, pub = _mk_issuer()
    tok = issuer.issue(RID, CLIENT, 3, 1)

    assert _verify(tok, pub, now=tok.expiry - 1).ok is True
    v = _verify(tok, pub, now=tok.expiry)
    assert v.ok is False
    assert v.code == "auth_expired"


def test_delegate_must_match() -> None:
    issuer, pub = _mk_issuer()
    tok = issuer.issue(RID, CLIENT, 3, 1)

    # Account ids compare case-insensitively.
    assert _verify(tok, pub, delegate=CLIENT.upper()).ok is True
    v = _verify(tok, pub, delegate="0xsomeoneelse")
    assert v.ok is False
    assert v.code == "auth_delegate_mismatch"


@pytest.mark.parametrize(
    "override,code",
    [
        ({"resource_id": f"{CHAIN_ID}:8"}, "auth_resource_mismatch"),
        ({"chain_id": 1}, "auth_chain_mismatch"),
        ({"registry": "0xother"}, "auth_registry_mismatch"),
        ({"owner": "0xnewowner"}, "auth_signer_not_owner"),
    ],
)
def test_binding_mismatches_reject(override, code) -> None:
    issuer, pub = _mk_issuer()
    tok = issuer.issue(RID, CLIENT, 3, 1)

    v = _verify(tok, pub, **override)
    assert v.ok is False
    assert v.code == code


def test_tampered_fields_fail_signature() -> None:
    issuer, pub = _mk_issuer()
    tok = issuer.issue(RID, CLIENT, 1, 1)

    widened = replace(tok, index_bound=100)
    v = _verify(widened, pub, current_index=5)
    assert v.ok is False
    assert v.code == "auth_bad_signature"

    extended = replace(tok, expiry=tok.expiry + 10_000)
    assert _verify(extended, pub).code == "auth_bad_signature"


def test_signature_checked_against_owner_keys_only() -> None:
    issuer, _pub = _mk_issuer()
    tok = issuer.issue(RID, CLIENT, 1, 1)
    other_pub, _ = deterministic_ed25519_keypair(label="mallory")

    v = _verify(tok, other_pub)
    assert v.ok is False
    assert v.code == "auth_bad_signature"
    assert _verify(tok, other_pub, owner_pubkeys=[]).code == "auth_bad_signature"


def test_non_owner_cannot_issue() -> None:
    issuer, _ = _mk_issuer(account="0xmallory", label="mallory")
    with pytest.raises(NotResourceOwner) as ei:
        issuer.issue(RID, CLIENT, 1, 1)
    assert ei.value.code == "not_resource_owner"


def test_unknown_resource_cannot_be_delegated() -> None:
    issuer, _ = _mk_issuer()
    with pytest.raises(NotResourceOwner):
        issuer.issue(f"{CHAIN_ID}:999", CLIENT, 1, 1)


def test_issue_argument_checks() -> None:
    issuer, _ = _mk_issuer()
    with pytest.raises(ValueError):
        issuer.issue(RID, CLIENT, 0, 1)
    with pytest.raises(ValueError):
        issuer.issue(RID, CLIENT, 1, 0)
    with pytest.raises(ValueError):
        issuer.issue(RID, " ", 1, 1)


def test_encoded_form_is_opaque_and_lossless() -> None:
    issuer, pub = _mk_issuer()
    tok = issuer.issue(RID, CLIENT, 2, 1)

    raw = tok.encode()
    assert raw.startswith("v1.")
    assert CLIENT not in raw

    back = AuthorizationToken.decode(raw)
    assert back == tok
    assert _verify(back, pub).ok is True


def test_decode_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        AuthorizationToken.decode("not-a-token")
    with pytest.raises(ValueError):
        AuthorizationToken.decode("v1.!!!!")
    with pytest.raises(ValueError):
        AuthorizationToken.from_json({"resource_id": RID})
