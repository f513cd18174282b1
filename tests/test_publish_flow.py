from __future__ import annotations

from typing import List

import pytest

from anchorstore.auth.token import TokenIssuer
from anchorstore.errors import (
    KIND_INSUFFICIENT_BALANCE,
    KIND_TIMEOUT,
    AllBackendsExhausted,
    BackendError,
    ValidationRejected,
)
from anchorstore.gate import PreValidationGate
from anchorstore.ledger.memory import MemoryLedger
from anchorstore.ledger.types import OP_GIVE_FEEDBACK, OP_REGISTER_RESOURCE, OP_SET_RESOURCE_URI, Operation
from anchorstore.publisher import Publisher
from anchorstore.resolver import PriorityResolver
from anchorstore.retriever import MultiGatewayRetriever
from anchorstore.testing.fakes import MemoryBackend, MemoryGateway
from anchorstore.testing.sigtools import deterministic_ed25519_keypair
from anchorstore.uri import UriType, classify, locator_id

NOW = 1_700_000_000.0
CHAIN_ID = 11155111
OWNER = "0xowner"
CLIENT = "0xclient"
RID = f"{CHAIN_ID}:7"


def _mk_world(backends: List[MemoryBackend]):
    pub, priv = deterministic_ed25519_keypair(label="owner")
    ledger = MemoryLedger(chain_id=CHAIN_ID, clock=lambda: NOW)
    ledger.add_account_key(OWNER, pub)
    ledger.add_resource(RID, owner=OWNER)
    issuer = TokenIssuer(ledger, account=OWNER, privkey=priv, chain_id=CHAIN_ID, clock=lambda: NOW)

    gate = PreValidationGate(ledger, clock=lambda: NOW)
    resolver = PriorityResolver(backends, gate=gate, sleep=lambda _s: None)
    publisher = Publisher(gate=gate, resolver=resolver, ledger=ledger, chain_id=CHAIN_ID, clock=lambda: NOW)
    return ledger, issuer, publisher


def _backends(ar_fail=None, ipfs_fail=None):
    ar = MemoryBackend("arweave", uri_type=UriType.ARWEAVE, fail_with=ar_fail)
    ipfs = MemoryBackend("ipfs", uri_type=UriType.IPFS, permanent=False, fail_with=ipfs_fail)
    return ar, ipfs


def _feedback_op(issuer: TokenIssuer, *, sender: str = CLIENT, index_bound: int = 3) -> Operation:
    tok = issuer.issue(RID, CLIENT, index_bound, 24)
    return Operation(OP_GIVE_FEEDBACK, sender, {"resource_id": RID, "score": 85, "tag1": "quality"}, auth=tok)


def _writes(*backends: MemoryBackend) -> int:
    return sum(b.calls for b in backends)


def test_feedback_stored_on_permanent_store_and_read_back_from_two_gateways() -> None:
    ar, ipfs = _backends()
    ledger, issuer, publisher = _mk_world([ar, ipfs])
    doc = {"score": 85}

    attempt = publisher.publish(doc, operation=_feedback_op(issuer))

    assert attempt.stored
    assert attempt.backend == "arweave"
    tags = {t.name: t.value for t in attempt.tags}
    assert tags["Content-Type"] == "application/json"
    assert tags["Data-Type"] == "Feedback"
    assert tags["Agent-Id"] == RID
    assert classify(attempt.locator) == UriType.ARWEAVE
    assert attempt.operation.payload["uri"] == attempt.locator
    assert attempt.operation.payload["content_hash"] == attempt.content_hash

    gateways = [
        MemoryGateway("arweave.net", [UriType.ARWEAVE], ar.objects),
        MemoryGateway("ar-io.net", [UriType.ARWEAVE], ar.objects),
    ]
    got = MultiGatewayRetriever(gateways, confirmations=2).fetch(attempt.locator, expected_sha256=attempt.content_hash)
    assert sorted(got.agreeing) == ["ar-io.net", "arweave.net"]
    assert got.data == ar.objects[locator_id(attempt.locator)]

    receipt = publisher.commit(attempt)
    assert receipt.result["feedback_id"] == f"{RID}:{CLIENT}:1"
    assert receipt.result["uri"] == attempt.locator
    fb = ledger.read_state()["feedback"][RID][CLIENT][0]
    assert fb["content_hash"] == attempt.content_hash


def test_self_addressed_feedback_is_rejected_before_any_write() -> None:
    ar, ipfs = _backends()
    ledger, issuer, publisher = _mk_world([ar, ipfs])

    op = Operation(OP_GIVE_FEEDBACK, OWNER, {"resource_id": RID, "score": 85})
    with pytest.raises(ValidationRejected) as ei:
        publisher.publish({"score": 85}, operation=op)

    assert ei.value.code == "self_feedback"
    assert _writes(ar, ipfs) == 0
    assert ar.objects == {}
    assert ledger.commit_calls == 0


def test_rejections_never_reach_a_backend() -> None:
    ar, ipfs = _backends()
    ledger, issuer, publisher = _mk_world([ar, ipfs])
    good = _feedback_op(issuer)

    rejected = [
        Operation(OP_GIVE_FEEDBACK, OWNER, {"resource_id": RID, "score": 85}),
        Operation(OP_GIVE_FEEDBACK, CLIENT, {"resource_id": RID, "score": 85}),
        Operation(OP_GIVE_FEEDBACK, CLIENT, {"resource_id": RID, "score": 500}, auth=good.auth),
        Operation(OP_GIVE_FEEDBACK, "0xintruder", {"resource_id": RID, "score": 85}, auth=good.auth),
        Operation(OP_GIVE_FEEDBACK, CLIENT, {"resource_id": f"{CHAIN_ID}:999", "score": 85}, auth=good.auth),
        Operation(OP_SET_RESOURCE_URI, CLIENT, {"resource_id": RID}),
        Operation(OP_REGISTER_RESOURCE, OWNER, {"resource_id": RID}),
    ]
    for op in rejected:
        with pytest.raises(ValidationRejected):
            publisher.publish({"score": 85}, operation=op)

    assert _writes(ar, ipfs) == 0


def test_permanent_store_timeout_falls_through_to_pinned_store() -> None:
    ar, ipfs = _backends(ar_fail=BackendError("arweave", "read timed out", {}, kind=KIND_TIMEOUT))
    _, issuer, publisher = _mk_world([ar, ipfs])

    attempt = publisher.publish({"score": 85}, operation=_feedback_op(issuer))

    assert attempt.backend == "ipfs"
    assert attempt.locator.startswith("ipfs://")
    assert classify(attempt.locator) == UriType.IPFS
    assert classify(attempt.locator) != UriType.ARWEAVE
    assert ar.calls == 3
    assert ar.objects == {}


def test_all_backends_failing_then_commit_without_locator() -> None:
    ar, ipfs = _backends(
        ar_fail=BackendError("arweave", "insufficient credits", {}, kind=KIND_INSUFFICIENT_BALANCE),
        ipfs_fail=BackendError("ipfs", "connection refused", {}, kind=KIND_INSUFFICIENT_BALANCE),
    )
    ledger, issuer, publisher = _mk_world([ar, ipfs])
    op = _feedback_op(issuer)

    with pytest.raises(AllBackendsExhausted):
        publisher.publish({"score": 85}, operation=op)

    attempt = publisher.publish({"score": 85}, operation=op, allow_empty_locator=True)
    assert attempt.locator == ""
    assert isinstance(attempt.error, AllBackendsExhausted)
    assert attempt.stored is False

    receipt = publisher.commit(attempt)
    assert receipt.result["uri"] == ""
    assert ledger.feedback_index(RID, CLIENT) == 1


def test_index_bound_enforced_across_publishes() -> None:
    ar, ipfs = _backends()
    ledger, issuer, publisher = _mk_world([ar, ipfs])
    op = _feedback_op(issuer, index_bound=1)

    publisher.commit(publisher.publish({"score": 85}, operation=op))
    assert ar.calls == 1

    with pytest.raises(ValidationRejected) as ei:
        publisher.publish({"score": 90}, operation=op)
    assert ei.value.code == "auth_index_exceeded"
    assert ar.calls == 1


def test_registration_uses_the_same_validated_path() -> None:
    ar, ipfs = _backends()
    ledger, _, publisher = _mk_world([ar, ipfs])
    doc = {"name": "Weather Bot", "endpoints": [{"type": "mcp"}], "active": True}

    attempt = publisher.publish(doc, operation=Operation(OP_REGISTER_RESOURCE, "0xnewowner", {}))
    tags = {t.name: t.value for t in attempt.tags}
    assert tags["Data-Type"] == "Registration"
    assert tags["Has-MCP"] == "true"
    assert tags["Timestamp"] == "2023-11-14T22:13:20.000Z"

    receipt = publisher.commit(attempt)
    new_id = receipt.result["resource_id"]
    assert ledger.owner_of(new_id) == "0xnewowner"
    assert ledger.read_state()["resources"][new_id]["uri"] == attempt.locator
