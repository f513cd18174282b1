from __future__ import annotations

import hashlib
import threading
import time

import pytest

from anchorstore.errors import AllGatewaysFailed, IntegrityMismatch, TransientUnavailable
from anchorstore.retriever import HttpGateway, MultiGatewayRetriever
from anchorstore.testing.fakes import MemoryGateway
from anchorstore.uri import UriType

AR_ID = "a" * 43
DATA = b'{"score":85}'


def _ar_gw(name: str, data: bytes = DATA, **kw) -> MemoryGateway:
    return MemoryGateway(name, [UriType.ARWEAVE], {AR_ID: data}, **kw)


def test_two_gateways_agree() -> None:
    r = MultiGatewayRetriever([_ar_gw("g1"), _ar_gw("g2")], confirmations=2)

    res = r.fetch(f"ar://{AR_ID}")

    assert res.data == DATA
    assert sorted(res.agreeing) == ["g1", "g2"]
    assert res.sha256 == hashlib.sha256(DATA).hexdigest()


def test_first_success_wins_without_waiting_for_slow_gateways() -> None:
    hold = threading.Event()
    slow = _ar_gw("slow", hold=hold, hold_timeout_s=5.0)
    fast = _ar_gw("fast")
    r = MultiGatewayRetriever([slow, fast], timeout_s=10.0, confirmations=1)

    started = time.monotonic()
    try:
        res = r.fetch(f"ar://{AR_ID}")
    finally:
        hold.set()

    assert res.gateway == "fast"
    assert time.monotonic() - started < 2.0


def test_disagreeing_gateways_raise_integrity_mismatch() -> None:
    r = MultiGatewayRetriever([_ar_gw("g1"), _ar_gw("g2", data=b'{"score":1}')], confirmations=2)

    with pytest.raises(IntegrityMismatch) as ei:
        r.fetch(f"ar://{AR_ID}")
    assert ei.value.reason == "gateways_disagree"
    assert set(ei.value.details["gateways"]) == {"g1", "g2"}


def test_expected_hash_mismatch_raises() -> None:
    r = MultiGatewayRetriever([_ar_gw("g1")])

    with pytest.raises(IntegrityMismatch) as ei:
        r.fetch(f"ar://{AR_ID}", expected_sha256="00" * 32)
    assert ei.value.reason == "content_hash_mismatch"

    ok = r.fetch(f"ar://{AR_ID}", expected_sha256=hashlib.sha256(DATA).hexdigest().upper())
    assert ok.data == DATA


def test_partial_failure_returns_best_result() -> None:
    down = _ar_gw("down", fail_with=TransientUnavailable("down", "http_502"))
    r = MultiGatewayRetriever([down, _ar_gw("up")], confirmations=2)

    res = r.fetch(f"ar://{AR_ID}")

    assert res.data == DATA
    assert res.agreeing == ("up",)


def test_all_gateways_failing() -> None:
    down = _ar_gw("down", fail_with=TransientUnavailable("down", "http_502"))
    empty = MemoryGateway("empty", [UriType.ARWEAVE], {})
    r = MultiGatewayRetriever([down, empty])

    with pytest.raises(AllGatewaysFailed) as ei:
        r.fetch(f"ar://{AR_ID}")
    assert set(ei.value.errors) == {"down", "empty"}
    assert "content_not_found" in ei.value.errors["empty"]


def test_gateway_timeout_counts_as_failure() -> None:
    hold = threading.Event()
    r = MultiGatewayRetriever([_ar_gw("stuck", hold=hold, hold_timeout_s=5.0)], timeout_s=0.2)
    try:
        with pytest.raises(AllGatewaysFailed) as ei:
            r.fetch(f"ar://{AR_ID}")
    finally:
        hold.set()
    assert ei.value.errors == {"stuck": "timeout"}


def test_timeout_covers_the_whole_fan_out() -> None:
    # "late" answers after 0.6s; "stuck" never answers before the timeout.
    late = _ar_gw("late", hold=threading.Event(), hold_timeout_s=0.6)
    release = threading.Event()
    stuck = _ar_gw("stuck", hold=release, hold_timeout_s=5.0)
    r = MultiGatewayRetriever([late, stuck], timeout_s=1.0, confirmations=2)

    started = time.monotonic()
    try:
        res = r.fetch(f"ar://{AR_ID}")
    finally:
        release.set()

    assert res.agreeing == ("late",)
    assert time.monotonic() - started < 1.4


def test_only_gateways_for_locator_type_are_queried() -> None:
    ar = _ar_gw("ar")
    cid = "bafy" + "a" * 20
    ipfs = MemoryGateway("ipfs", [UriType.IPFS], {cid: DATA})
    r = MultiGatewayRetriever([ar, ipfs])

    assert r.fetch(f"ipfs://{cid}").gateway == "ipfs"
    assert ar.calls == 0


def test_non_store_locators_have_no_gateway() -> None:
    r = MultiGatewayRetriever([_ar_gw("g1")])
    for loc in ("", "https://example.com/x.json", "ar://"):
        with pytest.raises(AllGatewaysFailed):
            r.fetch(loc)


def test_fetch_json_decodes() -> None:
    r = MultiGatewayRetriever([_ar_gw("g1")])
    assert r.fetch_json(f"ar://{AR_ID}") == {"score": 85}


def test_http_gateway_paths() -> None:
    ar = HttpGateway("https://arweave.net/", [UriType.ARWEAVE])
    ipfs = HttpGateway("https://ipfs.io", [UriType.IPFS])
    custom = HttpGateway("https://gw.example", ["ipfs"], path_template="{base}/content/{id}?raw=1")

    assert ar.url_for(AR_ID) == f"https://arweave.net/{AR_ID}"
    assert ipfs.url_for("bafyx") == "https://ipfs.io/ipfs/bafyx"
    assert custom.url_for("bafyx") == "https://gw.example/content/bafyx?raw=1"
    assert custom.kinds == (UriType.IPFS,)
