from __future__ import annotations

import pytest

from anchorstore.uri import UriType, classify, locator_id, make_locator


def test_store_schemes_classify_to_their_type() -> None:
    assert classify("ar://abc") == UriType.ARWEAVE
    assert classify("ipfs://bafyabc") == UriType.IPFS
    assert classify("https://example.com/a.json") == UriType.HTTPS
    assert classify("http://example.com/a.json") == UriType.HTTP


def test_empty_and_unrecognized_are_unknown() -> None:
    assert classify(None) == UriType.UNKNOWN
    assert classify("") == UriType.UNKNOWN
    assert classify("   ") == UriType.UNKNOWN
    assert classify("ftp://example.com") == UriType.UNKNOWN
    assert classify("abc") == UriType.UNKNOWN
    # Prefixes are case-sensitive.
    assert classify("AR://abc") == UriType.UNKNOWN


def test_compound_strings_resolve_to_exactly_one_type() -> None:
    # The first matcher wins; later ones are never consulted.
    assert classify("ar://ipfs://x") == UriType.ARWEAVE
    assert classify("ipfs://ar://x") == UriType.IPFS
    assert classify("ipfs://https://x") == UriType.IPFS
    assert classify("https://ar://x") == UriType.HTTPS


def test_surrounding_whitespace_is_ignored() -> None:
    assert classify("  ar://abc \n") == UriType.ARWEAVE
    assert locator_id("  ipfs://bafyabc ") == "bafyabc"


def test_made_locators_never_reclassify() -> None:
    for uri_type in (UriType.ARWEAVE, UriType.IPFS):
        loc = make_locator(uri_type, "someid")
        assert classify(loc) == uri_type
        assert locator_id(loc) == "someid"


def test_make_locator_rejects_non_store_types_and_empty_ids() -> None:
    with pytest.raises(ValueError):
        make_locator(UriType.HTTPS, "x")
    with pytest.raises(ValueError):
        make_locator(UriType.ARWEAVE, "  ")


def test_locator_id_is_empty_for_non_store_locators() -> None:
    assert locator_id("https://example.com/x") == ""
    assert locator_id("") == ""
    assert locator_id(None) == ""
