"""Unit tests for the logging processors."""
from croupier.core.logging import _stringify_large_ints


def test_wei_amounts_rendered_as_strings():
    event = {"event": "payout_executed", "amount": 19 * 10**18, "request_id": 42}

    out = _stringify_large_ints(None, "info", event)

    assert out["amount"] == "19000000000000000000"
    assert out["request_id"] == 42


def test_booleans_and_small_values_untouched():
    event = {"event": "x", "is_winner": True, "block": 2**53 - 1, "debt": -(2**60)}

    out = _stringify_large_ints(None, "info", event)

    assert out["is_winner"] is True
    assert out["block"] == 2**53 - 1
    assert out["debt"] == str(-(2**60))
