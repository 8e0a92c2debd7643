import math

import pytest

from solwatch.amounts import (
    balances_by_owner,
    finite_or_zero,
    holdings_by_mint,
    parse_time_literal,
    scale_raw_amount,
    to_seconds,
    ui_amount,
)


def test_finite_or_zero_handles_garbage():
    assert finite_or_zero(None) == 0.0
    assert finite_or_zero("abc") == 0.0
    assert finite_or_zero(math.nan) == 0.0
    assert finite_or_zero(math.inf) == 0.0
    assert finite_or_zero("2.5") == 2.5
    assert finite_or_zero(True) == 0.0


def test_scale_raw_amount():
    assert scale_raw_amount(1_500_000, 6) == pytest.approx(1.5)
    assert scale_raw_amount("100", 2) == pytest.approx(1.0)
    assert scale_raw_amount(None, 6) is None
    assert scale_raw_amount(10, None) is None


def test_ui_amount_precedence():
    assert ui_amount({"uiAmount": 3, "amount": 1, "decimals": 0}) == 3
    assert ui_amount({"amount": 2_000_000, "decimals": 6}) == pytest.approx(2.0)
    assert ui_amount({"balance": "4"}) == 4.0
    assert ui_amount({"uiAmountString": "0.25"}) == 0.25
    assert ui_amount({"mint": "M"}) is None
    assert ui_amount(None) is None


def test_holdings_by_mint_list_and_wrappers():
    entries = [{"mint": "A", "uiAmount": 1}, {"address": "B", "amount": 5, "decimals": 1}, {"uiAmount": 9}]
    assert holdings_by_mint(entries) == {"A": 1.0, "B": 0.5}
    assert holdings_by_mint({"holdings": entries}) == {"A": 1.0, "B": 0.5}
    assert holdings_by_mint({"data": entries[:1]}) == {"A": 1.0}


def test_holdings_by_mint_sums_token_accounts():
    payload = {
        "tokens": {
            "A": [{"uiAmount": 1.5}, {"amount": 500_000, "decimals": 6}],
            "B": [],
        }
    }
    assert holdings_by_mint(payload) == {"A": pytest.approx(2.0), "B": 0.0}


def test_holdings_by_mint_empty_shapes():
    assert holdings_by_mint(None) == {}
    assert holdings_by_mint("nope") == {}
    assert holdings_by_mint({"other": 1}) == {}


def test_balances_by_owner_envelope_and_sum():
    payload = {
        "jsonrpc": "2.0",
        "result": {
            "token_accounts": [
                {"owner": "W1", "amount": 1_000_000, "decimals": 6},
                {"owner": "W1", "amount": 2_000_000},
                {"owner": "W2", "token_amount": {"amount": 50, "decimals": 1}},
                {"owner": "W3"},
                "junk",
            ]
        },
    }
    assert balances_by_owner(payload) == {"W1": pytest.approx(3.0), "W2": pytest.approx(5.0)}
    assert balances_by_owner([{"owner": "W", "amount": 10, "decimals": 1}]) == {"W": 1.0}
    assert balances_by_owner({"result": None}) == {}


def test_parse_time_literal():
    assert parse_time_literal("30s") == 30
    assert parse_time_literal("45m") == 2700
    assert parse_time_literal("2d") == 172_800
    assert parse_time_literal("1mo") == 2_592_000
    assert parse_time_literal("1.5h") == 5400
    assert parse_time_literal("soon") is None
    assert parse_time_literal(None) is None


def test_to_seconds():
    assert to_seconds(1_700_000_000) == 1_700_000_000
    assert to_seconds(1_700_000_000_123) == 1_700_000_000
    assert to_seconds(None, 42.9) == 42
    assert to_seconds("bad", 7) == 7
