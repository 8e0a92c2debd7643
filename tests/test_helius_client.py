import asyncio
from typing import Any, Dict, List

import pytest

from solwatch.clients.helius import HeliusClient, HeliusRPCError, first_fungible_transfer, transaction_fields


class RecordingFetch:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, url, method="GET", **kwargs):
        self.calls.append({"url": url, "method": method, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_transaction_fields_uses_first_fungible_transfer():
    tx = {
        "type": "SWAP",
        "source": "RAYDIUM",
        "fee": 5000,
        "feePayer": "W1",
        "slot": 7,
        "timestamp": 1000,
        "tokenTransfers": [
            {"mint": "NFT", "tokenAmount": 1, "tokenStandard": "NonFungible"},
            {"mint": "M", "tokenAmount": 12.5, "tokenStandard": "Fungible"},
        ],
    }
    fields = transaction_fields(tx)
    assert fields["mint"] == "M"
    assert fields["token_amount"] == 12.5
    assert fields["to_user_account"] == "W1"
    assert fields["source_label"] == "RAYDIUM"
    assert first_fungible_transfer({"tokenTransfers": None}) is None


def test_transaction_fields_of_missing_tx():
    fields = transaction_fields(None)
    assert fields["mint"] is None
    assert fields["timestamp"] is None


def test_parse_transactions_matches_by_signature():
    fetch = RecordingFetch([[{"signature": "B", "slot": 2}, {"slot": 1}]])
    client = HeliusClient("key", api_url="https://helius.test", fetch=fetch)
    result = asyncio.run(client.parse_transactions(["A", "B", "C"]))
    assert result["B"]["slot"] == 2
    assert result["A"] is None
    assert result["C"] is None
    call = fetch.calls[0]
    assert call["url"] == "https://helius.test/v0/transactions?api-key=key"
    assert call["json"] == {"transactions": ["A", "B", "C"]}


def test_parse_transactions_positional_fallback():
    fetch = RecordingFetch([[{"slot": 1}, {"slot": 2}]])
    client = HeliusClient(fetch=fetch)
    result = asyncio.run(client.parse_transactions(["A", "B"]))
    assert result["A"]["slot"] == 1
    assert result["B"]["slot"] == 2


def test_parse_transactions_rejects_non_list():
    client = HeliusClient(fetch=RecordingFetch([{"error": "x"}]))
    with pytest.raises(HeliusRPCError):
        asyncio.run(client.parse_transactions(["A"]))
    assert asyncio.run(HeliusClient(fetch=RecordingFetch([])).parse_transactions([])) == {}


def test_token_accounts_paginates_until_short_page():
    page1 = {"result": {"token_accounts": [{"owner": "W1", "amount": 1_000_000, "decimals": 6}] * 2}}
    page2 = {"result": {"token_accounts": [{"owner": "W2", "amount": 3_000_000, "decimals": 6}]}}
    fetch = RecordingFetch([page1, page2])
    client = HeliusClient("k", rpc_url="https://rpc.test", page_limit=2, fetch=fetch)
    balances = asyncio.run(client.balances("M"))
    assert balances == {"W1": 2.0, "W2": 3.0}
    assert [c["json"]["params"]["page"] for c in fetch.calls] == [1, 2]
    assert fetch.calls[0]["json"]["method"] == "getTokenAccounts"
    assert fetch.calls[0]["url"] == "https://rpc.test?api-key=k"


def test_token_accounts_respects_page_cap():
    full = {"result": {"token_accounts": [{"owner": "W", "amount": 1, "decimals": 0}]}}
    fetch = RecordingFetch([full, full, full])
    client = HeliusClient(page_limit=1, max_pages=2, fetch=fetch)
    accounts = asyncio.run(client.token_accounts("M"))
    assert len(accounts) == 2
    assert len(fetch.calls) == 2


def test_balances_flag_capped_listing_as_incomplete():
    full = {"result": {"token_accounts": [{"owner": "W", "amount": 1, "decimals": 0}]}}
    short = {"result": {"token_accounts": []}}

    capped = asyncio.run(HeliusClient(page_limit=1, max_pages=2, fetch=RecordingFetch([full, full])).balances("M"))
    assert capped == {"W": 2.0}
    assert capped.complete is False

    whole = asyncio.run(HeliusClient(page_limit=1, max_pages=3, fetch=RecordingFetch([full, short])).balances("M"))
    assert whole == {"W": 1.0}
    assert whole.complete is True


def test_rpc_error_raises():
    client = HeliusClient(fetch=RecordingFetch([{"error": {"code": -32000}}]))
    with pytest.raises(HeliusRPCError):
        asyncio.run(client.token_accounts("M"))
