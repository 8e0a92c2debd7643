from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import pytest

from solwatch.clients.helius import OwnerBalances
from solwatch.http import HTTPError
from solwatch.logging_utils import configure_api_logging


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeStore:
    """In-memory stand-in for :class:`solwatch.store.TransactionStore`."""

    def __init__(self, existing: Optional[set] = None) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {sig: {"signature": sig} for sig in existing or ()}
        self.batches: List[List[Dict[str, Any]]] = []
        self.fail_insert: Optional[Exception] = None
        self.closed = False

    async def wait_ready(self) -> None:
        return None

    async def existing_signatures(self, signatures):
        return {sig for sig in signatures if sig in self.rows}

    async def insert_batch(self, records):
        records = [dict(r) for r in records]
        self.batches.append(records)
        if self.fail_insert is not None:
            raise self.fail_insert
        for record in records:
            self.rows[record["signature"]] = record
        return {
            "inserted": len(records),
            "skipped": 0,
            "failed": 0,
            "results": [{"status": "inserted", "signature": r["signature"]} for r in records],
        }

    async def get_by_signature(self, signature):
        return self.rows.get(signature)

    async def query(self, filters=None, *, limit=100, offset=0, order_by=None, ascending=None):
        rows = list(self.rows.values())
        return {"data": rows[offset:offset + limit], "count": len(rows)}

    async def stats(self):
        return {"total": len(self.rows), "mints": 0, "latest_timestamp": None, "top_tokens": []}

    async def test_connection(self):
        return True

    async def close(self):
        self.closed = True


class FakeHelius:
    def __init__(self, txs: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.txs = dict(txs or {})
        self.balances_by_mint: Dict[str, Dict[str, float]] = {}
        self.parse_calls: List[List[str]] = []
        self.balance_calls: List[str] = []
        self.capped: set = set()
        self.error: Optional[Exception] = None

    async def parse_transactions(self, signatures):
        self.parse_calls.append(list(signatures))
        if self.error is not None:
            raise self.error
        return {sig: self.txs.get(sig) for sig in signatures}

    async def balances(self, mint):
        self.balance_calls.append(mint)
        if self.error is not None:
            raise self.error
        return OwnerBalances(self.balances_by_mint.get(mint, {}), complete=mint not in self.capped)


class FakeJupiter:
    def __init__(self, tokens: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.tokens = dict(tokens or {})
        self.wallets: Dict[str, Dict[str, float]] = {}
        self.holdings_calls: List[str] = []
        self.search_calls: List[str] = []
        self.search_errors: Dict[str, Exception] = {}
        self.batch_calls: List[List[str]] = []
        self.error: Optional[Exception] = None

    async def search_token(self, mint):
        self.search_calls.append(mint)
        if mint in self.search_errors:
            raise self.search_errors[mint]
        return self.tokens.get(mint)

    async def search_batch(self, queries):
        self.batch_calls.append(list(queries))
        if self.error is not None:
            raise self.error
        return [dict(self.tokens[q], id=q) for q in queries if q in self.tokens]

    async def holdings(self, wallet):
        self.holdings_calls.append(wallet)
        if self.error is not None:
            raise self.error
        return dict(self.wallets.get(wallet, {}))


def helius_tx(signature: str, *, mint: str, payer: str, amount: float, timestamp: int, slot: int = 1) -> Dict[str, Any]:
    return {
        "signature": signature,
        "type": "SWAP",
        "source": "PUMP_FUN",
        "fee": 5000,
        "feePayer": payer,
        "slot": slot,
        "timestamp": timestamp,
        "tokenTransfers": [
            {"mint": mint, "tokenAmount": amount, "tokenStandard": "Fungible"},
        ],
    }


def rate_limited() -> HTTPError:
    return HTTPError(429, "too many requests")


class Published(list):
    """Collects published payloads; usable as a ``publish`` callback."""

    def __call__(self, data: Mapping[str, Any]) -> Mapping[str, Any]:
        self.append(dict(data))
        return data

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [item for item in self if item.get("type") == kind or item.get("event") == kind]


@pytest.fixture(autouse=True)
def _no_api_capture():
    configure_api_logging(enabled=False)
    yield
    configure_api_logging(enabled=False)
