"""Helpers for the Helius enhanced transactions and DAS token account APIs."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..amounts import balances_by_owner
from ..http import fetch_json
from ..logging_utils import write_api_log_once

log = logging.getLogger(__name__)

Fetch = Callable[..., Awaitable[Any]]

DEFAULT_API_URL = "https://api.helius.xyz"
DEFAULT_RPC_URL = "https://mainnet.helius-rpc.com"
TOKEN_ACCOUNTS_PAGE_LIMIT = 1000
TOKEN_ACCOUNTS_MAX_PAGES = 20
FUNGIBLE = "Fungible"


class HeliusRPCError(RuntimeError):
    """Raised when a JSON-RPC response carries an ``error`` member."""


class OwnerBalances(Dict[str, float]):
    """``{owner: ui_amount}`` plus whether every token account was listed."""

    def __init__(self, balances: Mapping[str, float] | None = None, *, complete: bool = True) -> None:
        super().__init__(balances or {})
        self.complete = complete


def _with_api_key(url: str, key: str | None) -> str:
    if not key or "api-key=" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}api-key={key}"


def first_fungible_transfer(tx: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    transfers = tx.get("tokenTransfers")
    if not isinstance(transfers, list):
        return None
    for transfer in transfers:
        if isinstance(transfer, Mapping) and transfer.get("tokenStandard") == FUNGIBLE:
            return transfer
    return None


def transaction_fields(tx: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Flatten one enhanced transaction into record columns.

    The wallet of a record is its fee payer, stored as ``to_user_account``.
    Token columns are ``None`` when no fungible transfer is present.
    """

    if not isinstance(tx, Mapping):
        tx = {}
    fee_payer = tx.get("feePayer") or None
    fields: Dict[str, Any] = {
        "type": tx.get("type") or None,
        "source_label": tx.get("source") or None,
        "fee": tx.get("fee") or None,
        "fee_payer": fee_payer,
        "slot": tx.get("slot") or None,
        "timestamp": tx.get("timestamp") or None,
        "mint": None,
        "to_user_account": fee_payer,
        "token_amount": None,
        "token_standard": None,
    }
    transfer = first_fungible_transfer(tx)
    if transfer is not None:
        fields["mint"] = transfer.get("mint") or None
        fields["token_amount"] = transfer.get("tokenAmount")
        fields["token_standard"] = transfer.get("tokenStandard")
    return fields


class HeliusClient:
    """Async client for the two Helius calls the service relies on."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        api_url: str = DEFAULT_API_URL,
        rpc_url: str = DEFAULT_RPC_URL,
        retries: int = 2,
        backoff: float = 0.5,
        page_limit: int = TOKEN_ACCOUNTS_PAGE_LIMIT,
        max_pages: int = TOKEN_ACCOUNTS_MAX_PAGES,
        fetch: Fetch | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.rpc_url = rpc_url
        self.retries = retries
        self.backoff = backoff
        self.page_limit = max(1, int(page_limit))
        self.max_pages = max(1, int(max_pages))
        self._fetch = fetch or fetch_json

    @property
    def transactions_url(self) -> str:
        return _with_api_key(f"{self.api_url}/v0/transactions", self.api_key)

    @property
    def rpc_endpoint(self) -> str:
        return _with_api_key(self.rpc_url, self.api_key)

    async def parse_transactions(self, signatures: Sequence[str]) -> Dict[str, Optional[Dict[str, Any]]]:
        """Return ``{signature: enhanced_tx | None}`` for ``signatures``.

        Results are matched by their ``signature`` member and fall back to
        positional alignment with the request.  A non-list response raises
        :class:`HeliusRPCError` so the caller can fail the whole batch.
        """

        sigs = list(signatures)
        if not sigs:
            return {}
        data = await self._fetch(
            self.transactions_url,
            "POST",
            retries=self.retries,
            backoff=self.backoff,
            headers={"Content-Type": "application/json"},
            json={"transactions": sigs},
        )
        if not isinstance(data, list):
            raise HeliusRPCError("No data from Helius")
        out: Dict[str, Optional[Dict[str, Any]]] = {sig: None for sig in sigs}
        for index, tx in enumerate(data):
            if not isinstance(tx, Mapping):
                continue
            sig = tx.get("signature")
            if sig not in out:
                sig = sigs[index] if index < len(sigs) else None
            if sig is None or out.get(sig) is not None:
                continue
            out[sig] = dict(tx)
            write_api_log_once("helius", sig, tx)
        return out

    async def _rpc(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            "jsonrpc": "2.0",
            "id": f"solwatch-{int(time.time() * 1000)}-{random.randint(1, 1000)}",
            "method": method,
            "params": params,
        }
        data = await self._fetch(
            self.rpc_endpoint,
            "POST",
            retries=self.retries,
            backoff=self.backoff,
            headers={"Content-Type": "application/json"},
            json=payload,
        )
        if not isinstance(data, Mapping):
            raise HeliusRPCError(f"Unexpected {method} response type")
        if data.get("error"):
            raise HeliusRPCError(f"{method} error: {data['error']}")
        return dict(data)

    async def _scan_token_accounts(self, mint: str) -> Tuple[List[Dict[str, Any]], bool]:
        accounts: List[Dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            data = await self._rpc(
                "getTokenAccounts",
                {"mint": mint, "limit": self.page_limit, "page": page},
            )
            result = data.get("result")
            batch = result.get("token_accounts") if isinstance(result, Mapping) else None
            if not isinstance(batch, list):
                return accounts, True
            accounts.extend(item for item in batch if isinstance(item, Mapping))
            if len(batch) < self.page_limit:
                return accounts, True
        log.warning(
            "getTokenAccounts page cap reached",
            extra={"mint": mint, "pages": self.max_pages, "accounts": len(accounts)},
        )
        return accounts, False

    async def token_accounts(self, mint: str) -> List[Dict[str, Any]]:
        """Return the token accounts of ``mint`` (paginated, up to ``max_pages``)."""

        accounts, _ = await self._scan_token_accounts(mint)
        return accounts

    async def balances(self, mint: str) -> OwnerBalances:
        """Return ``{owner: ui_amount}`` for ``mint``.

        ``complete`` is false when the page cap cut the listing short.
        """

        accounts, complete = await self._scan_token_accounts(mint)
        return OwnerBalances(balances_by_owner(accounts), complete=complete)


__all__ = [
    "DEFAULT_API_URL",
    "DEFAULT_RPC_URL",
    "HeliusClient",
    "HeliusRPCError",
    "OwnerBalances",
    "first_fungible_transfer",
    "transaction_fields",
]
