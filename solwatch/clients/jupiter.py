"""Helpers for the Jupiter token search and wallet holdings APIs."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import quote

from ..amounts import holdings_by_mint
from ..http import HTTPError, fetch_json, is_rate_limited
from ..logging_utils import write_api_log_once

log = logging.getLogger(__name__)

Fetch = Callable[..., Awaitable[Any]]

DEFAULT_BASE_URL = "https://lite-api.jup.ag"
DEFAULT_HOLDINGS_PATH = "/ultra/v1/holdings"
SEARCH_PATH = "/tokens/v2/search"

STAT_WINDOWS = ("5m", "1h", "6h", "24h")
STAT_KEYS = (
    "priceChange",
    "holderChange",
    "liquidityChange",
    "buyVolume",
    "sellVolume",
    "numBuys",
    "numSells",
    "numTraders",
    "numNetBuyers",
)

_DESCRIPTIVE = (
    ("token_name", "name"),
    ("token_symbol", "symbol"),
    ("token_icon", "icon"),
    ("dev", "dev"),
    ("launchpad", "launchpad"),
    ("holder_count", "holderCount"),
    ("mcap", "mcap"),
    ("usd_price", "usdPrice"),
    ("liquidity", "liquidity"),
    ("twitter", "twitter"),
    ("website", "website"),
)

# Fields a search result may refresh on an already tracked mint.
_LIVE_FIELDS = (
    ("holder_count", "holderCount"),
    ("mcap", "mcap"),
    ("usd_price", "usdPrice"),
    ("liquidity", "liquidity"),
    ("top_holders_percentage", "topHoldersPercentage"),
    ("dev_migrations", "devMigrations"),
    ("token_name", "name"),
    ("token_symbol", "symbol"),
    ("token_icon", "icon"),
    ("twitter", "twitter"),
    ("website", "website"),
)


def _stat_field(window: str, key: str) -> str:
    return f"stats{window}_{key}"


def _empty_market_fields() -> Dict[str, Any]:
    fields: Dict[str, Any] = {name: None for name, _ in _DESCRIPTIVE}
    fields.update(
        {
            "first_pool_created_at": None,
            "top_holders_percentage": None,
            "dev_migrations": None,
            "audit_mintAuthorityDisabled": None,
            "audit_freezeAuthorityDisabled": None,
        }
    )
    for window in STAT_WINDOWS:
        for key in STAT_KEYS:
            fields[_stat_field(window, key)] = None
    return fields


EMPTY_MARKET_FIELDS: Mapping[str, Any] = _empty_market_fields()


def _audit_flag(audit: Any, key: str) -> Optional[int]:
    if not isinstance(audit, Mapping):
        return None
    return 1 if audit.get(key) else 0


def market_fields(token: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Flatten one search result into transaction record market columns.

    Falsy descriptive values (``0``, ``""``) are stored as ``None``.
    """

    fields = dict(EMPTY_MARKET_FIELDS)
    if not isinstance(token, Mapping):
        return fields
    for name, key in _DESCRIPTIVE:
        fields[name] = token.get(key) or None
    first_pool = token.get("firstPool")
    if isinstance(first_pool, Mapping):
        fields["first_pool_created_at"] = first_pool.get("createdAt")
    fields["top_holders_percentage"] = token.get("topHoldersPercentage")
    fields["dev_migrations"] = token.get("devMigrations")
    audit = token.get("audit")
    fields["audit_mintAuthorityDisabled"] = _audit_flag(audit, "mintAuthorityDisabled")
    fields["audit_freezeAuthorityDisabled"] = _audit_flag(audit, "freezeAuthorityDisabled")
    for window in STAT_WINDOWS:
        stats = token.get(f"stats{window}")
        if not isinstance(stats, Mapping):
            continue
        for key in STAT_KEYS:
            fields[_stat_field(window, key)] = stats.get(key)
    return fields


def live_fields(token: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the refreshable subset of ``token`` keyed by cache field name."""

    return {name: token.get(key) for name, key in _LIVE_FIELDS if token.get(key) is not None}


def _token_mint(token: Mapping[str, Any]) -> Optional[str]:
    for key in ("mint", "address", "id", "__query"):
        value = token.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def tokens_by_mint(data: Any) -> Dict[str, Dict[str, Any]]:
    """Normalise a search response into ``{mint: token}``.

    Accepted shapes: a list of tokens, ``{"results": {query: [token, ...]}}``
    and ``{"data": [token, ...]}``.
    """

    out: Dict[str, Dict[str, Any]] = {}
    if isinstance(data, list):
        items: Iterable[Any] = data
    elif isinstance(data, Mapping) and isinstance(data.get("results"), Mapping):
        for query, tokens in data["results"].items():
            if not isinstance(tokens, list) or not tokens or not isinstance(tokens[0], Mapping):
                continue
            token = tokens[0]
            mint = _token_mint(token) or str(query)
            out.setdefault(mint, dict(token))
        return out
    elif isinstance(data, Mapping) and isinstance(data.get("data"), list):
        items = data["data"]
    else:
        return out
    for token in items:
        if not isinstance(token, Mapping):
            continue
        mint = _token_mint(token)
        if mint:
            out.setdefault(mint, dict(token))
    return out


class JupiterClient:
    """Thin async client for the Jupiter APIs used by the service."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        api_key: str | None = None,
        holdings_path: str = DEFAULT_HOLDINGS_PATH,
        retries: int = 1,
        backoff: float = 0.5,
        fetch: Fetch | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.holdings_path = holdings_path
        self.retries = retries
        self.backoff = backoff
        self._fetch = fetch or fetch_json

    def _headers(self, *, json_body: bool = False) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _get(self, url: str, *, retries: int | None = None) -> Any:
        return await self._fetch(
            url,
            "GET",
            retries=self.retries if retries is None else retries,
            backoff=self.backoff,
            headers=self._headers(),
        )

    # token search -------------------------------------------------------
    async def search(self, query: str) -> List[Dict[str, Any]]:
        """Search a single mint/query string; returns the raw token list."""

        url = f"{self.base_url}{SEARCH_PATH}?query={quote(query, safe='')}"
        data = await self._get(url)
        if isinstance(data, list) and data:
            write_api_log_once("jupiter", query, data)
            return [token for token in data if isinstance(token, Mapping)]
        return []

    async def search_token(self, mint: str) -> Optional[Dict[str, Any]]:
        tokens = await self.search(mint)
        return tokens[0] if tokens else None

    async def search_batch(self, queries: Sequence[str]) -> Any:
        """POST up to N queries at once.

        A 429 propagates so that the caller can trip its backoff gate.  Any
        other failure falls back to one GET per query; each fallback result is
        tagged with ``__query``.
        """

        url = f"{self.base_url}{SEARCH_PATH}"
        try:
            return await self._fetch(
                url,
                "POST",
                retries=self.retries,
                backoff=self.backoff,
                headers=self._headers(json_body=True),
                json={"queries": list(queries)},
            )
        except Exception as exc:
            if is_rate_limited(exc):
                raise
            log.info("Jupiter batch search failed, falling back to single queries: %s", exc)
        results: List[Dict[str, Any]] = []
        for query in queries:
            try:
                tokens = await self.search(query)
            except Exception as exc:
                if is_rate_limited(exc):
                    raise
                log.debug("Jupiter search failed for %s: %s", query, exc)
                continue
            for token in tokens:
                tagged = dict(token)
                tagged["__query"] = query
                results.append(tagged)
        return results

    # holdings -----------------------------------------------------------
    def holdings_candidates(self, wallet: str) -> List[str]:
        quoted = quote(wallet, safe="")
        base = self.base_url
        candidates = [f"{base}{self.holdings_path}/{quoted}"]
        if self.holdings_path != DEFAULT_HOLDINGS_PATH:
            candidates.append(f"{base}{DEFAULT_HOLDINGS_PATH}/{quoted}")
        candidates.extend(
            [
                f"{base}{self.holdings_path}?wallet={quoted}",
                f"{base}/v1/wallet/holdings?wallet={quoted}",
                f"{base}/v1/wallet/holdings?publicKey={quoted}",
                f"{base}/wallet/holdings?wallet={quoted}",
            ]
        )
        return candidates

    async def holdings_raw(self, wallet: str) -> Any:
        """Return the raw holdings payload of ``wallet``.

        Candidate endpoints are tried in order and a 404 moves on to the next
        one; any other error propagates.
        """

        last_error: Exception | None = None
        for url in self.holdings_candidates(wallet):
            try:
                return await self._get(url, retries=0)
            except HTTPError as exc:
                if exc.status == 404:
                    last_error = exc
                    continue
                raise
        if last_error is not None:
            raise last_error
        raise RuntimeError("no Jupiter holdings endpoint available")

    async def holdings(self, wallet: str) -> Dict[str, float]:
        """Return ``{mint: ui_amount}`` for ``wallet``."""

        data = await self.holdings_raw(wallet)
        return holdings_by_mint(data)


__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_HOLDINGS_PATH",
    "EMPTY_MARKET_FIELDS",
    "STAT_WINDOWS",
    "STAT_KEYS",
    "JupiterClient",
    "market_fields",
    "live_fields",
    "tokens_by_mint",
]
