"""Normalisation helpers for provider balance payloads.

Both holdings providers answer with several loosely specified shapes.  The
helpers here collapse them into one canonical mapping so that the cache and
the refresh loops never see provider specific JSON:

* :func:`holdings_by_mint` - wallet holdings (``mint -> ui amount``)
* :func:`balances_by_owner` - token accounts of a mint (``wallet -> ui amount``)
"""

from __future__ import annotations

import math
import re
import time
from typing import Any, Dict, Iterable, Mapping

# Raw token accounts sometimes arrive without decimals; most launchpad mints
# use six.
DEFAULT_DECIMALS = 6

_MS_THRESHOLD = 10_000_000_000

_TIME_UNITS: Dict[str, int] = {
    "s": 1,
    "m": 60,
    "h": 3_600,
    "d": 86_400,
    "w": 604_800,
    "mo": 2_592_000,
    "y": 31_536_000,
}
_TIME_LITERAL_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(mo|s|m|h|d|w|y)$", re.IGNORECASE)


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def finite_or_zero(value: Any) -> float:
    """Return ``value`` as a float, treating missing or non-finite input as 0."""

    number = _coerce_float(value)
    return 0.0 if number is None else number


def scale_raw_amount(amount: Any, decimals: Any) -> float | None:
    """Convert a raw integer ``amount`` with ``decimals`` into UI units."""

    raw = _coerce_float(amount)
    dec = _coerce_float(decimals)
    if raw is None or dec is None:
        return None
    return raw / (10 ** dec)


def ui_amount(entry: Mapping[str, Any] | None) -> float | None:
    """Return the UI amount of one balance entry or ``None`` when unknown."""

    if not isinstance(entry, Mapping):
        return None
    if entry.get("uiAmount") is not None:
        return _coerce_float(entry.get("uiAmount"))
    if entry.get("amount") is not None and entry.get("decimals") is not None:
        scaled = scale_raw_amount(entry.get("amount"), entry.get("decimals"))
        if scaled is not None:
            return scaled
    for key in ("balance", "uiBalance", "uiAmountString"):
        if entry.get(key) is not None:
            return _coerce_float(entry.get(key))
    return None


def _entry_mint(entry: Mapping[str, Any]) -> str | None:
    for key in ("mint", "address", "id"):
        value = entry.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _collect_list(items: Iterable[Any]) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for entry in items:
        if not isinstance(entry, Mapping):
            continue
        mint = _entry_mint(entry)
        amount = ui_amount(entry)
        if mint and amount is not None:
            out[mint] = amount
    return out


def holdings_by_mint(payload: Any) -> Dict[str, float]:
    """Normalise a wallet holdings response into ``{mint: ui_amount}``.

    Accepted shapes:

    * a flat list of balance entries;
    * ``{"holdings": [...]}`` or ``{"data": [...]}``;
    * ``{"tokens": {mint: [token_account, ...]}}`` where the accounts of one
      mint are summed.
    """

    if not payload:
        return {}
    if isinstance(payload, list):
        return _collect_list(payload)
    if not isinstance(payload, Mapping):
        return {}

    items = payload.get("holdings")
    if items is None:
        items = payload.get("data")
    if isinstance(items, list):
        return _collect_list(items)

    tokens = payload.get("tokens")
    out: Dict[str, float] = {}
    if isinstance(tokens, Mapping):
        for mint, accounts in tokens.items():
            if not mint or not isinstance(accounts, list):
                continue
            total = 0.0
            for account in accounts:
                amount = ui_amount(account)
                if amount is not None:
                    total += amount
            out[str(mint)] = total
    return out


def _account_owner(account: Mapping[str, Any]) -> str | None:
    for key in ("owner", "owner_address", "address"):
        value = account.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _account_amount(account: Mapping[str, Any]) -> float | None:
    token_amount = account.get("token_amount")
    if isinstance(token_amount, Mapping):
        scaled = scale_raw_amount(token_amount.get("amount"), token_amount.get("decimals"))
        if scaled is not None:
            return scaled
    if account.get("amount") is not None:
        decimals = account.get("decimals")
        if decimals is None:
            decimals = DEFAULT_DECIMALS
        return scale_raw_amount(account.get("amount"), decimals)
    return None


def balances_by_owner(payload: Any) -> Dict[str, float]:
    """Normalise token accounts of one mint into ``{owner: ui_amount}``.

    ``payload`` may be the full JSON-RPC envelope, its ``result`` or the bare
    ``token_accounts`` list.  Several accounts owned by one wallet are summed.
    """

    accounts: Any = payload
    if isinstance(accounts, Mapping) and "result" in accounts:
        accounts = accounts.get("result")
    if isinstance(accounts, Mapping):
        accounts = accounts.get("token_accounts")
    if not isinstance(accounts, list):
        return {}

    out: Dict[str, float] = {}
    for account in accounts:
        if not isinstance(account, Mapping):
            continue
        owner = _account_owner(account)
        amount = _account_amount(account)
        if owner is None or amount is None:
            continue
        out[owner] = out.get(owner, 0.0) + amount
    return out


def parse_time_literal(expr: Any) -> int | None:
    """Parse ``"30s"``, ``"45m"``, ``"2d"``, ``"1mo"`` ... into seconds."""

    if expr is None:
        return None
    match = _TIME_LITERAL_RE.match(str(expr).strip())
    if not match:
        return None
    quantity = float(match.group(1))
    seconds = quantity * _TIME_UNITS[match.group(2).lower()]
    if not math.isfinite(seconds):
        return None
    return int(round(seconds))


def to_seconds(ts: Any, now: float | None = None) -> int:
    """Return ``ts`` as Unix seconds; millisecond values are scaled down.

    Missing or unparsable timestamps fall back to ``now``.
    """

    value = _coerce_float(ts)
    if not value:
        return int(now if now is not None else time.time())
    if value > _MS_THRESHOLD:
        return int(value // 1000)
    return int(value)


__all__ = [
    "DEFAULT_DECIMALS",
    "finite_or_zero",
    "scale_raw_amount",
    "ui_amount",
    "holdings_by_mint",
    "balances_by_owner",
    "parse_time_literal",
    "to_seconds",
]
