"""Payload builders for the events published on the bus."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

MINT_CARD_UPDATE = "mint_card_update"
HOLDING_UPDATE = "holding_update"
MINT_CLEANUP = "mint_cleanup"
TRANSACTION = "transaction"


def mint_card_update(card: Mapping[str, Any], ts: float) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"type": MINT_CARD_UPDATE}
    payload.update(card)
    payload["timestamp"] = int(ts)
    return payload


def holding_update(mint: str, wallet: str, last_amount: float, ts: float) -> Dict[str, Any]:
    return {
        "type": HOLDING_UPDATE,
        "mint": mint,
        "wallet": wallet,
        "last_amount": last_amount,
        "timestamp": int(ts),
    }


def mint_cleanup(
    removed: Iterable[Mapping[str, Any]],
    *,
    threshold: float,
    older_than: float,
    ts: float,
) -> Dict[str, Any]:
    """One event for every mint evicted by a single sweep."""

    details = [dict(item) for item in removed]
    return {
        "type": MINT_CLEANUP,
        "mints": [item["mint"] for item in details if item.get("mint")],
        "details": details,
        "threshold": threshold,
        "older_than": older_than,
        "older_than_ms": int(older_than * 1000),
        "timestamp": int(ts),
    }


def transaction(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Raw transaction record as stored; ``type`` keeps the provider's value."""

    payload = dict(record)
    payload["event"] = TRANSACTION
    return payload


__all__ = [
    "MINT_CARD_UPDATE",
    "HOLDING_UPDATE",
    "MINT_CLEANUP",
    "TRANSACTION",
    "mint_card_update",
    "holding_update",
    "mint_cleanup",
    "transaction",
]
