"""In-memory mint/wallet holdings store.

Every read and write of live holdings goes through :class:`HoldingsCache`.
Ingestion learns new mints and wallets through :meth:`HoldingsCache.upsert`;
the refresh loops only ever correct amounts of wallets that are already
tracked via :meth:`HoldingsCache.set_wallet_amount`.

Field merging is expressed through a small set of named functions so that the
policy can be reviewed (and tested) independently of the writers:

``fill_if_absent``
    descriptive metadata, never replaced once known
``overwrite_if_non_null``
    current-state market metrics, always replaced by the latest non-null value
``advance_provenance``
    ``last_timestamp`` only moves forward
``merge_wallet``
    per-wallet amount, ``sold_at`` and funding bookkeeping
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .amounts import finite_or_zero, to_seconds

logger = logging.getLogger(__name__)

Observation = Mapping[str, Any]

# Descriptive metadata: first non-null observation wins.
FILL_IF_ABSENT_FIELDS: Tuple[str, ...] = (
    "token_symbol",
    "token_name",
    "token_icon",
    "dev",
    "launchpad",
    "first_pool_created_at",
    "twitter",
    "website",
    "source_url",
    "fund_origin",
    "fund_age_literal",
    "fund_age_seconds",
)

# Current-state metrics: latest non-null observation wins.
OVERWRITE_IF_NON_NULL_FIELDS: Tuple[str, ...] = (
    "usd_price",
    "liquidity",
    "holder_count",
    "mcap",
    "top_holders_percentage",
    "dev_migrations",
)

DEFAULT_SOURCE_LABELS: Tuple[Tuple[str, str], ...] = (
    ("channels/958046672473194556/1241009019494072370", "AG"),
    ("channels/1372291116853887077/1382098297891717252", "Fresh"),
    ("channels/1372291116853887077/1382099149842812988", "Dormant"),
    ("channels/1372291116853887077/1387731366212538390", "SNS"),
    ("channels/1372291116853887077/1387731454577872936", "AboveAVG"),
)


@dataclass
class WalletRecord:
    account: str
    first_seen: int
    last_seen: int
    last_signature: Optional[str] = None
    last_slot: Optional[int] = None
    last_amount: Optional[float] = None
    sold_at: Optional[int] = None
    tx_count: int = 0
    funding_origin: Optional[str] = None
    fund_age_literal: Optional[str] = None
    fund_age_seconds: Optional[int] = None
    funding_signature: Optional[str] = None
    type_label: Optional[str] = None
    type_tags: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.account,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "last_signature": self.last_signature,
            "last_slot": self.last_slot,
            "last_amount": self.last_amount,
            "sold_at": self.sold_at,
            "txCount": self.tx_count,
            "funding_origin": self.funding_origin,
            "fund_age_literal": self.fund_age_literal,
            "fund_age_seconds": self.fund_age_seconds,
            "funding_signature": self.funding_signature or self.last_signature,
            "type_label": self.type_label,
            "type_tags": list(self.type_tags),
        }


@dataclass
class MintRecord:
    mint: str
    token_symbol: Optional[str] = None
    token_name: Optional[str] = None
    token_icon: Optional[str] = None
    usd_price: Optional[float] = None
    liquidity: Optional[float] = None
    holder_count: Optional[int] = None
    mcap: Optional[float] = None
    top_holders_percentage: Optional[float] = None
    dev_migrations: Optional[int] = None
    dev: Optional[str] = None
    launchpad: Optional[str] = None
    first_pool_created_at: Optional[str] = None
    twitter: Optional[str] = None
    website: Optional[str] = None
    last_signature: Optional[str] = None
    last_slot: Optional[int] = None
    last_timestamp: int = 0
    source_url: Optional[str] = None
    type_label: Optional[str] = None
    fund_origin: Optional[str] = None
    fund_age_literal: Optional[str] = None
    fund_age_seconds: Optional[int] = None
    accounts: Dict[str, WalletRecord] = field(default_factory=dict)
    under_threshold_since: Optional[float] = None

    def total(self) -> float:
        return sum(finite_or_zero(entry.last_amount) for entry in self.accounts.values())

    def wallets(self) -> List[WalletRecord]:
        """Return wallets ordered by ``last_seen`` (most recent first)."""

        return sorted(self.accounts.values(), key=lambda w: w.last_seen or 0, reverse=True)

    def summary(self) -> Dict[str, Any]:
        return {
            "mint": self.mint,
            "type_label": self.type_label,
            "token_symbol": self.token_symbol,
            "token_name": self.token_name,
            "token_icon": self.token_icon,
            "usd_price": self.usd_price,
            "liquidity": self.liquidity,
            "mcap": self.mcap,
            "holder_count": self.holder_count,
            "top_holders_percentage": self.top_holders_percentage,
            "dev_migrations": self.dev_migrations,
            "dev": self.dev,
            "launchpad": self.launchpad,
            "first_pool_created_at": self.first_pool_created_at,
            "twitter": self.twitter,
            "website": self.website,
            "last_signature": self.last_signature,
            "last_slot": self.last_slot,
            "last_timestamp": self.last_timestamp,
            "source_url": self.source_url,
            "fund_origin": self.fund_origin,
            "fund_age_literal": self.fund_age_literal,
            "fund_age_seconds": self.fund_age_seconds,
            "wallets_count": len(self.accounts),
            "total": self.total(),
        }

    def as_card(self) -> Dict[str, Any]:
        card = self.summary()
        card["wallets"] = [wallet.as_dict() for wallet in self.wallets()]
        return card


# ---------------------------------------------------------------------------
# merge policy
# ---------------------------------------------------------------------------


def fill_if_absent(record: Any, observation: Observation, fields: Iterable[str]) -> None:
    """Set each of ``fields`` on ``record`` only while it is still ``None``."""

    for name in fields:
        if getattr(record, name) is None:
            value = observation.get(name)
            if value is not None:
                setattr(record, name, value)


def overwrite_if_non_null(record: Any, observation: Observation, fields: Iterable[str]) -> bool:
    """Replace each of ``fields`` with the observed value when it is non-null."""

    changed = False
    for name in fields:
        value = observation.get(name)
        if value is not None and getattr(record, name) != value:
            setattr(record, name, value)
            changed = True
    return changed


def advance_provenance(record: MintRecord, observation: Observation, ts: int) -> None:
    """Move ``last_*`` provenance forward when ``ts`` is not older than the record."""

    if record.last_timestamp and ts < record.last_timestamp:
        return
    record.last_timestamp = ts
    if observation.get("slot") is not None:
        record.last_slot = observation.get("slot")
    if observation.get("signature") is not None:
        record.last_signature = observation.get("signature")


def _apply_sold_marker(entry: WalletRecord, ts: int) -> None:
    if entry.last_amount is None:
        return
    if finite_or_zero(entry.last_amount) > 0:
        entry.sold_at = None
    elif entry.sold_at is None:
        entry.sold_at = ts


def _add_tag(entry: WalletRecord, label: Optional[str]) -> None:
    if not label:
        return
    if entry.type_label is None:
        entry.type_label = label
    if label not in entry.type_tags:
        entry.type_tags.append(label)


def new_wallet(account: str, observation: Observation, ts: int, label: Optional[str]) -> WalletRecord:
    entry = WalletRecord(
        account=account,
        first_seen=ts,
        last_seen=ts,
        last_signature=observation.get("signature"),
        last_slot=observation.get("slot"),
        last_amount=observation.get("token_amount"),
        tx_count=1,
        funding_origin=observation.get("fund_origin"),
        fund_age_literal=observation.get("fund_age_literal"),
        fund_age_seconds=observation.get("fund_age_seconds"),
        funding_signature=observation.get("signature"),
    )
    _add_tag(entry, label)
    _apply_sold_marker(entry, ts)
    return entry


def merge_wallet(entry: WalletRecord, observation: Observation, ts: int, label: Optional[str]) -> None:
    """Fold one ingestion observation into an existing wallet entry."""

    entry.last_seen = max(entry.last_seen or 0, ts)
    if observation.get("signature") is not None:
        entry.last_signature = observation.get("signature")
        entry.funding_signature = observation.get("signature")
    if observation.get("slot") is not None:
        entry.last_slot = observation.get("slot")
    if observation.get("token_amount") is not None:
        entry.last_amount = observation.get("token_amount")
    _apply_sold_marker(entry, ts)
    entry.tx_count += 1
    if observation.get("fund_origin") is not None:
        entry.funding_origin = observation.get("fund_origin")
    if observation.get("fund_age_literal") is not None:
        entry.fund_age_literal = observation.get("fund_age_literal")
    if observation.get("fund_age_seconds") is not None:
        entry.fund_age_seconds = observation.get("fund_age_seconds")
    _add_tag(entry, label)


# ---------------------------------------------------------------------------
# cache
# ---------------------------------------------------------------------------


class HoldingsCache:
    """Mint-keyed store of :class:`MintRecord` objects."""

    def __init__(
        self,
        *,
        min_total: float = 0.0,
        clock: Callable[[], float] = time.time,
        source_labels: Iterable[Tuple[str, str]] | None = None,
    ) -> None:
        self.min_total = float(min_total)
        self._clock = clock
        self._labels: Tuple[Tuple[str, str], ...] = tuple(
            DEFAULT_SOURCE_LABELS if source_labels is None else source_labels
        )
        self._mints: Dict[str, MintRecord] = {}

    # basic mapping API ----------------------------------------------------
    def __len__(self) -> int:
        return len(self._mints)

    def __contains__(self, mint: object) -> bool:
        return mint in self._mints

    def __iter__(self) -> Iterator[MintRecord]:
        return iter(list(self._mints.values()))

    def get(self, mint: str) -> Optional[MintRecord]:
        return self._mints.get(mint)

    def remove(self, mint: str) -> Optional[MintRecord]:
        return self._mints.pop(mint, None)

    def now(self) -> float:
        return self._clock()

    # labels ---------------------------------------------------------------
    def type_label_for(self, source_url: Any) -> Optional[str]:
        """Map a feed URL onto its configured type label."""

        if not source_url:
            return None
        text = str(source_url)
        for needle, label in self._labels:
            if needle in text:
                return label
        return None

    # threshold ------------------------------------------------------------
    def is_active(self, total: float) -> bool:
        """Return ``True`` when ``total`` keeps a mint eligible for refresh."""

        return total > 0 and total >= self.min_total

    def total(self, mint: str) -> float:
        record = self._mints.get(mint)
        if record is None:
            return 0.0
        return record.total()

    def refresh_threshold(self, record: MintRecord) -> bool:
        """Update ``under_threshold_since``; return ``True`` when it changed."""

        if self.is_active(record.total()):
            if record.under_threshold_since is not None:
                record.under_threshold_since = None
                return True
            return False
        if record.under_threshold_since is None:
            record.under_threshold_since = self._clock()
            return True
        return False

    # writes ---------------------------------------------------------------
    def upsert(self, observation: Observation) -> None:
        """Merge one enriched transaction record into the store.

        The caller is expected to publish a ``mint_card_update`` afterwards.
        """

        mint = observation.get("mint")
        if not mint:
            return
        ts = to_seconds(observation.get("timestamp"), self._clock())
        label = self.type_label_for(observation.get("source_url"))

        record = self._mints.get(mint)
        if record is None:
            record = MintRecord(mint=mint, type_label=label)
            self._mints[mint] = record
        elif record.type_label is None and label:
            record.type_label = label
        fill_if_absent(record, observation, FILL_IF_ABSENT_FIELDS)
        overwrite_if_non_null(record, observation, OVERWRITE_IF_NON_NULL_FIELDS)
        advance_provenance(record, observation, ts)

        account = observation.get("to_user_account")
        if account:
            entry = record.accounts.get(account)
            if entry is None:
                record.accounts[account] = new_wallet(account, observation, ts, label)
            else:
                merge_wallet(entry, observation, ts, label)
        self.refresh_threshold(record)

    def merge_market(self, mint: str, fields: Observation) -> bool:
        """Apply refreshed market stats for ``mint``; ``False`` if untracked."""

        record = self._mints.get(mint)
        if record is None:
            return False
        overwrite_if_non_null(record, fields, OVERWRITE_IF_NON_NULL_FIELDS)
        fill_if_absent(
            record,
            fields,
            ("token_name", "token_symbol", "token_icon", "twitter", "website"),
        )
        return True

    def set_wallet_amount(self, mint: str, wallet: str, amount: Any) -> bool:
        """Write a refreshed balance; return ``True`` only when it changed.

        Wallets are never created here: unknown ``(mint, wallet)`` pairs are a
        no-op.
        """

        record = self._mints.get(mint)
        if record is None:
            return False
        entry = record.accounts.get(wallet)
        if entry is None:
            return False
        previous = finite_or_zero(entry.last_amount)
        current = finite_or_zero(amount)
        if previous == current:
            return False
        now = int(self._clock())
        entry.last_amount = current
        entry.last_seen = max(entry.last_seen or 0, now)
        entry.sold_at = now if current <= 0 else None
        self.refresh_threshold(record)
        return True

    # reads ----------------------------------------------------------------
    def card(self, mint: str) -> Optional[Dict[str, Any]]:
        record = self._mints.get(mint)
        if record is None:
            return None
        return record.as_card()

    def snapshot(self, limit: int = 100, order: str = "desc") -> Tuple[Mapping[str, Any], ...]:
        """Return read-only cards ordered by ``last_timestamp``."""

        reverse = str(order).lower() != "asc"
        records = sorted(
            self._mints.values(),
            key=lambda r: r.last_timestamp or 0,
            reverse=reverse,
        )
        if limit is not None and limit >= 0:
            records = records[:limit]
        return tuple(MappingProxyType(record.as_card()) for record in records)

    def mints_for_wallet(self, wallet: str) -> List[str]:
        return [mint for mint, record in self._mints.items() if wallet in record.accounts]

    def active_mints(self) -> List[str]:
        """Active mints ordered by recency (most recent first)."""

        records = [r for r in self._mints.values() if self.is_active(r.total())]
        records.sort(key=lambda r: r.last_timestamp or 0, reverse=True)
        return [r.mint for r in records]

    def wallet_priority(self) -> List[str]:
        """Wallets of active mints ranked by max(mint recency, wallet recency)."""

        scores: Dict[str, int] = {}
        for record in self._mints.values():
            if not self.is_active(record.total()):
                continue
            base = record.last_timestamp or 0
            for entry in record.accounts.values():
                score = max(base, entry.last_seen or 0)
                if score > scores.get(entry.account, -1):
                    scores[entry.account] = score
        return [wallet for wallet, _ in sorted(scores.items(), key=lambda item: item[1], reverse=True)]


__all__ = [
    "FILL_IF_ABSENT_FIELDS",
    "OVERWRITE_IF_NON_NULL_FIELDS",
    "DEFAULT_SOURCE_LABELS",
    "WalletRecord",
    "MintRecord",
    "HoldingsCache",
    "fill_if_absent",
    "overwrite_if_non_null",
    "advance_provenance",
    "merge_wallet",
    "new_wallet",
]
