"""Signature batching and enrichment.

Signatures reported by the feed scraper are collected into a pending batch
that is flushed when it reaches ``flush_size`` entries or ``flush_delay``
seconds after its first signature arrived, whichever happens first.  A flush
skips signatures the store already knows, enriches the rest through Helius
(transaction detail) and Jupiter (token/market fields), persists the records,
merges them into the holdings cache and publishes the resulting events.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from . import events
from .amounts import parse_time_literal, to_seconds
from .clients.helius import transaction_fields
from .clients.jupiter import EMPTY_MARKET_FIELDS, market_fields
from .holdings_cache import HoldingsCache
from .metrics import SIGNATURES_PROCESSED

logger = logging.getLogger(__name__)

Publish = Callable[[Mapping[str, Any]], Any]


@dataclass(slots=True)
class FundingInfo:
    origin: Optional[str] = None
    age_literal: Optional[str] = None
    age_seconds: Optional[int] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> Optional["FundingInfo"]:
        origin = entry.get("fundOrigin")
        literal = entry.get("fundAgeLiteral")
        if literal is None:
            literal = entry.get("fundAge")
        tags = entry.get("tags")
        tags = [str(t) for t in tags if t] if isinstance(tags, list) else []
        if origin is None and literal is None and not tags:
            return None
        literal = str(literal) if literal is not None else None
        return cls(
            origin=str(origin) if origin is not None else None,
            age_literal=literal,
            age_seconds=parse_time_literal(literal) if literal else None,
            tags=tags,
        )

    def as_fields(self) -> Dict[str, Any]:
        return {
            "fund_origin": self.origin,
            "fund_age_literal": self.age_literal,
            "fund_age_seconds": self.age_seconds,
            "fund_source_tags": list(self.tags),
        }


_NO_FUNDING: Dict[str, Any] = {
    "fund_origin": None,
    "fund_age_literal": None,
    "fund_age_seconds": None,
    "fund_source_tags": [],
}


@dataclass
class PendingBatch:
    signatures: List[str]
    source: Optional[str]
    sources: Dict[str, Optional[str]]
    funding: Dict[str, FundingInfo]

    def source_for(self, signature: str) -> Optional[str]:
        return self.sources.get(signature) or self.source


class IngestionBatcher:
    def __init__(
        self,
        cache: HoldingsCache,
        store: Any,
        helius: Any,
        jupiter: Any,
        publish: Publish,
        *,
        flush_size: int = 20,
        flush_delay: float = 10.0,
        enrich_batch_size: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.store = store
        self.helius = helius
        self.jupiter = jupiter
        self.publish = publish
        self.flush_size = max(1, int(flush_size))
        self.flush_delay = max(0.0, float(flush_delay))
        self.enrich_batch_size = max(1, int(enrich_batch_size))
        self._clock = clock

        self._pending: Dict[str, None] = {}
        self._sources: Dict[str, Optional[str]] = {}
        self._funding: Dict[str, FundingInfo] = {}
        self._source: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flushing = False
        self._rerun = False
        self._flush_tasks: set[asyncio.Task] = set()

    # pending batch --------------------------------------------------------
    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    @property
    def flushing(self) -> bool:
        return self._flushing

    def accept(self, signature: str, source: Optional[str] = None, funding: Optional[FundingInfo] = None) -> bool:
        """Stage ``signature``; return ``True`` once the batch is full.

        The delay timer is armed by the first signature of a batch.
        """

        if not signature:
            return False
        if funding is not None:
            self._funding[signature] = funding
        if source:
            self._source = source
            self._sources.setdefault(signature, source)
        if signature not in self._pending:
            first = not self._pending
            self._pending[signature] = None
            if first:
                self._arm_timer()
        return len(self._pending) >= self.flush_size

    async def submit(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Accept ``{source, entries:[...]}`` or legacy ``{source, signatures:[...]}``.

        Flushes triggered by the batch size are awaited and their results
        returned.  Raises ``ValueError`` when no signature is supplied.
        """

        source = payload.get("source")
        entries = payload.get("entries")
        if not isinstance(entries, list) or not entries:
            signatures = payload.get("signatures")
            entries = list(signatures) if isinstance(signatures, list) else []
        staged: List[tuple[str, Optional[FundingInfo]]] = []
        for entry in entries:
            if isinstance(entry, str):
                entry = {"signature": entry}
            if not isinstance(entry, Mapping):
                continue
            sig = entry.get("signature")
            if isinstance(sig, str) and sig.strip():
                staged.append((sig.strip(), FundingInfo.from_entry(entry)))
        if not staged:
            raise ValueError("No signatures provided")

        results: List[Dict[str, Any]] = []
        for sig, funding in staged:
            if self.accept(sig, source, funding):
                results.extend(await self.flush())
        return {
            "accepted": len(staged),
            "pending": len(self._pending),
            "status": "processed" if results else "queued",
            "results": results,
        }

    def _arm_timer(self) -> None:
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(self.flush_delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    def _drain(self) -> PendingBatch:
        batch = PendingBatch(
            signatures=list(self._pending),
            source=self._source,
            sources=dict(self._sources),
            funding=dict(self._funding),
        )
        self._pending.clear()
        self._sources.clear()
        self._funding.clear()
        self._source = None
        return batch

    # flushing -------------------------------------------------------------
    async def flush(self) -> List[Dict[str, Any]]:
        """Drain and process the pending batch.

        Only one flush runs at a time; a flush requested meanwhile is folded
        into the running one.
        """

        if self._flushing:
            self._rerun = True
            return []
        self._cancel_timer()
        if not self._pending:
            return []
        self._flushing = True
        results: List[Dict[str, Any]] = []
        try:
            while self._pending:
                self._rerun = False
                self._cancel_timer()
                batch = self._drain()
                try:
                    results.extend(await self._process(batch))
                except Exception as exc:
                    reason = str(exc) or type(exc).__name__
                    logger.exception("batch of %d signatures failed: %s", len(batch.signatures), reason)
                    for sig in batch.signatures:
                        SIGNATURES_PROCESSED.labels("failed").inc()
                        results.append({"signature": sig, "status": "failed", "reason": reason})
                if not (self._rerun or len(self._pending) >= self.flush_size):
                    break
        finally:
            self._flushing = False
            self._rerun = False
        if self._pending:
            self._arm_timer()
        return results

    async def _process(self, batch: PendingBatch) -> List[Dict[str, Any]]:
        sigs = batch.signatures
        logger.info(
            "[Batch] Processing %d tx from %s",
            len(sigs),
            batch.source or "unknown",
            extra={"signatures": len(sigs)},
        )
        existing = await self.store.existing_signatures(sigs)
        results = [{"signature": s, "status": "skipped"} for s in sigs if s in existing]
        fresh = [s for s in sigs if s not in existing]
        for start in range(0, len(fresh), self.enrich_batch_size):
            chunk = fresh[start:start + self.enrich_batch_size]
            results.extend(await self._process_chunk(chunk, batch))

        counts: Dict[str, int] = {}
        for item in results:
            counts[item["status"]] = counts.get(item["status"], 0) + 1
            SIGNATURES_PROCESSED.labels(item["status"]).inc()
        logger.info(
            "Batch completed: inserted=%d, skipped=%d, failed=%d",
            counts.get("inserted", 0),
            counts.get("skipped", 0),
            counts.get("failed", 0),
        )
        return results

    async def _process_chunk(self, chunk: List[str], batch: PendingBatch) -> List[Dict[str, Any]]:
        try:
            txs = await self.helius.parse_transactions(chunk)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.warning(
                "transaction lookup failed for %d signatures: %s",
                len(chunk),
                reason,
                extra={"error_type": type(exc).__name__},
            )
            return [{"signature": s, "status": "failed", "reason": reason} for s in chunk]

        tokens: Dict[str, Dict[str, Any]] = {}
        records = []
        for sig in chunk:
            records.append(await self._build_record(sig, txs.get(sig), batch, tokens))

        statuses: Dict[str, Dict[str, Any]] = {}
        try:
            outcome = await self.store.insert_batch(records)
        except Exception as exc:
            reason = f"store: {exc}"
            logger.error("store insert failed: %s", exc, extra={"error_type": type(exc).__name__})
            statuses = {r["signature"]: {"status": "failed", "reason": reason} for r in records}
        else:
            for item in outcome.get("results", []):
                entry = {"status": item.get("status", "inserted")}
                if item.get("error"):
                    entry["reason"] = item["error"]
                statuses[item.get("signature")] = entry

        self._apply(records)

        results = []
        for record in records:
            sig = record["signature"]
            status = statuses.get(sig, {"status": "inserted"})
            results.append({"signature": sig, **status})
        return results

    async def _market_for(self, mint: str, tokens: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        if mint in tokens:
            return tokens[mint]
        try:
            token = await self.jupiter.search_token(mint)
        except Exception as exc:
            logger.info("Jupiter fetch failed for %s: %s", mint, exc)
            return dict(EMPTY_MARKET_FIELDS)
        fields = market_fields(token)
        tokens[mint] = fields
        return fields

    async def _build_record(
        self,
        signature: str,
        tx: Optional[Mapping[str, Any]],
        batch: PendingBatch,
        tokens: Dict[str, Dict[str, Any]],
    ) -> Dict[str, Any]:
        record: Dict[str, Any] = {"signature": signature, "source_url": batch.source_for(signature)}
        record.update(transaction_fields(tx))
        record["timestamp"] = to_seconds(record.get("timestamp"), self._clock())
        if record.get("mint"):
            record.update(await self._market_for(record["mint"], tokens))
        else:
            record.update(EMPTY_MARKET_FIELDS)
        funding = batch.funding.get(signature)
        record.update(funding.as_fields() if funding is not None else _NO_FUNDING)
        return record

    def _apply(self, records: Iterable[Mapping[str, Any]]) -> None:
        """Merge ``records`` into the cache and publish their events."""

        affected: Dict[str, None] = {}
        for record in records:
            if record.get("mint"):
                self.cache.upsert(record)
                affected[record["mint"]] = None
        now = self._clock()
        for mint in affected:
            card = self.cache.card(mint)
            if card is not None:
                self.publish(events.mint_card_update(card, now))
        for record in records:
            self.publish(events.transaction(record))

    async def close(self) -> None:
        self._cancel_timer()
        tasks = list(self._flush_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["FundingInfo", "PendingBatch", "IngestionBatcher"]
