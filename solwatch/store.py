from __future__ import annotations

import asyncio
import datetime
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()
logger = logging.getLogger(__name__)

# Chunk size for ``IN (...)`` lookups; keeps SQLite below its variable limit.
_LOOKUP_CHUNK = 500


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Transaction(Base):
    __tablename__ = "transactions"

    signature = Column(String, primary_key=True)
    source_url = Column(Text)
    type = Column(String)
    source_label = Column(String)
    fee = Column(BigInteger)
    fee_payer = Column(String)
    slot = Column(BigInteger)
    timestamp = Column(BigInteger, index=True)
    mint = Column(String, index=True)
    to_user_account = Column(String)
    token_amount = Column(Float)
    token_standard = Column(String)
    token_name = Column(String)
    token_symbol = Column(String, index=True)
    token_icon = Column(Text)
    dev = Column(String)
    launchpad = Column(String)
    first_pool_created_at = Column(String)
    holder_count = Column(Integer)
    mcap = Column(Float)
    usd_price = Column(Float)
    liquidity = Column(Float)
    twitter = Column(Text)
    website = Column(Text)
    top_holders_percentage = Column(Float)
    dev_migrations = Column(Integer)
    fund_origin = Column(String)
    fund_age_literal = Column(String)
    fund_age_seconds = Column(Integer)
    extra = Column(JSON)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_transactions_mint_timestamp", "mint", "timestamp"),)


COLUMNS: tuple[str, ...] = tuple(
    c.name for c in Transaction.__table__.columns if c.name not in {"extra", "created_at"}
)
ORDERABLE: frozenset[str] = frozenset(COLUMNS) | {"created_at"}


def _row_values(record: Mapping[str, Any]) -> Dict[str, Any]:
    values = {name: record.get(name) for name in COLUMNS}
    extra = {k: v for k, v in record.items() if k not in values and not k.startswith("_")}
    values["extra"] = extra or None
    return values


def _row_to_dict(row: Transaction) -> Dict[str, Any]:
    out: Dict[str, Any] = {name: getattr(row, name) for name in COLUMNS}
    if isinstance(row.extra, dict):
        for key, value in row.extra.items():
            out.setdefault(key, value)
    out["created_at"] = row.created_at.isoformat() if row.created_at else None
    return out


class TransactionStore:
    """Durable transaction log keyed by signature."""

    def __init__(self, url: str = "sqlite:///solwatch.db", *, echo: bool = False) -> None:
        if url.startswith("sqlite:///"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        self.url = url
        self.engine = create_async_engine(url, echo=echo, future=True)
        self.Session: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        self._init_task: asyncio.Task | None = None

    async def _init_models(self) -> None:
        async with self.engine.begin() as conn:
            if str(self.engine.url).startswith("sqlite+aiosqlite"):
                try:
                    await conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
                    await conn.exec_driver_sql("PRAGMA synchronous=NORMAL;")
                except SQLAlchemyError:
                    logger.debug("SQLite PRAGMA tuning failed", exc_info=True)
            await conn.run_sync(Base.metadata.create_all)

    async def wait_ready(self) -> None:
        if self._init_task is None:
            self._init_task = asyncio.get_running_loop().create_task(self._init_models())
        await self._init_task

    # writes ---------------------------------------------------------------
    async def _upsert(self, rows: Sequence[Mapping[str, Any]]) -> None:
        async with self.Session() as session:
            async with session.begin():
                for row in rows:
                    await session.merge(Transaction(**_row_values(row)))

    async def insert_batch(self, records: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
        """Upsert ``records`` by signature.

        Duplicate signatures inside one call are dropped and counted as
        skipped.  When the batched transaction fails every record is retried
        on its own so one bad row cannot sink the batch.
        """

        await self.wait_ready()
        records = list(records)
        unique: List[Mapping[str, Any]] = []
        seen: Set[str] = set()
        for record in records:
            sig = record.get("signature")
            if not sig or sig in seen:
                continue
            seen.add(sig)
            unique.append(record)
        skipped = len(records) - len(unique)
        if skipped:
            logger.info("Removed %d duplicate signatures from batch", skipped)
        if not unique:
            return {"inserted": 0, "skipped": skipped, "failed": 0, "results": []}

        try:
            await self._upsert(unique)
        except SQLAlchemyError as exc:
            logger.warning("batch upsert failed, retrying one at a time: %s", exc)
            return await self._insert_one_by_one(unique, skipped)
        return {
            "inserted": len(unique),
            "skipped": skipped,
            "failed": 0,
            "results": [{"status": "inserted", "signature": r["signature"]} for r in unique],
        }

    async def _insert_one_by_one(self, records: Sequence[Mapping[str, Any]], skipped: int) -> Dict[str, Any]:
        inserted = failed = 0
        results: List[Dict[str, Any]] = []
        for record in records:
            try:
                await self._upsert([record])
            except SQLAlchemyError as exc:
                failed += 1
                results.append({"status": "failed", "signature": record.get("signature"), "error": str(exc)})
                continue
            inserted += 1
            results.append({"status": "inserted", "signature": record.get("signature")})
        return {"inserted": inserted, "skipped": skipped, "failed": failed, "results": results}

    # reads ----------------------------------------------------------------
    async def existing_signatures(self, signatures: Iterable[str]) -> Set[str]:
        """Return the subset of ``signatures`` already stored; empty on error."""

        sigs = [s for s in dict.fromkeys(signatures) if s]
        if not sigs:
            return set()
        try:
            await self.wait_ready()
            found: Set[str] = set()
            async with self.Session() as session:
                for start in range(0, len(sigs), _LOOKUP_CHUNK):
                    chunk = sigs[start:start + _LOOKUP_CHUNK]
                    result = await session.execute(
                        select(Transaction.signature).where(Transaction.signature.in_(chunk))
                    )
                    found.update(result.scalars().all())
            return found
        except SQLAlchemyError:
            logger.exception("Error checking existing signatures")
            return set()

    async def get_by_signature(self, signature: str) -> Optional[Dict[str, Any]]:
        await self.wait_ready()
        async with self.Session() as session:
            row = await session.get(Transaction, signature)
            return _row_to_dict(row) if row is not None else None

    async def query(
        self,
        filters: Mapping[str, Any] | None = None,
        *,
        limit: int | None = 100,
        offset: int = 0,
        order_by: str | None = None,
        ascending: bool | None = None,
    ) -> Dict[str, Any]:
        """Filtered, paginated listing: ``{"data": [...], "count": total}``.

        Supported filters: ``mint``, ``signature``, ``from_timestamp``,
        ``to_timestamp``, ``token_symbol``.  Without ``order_by`` rows come
        newest first.
        """

        await self.wait_ready()
        filters = filters or {}
        conditions = []
        if filters.get("mint"):
            conditions.append(Transaction.mint == filters["mint"])
        if filters.get("signature"):
            conditions.append(Transaction.signature == filters["signature"])
        if filters.get("from_timestamp") is not None:
            conditions.append(Transaction.timestamp >= int(filters["from_timestamp"]))
        if filters.get("to_timestamp") is not None:
            conditions.append(Transaction.timestamp <= int(filters["to_timestamp"]))
        if filters.get("token_symbol"):
            conditions.append(Transaction.token_symbol == filters["token_symbol"])

        if order_by:
            if order_by not in ORDERABLE:
                raise ValueError(f"cannot order by {order_by!r}")
            column = getattr(Transaction, order_by)
            ordering = column.asc() if ascending is not False else column.desc()
        else:
            ordering = Transaction.timestamp.asc() if ascending else Transaction.timestamp.desc()

        q = select(Transaction).where(*conditions).order_by(ordering, Transaction.signature)
        if offset:
            q = q.offset(int(offset))
        if limit is not None:
            q = q.limit(int(limit))
        count_q = select(func.count()).select_from(Transaction).where(*conditions)

        async with self.Session() as session:
            rows = (await session.execute(q)).scalars().all()
            count = (await session.execute(count_q)).scalar_one()
        return {"data": [_row_to_dict(r) for r in rows], "count": int(count)}

    async def stats(self) -> Dict[str, Any]:
        await self.wait_ready()
        async with self.Session() as session:
            total = (await session.execute(select(func.count()).select_from(Transaction))).scalar_one()
            mints = (
                await session.execute(select(func.count(func.distinct(Transaction.mint))))
            ).scalar_one()
            latest = (await session.execute(select(func.max(Transaction.timestamp)))).scalar_one()
            top_q = (
                select(Transaction.token_symbol, func.count().label("count"))
                .where(Transaction.token_symbol.is_not(None))
                .group_by(Transaction.token_symbol)
                .order_by(func.count().desc(), Transaction.token_symbol)
                .limit(10)
            )
            top = (await session.execute(top_q)).all()
        return {
            "total": int(total),
            "mints": int(mints or 0),
            "latest_timestamp": latest,
            "top_tokens": [{"symbol": symbol, "count": int(count)} for symbol, count in top],
        }

    async def test_connection(self) -> bool:
        try:
            await self.wait_ready()
            async with self.Session() as session:
                await session.execute(select(func.count()).select_from(Transaction))
        except (SQLAlchemyError, OSError):
            logger.exception("store connection test failed")
            return False
        return True

    async def close(self) -> None:
        if self._init_task is not None:
            try:
                await self._init_task
            except SQLAlchemyError:
                logger.debug("store init failed before close", exc_info=True)
        await self.engine.dispose()

    async def __aenter__(self) -> "TransactionStore":
        await self.wait_ready()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["Base", "Transaction", "TransactionStore", "COLUMNS"]
