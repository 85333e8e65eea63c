"""
Relational persistence for the position ledger

Tables:
- upload_batches: one row per ingested file (confirmations or opening balance)
- stock_transactions: parsed records, arrival order = primary key order
- manual_adjustments: at most one override row per instrument

Works on any SQLAlchemy backend; SQLite is the default.

Author: cl_equity_ledger team
Date: 2025
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Iterator

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    create_engine,
    delete,
    event,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from ledger.adjustments import AdjustmentRemoval, ManualAdjustment
from ledger.market_utils import normalize_instrument
from ledger.portfolio import Side, TransactionRecord

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///data/ledger.db"

SOURCE_CONFIRMATIONS = "confirmations"
SOURCE_OPENING_BALANCE = "opening_balance"


class Base(DeclarativeBase):
    pass


class UploadBatch(Base):
    __tablename__ = "upload_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_kind: Mapped[str] = mapped_column(String(32), nullable=False, default=SOURCE_CONFIRMATIONS)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)

    transactions: Mapped[List["StockTransaction"]] = relationship(
        back_populates="batch", cascade="all, delete-orphan", passive_deletes=True
    )


class StockTransaction(Base):
    __tablename__ = "stock_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("upload_batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    trade_date: Mapped[Optional[date]] = mapped_column(Date, index=True)
    instrument: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    quantity: Mapped[float] = mapped_column(Numeric(18, 3, asdecimal=False), nullable=False, default=0)
    price: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=False, default=0)
    amount: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=False, default=0)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    broker_code: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    broker_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    settlement_condition: Mapped[str] = mapped_column(String(2), nullable=False, default="CN")
    settlement_date: Mapped[Optional[date]] = mapped_column(Date)
    close_price: Mapped[Optional[float]] = mapped_column(Numeric(18, 2, asdecimal=False))
    source_is_opening_balance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    explicit_valuation: Mapped[Optional[float]] = mapped_column(Float)

    batch: Mapped["UploadBatch"] = relationship(back_populates="transactions")

    def to_record(self) -> TransactionRecord:
        return TransactionRecord(
            trade_date=self.trade_date,
            instrument=self.instrument,
            quantity=self.quantity or 0.0,
            price=self.price or 0.0,
            side=Side.parse(self.side),
            broker_code=self.broker_code or 0,
            broker_name=self.broker_name or "",
            settlement_condition=self.settlement_condition or "CN",
            settlement_date=self.settlement_date,
            close_price=self.close_price,
            source_is_opening_balance=bool(self.source_is_opening_balance),
            explicit_valuation=self.explicit_valuation,
        )


class ManualAdjustmentRow(Base):
    __tablename__ = "manual_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    instrument: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    override_quantity: Mapped[Optional[float]] = mapped_column(Numeric(18, 3, asdecimal=False))
    override_cost: Mapped[Optional[float]] = mapped_column(Numeric(18, 2, asdecimal=False))
    override_close_price: Mapped[Optional[float]] = mapped_column(Numeric(18, 2, asdecimal=False))
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)

    def to_adjustment(self) -> ManualAdjustment:
        return ManualAdjustment(
            instrument=self.instrument,
            override_quantity=self.override_quantity,
            override_cost=self.override_cost,
            override_close_price=self.override_close_price,
            updated_at=self.updated_at,
        )


def _batch_summary(batch: UploadBatch) -> Dict[str, Any]:
    return {
        'id': batch.id,
        'file_name': batch.file_name,
        'source_kind': batch.source_kind,
        'uploaded_at': batch.uploaded_at.isoformat(),
        'record_count': batch.record_count,
        'has_content': batch.content is not None,
    }


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_ledger_engine(database_url: str = DEFAULT_DATABASE_URL) -> Engine:
    """Create an engine; SQLite connections get foreign key enforcement."""
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        database = make_url(database_url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    engine = create_engine(database_url, future=True, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


class LedgerStore:
    """
    Persistence gateway for batches, transactions and adjustments.

    Every public method runs in its own transaction; a database error is
    logged, rolled back and re-raised.
    """

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, engine: Optional[Engine] = None):
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy URL (ignored when an engine is given)
            engine: Pre-built engine
        """
        self.engine = engine if engine is not None else create_ledger_engine(database_url)
        self.Session = sessionmaker(bind=self.engine, class_=Session, autoflush=False,
                                    expire_on_commit=False)
        logger.info(f"LedgerStore bound to {self.engine.url.render_as_string(hide_password=True)}")

    def create_schema(self):
        """Create missing tables."""
        Base.metadata.create_all(self.engine)
        logger.info("Ledger schema ready")

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error, transaction rolled back: {e}")
            raise
        finally:
            session.close()

    # Upload batches

    def save_batch(self, records: Iterable[TransactionRecord], file_name: str,
                   source_kind: str = SOURCE_CONFIRMATIONS, content: Optional[bytes] = None,
                   replace_existing: bool = False) -> int:
        """
        Persist a batch of records as one upload.

        Args:
            records: Parsed transaction records, in arrival order
            file_name: Original file name
            source_kind: 'confirmations' or 'opening_balance'
            content: Optional original file bytes
            replace_existing: Delete earlier batches of the same kind first

        Returns:
            int: New batch id
        """
        records = list(records)
        with self._session_scope() as session:
            if replace_existing:
                previous = session.scalars(
                    select(UploadBatch).where(UploadBatch.source_kind == source_kind)
                ).all()
                for batch in previous:
                    session.delete(batch)
                if previous:
                    logger.info(f"Replacing {len(previous)} earlier {source_kind} batches")

            batch = UploadBatch(
                file_name=file_name,
                source_kind=source_kind,
                uploaded_at=datetime.now(),
                record_count=len(records),
                content=content,
            )
            for record in records:
                batch.transactions.append(StockTransaction(
                    trade_date=record.trade_date,
                    instrument=record.instrument,
                    quantity=record.quantity,
                    price=record.price,
                    amount=round(record.amount, 2),
                    side=record.side.value,
                    broker_code=record.broker_code,
                    broker_name=record.broker_name,
                    settlement_condition=record.settlement_condition,
                    settlement_date=record.settlement_date,
                    close_price=record.close_price,
                    source_is_opening_balance=record.source_is_opening_balance,
                    explicit_valuation=record.explicit_valuation,
                ))
            session.add(batch)
            session.flush()
            batch_id = batch.id

        logger.info(f"Saved batch {batch_id} ({source_kind}) from {file_name}: {len(records)} records")
        return batch_id

    def list_batches(self) -> List[Dict[str, Any]]:
        """Upload history, newest first."""
        with self._session_scope() as session:
            batches = session.scalars(
                select(UploadBatch).order_by(UploadBatch.uploaded_at.desc(), UploadBatch.id.desc())
            ).all()
            return [_batch_summary(batch) for batch in batches]

    def get_batch(self, batch_id: int) -> Optional[Dict[str, Any]]:
        """Summary of one upload batch, or None if it does not exist."""
        with self._session_scope() as session:
            batch = session.get(UploadBatch, batch_id)
            return _batch_summary(batch) if batch is not None else None

    def get_batch_content(self, batch_id: int) -> Optional[bytes]:
        with self._session_scope() as session:
            batch = session.get(UploadBatch, batch_id)
            return batch.content if batch is not None else None

    def delete_batch(self, batch_id: int) -> bool:
        """
        Delete an upload batch together with its transactions.

        Returns:
            bool: False if the batch did not exist
        """
        with self._session_scope() as session:
            batch = session.get(UploadBatch, batch_id)
            if batch is None:
                logger.warning(f"Upload batch {batch_id} not found")
                return False
            session.delete(batch)

        logger.info(f"Deleted upload batch {batch_id} and its transactions")
        return True

    # Transactions

    def load_transactions(self, instrument: Optional[str] = None,
                          batch_id: Optional[int] = None) -> List[TransactionRecord]:
        """
        Load stored records ordered by trade date, then arrival order.

        Args:
            instrument: Restrict to one instrument
            batch_id: Restrict to one upload batch

        Returns:
            List[TransactionRecord]: Stored history
        """
        with self._session_scope() as session:
            query = select(StockTransaction).order_by(StockTransaction.trade_date, StockTransaction.id)
            if instrument:
                query = query.where(StockTransaction.instrument == normalize_instrument(instrument))
            if batch_id is not None:
                query = query.where(StockTransaction.batch_id == batch_id)
            records = [row.to_record() for row in session.scalars(query)]

        logger.debug(f"Loaded {len(records)} stored transactions")
        return records

    def update_close_price(self, instrument: str, close_price: float) -> int:
        """
        Stamp a close price on an instrument's Buy rows that have none yet.

        Rows whose close price is null or zero are updated; others keep
        their price.

        Returns:
            int: Number of rows updated
        """
        key = normalize_instrument(instrument)
        with self._session_scope() as session:
            result = session.execute(
                update(StockTransaction)
                .where(StockTransaction.instrument == key)
                .where(StockTransaction.side == Side.BUY.value)
                .where(or_(StockTransaction.close_price.is_(None), StockTransaction.close_price == 0))
                .values(close_price=close_price)
            )
            count = result.rowcount or 0

        logger.info(f"Close price {close_price} stamped on {count} {key} rows")
        return count

    # Manual adjustments

    def upsert_adjustment(self, adjustment: ManualAdjustment) -> ManualAdjustment:
        """Insert or merge the stored adjustment for an instrument."""
        with self._session_scope() as session:
            row = session.scalars(
                select(ManualAdjustmentRow).where(ManualAdjustmentRow.instrument == adjustment.instrument)
            ).first()

            if row is None:
                row = ManualAdjustmentRow(instrument=adjustment.instrument)
                session.add(row)
                merged = adjustment
            else:
                merged = row.to_adjustment().merge(adjustment)

            row.override_quantity = merged.override_quantity
            row.override_cost = merged.override_cost
            row.override_close_price = merged.override_close_price
            row.updated_at = datetime.now()
            session.flush()
            stored = row.to_adjustment()

        logger.info(f"Manual adjustment for {stored.instrument} saved")
        return stored

    def get_adjustments(self) -> List[ManualAdjustment]:
        with self._session_scope() as session:
            rows = session.scalars(select(ManualAdjustmentRow).order_by(ManualAdjustmentRow.instrument))
            return [row.to_adjustment() for row in rows]

    def remove_adjustment(self, instrument: str) -> AdjustmentRemoval:
        key = normalize_instrument(instrument)
        with self._session_scope() as session:
            result = session.execute(delete(ManualAdjustmentRow).where(ManualAdjustmentRow.instrument == key))
            removed = (result.rowcount or 0) > 0

        if not removed:
            logger.warning(f"No manual adjustment stored for {key}")
            return AdjustmentRemoval.NOT_FOUND
        logger.info(f"Manual adjustment for {key} removed")
        return AdjustmentRemoval.REMOVED


def create_ledger_store(config: Dict[str, Any] = None) -> LedgerStore:
    """
    Create a LedgerStore with optional configuration and ensure the schema.

    Args:
        config: Optional configuration dictionary

    Returns:
        LedgerStore instance
    """
    url = (config or {}).get('database', {}).get('url', DEFAULT_DATABASE_URL)
    store = LedgerStore(url)
    store.create_schema()
    return store
